"""
Tests for the SMTP email transport and the transport factory.
"""

import smtplib
import pytest
import sys
import os
from unittest.mock import MagicMock, patch

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../src'))

from config import load_config
from domain.errors import PermanentSendError, TransientSendError
from services.email import create_email_sender
from services.ses import SesEmailSender
from services.smtp import SmtpEmailSender


@pytest.fixture
def mock_smtp():
    """Patch smtplib.SMTP and return the server used inside the with-block."""
    with patch('services.smtp.smtplib.SMTP') as smtp_class:
        server = MagicMock()
        smtp_class.return_value.__enter__.return_value = server
        yield smtp_class, server


def make_sender(**kwargs):
    options = {'host': 'smtp.example.com', 'username': 'user', 'password': 'secret'}
    options.update(kwargs)
    return SmtpEmailSender(**options)


class TestSmtpEmailSender:
    """Test delivery through SMTP."""

    @pytest.mark.asyncio
    async def test_send_email_success(self, mock_smtp):
        smtp_class, server = mock_smtp

        message_id = await make_sender(timeout=7).send_email('sender@configured.com', 'a@b.com', 'Hi', 'Hello')

        smtp_class.assert_called_once_with('smtp.example.com', 587, timeout=7)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with('user', 'secret')
        sent = server.send_message.call_args[0][0]
        assert sent['From'] == 'sender@configured.com'
        assert sent['To'] == 'a@b.com'
        assert sent['Subject'] == 'Hi'
        assert sent.get_content().strip() == 'Hello'
        assert message_id == sent['Message-ID']
        assert message_id.endswith('@configured.com>')

    @pytest.mark.asyncio
    async def test_no_tls_and_no_login(self, mock_smtp):
        _, server = mock_smtp

        await make_sender(username='', use_tls=False).send_email('sender@configured.com', 'a@b.com', 'Hi', 'Hello')

        server.starttls.assert_not_called()
        server.login.assert_not_called()

    @pytest.mark.asyncio
    async def test_recipient_refused_permanently(self, mock_smtp):
        _, server = mock_smtp
        server.send_message.side_effect = smtplib.SMTPRecipientsRefused(
            {'a@b.com': (550, b'No such user')}
        )

        with pytest.raises(PermanentSendError):
            await make_sender().send_email('sender@configured.com', 'a@b.com', 'Hi', 'Hello')

    @pytest.mark.asyncio
    async def test_recipient_deferred(self, mock_smtp):
        _, server = mock_smtp
        server.send_message.side_effect = smtplib.SMTPRecipientsRefused(
            {'a@b.com': (451, b'Try again later')}
        )

        with pytest.raises(TransientSendError):
            await make_sender().send_email('sender@configured.com', 'a@b.com', 'Hi', 'Hello')

    @pytest.mark.asyncio
    async def test_5xx_response_is_permanent(self, mock_smtp):
        _, server = mock_smtp
        server.send_message.side_effect = smtplib.SMTPDataError(554, b'Message rejected')

        with pytest.raises(PermanentSendError, match='554'):
            await make_sender().send_email('sender@configured.com', 'a@b.com', 'Hi', 'Hello')

    @pytest.mark.asyncio
    async def test_4xx_response_is_transient(self, mock_smtp):
        _, server = mock_smtp
        server.send_message.side_effect = smtplib.SMTPDataError(421, b'Service not available')

        with pytest.raises(TransientSendError, match='421'):
            await make_sender().send_email('sender@configured.com', 'a@b.com', 'Hi', 'Hello')

    @pytest.mark.asyncio
    async def test_authentication_failure_is_transient(self, mock_smtp):
        _, server = mock_smtp
        server.login.side_effect = smtplib.SMTPAuthenticationError(535, b'Bad credentials')

        with pytest.raises(TransientSendError, match='authentication'):
            await make_sender().send_email('sender@configured.com', 'a@b.com', 'Hi', 'Hello')

    @pytest.mark.asyncio
    async def test_connection_refused_is_transient(self, mock_smtp):
        smtp_class, _ = mock_smtp
        smtp_class.side_effect = ConnectionRefusedError("Connection refused")

        with pytest.raises(TransientSendError):
            await make_sender().send_email('sender@configured.com', 'a@b.com', 'Hi', 'Hello')

    @pytest.mark.asyncio
    @pytest.mark.parametrize("sender_address, subject", [
        ('sender@configured.com', 'Hi\nBcc: x@y.com'),
        ('sender@configured.com', 'Hi\r\nX-Injected: yes'),
        ('sender@configured.com\nBcc: x@y.com', 'Hi'),
    ])
    async def test_linefeed_in_header_is_permanent(self, mock_smtp, sender_address, subject):
        """Header injection attempts are rejected without contacting the server."""
        smtp_class, server = mock_smtp

        with pytest.raises(PermanentSendError, match='header'):
            await make_sender().send_email(sender_address, 'a@b.com', subject, 'Hello')

        smtp_class.assert_not_called()
        server.send_message.assert_not_called()

    @pytest.mark.asyncio
    async def test_linefeed_in_subject_is_dead_lettered_by_processor(self, mock_smtp):
        from domain.models import Disposition
        from domain.notification_processor import NotificationProcessor

        body = b'{"recepientEmail":"a@b.com","subject":"Hi\\nBcc: x@y.com","text":"Hello"}'
        processor = NotificationProcessor(make_sender(), 'sender@configured.com', max_retries=5)

        result = await processor.process(body, "msg-1", retry_count=0)

        assert result.disposition is Disposition.DEAD_LETTER

    @pytest.mark.asyncio
    async def test_server_disconnected_is_transient(self, mock_smtp):
        _, server = mock_smtp
        server.send_message.side_effect = smtplib.SMTPServerDisconnected("lost")

        with pytest.raises(TransientSendError):
            await make_sender().send_email('sender@configured.com', 'a@b.com', 'Hi', 'Hello')


class TestCreateEmailSender:
    """Test transport selection from configuration."""

    def test_ses_is_default(self):
        config = load_config({
            'BROKER_URL': 'amqp://localhost/',
            'SENDER_EMAIL': 'sender@configured.com',
        })

        with patch('services.ses.boto3.client'):
            assert isinstance(create_email_sender(config), SesEmailSender)

    def test_smtp_selected(self):
        config = load_config({
            'BROKER_URL': 'amqp://localhost/',
            'SENDER_EMAIL': 'sender@configured.com',
            'EMAIL_TRANSPORT': 'smtp',
            'SMTP_HOST': 'smtp.example.com',
        })

        assert isinstance(create_email_sender(config), SmtpEmailSender)


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
