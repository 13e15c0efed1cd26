"""
SMTP transport for outbound notifications.
"""

import asyncio
import logging
import smtplib
from email.message import EmailMessage
from email.utils import make_msgid

from domain.errors import PermanentSendError, TransientSendError
from services.email import EmailSender

logger = logging.getLogger(__name__)


class SmtpEmailSender(EmailSender):
    """
    Sends email through an SMTP relay with STARTTLS and optional login.

    A new SMTP session is opened per message; smtplib is blocking, so the
    session runs in a worker thread.
    """

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str = '',
        password: str = '',
        use_tls: bool = True,
        timeout: float = 30.0
    ):
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._use_tls = use_tls
        self._timeout = timeout

    async def send_email(self, sender: str, recipient: str, subject: str, body: str) -> str:
        try:
            message = self._build_message(sender, recipient, subject, body)
        except ValueError as e:
            # CR or LF in a header value
            logger.error(f"Refusing to build email for {recipient!r}: {e}")
            raise PermanentSendError(f"Invalid email header value: {e}") from e

        try:
            await asyncio.to_thread(self._deliver, message)
        except smtplib.SMTPAuthenticationError as e:
            # Credentials can be fixed by an operator; keep the message for retry
            logger.error(f"SMTP authentication failed for {self._username}: {e.smtp_code}")
            raise TransientSendError(f"SMTP authentication failed ({e.smtp_code})") from e
        except smtplib.SMTPRecipientsRefused as e:
            codes = [code for code, _ in e.recipients.values()]
            if codes and all(code >= 500 for code in codes):
                raise PermanentSendError(f"SMTP server refused recipient {recipient}: {codes}") from e
            raise TransientSendError(f"SMTP server deferred recipient {recipient}: {codes}") from e
        except smtplib.SMTPResponseException as e:
            if e.smtp_code >= 500:
                raise PermanentSendError(f"SMTP server rejected email ({e.smtp_code}): {e.smtp_error!r}") from e
            raise TransientSendError(f"SMTP server deferred email ({e.smtp_code}): {e.smtp_error!r}") from e
        except (smtplib.SMTPException, OSError) as e:
            logger.warning(f"SMTP transport error: host={self._host}, error={e}")
            raise TransientSendError(f"SMTP transport error: {e}") from e

        logger.info(f"SMTP accepted email: recipient={recipient}, message_id={message['Message-ID']}")
        return message['Message-ID']

    def _build_message(self, sender: str, recipient: str, subject: str, body: str) -> EmailMessage:
        message = EmailMessage()
        message['From'] = sender
        message['To'] = recipient
        message['Subject'] = subject
        message['Message-ID'] = make_msgid(domain=sender.split('@', 1)[-1])
        message.set_content(body)
        return message

    def _deliver(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as server:
            if self._use_tls:
                server.starttls()
            if self._username:
                server.login(self._username, self._password)
            server.send_message(message)
