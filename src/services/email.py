"""
Email sender interface and transport factory.

Transports turn provider-specific failures into TransientSendError or
PermanentSendError so the processor can decide between retry and
dead-letter without knowing which provider is configured.
"""

import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class EmailSender(ABC):
    """Sends one plain-text email and reports the provider message id."""

    @abstractmethod
    async def send_email(
        self,
        sender: str,
        recipient: str,
        subject: str,
        body: str
    ) -> str:
        """
        Send a plain-text email.

        Args:
            sender: From address
            recipient: To address
            subject: Subject line
            body: Plain text body

        Returns:
            str: Provider message identifier

        Raises:
            TransientSendError: If the send may succeed when retried
            PermanentSendError: If the provider rejected the message
        """


def create_email_sender(config) -> EmailSender:
    """
    Build the transport selected by EMAIL_TRANSPORT.

    Args:
        config: WorkerConfig

    Returns:
        EmailSender: SesEmailSender or SmtpEmailSender
    """
    if config.email_transport == 'smtp':
        from services.smtp import SmtpEmailSender

        logger.info(f"Using SMTP transport: host={config.smtp_host}, port={config.smtp_port}")
        return SmtpEmailSender(
            host=config.smtp_host,
            port=config.smtp_port,
            username=config.smtp_username,
            password=config.smtp_password,
            use_tls=config.smtp_use_tls,
            timeout=config.send_timeout
        )

    from services.ses import SesEmailSender

    logger.info(f"Using SES transport: region={config.aws_region}")
    return SesEmailSender(region_name=config.aws_region)
