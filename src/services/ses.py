"""
Amazon SES transport for outbound notifications.

This module sends plain-text emails with the SES SendEmail API and maps
AWS errors to transient or permanent send failures.
"""

import asyncio
import logging
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from domain.errors import PermanentSendError, TransientSendError
from services.email import EmailSender

logger = logging.getLogger(__name__)

# Configure SES client with timeouts to prevent infinite hangs
# Retries are owned by the queue (retry queue + dead-letter), not the client
ses_config = Config(
    retries={
        'max_attempts': 1,  # 1 attempt total (no retries)
        'mode': 'standard'
    },
    connect_timeout=5,   # 5 seconds to establish connection
    read_timeout=20      # 20 seconds max for reading response
)

# Error codes where resending the same message can never succeed
PERMANENT_ERROR_CODES = frozenset({
    'MessageRejected',
    'MailFromDomainNotVerifiedException',
    'ConfigurationSetDoesNotExistException',
    'ConfigurationSetSendingPausedException',
    'InvalidParameterValue',
    'ValidationError',
})


class SesEmailSender(EmailSender):
    """
    Sends email through Amazon SES.

    The boto3 client is blocking, so each call runs in a worker thread and
    the event loop stays free for broker heartbeats and the health listener.
    """

    def __init__(self, region_name: Optional[str] = None, client=None):
        """
        Initialize SES sender.

        Args:
            region_name: AWS region for the SES client
            client: Pre-built boto3 SES client (tests inject a mock)
        """
        if client is None:
            client = boto3.client('ses', region_name=region_name, config=ses_config)
            logger.info(
                f"SES client initialized: region={region_name}, "
                f"connect_timeout=5s, read_timeout=20s, max_attempts=1"
            )
        self._client = client

    async def send_email(self, sender: str, recipient: str, subject: str, body: str) -> str:
        try:
            return await asyncio.to_thread(self._send, sender, recipient, subject, body)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            error_message = e.response.get('Error', {}).get('Message', str(e))

            if error_code in PERMANENT_ERROR_CODES:
                logger.error(
                    f"SES rejected email: recipient={recipient}, "
                    f"error_code={error_code}, error_message={error_message}"
                )
                raise PermanentSendError(f"SES rejected email ({error_code}): {error_message}") from e

            logger.warning(
                f"SES send failed: recipient={recipient}, "
                f"error_code={error_code}, error_message={error_message}"
            )
            raise TransientSendError(f"SES send failed ({error_code}): {error_message}") from e
        except BotoCoreError as e:
            # Endpoint, connect and read timeout errors
            logger.warning(f"SES transport error: recipient={recipient}, error={e}")
            raise TransientSendError(f"SES transport error: {e}") from e

    def _send(self, sender: str, recipient: str, subject: str, body: str) -> str:
        response = self._client.send_email(
            Source=sender,
            Destination={'ToAddresses': [recipient]},
            Message={
                'Subject': {'Data': subject, 'Charset': 'UTF-8'},
                'Body': {'Text': {'Data': body, 'Charset': 'UTF-8'}}
            }
        )
        message_id = response.get('MessageId', '')
        logger.info(f"SES accepted email: recipient={recipient}, ses_message_id={message_id}")
        return message_id
