"""
Notification processing pipeline - core business logic.

This module handles the processing of one queue message:
1. Decode the message body into a NotificationRequest
2. Send the email through the configured transport (bounded by a timeout)
3. Return the disposition (ack, retry or dead-letter)

All errors are caught and returned as ProcessingResult. No exceptions
propagate out of process(), so one bad message can never stop the consumer.
"""

import asyncio
import logging
import time
from typing import Optional

from .errors import DecodeError, PermanentSendError, TransientSendError
from .models import Disposition, NotificationRequest, ProcessingResult

logger = logging.getLogger(__name__)


class NotificationProcessor:
    """
    Decodes notification messages and delivers them through an email sender.

    The processor knows nothing about the broker: it turns a message body
    into a ProcessingResult and the consumer acts on the disposition.
    """

    def __init__(
        self,
        email_sender,
        sender_address: str,
        send_timeout: float = 30.0,
        max_retries: int = 5
    ):
        """
        Initialize notification processor.

        Args:
            email_sender: Object with an async send_email(sender, recipient, subject, body)
            sender_address: Address every notification is sent from
            send_timeout: Seconds before a send is abandoned as a transient failure
            max_retries: Retries allowed for transient failures before dead-lettering
        """
        self._email_sender = email_sender
        self._sender_address = sender_address
        self._send_timeout = send_timeout
        self._max_retries = max_retries

    async def process(
        self,
        body: bytes,
        message_id: str,
        retry_count: int = 0
    ) -> ProcessingResult:
        """
        Process a single queue message.

        Args:
            body: Raw message body
            message_id: Broker message identifier (for logging)
            retry_count: Retries already made for this message

        Returns:
            ProcessingResult with the disposition for the consumer
        """
        logger.info(f"Processing message: {message_id} (retry {retry_count})")

        try:
            request = NotificationRequest.from_message_body(body)
        except DecodeError as e:
            logger.warning(f"Dropping undecodable message {message_id} to dead-letter: {e}")
            return ProcessingResult(
                disposition=Disposition.DEAD_LETTER,
                message_id=message_id,
                retry_count=retry_count,
                error_message=str(e)
            )

        logger.info(f"Decoded: to={request.recipient_email}, subject={request.subject!r}")

        failure = await self._send(request, message_id)
        if failure is None:
            return ProcessingResult(
                disposition=Disposition.ACK,
                message_id=message_id,
                retry_count=retry_count,
                request=request
            )

        disposition, error_text = failure
        return ProcessingResult(
            disposition=self._final_disposition(disposition, retry_count, message_id),
            message_id=message_id,
            retry_count=retry_count,
            request=request,
            error_message=error_text
        )

    async def _send(self, request: NotificationRequest, message_id: str) -> Optional[tuple]:
        """
        Send the email and classify any failure.

        Returns:
            None on success, otherwise (Disposition, error message)
        """
        start_time = time.time()

        try:
            provider_id = await asyncio.wait_for(
                self._email_sender.send_email(
                    self._sender_address,
                    request.recipient_email,
                    request.subject,
                    request.text
                ),
                timeout=self._send_timeout
            )
        except PermanentSendError as e:
            logger.error(f"Permanent send failure for {message_id}: {e}")
            return Disposition.DEAD_LETTER, str(e)
        except TransientSendError as e:
            logger.warning(f"Transient send failure for {message_id}: {e}")
            return Disposition.RETRY, str(e)
        except asyncio.TimeoutError:
            logger.warning(f"Send timed out after {self._send_timeout}s for {message_id}")
            return Disposition.RETRY, f"Send timed out after {self._send_timeout}s"
        except Exception as e:
            logger.error(f"Unexpected send failure for {message_id}: {e}", exc_info=True)
            return Disposition.RETRY, str(e)

        send_time = time.time() - start_time
        logger.info(
            f"Email sent: message_id={message_id}, provider_id={provider_id}, "
            f"send_time={send_time:.3f}s"
        )
        return None

    def _final_disposition(
        self,
        disposition: Disposition,
        retry_count: int,
        message_id: str
    ) -> Disposition:
        """Turn a retry into a dead-letter once the retry budget is spent."""
        if disposition is Disposition.RETRY and retry_count >= self._max_retries:
            logger.error(
                f"Retry budget exhausted for {message_id} "
                f"({retry_count}/{self._max_retries}), dead-lettering"
            )
            return Disposition.DEAD_LETTER
        return disposition
