"""
Data models for notification processing domain.

These type-safe data structures define clear contracts between the queue
consumer, the processing pipeline and the email transports.
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .errors import DecodeError

# Wire keys as emitted by producers (spelling is part of the queue contract)
RECIPIENT_KEY = 'recepientEmail'
SUBJECT_KEY = 'subject'
TEXT_KEY = 'text'

MAX_EMAIL_LENGTH = 254
FORBIDDEN_EMAIL_CHARACTERS = (";", ",", "(", ")", '"', ":", "<", ">", "[", "]", "\\")


def is_valid_email_address(address: str) -> bool:
    """
    Check that an email address has a basic valid structure.

    Enforces exactly one @, non-empty local and domain parts, a dotted domain
    without leading/trailing dots or hyphens, no consecutive dots, no
    whitespace and no forbidden characters.

    Args:
        address: Candidate email address

    Returns:
        True if the address is syntactically valid

    Example:
        >>> is_valid_email_address("a@b.com")
        True
        >>> is_valid_email_address("not-an-email")
        False
    """
    if not isinstance(address, str) or not address or len(address) > MAX_EMAIL_LENGTH:
        return False

    if any(ch.isspace() or not ch.isprintable() for ch in address):
        return False

    if address.count("@") != 1:
        return False

    local_part, domain_part = address.split("@", 1)

    if not local_part or local_part.startswith(".") or local_part.endswith("."):
        return False

    if not domain_part or domain_part.startswith(".") or domain_part.endswith("."):
        return False

    if "." not in domain_part:
        return False

    for label in domain_part.split("."):
        if label.startswith("-") or label.endswith("-"):
            return False

    if ".." in local_part or ".." in domain_part:
        return False

    return not any(ch in address for ch in FORBIDDEN_EMAIL_CHARACTERS)


@dataclass(frozen=True)
class NotificationRequest:
    """
    One email to send, decoded from exactly one queue message.

    Attributes:
        recipient_email: Recipient address (wire key 'recepientEmail')
        subject: Subject line (may be empty)
        text: Plain text body (may be empty)
    """
    recipient_email: str
    subject: str
    text: str

    @classmethod
    def from_message_body(cls, body: bytes) -> 'NotificationRequest':
        """
        Decode a raw queue message body.

        Args:
            body: Raw message bytes (UTF-8 encoded JSON object)

        Returns:
            NotificationRequest: The decoded request

        Raises:
            DecodeError: If the body is not UTF-8 JSON, is not an object,
                or a required field is missing, mistyped or invalid

        Example:
            >>> NotificationRequest.from_message_body(
            ...     b'{"recepientEmail": "a@b.com", "subject": "Hi", "text": "Hello"}'
            ... )
            NotificationRequest(recipient_email='a@b.com', subject='Hi', text='Hello')
        """
        try:
            decoded = body.decode('utf-8')
        except UnicodeDecodeError as e:
            raise DecodeError(f"Message body is not valid UTF-8: {e}") from e

        try:
            payload = json.loads(decoded)
        except json.JSONDecodeError as e:
            raise DecodeError(f"Message body is not valid JSON: {e}") from e

        return cls.from_payload(payload)

    @classmethod
    def from_payload(cls, payload: Any) -> 'NotificationRequest':
        """
        Build a request from an already-parsed JSON payload.

        Raises:
            DecodeError: If a required field is missing, mistyped or invalid
        """
        if not isinstance(payload, dict):
            raise DecodeError(
                f"Message body must be a JSON object, got {type(payload).__name__}"
            )

        missing = [key for key in (RECIPIENT_KEY, SUBJECT_KEY, TEXT_KEY) if key not in payload]
        if missing:
            raise DecodeError(f"Message missing required field(s): {', '.join(missing)}")

        for key in (RECIPIENT_KEY, SUBJECT_KEY, TEXT_KEY):
            if not isinstance(payload[key], str):
                raise DecodeError(
                    f"Field '{key}' must be a string, got {type(payload[key]).__name__}"
                )

        recipient = payload[RECIPIENT_KEY].strip()
        if not is_valid_email_address(recipient):
            raise DecodeError(f"Invalid recipient email address: {payload[RECIPIENT_KEY]!r}")

        return cls(
            recipient_email=recipient,
            subject=payload[SUBJECT_KEY],
            text=payload[TEXT_KEY]
        )


class Disposition(str, Enum):
    """Terminal decision for one queue message."""
    ACK = 'ack'
    RETRY = 'retry'
    DEAD_LETTER = 'dead_letter'


@dataclass
class ProcessingResult:
    """
    Result of processing one queue message.

    This explicit result type makes the ack decision clear and keeps
    exceptions from being used for control flow between the processor
    and the consumer.

    Attributes:
        disposition: What the consumer must do with the message
        message_id: Broker message identifier
        retry_count: Number of retries already made before this attempt
        request: Decoded request (if decoding succeeded)
        error_message: Error description (if processing failed)
    """
    disposition: Disposition
    message_id: str
    retry_count: int = 0
    request: Optional[NotificationRequest] = None
    error_message: Optional[str] = None

    @property
    def success(self) -> bool:
        """True when the email was delivered."""
        return self.disposition is Disposition.ACK

    def to_log_dict(self) -> Dict[str, Any]:
        """Summary used in structured log lines (no message body)."""
        result = {
            'message_id': self.message_id,
            'disposition': self.disposition.value,
            'retry_count': self.retry_count,
        }
        if self.request:
            result['recipient'] = self.request.recipient_email
        if self.error_message:
            result['error'] = self.error_message
        return result

    def __repr__(self) -> str:
        """Human-readable representation for logging."""
        if self.success:
            return f"ProcessingResult(success=True, message_id={self.message_id})"
        else:
            return (
                f"ProcessingResult(success=False, message_id={self.message_id}, "
                f"disposition={self.disposition.value}, error={self.error_message})"
            )
