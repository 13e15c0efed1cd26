"""
Exception taxonomy for the notification worker.

Startup errors (ConfigError, BrokerConnectionError) stop the process.
Per-message errors (DecodeError, SendError) are handled by the consumer
and never escape the consume loop.
"""


class ConfigError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


class BrokerConnectionError(ConnectionError):
    """Raised when the broker is unreachable, rejects credentials, or the channel cannot be opened."""
    pass


class DecodeError(ValueError):
    """Raised when a queue message cannot be decoded into a NotificationRequest."""
    pass


class SendError(Exception):
    """
    Base class for email delivery failures.

    Attributes:
        transient: True if the same send may succeed later
    """
    transient = False


class TransientSendError(SendError):
    """Provider outage, throttling or network failure. Worth retrying."""
    transient = True


class PermanentSendError(SendError):
    """Provider rejected the message (e.g. invalid recipient). Never retried."""
    transient = False
