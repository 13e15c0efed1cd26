"""
Email transports for the notification worker.

This package contains the sender interface plus the Amazon SES and SMTP
implementations used to deliver notifications.
"""

__all__ = ['email', 'ses', 'smtp']
