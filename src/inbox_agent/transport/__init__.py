"""Transport adapters for external mailbox providers."""

from .imap_client import ImapAuthError, ImapError, ImapNetworkError, ImapTransport
from .sender import OutgoingMailSender
from .smtp_client import SmtpClient, SmtpError

__all__ = [
    "ImapAuthError",
    "ImapError",
    "ImapNetworkError",
    "ImapTransport",
    "OutgoingMailSender",
    "SmtpClient",
    "SmtpError",
]
