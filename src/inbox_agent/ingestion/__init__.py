"""Mail ingestion pipeline components."""

from .dispatcher import MailEventDispatcher
from .health import ConnectionHealthTracker
from .parser import EmailParser, clean_body
from .session import IllegalTransitionError, IncomingMailSession

__all__ = [
    "ConnectionHealthTracker",
    "EmailParser",
    "IllegalTransitionError",
    "IncomingMailSession",
    "MailEventDispatcher",
    "clean_body",
]
