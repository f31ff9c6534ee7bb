"""Core utilities for configuration, logging, and shared domain types."""

from .config import (
    AppSettings,
    ConfigurationError,
    ImapSettings,
    SmtpSettings,
    load_app_settings,
)
from .interfaces import EmailNotConfiguredError
from .logging import configure_logging, mailbox_logger

__all__ = [
    "AppSettings",
    "ConfigurationError",
    "EmailNotConfiguredError",
    "ImapSettings",
    "SmtpSettings",
    "configure_logging",
    "load_app_settings",
    "mailbox_logger",
]
