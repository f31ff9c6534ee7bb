"""Logging configuration helpers."""

from __future__ import annotations

import logging
import logging.config
from collections.abc import MutableMapping
from typing import Any

from .config import LoggingSettings

_NOISY_LOGGERS = ("imapclient", "httpx", "httpcore")


def _structured_formatter() -> dict[str, Any]:
    """Return a dictConfig fragment for structured logs."""
    return {
        "format": "{asctime} {levelname} {name} {message}",
        "style": "{",
    }


def _plain_formatter() -> dict[str, Any]:
    """Return a dictConfig fragment for human readable logs."""
    return {
        "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
    }


def configure_logging(settings: LoggingSettings) -> None:
    """Configure application logging according to provided settings."""
    formatter = _structured_formatter() if settings.structured else _plain_formatter()
    level = settings.level.upper()
    # Protocol chatter from third-party clients is only useful when debugging.
    library_level = "DEBUG" if level == "DEBUG" else "WARNING"

    dict_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": formatter,
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "level": level,
            },
        },
        "loggers": {name: {"level": library_level} for name in _NOISY_LOGGERS},
        "root": {
            "handlers": ["console"],
            "level": level,
        },
    }

    logging.config.dictConfig(dict_config)


class MailboxLoggerAdapter(logging.LoggerAdapter):
    """Prefix records with the mailbox they concern."""

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        """Prepend the ``[IMAP:<user>]`` tag to ``msg``."""
        extra = self.extra or {}
        return f"[IMAP:{extra.get('mailbox_user', '?')}] {msg}", kwargs


def mailbox_logger(logger: logging.Logger, user: str | None) -> MailboxLoggerAdapter:
    """Return an adapter tagging ``logger`` output with ``user``."""
    return MailboxLoggerAdapter(logger, {"mailbox_user": user or "unknown"})


__all__ = ["MailboxLoggerAdapter", "configure_logging", "mailbox_logger"]
