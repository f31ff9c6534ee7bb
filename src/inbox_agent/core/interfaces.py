"""Protocol interfaces for decoupling components."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from .models import (
    KnowledgeSnippet,
    MailNotification,
    Memory,
    ParsedMail,
    ReplyTemplate,
)

LOGGER = logging.getLogger(__name__)


class EmailNotConfiguredError(RuntimeError):
    """Raised when a send or receive call reaches an unconfigured direction."""


@dataclass(frozen=True, slots=True)
class ConnectivityUpdate:
    """Change feed payload describing a user's connectivity flag."""

    user_id: str
    is_connected: bool


MailListener = Callable[[ParsedMail], Awaitable[None]]
ConnectivityCallback = Callable[[ConnectivityUpdate], None]


class ConnectivityOracle(Protocol):
    """Answers whether a user is currently online."""

    async def is_user_connected(self, user_id: str) -> bool:
        """Return ``True`` when the user is connected."""
        raise NotImplementedError


class Subscription(Protocol):
    """Handle returned by :meth:`ChangeFeed.subscribe`."""

    def unsubscribe(self) -> None:
        """Stop delivering updates. Calling twice is harmless."""
        raise NotImplementedError


class ChangeFeed(Protocol):
    """Push feed of connectivity changes for a user."""

    def subscribe(self, user_id: str, callback: ConnectivityCallback) -> Subscription:
        """Register ``callback`` for updates concerning ``user_id``."""
        raise NotImplementedError


class KnowledgeStore(Protocol):
    """Free text search over agent knowledge."""

    async def search(self, query: str, limit: int) -> Sequence[KnowledgeSnippet]:
        """Return up to ``limit`` snippets ranked by relevance."""
        raise NotImplementedError


class TemplateStore(Protocol):
    """Lookup of per-agent reply formatting."""

    async def get_template(self, agent_id: str) -> ReplyTemplate | None:
        """Return the configured template or ``None``."""
        raise NotImplementedError


class MemoryStore(Protocol):
    """Persistence for conversational memories."""

    async def create_memory(self, memory: Memory) -> None:
        """Persist ``memory``."""
        raise NotImplementedError

    async def get_memories(
        self,
        *,
        room_id: str,
        count: int | None,
        start: datetime | None = None,
        source: str | None = None,
        collection: str | None = None,
    ) -> list[Memory]:
        """Return up to ``count`` memories newest first, optionally filtered.

        ``count=None`` returns every match.
        """
        raise NotImplementedError


class NotificationChannel(Protocol):
    """Destination for user-facing mail notices."""

    async def publish(self, notification: MailNotification) -> None:
        """Deliver ``notification``."""
        raise NotImplementedError


async def user_is_connected(oracle: ConnectivityOracle | None, user_id: str) -> bool:
    """Ask ``oracle`` about ``user_id``, assuming connected when it fails."""
    if oracle is None:
        return True
    try:
        return bool(await oracle.is_user_connected(user_id))
    except Exception as exc:  # pylint: disable=broad-except
        LOGGER.warning(
            "Connectivity lookup failed for %s, assuming connected: %s", user_id, exc
        )
        return True


__all__ = [
    "ChangeFeed",
    "ConnectivityCallback",
    "ConnectivityOracle",
    "ConnectivityUpdate",
    "EmailNotConfiguredError",
    "KnowledgeStore",
    "MailListener",
    "MemoryStore",
    "NotificationChannel",
    "Subscription",
    "TemplateStore",
    "user_is_connected",
]
