"""In-process implementations of the external collaborator protocols."""

from __future__ import annotations

import logging
import re
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from .interfaces import ConnectivityCallback, ConnectivityUpdate, MemoryStore
from .models import (
    KnowledgeSnippet,
    MailNotification,
    Memory,
    MemoryContent,
    MemorySource,
    ReplyTemplate,
)

LOGGER = logging.getLogger(__name__)

_TOKEN = re.compile(r"[a-z0-9]{3,}")


class StaticConnectivityOracle:
    """Connectivity answers held in memory; unknown users count as online."""

    def __init__(self, default: bool = True) -> None:
        self._default = default
        self._states: dict[str, bool] = {}

    def set_connected(self, user_id: str, is_connected: bool) -> None:
        """Record the connectivity flag for ``user_id``."""
        self._states[user_id] = is_connected

    async def is_user_connected(self, user_id: str) -> bool:
        """Return the recorded flag for ``user_id``."""
        return self._states.get(user_id, self._default)


@dataclass(slots=True)
class _LocalSubscription:
    feed: LocalChangeFeed
    user_id: str
    callback: ConnectivityCallback
    active: bool = True

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self.feed.remove(self)


class LocalChangeFeed:
    """Synchronous fan-out change feed, optionally mirroring an oracle."""

    def __init__(self, oracle: StaticConnectivityOracle | None = None) -> None:
        self._oracle = oracle
        self._subscribers: dict[str, list[_LocalSubscription]] = defaultdict(list)

    def subscribe(self, user_id: str, callback: ConnectivityCallback) -> _LocalSubscription:
        """Register ``callback`` for ``user_id`` updates."""
        subscription = _LocalSubscription(self, user_id, callback)
        self._subscribers[user_id].append(subscription)
        return subscription

    def remove(self, subscription: _LocalSubscription) -> None:
        """Drop ``subscription`` from the fan-out list."""
        subscribers = self._subscribers.get(subscription.user_id, [])
        if subscription in subscribers:
            subscribers.remove(subscription)

    def subscriber_count(self, user_id: str) -> int:
        """Return the number of live subscriptions for ``user_id``."""
        return len(self._subscribers.get(user_id, []))

    def publish(self, user_id: str, is_connected: bool) -> None:
        """Deliver a connectivity change to every subscriber of ``user_id``."""
        if self._oracle is not None:
            self._oracle.set_connected(user_id, is_connected)
        update = ConnectivityUpdate(user_id=user_id, is_connected=is_connected)
        for subscription in list(self._subscribers.get(user_id, [])):
            try:
                subscription.callback(update)
            except Exception:  # pylint: disable=broad-except
                LOGGER.exception("Change feed subscriber failed for %s", user_id)


class StaticKnowledgeStore:
    """Keyword overlap search over a fixed list of snippets."""

    def __init__(self, snippets: Iterable[KnowledgeSnippet] = ()) -> None:
        self._snippets = list(snippets)

    async def search(self, query: str, limit: int) -> Sequence[KnowledgeSnippet]:
        """Return snippets sharing the most words with ``query``."""
        if limit <= 0:
            return []
        query_tokens = set(_TOKEN.findall(query.lower()))
        scored = []
        for index, snippet in enumerate(self._snippets):
            overlap = len(query_tokens & set(_TOKEN.findall(snippet.text.lower())))
            if overlap:
                scored.append((-overlap, index, snippet))
        scored.sort()
        return [snippet for _, _, snippet in scored[:limit]]


class StaticTemplateStore:
    """Template lookup backed by a dictionary keyed on agent id."""

    def __init__(self, templates: dict[str, ReplyTemplate] | None = None) -> None:
        self._templates = dict(templates or {})

    async def get_template(self, agent_id: str) -> ReplyTemplate | None:
        """Return the template registered for ``agent_id``."""
        return self._templates.get(agent_id)


@dataclass(slots=True)
class InMemoryMemoryStore:
    """List-backed memory store."""

    memories: list[Memory] = field(default_factory=list)

    async def create_memory(self, memory: Memory) -> None:
        """Append ``memory``."""
        self.memories.append(memory)

    async def get_memories(
        self,
        *,
        room_id: str,
        count: int | None,
        start: datetime | None = None,
        source: str | None = None,
        collection: str | None = None,
    ) -> list[Memory]:
        """Return matching memories newest first."""
        matches = [
            (memory.created_at, index, memory)
            for index, memory in enumerate(self.memories)
            if memory.room_id == room_id
            and (start is None or memory.created_at >= start)
            and (source is None or memory.content.source == source)
            and (collection is None or memory.collection == collection)
        ]
        matches.sort(key=lambda entry: (entry[0], entry[1]), reverse=True)
        limited = matches if count is None else matches[:count]
        return [memory for _, _, memory in limited]


class MemoryNotificationChannel:
    """Persist notices as memories so the conversation can surface them."""

    def __init__(
        self,
        store: MemoryStore,
        *,
        agent_id: str,
        room_id: str,
        user_id: str,
    ) -> None:
        self._store = store
        self._agent_id = agent_id
        self._room_id = room_id
        self._user_id = user_id

    async def publish(self, notification: MailNotification) -> None:
        """Store ``notification`` as an ``EMAIL_NOTIFICATION`` memory."""
        memory = Memory(
            agent_id=self._agent_id,
            room_id=self._room_id,
            user_id=self._user_id,
            content=MemoryContent(
                text=notification.text,
                source=MemorySource.NOTIFICATION,
                metadata={
                    "kind": notification.kind,
                    "emailIds": list(notification.email_ids),
                },
            ),
        )
        await self._store.create_memory(memory)
        LOGGER.info("Mail notification: %s", notification.text)


__all__ = [
    "InMemoryMemoryStore",
    "LocalChangeFeed",
    "MemoryNotificationChannel",
    "StaticConnectivityOracle",
    "StaticKnowledgeStore",
    "StaticTemplateStore",
]
