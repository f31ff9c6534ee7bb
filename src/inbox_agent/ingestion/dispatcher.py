"""Batch parsed mail into memory records and surface notifications."""

from __future__ import annotations

import asyncio
import logging
import math
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from ..core.config import DispatcherSettings
from ..core.interfaces import MemoryStore, NotificationChannel
from ..core.models import (
    EmailRecord,
    MailNotification,
    Memory,
    MemoryContent,
    MemorySource,
    ParsedMail,
)
from .parser import clean_body

LOGGER = logging.getLogger(__name__)

IMPORTANT_NOTICE = "New important email received"
_SUMMARY_CHARS = 100


@dataclass(slots=True)
class _RegularNotice:
    email_id: str
    subject: str | None
    summary: str


# pylint: disable=too-many-instance-attributes
class MailEventDispatcher:
    """Turn a stream of :class:`ParsedMail` into stored memories.

    Memories are queued and written in adaptive batches. Each item in a batch
    is written independently; failures go back to the head of the queue for
    the next cycle. Important mail is announced immediately, other mail is
    summarised on a slower fixed interval.
    """

    def __init__(
        self,
        store: MemoryStore,
        settings: DispatcherSettings,
        *,
        agent_id: str,
        room_id: str,
        user_id: str,
        notifications: NotificationChannel | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._settings = settings
        self._agent_id = agent_id
        self._room_id = room_id
        self._user_id = user_id
        self._notifications = notifications
        self._sleep = sleep
        self._queue: deque[Memory] = deque()
        self._regular: deque[_RegularNotice] = deque()
        self._batch_task: asyncio.Task[None] | None = None
        self._notice_task: asyncio.Task[None] | None = None

    # Introspection ------------------------------------------------------------
    @property
    def pending(self) -> int:
        """Number of memories waiting to be written."""
        return len(self._queue)

    @property
    def pending_notices(self) -> int:
        """Number of regular mails waiting for the digest notice."""
        return len(self._regular)

    @property
    def running(self) -> bool:
        """Whether the timer loops are active."""
        return self._batch_task is not None

    def batch_size(self) -> int:
        """Half the queue, bounded by the configured minimum and maximum."""
        half = math.ceil(len(self._queue) / 2)
        return min(max(self._settings.min_batch_size, half), self._settings.max_batch_size)

    def next_delay(self) -> float:
        """Short delay while the queue is busy, long delay otherwise."""
        if len(self._queue) > self._settings.busy_queue_threshold:
            return self._settings.short_delay_seconds
        return self._settings.long_delay_seconds

    def is_important(self, mail: ParsedMail) -> bool:
        """Match the sender allow-list or urgent keywords in subject and body."""
        senders = [address.address.lower() for address in mail.senders]
        for important in self._settings.important_senders:
            if any(important.lower() in sender for sender in senders):
                return True
        haystack = f"{mail.subject or ''}\n{mail.text or ''}".lower()
        return any(keyword.lower() in haystack for keyword in self._settings.urgent_keywords)

    def build_memory(self, mail: ParsedMail) -> Memory:
        """Create the memory record stored for ``mail``."""
        body = clean_body(mail.text) or mail.subject or "No content"
        metadata = EmailRecord.from_mail(mail, body).to_metadata()
        metadata.update(
            {
                "originalEmailId": mail.message_id,
                "originalMessageId": mail.message_id,
                "originalThreadId": mail.thread_id,
            }
        )
        return Memory(
            agent_id=self._agent_id,
            room_id=self._room_id,
            user_id=self._user_id,
            content=MemoryContent(
                text=mail.text or mail.subject or "New email received",
                source=MemorySource.EMAIL,
                metadata=metadata,
            ),
        )

    # Event handling -----------------------------------------------------------
    async def handle_mail(self, mail: ParsedMail) -> None:
        """Queue ``mail`` and flush or notify as the policy demands."""
        memory = self.build_memory(mail)
        self._queue.append(memory)
        LOGGER.debug(
            "Queued email %s (%s pending)", mail.email_uuid, len(self._queue)
        )
        if len(self._queue) >= self.batch_size():
            await self.flush()

        if self.is_important(mail):
            await self._publish(
                MailNotification(
                    kind="important",
                    text=IMPORTANT_NOTICE,
                    email_ids=(mail.email_uuid,),
                )
            )
        else:
            summary = memory.content.metadata["body"][:_SUMMARY_CHARS]
            self._regular.append(
                _RegularNotice(mail.email_uuid, mail.subject, summary)
            )

    async def flush(self) -> int:
        """Write one batch; return how many memories were stored."""
        if not self._queue:
            return 0
        size = min(self.batch_size(), len(self._queue))
        batch = [self._queue.popleft() for _ in range(size)]
        results = await asyncio.gather(
            *(self._store.create_memory(memory) for memory in batch),
            return_exceptions=True,
        )
        failed = []
        for memory, result in zip(batch, results):
            if isinstance(result, Exception):
                LOGGER.warning(
                    "Storing email memory %s failed, re-queued: %s",
                    memory.content.metadata.get("emailId"),
                    result,
                )
                failed.append(memory)
        # Failed items keep their place ahead of newer mail.
        self._queue.extendleft(reversed(failed))
        stored = len(batch) - len(failed)
        LOGGER.debug("Stored %s of %s queued email memories", stored, len(batch))
        return stored

    async def drain(self) -> int:
        """Flush repeatedly until the queue is empty or a cycle stores nothing."""
        total = 0
        while self._queue:
            stored = await self.flush()
            if stored == 0:
                break
            total += stored
        return total

    async def flush_notifications(self) -> MailNotification | None:
        """Publish the digest notice for queued regular mail."""
        if not self._regular:
            return None
        notices = list(self._regular)
        self._regular.clear()
        count = len(notices)
        notification = MailNotification(
            kind="digest",
            text=f"You have {count} new email{'s' if count > 1 else ''}",
            email_ids=tuple(notice.email_id for notice in notices),
        )
        await self._publish(notification)
        return notification

    # Lifecycle ----------------------------------------------------------------
    def start(self) -> None:
        """Start the batch and digest timers."""
        if self._batch_task is not None:
            return
        self._batch_task = asyncio.create_task(self._batch_loop())
        self._notice_task = asyncio.create_task(self._notice_loop())

    async def stop(self) -> None:
        """Cancel timers and make a final attempt to store queued memories."""
        tasks = [task for task in (self._batch_task, self._notice_task) if task]
        self._batch_task = None
        self._notice_task = None
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.drain()
        if self._queue:
            LOGGER.warning("%s email memories not stored at shutdown", len(self._queue))

    # Internal helpers ---------------------------------------------------------
    async def _publish(self, notification: MailNotification) -> None:
        if self._notifications is None:
            LOGGER.info("Mail notification: %s", notification.text)
            return
        try:
            await self._notifications.publish(notification)
        except Exception:  # pylint: disable=broad-except
            LOGGER.exception("Publishing mail notification failed")

    async def _batch_loop(self) -> None:
        while True:
            await self._sleep(self.next_delay())
            try:
                await self.flush()
            except Exception:  # pylint: disable=broad-except
                LOGGER.exception("Email memory batch failed")

    async def _notice_loop(self) -> None:
        while True:
            await self._sleep(self._settings.notification_interval_seconds)
            await self.flush_notifications()


__all__ = ["IMPORTANT_NOTICE", "MailEventDispatcher"]
