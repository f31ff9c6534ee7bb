"""Persistent IMAP session with backfill, IDLE watch and reconnect policy."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import timedelta

from ..core.config import ImapSettings, SessionSettings
from ..core.datetime_utils import utc_now
from ..core.identifiers import InvalidMailIdentifierError
from ..core.interfaces import ConnectivityOracle, MailListener, user_is_connected
from ..core.logging import mailbox_logger
from ..core.models import HealthMetrics, ParsedMail, SessionState
from ..transport.imap_client import ImapAuthError, ImapError, ImapTransport, chunked
from .health import ConnectionHealthTracker
from .parser import EmailParser

LOGGER = logging.getLogger(__name__)

_ALLOWED: dict[SessionState, frozenset[SessionState]] = {
    SessionState.DISABLED: frozenset({SessionState.DISABLED, SessionState.CONNECTING}),
    SessionState.CONNECTING: frozenset(
        {
            SessionState.CONNECTED_FETCHING,
            SessionState.ERROR_BACKOFF,
            SessionState.DISABLED,
        }
    ),
    SessionState.CONNECTED_FETCHING: frozenset(
        {
            SessionState.CONNECTED_IDLE,
            SessionState.ERROR_BACKOFF,
            SessionState.DISABLED,
        }
    ),
    SessionState.CONNECTED_IDLE: frozenset(
        {
            SessionState.CONNECTED_FETCHING,
            SessionState.ERROR_BACKOFF,
            SessionState.DISABLED,
        }
    ),
    SessionState.ERROR_BACKOFF: frozenset(
        {SessionState.CONNECTING, SessionState.DISABLED}
    ),
}

LOCKOUT_AUTH = "authentication rejected"
LOCKOUT_EXHAUSTED = "reconnect attempts exhausted"


class IllegalTransitionError(RuntimeError):
    """Raised when the session is asked to move between incompatible states."""


# pylint: disable=too-many-instance-attributes
class IncomingMailSession:
    """Own one live mailbox subscription for a user.

    The session connects, backfills recent unseen mail, then holds an IDLE
    watch and fetches whatever the server announces. Failures are classified:
    rejected credentials disable the session at once, everything else is
    retried with exponential backoff until ``max_reconnect_attempts`` is
    reached. A disabled session stays locked out until :meth:`reset`.

    All blocking IMAP work runs in worker threads and is serialised by a
    single lock, so an in-progress IDLE wait delays other mailbox calls until
    it returns or the session is stopped.
    """

    def __init__(
        self,
        settings: ImapSettings,
        policy: SessionSettings,
        *,
        user_id: str,
        connectivity: ConnectivityOracle | None = None,
        parser: EmailParser | None = None,
        transport_factory: Callable[[ImapSettings], ImapTransport] = ImapTransport,
        health: ConnectionHealthTracker | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._policy = policy
        self._user_id = user_id
        self._connectivity = connectivity
        self._parser = parser or EmailParser()
        self._transport_factory = transport_factory
        self._health = health or ConnectionHealthTracker()
        self._sleep = sleep
        self._log = mailbox_logger(LOGGER, settings.username)

        self._state = SessionState.DISABLED
        self._lockout: str | None = None
        self._transport: ImapTransport | None = None
        self._lock = asyncio.Lock()
        self._connecting = False
        self._resetting = False
        self._epoch = 0
        self._last_uid = 0
        self._watch_task: asyncio.Task[None] | None = None
        self._retry_task: asyncio.Task[None] | None = None
        self._listeners: list[MailListener] = []

    # Introspection ------------------------------------------------------------
    @property
    def state(self) -> SessionState:
        """Current lifecycle state."""
        return self._state

    @property
    def lockout_reason(self) -> str | None:
        """Why the session refuses to start, if it does."""
        return self._lockout

    @property
    def auth_locked(self) -> bool:
        """Whether the server rejected the configured credentials."""
        return self._lockout == LOCKOUT_AUTH

    @property
    def health_tracker(self) -> ConnectionHealthTracker:
        """Underlying fetch bookkeeping."""
        return self._health

    def health(self) -> HealthMetrics:
        """Return a snapshot of the session's health."""
        is_healthy = (
            self._transport is not None
            and not self._connecting
            and self._state is not SessionState.DISABLED
        )
        return self._health.snapshot(is_healthy=is_healthy)

    def listen(self, callback: MailListener) -> Callable[[], None]:
        """Register ``callback`` for every parsed message; returns a remover."""
        self._listeners.append(callback)

        def _remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _remove

    # Lifecycle ----------------------------------------------------------------
    async def start(self) -> None:
        """Connect unless locked out, already running, or the user is offline."""
        if self._lockout is not None:
            self._log.warning("Not starting: %s; reset required", self._lockout)
            return
        if self._state is not SessionState.DISABLED:
            self._log.debug("Start ignored in state %s", self._state.value)
            return
        if not await user_is_connected(self._connectivity, self._user_id):
            self._log.info("User %s is offline, mail session stays disabled", self._user_id)
            return
        await self.connect_and_fetch()

    async def connect_and_fetch(self) -> None:
        """Open the mailbox, backfill recent mail, then arm the IDLE watch."""
        if self._lockout is not None:
            self._log.warning("Not connecting: %s; reset required", self._lockout)
            return
        if self._connecting:
            self._log.debug("Connection attempt already in progress")
            return
        if self._state in (SessionState.CONNECTED_IDLE, SessionState.CONNECTED_FETCHING):
            return
        self._connecting = True
        epoch = self._epoch
        transport: ImapTransport | None = None
        try:
            if not await user_is_connected(self._connectivity, self._user_id):
                self._log.info("User %s went offline before connecting", self._user_id)
                await self.stop()
                return
            self._transition(SessionState.CONNECTING)
            if self._transport is None:
                self._transport = self._transport_factory(self._settings)
            transport = self._transport

            async with self._lock:
                await asyncio.to_thread(transport.connect)
                uid_next = await asyncio.to_thread(transport.open_mailbox)
            if self._superseded(epoch):
                await self._discard(transport)
                return

            self._transition(SessionState.CONNECTED_FETCHING)
            await self._initial_fetch(transport, uid_next, epoch)
            if self._superseded(epoch):
                return

            self._health.record_success()
            self._transition(SessionState.CONNECTED_IDLE)
            self._watch_task = asyncio.create_task(self._watch(transport, epoch))
            self._log.info("Mailbox %s connected and watching", transport.mailbox)
        except asyncio.CancelledError:
            if not self._superseded(epoch):
                await self._abandon(transport)
            raise
        except Exception as exc:  # pylint: disable=broad-except
            if self._superseded(epoch):
                if transport is not None:
                    await self._discard(transport)
            else:
                await self.handle_imap_error(exc)
        finally:
            self._connecting = False

    async def reset(self) -> None:
        """Tear down and start again, clearing any lockout."""
        if self._connecting or self._resetting:
            self._log.debug("Reset ignored, connection or reset already in flight")
            return
        self._resetting = True
        try:
            self._log.info("Resetting mail session")
            self._lockout = None
            self._health.reset()
            await self.stop()
            await self.start()
        finally:
            self._resetting = False

    async def stop(self) -> None:
        """Cancel timers, log out and disable; safe to call repeatedly."""
        self._epoch += 1
        await self._cancel_tasks()
        transport = self._transport
        self._transport = None
        if transport is not None:
            await self._discard(transport)
        if self._state is not SessionState.DISABLED:
            self._transition(SessionState.DISABLED)
            self._log.info("Mail session stopped")

    async def handle_imap_error(self, exc: BaseException) -> None:
        """Classify ``exc`` and either schedule a retry or disable the session."""
        if self._state is SessionState.DISABLED:
            self._log.debug("Ignoring error on disabled session: %s", exc)
            await self.stop()
            return
        if not await user_is_connected(self._connectivity, self._user_id):
            self._log.info("User offline after IMAP error, stopping: %s", exc)
            await self.stop()
            return

        self._epoch += 1
        await self._cancel_tasks()
        transport = self._transport
        self._transport = None
        if transport is not None:
            await self._discard(transport)

        if isinstance(exc, ImapAuthError):
            self._health.record_failure()
            self._disable(LOCKOUT_AUTH)
            self._log.error("IMAP authentication failed, session disabled: %s", exc)
            return

        failures = self._health.record_failure()
        if failures >= self._policy.max_reconnect_attempts:
            self._disable(LOCKOUT_EXHAUSTED)
            self._log.error(
                "IMAP failed %s times, session disabled until reset: %s", failures, exc
            )
            return

        delay = self._policy.base_reconnect_delay_seconds * 2 ** (failures - 1)
        self._transition(SessionState.ERROR_BACKOFF)
        self._log.warning(
            "IMAP error (attempt %s/%s), reconnecting in %.1fs: %s",
            failures,
            self._policy.max_reconnect_attempts,
            delay,
            exc,
        )
        self._retry_task = asyncio.create_task(self._retry_after(delay))

    async def thread_messages(self, thread_reference: str) -> list[ParsedMail]:
        """Return messages whose ``References`` header mentions the reference."""
        transport = self._transport
        if transport is None or self._state is SessionState.DISABLED:
            return []
        try:
            async with self._lock:
                uids = await asyncio.to_thread(transport.search_thread, thread_reference)
                payloads = await asyncio.to_thread(transport.fetch_messages, uids)
        except ImapError as exc:
            self._log.warning("Thread lookup for %s failed: %s", thread_reference, exc)
            return []
        messages = []
        for uid in sorted(payloads):
            try:
                messages.append(self._parser.parse(uid, payloads[uid]))
            except InvalidMailIdentifierError as exc:
                self._log.error("Skipping UID %s: %s", uid, exc)
        return messages

    # Internal helpers ---------------------------------------------------------
    def _transition(self, target: SessionState) -> None:
        if target not in _ALLOWED[self._state]:
            raise IllegalTransitionError(
                f"Cannot move from {self._state.value} to {target.value}"
            )
        if target is not self._state:
            self._log.debug("State %s -> %s", self._state.value, target.value)
        self._state = target

    def _disable(self, reason: str) -> None:
        self._lockout = reason
        self._transition(SessionState.DISABLED)

    def _superseded(self, epoch: int) -> bool:
        return epoch != self._epoch

    async def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        pending = []
        for task in (self._retry_task, self._watch_task):
            if task is None or task is current or task.done():
                continue
            task.cancel()
            pending.append(task)
        self._retry_task = None
        self._watch_task = None
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _abandon(self, transport: ImapTransport | None) -> None:
        """Drop a half-open connection after its attempt was cancelled."""
        self._epoch += 1
        if self._transport is transport:
            self._transport = None
        if self._state is not SessionState.DISABLED:
            self._transition(SessionState.DISABLED)
            self._log.info("Connection attempt cancelled, session disabled")
        if transport is not None:
            await self._discard(transport)

    async def _discard(self, transport: ImapTransport) -> None:
        try:
            await asyncio.to_thread(transport.logout)
        except Exception as exc:  # pylint: disable=broad-except
            self._log.debug("Logout failed during teardown: %s", exc)

    async def _retry_after(self, delay: float) -> None:
        await self._sleep(delay)
        if self._state is not SessionState.ERROR_BACKOFF:
            return
        await self.connect_and_fetch()

    async def _initial_fetch(
        self, transport: ImapTransport, uid_next: int | None, epoch: int
    ) -> None:
        since = utc_now() - timedelta(hours=self._policy.initial_fetch_window_hours)
        async with self._lock:
            uids = await asyncio.to_thread(transport.search_unseen_since, since)
            if uid_next is not None:
                self._last_uid = uid_next - 1
            else:
                known = await asyncio.to_thread(transport.search_after, 0)
                self._last_uid = max(known, default=0)
        selected = uids[-self._policy.initial_fetch_limit :]
        self._log.info("Backfilling %s unseen message(s)", len(selected))
        await self._process(transport, selected, epoch)

    async def _fetch_new(self, transport: ImapTransport, epoch: int) -> None:
        self._transition(SessionState.CONNECTED_FETCHING)
        async with self._lock:
            uids = await asyncio.to_thread(transport.search_after, self._last_uid)
        if uids:
            self._log.info("Fetching %s new message(s)", len(uids))
            await self._process(transport, uids, epoch)
        if self._superseded(epoch):
            return
        self._health.record_success()
        self._transition(SessionState.CONNECTED_IDLE)

    async def _process(
        self, transport: ImapTransport, uids: Sequence[int], epoch: int
    ) -> None:
        for chunk in chunked(list(uids), self._policy.fetch_chunk_size):
            if self._superseded(epoch):
                return
            async with self._lock:
                payloads = await asyncio.to_thread(transport.fetch_messages, chunk)
            results = await asyncio.gather(
                *(self._deliver(transport, uid, payloads.get(uid)) for uid in chunk),
                return_exceptions=True,
            )
            for uid, result in zip(chunk, results):
                if isinstance(result, Exception):
                    self._log.warning("Processing UID %s failed: %s", uid, result)
            self._last_uid = max(self._last_uid, max(chunk))

    async def _deliver(
        self, transport: ImapTransport, uid: int, raw: bytes | None
    ) -> None:
        if raw is None:
            return
        try:
            mail = self._parser.parse(uid, raw)
        except InvalidMailIdentifierError as exc:
            self._log.error("Skipping UID %s with invalid identifier: %s", uid, exc)
            return
        await self._emit(mail)
        if not self._policy.mark_as_read:
            return
        try:
            async with self._lock:
                await asyncio.to_thread(transport.mark_seen, [uid])
        except ImapError as exc:
            self._log.warning("Could not mark UID %s as read: %s", uid, exc)

    async def _emit(self, mail: ParsedMail) -> None:
        for listener in list(self._listeners):
            try:
                await listener(mail)
            except Exception:  # pylint: disable=broad-except
                self._log.exception("Mail listener failed for %s", mail.email_uuid)

    async def _watch(self, transport: ImapTransport, epoch: int) -> None:
        try:
            # Catch anything that arrived between SELECT and the first IDLE.
            await self._fetch_new(transport, epoch)
            while not self._superseded(epoch):
                async with self._lock:
                    has_new = await asyncio.to_thread(
                        transport.wait_for_new_mail, self._policy.idle_renewal_seconds
                    )
                if self._superseded(epoch) or not has_new:
                    continue
                if not await user_is_connected(self._connectivity, self._user_id):
                    self._log.info("User %s went offline, ending watch", self._user_id)
                    await self.stop()
                    return
                await self._fetch_new(transport, epoch)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            if not self._superseded(epoch):
                await self.handle_imap_error(exc)


__all__ = [
    "IllegalTransitionError",
    "IncomingMailSession",
    "LOCKOUT_AUTH",
    "LOCKOUT_EXHAUSTED",
]
