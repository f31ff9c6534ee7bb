"""Email client facade composing the incoming session and outgoing sender."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from .core.collaborators import MemoryNotificationChannel
from .core.config import (
    AppSettings,
    resolve_incoming_settings,
    resolve_outgoing_settings,
)
from .core.interfaces import (
    ChangeFeed,
    ConnectivityOracle,
    ConnectivityUpdate,
    EmailNotConfiguredError,
    MailListener,
    MemoryStore,
    NotificationChannel,
    Subscription,
    user_is_connected,
)
from .core.models import HealthMetrics, OutgoingMessage, ParsedMail, SendResult
from .ingestion.dispatcher import MailEventDispatcher
from .ingestion.session import IncomingMailSession
from .transport.sender import OutgoingMailSender

LOGGER = logging.getLogger(__name__)


# pylint: disable=too-many-instance-attributes
class EmailClient:
    """The single entry point other components use for mail.

    Either direction may be unconfigured; calls that need it then fail fast
    with :class:`EmailNotConfiguredError`. When incoming mail is configured
    the client owns the session lifecycle: it polls health, mirrors the
    user's connectivity feed and wires parsed mail into the dispatcher.
    """

    def __init__(
        self,
        settings: AppSettings,
        *,
        store: MemoryStore,
        connectivity: ConnectivityOracle | None = None,
        change_feed: ChangeFeed | None = None,
        notifications: NotificationChannel | None = None,
        session: IncomingMailSession | None = None,
        sender: OutgoingMailSender | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._user_id = settings.agent.user_id
        self._connectivity = connectivity
        self._change_feed = change_feed
        self._sleep = sleep
        self._clock = clock

        incoming = resolve_incoming_settings(settings.imap)
        outgoing = resolve_outgoing_settings(settings.smtp)
        if session is None and incoming is not None:
            session = IncomingMailSession(
                incoming,
                settings.session,
                user_id=self._user_id,
                connectivity=connectivity,
            )
        if sender is None and outgoing is not None:
            sender = OutgoingMailSender(outgoing)
        self._session = session
        self._sender = sender

        if notifications is None:
            notifications = MemoryNotificationChannel(
                store,
                agent_id=settings.agent.agent_id,
                room_id=settings.agent.room_id,
                user_id=self._user_id,
            )
        self._dispatcher = MailEventDispatcher(
            store,
            settings.dispatcher,
            agent_id=settings.agent.agent_id,
            room_id=settings.agent.room_id,
            user_id=self._user_id,
            notifications=notifications,
            sleep=sleep,
        )

        self._remove_listener: Callable[[], None] | None = None
        self._health_task: asyncio.Task[None] | None = None
        self._debounce_timer: asyncio.TimerHandle | None = None
        self._connectivity_tasks: set[asyncio.Task[None]] = set()
        self._connectivity_lock = asyncio.Lock()
        self._subscription: Subscription | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._health_checking = False
        self._last_is_connected: bool | None = None

    # Introspection ------------------------------------------------------------
    @property
    def has_incoming(self) -> bool:
        """Whether a receiving session exists."""
        return self._session is not None

    @property
    def has_outgoing(self) -> bool:
        """Whether sending is configured."""
        return self._sender is not None

    @property
    def session(self) -> IncomingMailSession | None:
        """The owned incoming session, if any."""
        return self._session

    @property
    def dispatcher(self) -> MailEventDispatcher:
        """The memory dispatcher fed by the session."""
        return self._dispatcher

    @property
    def from_address(self) -> str | None:
        """Address replies are sent from."""
        return self._sender.from_address if self._sender else None

    def health(self) -> HealthMetrics | None:
        """Session health, or ``None`` without incoming mail."""
        return self._session.health() if self._session else None

    # Lifecycle ----------------------------------------------------------------
    async def start(self) -> None:
        """Start the session, health polling and connectivity subscription."""
        if self._session is None:
            LOGGER.info("Incoming mail not configured; running send-only")
            return
        self._loop = asyncio.get_running_loop()
        if self._remove_listener is None:
            self._remove_listener = self._session.listen(self._dispatcher.handle_mail)
        self._dispatcher.start()
        await self._session.start()
        if self._health_task is None:
            self._health_task = asyncio.create_task(self._health_loop())
        if self._change_feed is not None and self._subscription is None:
            self._subscription = self._change_feed.subscribe(
                self._user_id, self._on_connectivity_change
            )

    async def stop(self) -> None:
        """Stop everything the client started; safe to call repeatedly."""
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        if self._debounce_timer is not None:
            self._debounce_timer.cancel()
            self._debounce_timer = None
        tasks = [*self._connectivity_tasks]
        if self._health_task is not None:
            tasks.append(self._health_task)
        self._health_task = None
        self._connectivity_tasks.clear()
        current = asyncio.current_task()
        for task in tasks:
            if task is not current:
                task.cancel()
        pending = [task for task in tasks if task is not current]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self._session is not None:
            await self._session.stop()
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        await self._dispatcher.stop()
        LOGGER.info("Email client stopped")

    async def reset(self) -> None:
        """Restart the incoming session, clearing any lockout."""
        await self._require_session().reset()

    async def check_health(self) -> None:
        """Stop when the user is offline; reset a stale, unhealthy session."""
        session = self._session
        if session is None:
            return
        if self._health_checking:
            LOGGER.debug("Health check already running")
            return
        self._health_checking = True
        try:
            if not await user_is_connected(self._connectivity, self._user_id):
                LOGGER.info("User %s offline, stopping mail session", self._user_id)
                await session.stop()
                return
            metrics = session.health()
            if metrics.is_healthy:
                return
            if not self._is_stale(metrics):
                return
            if session.auth_locked:
                LOGGER.warning("Mail session needs new credentials; not resetting")
                return
            LOGGER.info("Mail session unhealthy and stale, resetting")
            await session.reset()
        finally:
            self._health_checking = False

    # Mail API -----------------------------------------------------------------
    async def send(self, message: OutgoingMessage) -> SendResult:
        """Send ``message`` through the outgoing transport."""
        if self._sender is None:
            raise EmailNotConfiguredError("Outgoing email is not configured")
        return await self._sender.send(message)

    def receive(self, callback: MailListener) -> Callable[[], None]:
        """Register ``callback`` for incoming mail; returns a remover."""
        return self._require_session().listen(callback)

    async def sync(self) -> int:
        """Write any queued mail memories now."""
        return await self._dispatcher.drain()

    async def thread_messages(self, thread_reference: str) -> list[ParsedMail]:
        """Messages belonging to a thread, looked up on the server."""
        return await self._require_session().thread_messages(thread_reference)

    # Internal helpers ---------------------------------------------------------
    def _require_session(self) -> IncomingMailSession:
        if self._session is None:
            raise EmailNotConfiguredError("Incoming email is not configured")
        return self._session

    def _is_stale(self, metrics: HealthMetrics) -> bool:
        if not metrics.last_successful_fetch:
            return True
        elapsed = self._clock() - metrics.last_successful_fetch
        return elapsed > self._settings.health.stale_after_seconds

    async def _health_loop(self) -> None:
        interval = self._settings.health.check_interval_seconds
        while True:
            await self._sleep(interval)
            try:
                await self.check_health()
            except Exception:  # pylint: disable=broad-except
                LOGGER.exception("Mail health check failed")

    def _on_connectivity_change(self, update: ConnectivityUpdate) -> None:
        loop = self._loop
        if self._subscription is None or loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._schedule_connectivity, update)

    def _schedule_connectivity(self, update: ConnectivityUpdate) -> None:
        # A newer update only replaces a timer that has not fired yet.
        loop = self._loop
        if self._subscription is None or loop is None:
            return
        if self._debounce_timer is not None:
            self._debounce_timer.cancel()
        self._debounce_timer = loop.call_later(
            self._settings.health.change_feed_debounce_seconds,
            self._fire_connectivity,
            update,
        )

    def _fire_connectivity(self, update: ConnectivityUpdate) -> None:
        self._debounce_timer = None
        if self._subscription is None or self._loop is None:
            return
        task = self._loop.create_task(self._debounced_connectivity(update))
        self._connectivity_tasks.add(task)
        task.add_done_callback(self._connectivity_tasks.discard)

    async def _debounced_connectivity(self, update: ConnectivityUpdate) -> None:
        async with self._connectivity_lock:
            try:
                await self._apply_connectivity(update.is_connected)
            except Exception:  # pylint: disable=broad-except
                LOGGER.exception("Handling connectivity change failed")

    async def _apply_connectivity(self, is_connected: bool) -> None:
        session = self._session
        if session is None or is_connected == self._last_is_connected:
            return
        self._last_is_connected = is_connected
        if not is_connected:
            LOGGER.info("User %s disconnected, stopping mail session", self._user_id)
            await session.stop()
            return
        if session.health().is_healthy or session.auth_locked:
            return
        LOGGER.info("User %s reconnected, resetting mail session", self._user_id)
        await session.reset()


__all__ = ["EmailClient"]
