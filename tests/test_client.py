"""Tests for the email client facade."""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

import pytest

from inbox_agent.client import EmailClient
from inbox_agent.core.collaborators import (
    InMemoryMemoryStore,
    LocalChangeFeed,
    StaticConnectivityOracle,
)
from inbox_agent.core.config import AppSettings, HealthSettings, ImapSettings, SessionSettings
from inbox_agent.core.interfaces import EmailNotConfiguredError, MailListener
from inbox_agent.core.models import (
    HealthMetrics,
    MailAddress,
    OutgoingMessage,
    ParsedMail,
    SendResult,
    SessionState,
)
from inbox_agent.ingestion.session import IncomingMailSession


class FakeSession:
    """Records lifecycle calls made by the client."""

    def __init__(
        self,
        *,
        healthy: bool = True,
        last_fetch: float = 0.0,
        auth_locked: bool = False,
    ) -> None:
        self.healthy = healthy
        self.last_fetch = last_fetch
        self.auth_locked = auth_locked
        self.starts = 0
        self.stops = 0
        self.resets = 0
        self.listeners: list[MailListener] = []
        self.reset_gate: asyncio.Event | None = None

    async def start(self) -> None:
        self.starts += 1

    async def stop(self) -> None:
        self.stops += 1

    async def reset(self) -> None:
        self.resets += 1
        if self.reset_gate is not None:
            await self.reset_gate.wait()

    def health(self) -> HealthMetrics:
        return HealthMetrics(self.last_fetch, 0, self.healthy)

    def listen(self, callback: MailListener) -> Callable[[], None]:
        self.listeners.append(callback)
        return lambda: self.listeners.remove(callback)

    async def thread_messages(self, thread_reference: str) -> list[ParsedMail]:
        return []

    async def emit(self, mail: ParsedMail) -> None:
        for listener in list(self.listeners):
            await listener(mail)


class FakeSender:
    """Outgoing sender double."""

    from_address = "agent@example.com"

    def __init__(self) -> None:
        self.sent: list[OutgoingMessage] = []

    async def send(self, message: OutgoingMessage) -> SendResult:
        self.sent.append(message)
        return SendResult(success=True, message_id="<sent@example.com>", accepted=message.to)


def _mail() -> ParsedMail:
    return ParsedMail(
        uid=1,
        email_uuid="00000000-0000-4000-8000-000000000001",
        message_id="<m1@example.com>",
        thread_id="m1@example.com",
        subject="Hello",
        senders=(MailAddress("alice@example.com"),),
        date=datetime(2024, 1, 2, tzinfo=UTC),
        text="Hi there",
    )


def _client(
    session: FakeSession | None,
    *,
    store: InMemoryMemoryStore | None = None,
    oracle: StaticConnectivityOracle | None = None,
    feed: LocalChangeFeed | None = None,
    sender: FakeSender | None = None,
    clock: Callable[[], float] = lambda: 10_000.0,
    debounce: float = 0.0,
) -> EmailClient:
    settings = AppSettings(
        health=HealthSettings(stale_after_seconds=900, change_feed_debounce_seconds=debounce)
    )
    return EmailClient(
        settings,
        store=store or InMemoryMemoryStore(),
        connectivity=oracle,
        change_feed=feed,
        session=session,  # type: ignore[arg-type]
        sender=sender,  # type: ignore[arg-type]
        clock=clock,
    )


@pytest.mark.asyncio
async def test_unconfigured_client_fails_fast() -> None:
    """Without mail settings every mail call raises EmailNotConfiguredError."""

    client = EmailClient(AppSettings(), store=InMemoryMemoryStore())

    assert not client.has_incoming
    assert not client.has_outgoing
    assert client.health() is None
    with pytest.raises(EmailNotConfiguredError):
        await client.send(OutgoingMessage(to=("a@example.com",), subject="x"))
    with pytest.raises(EmailNotConfiguredError):
        client.receive(lambda mail: None)  # type: ignore[arg-type,return-value]
    await client.start()
    await client.stop()


def test_configured_settings_build_real_session() -> None:
    """IMAP settings produce an owned incoming session."""

    settings = AppSettings(
        imap=ImapSettings(host="imap.example.com", username="me", app_password="pw")
    )
    client = EmailClient(settings, store=InMemoryMemoryStore())

    assert isinstance(client.session, IncomingMailSession)


@pytest.mark.asyncio
async def test_incoming_mail_flows_into_memories() -> None:
    """Mail emitted by the session is queued and written by sync."""

    session = FakeSession()
    store = InMemoryMemoryStore()
    client = _client(session, store=store)

    await client.start()
    assert session.starts == 1
    await session.emit(_mail())
    assert client.dispatcher.pending == 1
    assert await client.sync() == 1
    assert store.memories[0].content.metadata["emailId"] == _mail().email_uuid

    await client.stop()
    assert session.stops == 1
    assert not session.listeners


@pytest.mark.asyncio
async def test_send_delegates_to_sender() -> None:
    """send uses the configured outgoing sender."""

    sender = FakeSender()
    client = _client(None, sender=sender)

    result = await client.send(OutgoingMessage(to=("bob@example.com",), subject="Hi"))

    assert result.success
    assert client.from_address == "agent@example.com"
    assert sender.sent[0].subject == "Hi"


@pytest.mark.asyncio
async def test_health_check_stops_when_user_offline() -> None:
    """An offline user means the session is stopped, not reset."""

    session = FakeSession(healthy=False)
    client = _client(session, oracle=StaticConnectivityOracle(default=False))

    await client.check_health()

    assert session.stops == 1
    assert session.resets == 0


@pytest.mark.asyncio
async def test_health_check_resets_only_stale_unhealthy_sessions() -> None:
    """Resets need both an unhealthy session and a stale last fetch."""

    healthy = FakeSession(healthy=True, last_fetch=0.0)
    await _client(healthy).check_health()
    assert healthy.resets == 0

    recent = FakeSession(healthy=False, last_fetch=9_500.0)
    await _client(recent).check_health()
    assert recent.resets == 0

    stale = FakeSession(healthy=False, last_fetch=1_000.0)
    await _client(stale).check_health()
    assert stale.resets == 1

    never = FakeSession(healthy=False, last_fetch=0.0)
    await _client(never).check_health()
    assert never.resets == 1


@pytest.mark.asyncio
async def test_health_check_leaves_auth_lockout_alone() -> None:
    """Rejected credentials are not retried by the health poll."""

    session = FakeSession(healthy=False, auth_locked=True)
    await _client(session).check_health()

    assert session.resets == 0


@pytest.mark.asyncio
async def test_change_feed_is_debounced(wait_until) -> None:
    """Rapid connectivity flips collapse into the last value."""

    oracle = StaticConnectivityOracle()
    feed = LocalChangeFeed(oracle)
    session = FakeSession(healthy=False)
    client = _client(session, oracle=oracle, feed=feed, debounce=0.05)

    await client.start()
    assert feed.subscriber_count("local-user") == 1

    feed.publish("local-user", False)
    feed.publish("local-user", True)
    await wait_until(lambda: session.resets == 1)
    assert session.stops == 0

    feed.publish("local-user", False)
    await wait_until(lambda: session.stops == 1)

    await client.stop()
    assert feed.subscriber_count("local-user") == 0


class SlowTransport:
    """Transport whose handshake blocks until released."""

    mailbox = "INBOX"

    def __init__(self, gate: threading.Event) -> None:
        self.gate = gate
        self.connects = 0

    def connect(self) -> None:
        self.connects += 1
        self.gate.wait(5)

    def open_mailbox(self) -> int:
        return 1

    def search_unseen_since(self, since: object) -> list[int]:
        return []

    def search_after(self, last_uid: int) -> list[int]:
        return []

    def fetch_messages(self, uids: list[int]) -> dict[int, bytes]:
        return {}

    def mark_seen(self, uids: list[int]) -> None:
        return None

    def wait_for_new_mail(self, timeout: float) -> bool:
        time.sleep(0.01)
        return False

    def logout(self) -> None:
        return None


def _real_session(
    oracle: StaticConnectivityOracle, transports: list[SlowTransport], gate: threading.Event
) -> IncomingMailSession:
    def _factory(_settings: ImapSettings) -> SlowTransport:
        transport = SlowTransport(gate)
        transports.append(transport)
        return transport

    return IncomingMailSession(
        ImapSettings(host="imap.test", username="me@example.com", app_password="pw"),
        SessionSettings(),
        user_id="local-user",
        connectivity=oracle,
        transport_factory=_factory,  # type: ignore[arg-type]
    )


@pytest.mark.asyncio
async def test_repeated_update_does_not_interrupt_reconnect(wait_until) -> None:
    """A duplicate update during a slow reconnect leaves the session watching."""

    gate = threading.Event()
    transports: list[SlowTransport] = []
    oracle = StaticConnectivityOracle(default=False)
    feed = LocalChangeFeed(oracle)
    session = _real_session(oracle, transports, gate)
    client = _client(session, oracle=oracle, feed=feed, debounce=0.02)  # type: ignore[arg-type]

    await client.start()
    assert session.state is SessionState.DISABLED

    feed.publish("local-user", True)
    await wait_until(lambda: transports and transports[0].connects == 1)
    feed.publish("local-user", True)
    await asyncio.sleep(0.1)
    gate.set()

    await wait_until(lambda: session.state is SessionState.CONNECTED_IDLE)
    await client.check_health()
    assert session.health().is_healthy
    assert session._watch_task is not None  # pylint: disable=protected-access
    assert len(transports) == 1

    await client.stop()


@pytest.mark.asyncio
async def test_overlapping_health_checks_run_once() -> None:
    """A health check started while another runs returns immediately."""

    session = FakeSession(healthy=False, last_fetch=0.0)
    session.reset_gate = asyncio.Event()
    client = _client(session)

    first = asyncio.create_task(client.check_health())
    await asyncio.sleep(0)
    assert session.resets == 1

    await client.check_health()
    assert session.resets == 1

    session.reset_gate.set()
    await first
    await client.check_health()
    assert session.resets == 2


@pytest.mark.asyncio
async def test_stop_leaves_no_background_work(wait_until) -> None:
    """Stopping clears the subscription, health poll and pending debounce."""

    gate = threading.Event()
    gate.set()
    transports: list[SlowTransport] = []
    oracle = StaticConnectivityOracle(default=True)
    feed = LocalChangeFeed(oracle)
    session = _real_session(oracle, transports, gate)
    client = _client(session, oracle=oracle, feed=feed, debounce=10.0)  # type: ignore[arg-type]

    await client.start()
    await wait_until(lambda: session.state is SessionState.CONNECTED_IDLE)
    health_task = client._health_task  # pylint: disable=protected-access
    feed.publish("local-user", False)
    await asyncio.sleep(0)

    await client.stop()

    assert feed.subscriber_count("local-user") == 0
    assert health_task is not None and health_task.done()
    assert client._health_task is None  # pylint: disable=protected-access
    assert client._debounce_timer is None  # pylint: disable=protected-access
    assert not client._connectivity_tasks  # pylint: disable=protected-access
    assert session.state is SessionState.DISABLED
