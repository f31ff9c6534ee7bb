"""Tests for the incoming mail session lifecycle."""

# pylint: disable=protected-access

from __future__ import annotations

import asyncio
import threading
from collections.abc import Awaitable, Callable
from email.message import EmailMessage

import pytest

from inbox_agent.core.collaborators import StaticConnectivityOracle
from inbox_agent.core.config import ImapSettings, SessionSettings
from inbox_agent.core.identifiers import InvalidMailIdentifierError
from inbox_agent.core.models import ParsedMail, SessionState
from inbox_agent.ingestion.parser import EmailParser
from inbox_agent.ingestion.session import (
    LOCKOUT_AUTH,
    LOCKOUT_EXHAUSTED,
    IllegalTransitionError,
    IncomingMailSession,
)
from inbox_agent.transport import ImapAuthError, ImapNetworkError


def _raw_mail(uid: int, subject: str = "Hello") -> bytes:
    message = EmailMessage()
    message["Subject"] = f"{subject} {uid}"
    message["From"] = "Sender <sender@example.com>"
    message["Message-ID"] = f"<msg-{uid}@example.com>"
    message.set_content(f"Body of message {uid}")
    return message.as_bytes()


class FakeServer:
    """Mailbox state shared by every transport the session creates."""

    def __init__(self, unseen: int = 0) -> None:
        self.messages: dict[int, bytes] = {}
        self.unseen: set[int] = set()
        self.seen: list[int] = []
        self.connect_errors: list[Exception] = []
        self.idle_errors: list[Exception] = []
        self.connect_calls = 0
        self.transports = 0
        self.connect_gate: threading.Event | None = None
        self.logouts = 0
        self.arrived = threading.Event()
        for uid in range(1, unseen + 1):
            self.add(uid, notify=False)

    def add(self, uid: int, *, notify: bool = True) -> None:
        self.messages[uid] = _raw_mail(uid)
        self.unseen.add(uid)
        if notify:
            self.arrived.set()


class FakeTransport:
    """Blocking transport double backed by :class:`FakeServer`."""

    mailbox = "INBOX"

    def __init__(self, server: FakeServer) -> None:
        self.server = server
        server.transports += 1

    def connect(self) -> None:
        self.server.connect_calls += 1
        if self.server.connect_gate is not None:
            self.server.connect_gate.wait(5)
        if self.server.connect_errors:
            raise self.server.connect_errors.pop(0)

    def open_mailbox(self) -> int:
        return max(self.server.messages, default=0) + 1

    def search_unseen_since(self, since: object) -> list[int]:
        return sorted(self.server.unseen)

    def search_after(self, last_uid: int) -> list[int]:
        return sorted(uid for uid in list(self.server.messages) if uid > last_uid)

    def search_thread(self, reference: str) -> list[int]:
        return sorted(self.server.messages)

    def fetch_messages(self, uids: list[int]) -> dict[int, bytes]:
        return {uid: self.server.messages[uid] for uid in uids if uid in self.server.messages}

    def mark_seen(self, uids: list[int]) -> None:
        self.server.seen.extend(uids)
        self.server.unseen.difference_update(uids)

    def wait_for_new_mail(self, timeout: float) -> bool:
        if self.server.idle_errors:
            raise self.server.idle_errors.pop(0)
        if self.server.arrived.wait(0.02):
            self.server.arrived.clear()
            return True
        return False

    def logout(self) -> None:
        self.server.logouts += 1


def _session(
    server: FakeServer,
    *,
    connectivity: StaticConnectivityOracle | None = None,
    sleep: Callable[[float], Awaitable[None]] | None = None,
    parser: EmailParser | None = None,
    **policy: object,
) -> IncomingMailSession:
    settings = ImapSettings(host="imap.test", username="me@example.com", app_password="pw")
    policy_settings = SessionSettings(base_reconnect_delay_seconds=5, **policy)
    kwargs = {"sleep": sleep} if sleep is not None else {}
    return IncomingMailSession(
        settings,
        policy_settings,
        user_id="user-1",
        connectivity=connectivity,
        transport_factory=lambda _settings: FakeTransport(server),
        parser=parser,
        **kwargs,
    )


def _collector(session: IncomingMailSession) -> list[ParsedMail]:
    received: list[ParsedMail] = []

    async def _listener(mail: ParsedMail) -> None:
        received.append(mail)

    session.listen(_listener)
    return received


@pytest.mark.asyncio
async def test_start_backfills_unseen_and_goes_idle(wait_until) -> None:
    """Unseen mail is emitted, marked read, and the session settles in IDLE."""

    server = FakeServer(unseen=3)
    session = _session(server)
    received = _collector(session)

    await session.start()
    await wait_until(lambda: session.state is SessionState.CONNECTED_IDLE)

    assert sorted(mail.uid for mail in received) == [1, 2, 3]
    assert sorted(server.seen) == [1, 2, 3]
    metrics = session.health()
    assert metrics.is_healthy
    assert metrics.consecutive_failures == 0
    assert metrics.last_successful_fetch > 0

    await session.stop()
    assert session.state is SessionState.DISABLED
    assert server.logouts >= 1
    assert not session.health().is_healthy


@pytest.mark.asyncio
async def test_backfill_respects_limit_and_mark_as_read(wait_until) -> None:
    """Only the newest messages up to the limit are processed."""

    server = FakeServer(unseen=8)
    session = _session(server, initial_fetch_limit=3, fetch_chunk_size=2, mark_as_read=False)
    received = _collector(session)

    await session.start()
    await wait_until(lambda: len(received) == 3)

    assert sorted(mail.uid for mail in received) == [6, 7, 8]
    assert not server.seen
    await session.stop()


@pytest.mark.asyncio
async def test_idle_announcement_fetches_new_mail(wait_until) -> None:
    """Mail announced during IDLE is fetched and emitted."""

    server = FakeServer(unseen=1)
    session = _session(server)
    received = _collector(session)

    await session.start()
    await wait_until(lambda: session.state is SessionState.CONNECTED_IDLE)
    server.add(2)
    await wait_until(lambda: any(mail.uid == 2 for mail in received))

    assert [mail.uid for mail in received].count(2) == 1
    await session.stop()


@pytest.mark.asyncio
async def test_auth_failure_disables_until_reset(wait_until) -> None:
    """Rejected credentials lock the session out without retrying."""

    server = FakeServer()
    server.connect_errors.append(ImapAuthError("AUTHENTICATIONFAILED"))
    session = _session(server)

    await session.start()

    assert session.state is SessionState.DISABLED
    assert session.lockout_reason == LOCKOUT_AUTH
    assert session.auth_locked
    assert session.health().consecutive_failures == 1

    await session.start()
    assert server.connect_calls == 1

    await session.reset()
    await wait_until(lambda: session.state is SessionState.CONNECTED_IDLE)
    assert session.lockout_reason is None
    assert session.health().consecutive_failures == 0
    await session.stop()


@pytest.mark.asyncio
async def test_transient_failures_back_off_then_disable(wait_until, recorded_sleep) -> None:
    """Network failures retry with doubling delays and stop after the cap."""

    delays, sleep = recorded_sleep
    server = FakeServer()
    server.connect_errors.extend(ImapNetworkError("timeout") for _ in range(5))
    session = _session(server, sleep=sleep)

    await session.start()
    await wait_until(lambda: session.lockout_reason is not None)

    assert session.lockout_reason == LOCKOUT_EXHAUSTED
    assert session.state is SessionState.DISABLED
    assert delays == [5, 10, 20, 40]
    assert server.connect_calls == 5
    assert not session.auth_locked


@pytest.mark.asyncio
async def test_success_after_failure_clears_streak(wait_until, recorded_sleep) -> None:
    """A successful reconnect resets the failure counter."""

    delays, sleep = recorded_sleep
    server = FakeServer(unseen=1)
    server.connect_errors.append(ImapNetworkError("refused"))
    session = _session(server, sleep=sleep)

    await session.start()
    await wait_until(lambda: session.state is SessionState.CONNECTED_IDLE)

    assert delays[0] == 5
    assert session.health().consecutive_failures == 0
    await session.stop()


@pytest.mark.asyncio
async def test_error_during_idle_reconnects(wait_until, recorded_sleep) -> None:
    """A dropped IDLE connection goes through backoff and recovers."""

    _, sleep = recorded_sleep
    server = FakeServer()
    session = _session(server, sleep=sleep)

    await session.start()
    await wait_until(lambda: session.state is SessionState.CONNECTED_IDLE)
    server.idle_errors.append(ImapNetworkError("connection reset"))
    await wait_until(lambda: server.connect_calls >= 2)
    await wait_until(lambda: session.state is SessionState.CONNECTED_IDLE)

    assert session.lockout_reason is None
    await session.stop()


@pytest.mark.asyncio
async def test_offline_user_never_connects() -> None:
    """The session stays disabled while the user is offline."""

    server = FakeServer(unseen=1)
    session = _session(server, connectivity=StaticConnectivityOracle(default=False))

    await session.start()

    assert session.state is SessionState.DISABLED
    assert server.connect_calls == 0


@pytest.mark.asyncio
async def test_failing_listener_does_not_block_others(wait_until) -> None:
    """One listener raising does not stop delivery to the rest."""

    server = FakeServer(unseen=2)
    session = _session(server)

    async def _broken(mail: ParsedMail) -> None:
        raise RuntimeError("listener bug")

    session.listen(_broken)
    received = _collector(session)

    await session.start()
    await wait_until(lambda: len(received) == 2)
    await session.stop()


@pytest.mark.asyncio
async def test_stop_is_idempotent_and_blocks_illegal_moves() -> None:
    """Stopping twice is harmless; undefined transitions are rejected."""

    session = _session(FakeServer())

    await session.stop()
    await session.stop()
    assert session.state is SessionState.DISABLED

    with pytest.raises(IllegalTransitionError):
        session._transition(SessionState.CONNECTED_IDLE)


class RejectingParser(EmailParser):
    """Parser that cannot derive an identifier for selected UIDs."""

    def __init__(self, rejected: set[int]) -> None:
        super().__init__()
        self.rejected = rejected

    def parse(self, uid: int, payload: bytes) -> ParsedMail:
        if uid in self.rejected:
            raise InvalidMailIdentifierError(f"bad identifier for {uid}")
        return super().parse(uid, payload)


@pytest.mark.asyncio
async def test_concurrent_connects_open_one_connection(wait_until) -> None:
    """A second connect while one is in flight is ignored."""

    server = FakeServer(unseen=1)
    server.connect_gate = threading.Event()
    session = _session(server)

    first = asyncio.create_task(session.connect_and_fetch())
    await wait_until(lambda: server.connect_calls == 1)
    await session.connect_and_fetch()
    server.connect_gate.set()
    await first
    await wait_until(lambda: session.state is SessionState.CONNECTED_IDLE)

    assert server.connect_calls == 1
    assert server.transports == 1
    await session.stop()


@pytest.mark.asyncio
async def test_reset_is_ignored_while_connecting(wait_until) -> None:
    """Reset does not tear down a connection attempt that is under way."""

    server = FakeServer()
    server.connect_gate = threading.Event()
    session = _session(server)

    first = asyncio.create_task(session.start())
    await wait_until(lambda: server.connect_calls == 1)
    await session.reset()

    assert session.state is SessionState.CONNECTING
    assert server.logouts == 0

    server.connect_gate.set()
    await first
    await wait_until(lambda: session.state is SessionState.CONNECTED_IDLE)
    assert server.connect_calls == 1
    await session.stop()


@pytest.mark.asyncio
async def test_cancelled_connect_leaves_session_disabled(wait_until) -> None:
    """Cancelling a connect mid-handshake releases the transport."""

    server = FakeServer()
    server.connect_gate = threading.Event()
    session = _session(server)

    attempt = asyncio.create_task(session.connect_and_fetch())
    await wait_until(lambda: server.connect_calls == 1)
    attempt.cancel()
    with pytest.raises(asyncio.CancelledError):
        await attempt
    server.connect_gate.set()

    assert session.state is SessionState.DISABLED
    assert not session.health().is_healthy
    assert session._transport is None
    assert not session._connecting

    await session.start()
    await wait_until(lambda: session.state is SessionState.CONNECTED_IDLE)
    await session.stop()


@pytest.mark.asyncio
async def test_locked_out_session_refuses_direct_connect() -> None:
    """Only reset lifts a lockout; connect_and_fetch does not."""

    server = FakeServer()
    server.connect_errors.append(ImapAuthError("AUTHENTICATIONFAILED"))
    session = _session(server)

    await session.start()
    await session.connect_and_fetch()

    assert server.connect_calls == 1
    assert session.state is SessionState.DISABLED
    assert session.auth_locked


@pytest.mark.asyncio
async def test_invalid_identifier_is_skipped(wait_until) -> None:
    """Mail without a derivable identifier never reaches listeners."""

    server = FakeServer(unseen=3)
    session = _session(server, parser=RejectingParser({2}))
    received = _collector(session)

    await session.start()
    await wait_until(lambda: session.state is SessionState.CONNECTED_IDLE)

    assert sorted(mail.uid for mail in received) == [1, 3]
    assert 2 not in server.seen
    await session.stop()
