"""Tests for the SMTP client and the outgoing sender."""

from __future__ import annotations

import smtplib
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from inbox_agent.core.config import SmtpSettings, resolve_outgoing_settings
from inbox_agent.core.models import OutgoingMessage
from inbox_agent.transport import OutgoingMailSender, SmtpClient, SmtpError


def _settings(**overrides: object) -> SmtpSettings:
    base = SmtpSettings(
        provider="smtp",
        host="smtp.example.com",
        port=587,
        username="agent@example.com",
        password="secret",
        from_name="Inbox Agent",
    )
    resolved = resolve_outgoing_settings(base.model_copy(update=overrides))
    assert resolved is not None
    return resolved


def test_starttls_connection_logs_in() -> None:
    """Port 587 uses STARTTLS before authenticating."""

    connection = MagicMock()
    smtp_factory = MagicMock(return_value=connection)
    ssl_factory = MagicMock()
    client = SmtpClient(_settings(), smtp_factory=smtp_factory, smtp_ssl_factory=ssl_factory)

    client.connect()

    smtp_factory.assert_called_once_with("smtp.example.com", 587, timeout=30.0)
    connection.starttls.assert_called_once()
    connection.login.assert_called_once_with("agent@example.com", "secret")
    ssl_factory.assert_not_called()


def test_implicit_ssl_on_port_465() -> None:
    """Port 465 connects with SSL from the start."""

    connection = MagicMock()
    ssl_factory = MagicMock(return_value=connection)
    client = SmtpClient(_settings(port=465), smtp_factory=MagicMock(), smtp_ssl_factory=ssl_factory)

    client.connect()

    ssl_factory.assert_called_once_with("smtp.example.com", 465, timeout=30.0)
    connection.starttls.assert_not_called()


def test_auth_failure_raises_smtp_error() -> None:
    """Rejected credentials surface as SmtpError."""

    connection = MagicMock()
    connection.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")
    client = SmtpClient(_settings(), smtp_factory=MagicMock(return_value=connection))

    with pytest.raises(SmtpError, match="authentication"):
        client.connect()


def test_mime_message_carries_thread_headers() -> None:
    """Replies keep In-Reply-To and References so clients thread them."""

    client = SmtpClient(_settings())
    message = OutgoingMessage(
        to=("alice@example.com",),
        subject="Re: Hello",
        text="Thanks!",
        html="<p>Thanks!</p>",
        cc=("bob@example.com",),
        in_reply_to="<orig@example.com>",
        references=("<root@example.com>", "<orig@example.com>"),
        headers={"X-Agent": "inbox-agent"},
    )

    mime = client.build_mime_message(message)

    assert mime["From"] == "Inbox Agent <agent@example.com>"
    assert mime["To"] == "alice@example.com"
    assert mime["Cc"] == "bob@example.com"
    assert mime["In-Reply-To"] == "<orig@example.com>"
    assert mime["References"] == "<root@example.com> <orig@example.com>"
    assert mime["X-Agent"] == "inbox-agent"
    assert mime["Message-ID"].endswith("@example.com>")
    alternative = mime.get_payload()[0]
    assert [part.get_content_type() for part in alternative.get_payload()] == [
        "text/plain",
        "text/html",
    ]


def test_send_reports_refused_recipients() -> None:
    """Recipients refused by the server are split from accepted ones."""

    connection = MagicMock()
    connection.send_message.return_value = {"bob@example.com": (550, b"no such user")}
    client = SmtpClient(_settings(), smtp_factory=MagicMock(return_value=connection))
    client.connect()

    message_id, accepted, rejected = client.send(
        OutgoingMessage(to=("alice@example.com",), cc=("bob@example.com",), subject="Hi")
    )

    assert message_id.startswith("<")
    assert accepted == ["alice@example.com"]
    assert rejected == ["bob@example.com"]
    kwargs = connection.send_message.call_args.kwargs
    assert kwargs["to_addrs"] == ["alice@example.com", "bob@example.com"]


def test_attachments_are_included(tmp_path: Path) -> None:
    """Attachment files become attachment parts."""

    attachment = tmp_path / "notes.txt"
    attachment.write_text("agenda", encoding="utf-8")
    client = SmtpClient(_settings())

    mime = client.build_mime_message(
        OutgoingMessage(to=("a@example.com",), subject="Files", attachments=(str(attachment),))
    )

    parts = mime.get_payload()
    assert parts[1].get_filename() == "notes.txt"

    with pytest.raises(SmtpError):
        client.build_mime_message(
            OutgoingMessage(
                to=("a@example.com",), subject="x", attachments=(str(tmp_path / "missing"),)
            )
        )


class _StubClient:
    """Context-managed stand-in for SmtpClient."""

    def __init__(self, outcome: object) -> None:
        self.outcome = outcome
        self.sent: list[OutgoingMessage] = []

    def __enter__(self) -> _StubClient:
        if isinstance(self.outcome, SmtpError):
            raise self.outcome
        return self

    def __exit__(self, *args: object) -> None:
        return None

    def send(self, message: OutgoingMessage) -> tuple[str, list[str], list[str]]:
        self.sent.append(message)
        return self.outcome  # type: ignore[return-value]


@pytest.mark.asyncio
async def test_sender_reports_success() -> None:
    """A delivered message yields a successful result with its Message-ID."""

    stub = _StubClient(("<id@example.com>", ["alice@example.com"], []))
    sender = OutgoingMailSender(_settings(), client_factory=lambda _settings: stub)

    result = await sender.send(OutgoingMessage(to=("alice@example.com",), subject="Hi"))

    assert result.success
    assert result.message_id == "<id@example.com>"
    assert result.accepted == ("alice@example.com",)
    assert sender.from_address == "agent@example.com"


@pytest.mark.asyncio
async def test_sender_converts_errors_to_results() -> None:
    """Transport failures never raise out of the sender."""

    stub = _StubClient(SmtpError("Network error: refused"))
    sender = OutgoingMailSender(_settings(), client_factory=lambda _settings: stub)

    result = await sender.send(OutgoingMessage(to=("alice@example.com",), subject="Hi"))

    assert not result.success
    assert result.error == "Network error: refused"


@pytest.mark.asyncio
async def test_sender_fails_when_everyone_rejected() -> None:
    """Zero accepted recipients is a failed send."""

    stub = _StubClient(("<id@example.com>", [], ["alice@example.com"]))
    sender = OutgoingMailSender(_settings(), client_factory=lambda _settings: stub)

    result = await sender.send(OutgoingMessage(to=("alice@example.com",), subject="Hi"))

    assert not result.success
    assert result.rejected == ("alice@example.com",)
