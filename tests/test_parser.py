"""Tests for email parsing and body cleaning."""

from __future__ import annotations

from email.message import EmailMessage

from inbox_agent.core.identifiers import derive_mail_uuid, is_canonical_uuid
from inbox_agent.ingestion.parser import EmailParser, clean_body


def _build_message(*, html: bool = False, **headers: str) -> bytes:
    message = EmailMessage()
    message["Subject"] = headers.get("subject", "Weekly sync")
    message["From"] = headers.get("sender", "Alice Example <alice@example.com>")
    message["To"] = "me@example.com"
    message["Date"] = "Tue, 02 Jan 2024 10:30:00 +0200"
    if "message_id" in headers:
        message["Message-ID"] = headers["message_id"]
    if "references" in headers:
        message["References"] = headers["references"]
    if html:
        message.set_content("<p>Hello <b>team</b></p>", subtype="html")
    else:
        message.set_content("Hello team,\nSee you soon.")
    return message.as_bytes()


def test_parse_extracts_headers_and_body() -> None:
    """Parsing should capture sender, subject, body, and a stable UUID."""

    parser = EmailParser()
    payload = _build_message(message_id="<abc@example.com>")

    mail = parser.parse(7, payload)

    assert mail.uid == 7
    assert mail.subject == "Weekly sync"
    assert mail.sender is not None
    assert mail.sender.address == "alice@example.com"
    assert mail.sender.name == "Alice Example"
    assert "Hello team" in mail.text
    assert mail.email_uuid == derive_mail_uuid("abc@example.com")
    assert mail.thread_id == "abc@example.com"
    assert mail.date is not None
    assert mail.date.utcoffset().total_seconds() == 0
    assert mail.date.hour == 8


def test_thread_id_prefers_first_reference() -> None:
    """Replies join the thread of the first referenced message."""

    payload = _build_message(
        message_id="<reply@example.com>",
        references="<root@example.com> <middle@example.com>",
    )
    mail = EmailParser().parse(1, payload)

    assert mail.thread_id == "root@example.com"
    assert mail.references == ("<root@example.com>", "<middle@example.com>")


def test_html_only_message_converted_to_text() -> None:
    """HTML bodies are rendered to plain text when no text part exists."""

    mail = EmailParser().parse(2, _build_message(html=True, message_id="<h@example.com>"))

    assert "Hello" in mail.text
    assert "<p>" not in mail.text


def test_missing_message_id_gets_random_uuid() -> None:
    """Messages without a Message-ID still receive a canonical identifier."""

    first = EmailParser().parse(3, _build_message())
    second = EmailParser().parse(3, _build_message())

    assert is_canonical_uuid(first.email_uuid)
    assert first.email_uuid != second.email_uuid


def test_clean_body_drops_quoted_history() -> None:
    """Text below an original or forwarded separator is removed."""

    text = "Thanks!\n\n-----Original Message-----\nFrom: someone\nOld text"
    assert clean_body(text) == "Thanks!"
    assert clean_body("Hi\n---------- Forwarded message ----------\nx") == "Hi"
    assert clean_body("  Plain reply  ") == "Plain reply"
    assert clean_body(None) == ""
