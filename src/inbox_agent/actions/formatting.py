"""Plain-text rendering of mail listings and drafts for chat replies."""

from __future__ import annotations

from collections.abc import Sequence

from ..core.datetime_utils import display_datetime
from ..core.models import EmailRecord, KnowledgeSnippet

_RULE = "=" * 60
_THIN_RULE = "-" * 60

REPLY_HINT = (
    "To reply, say 'reply to emailId: <uuid>' or 'reply to email <number>'. "
    "To answer with your own text, add 'message: <your reply>'."
)


def no_emails_text(hours: int) -> str:
    """Message used when nothing arrived inside the lookback window."""
    return f"No new emails have been received in the last {hours} hours."


def format_listing(
    records: Sequence[EmailRecord],
    *,
    hours: int,
    mode: str = "summary",
    preview_chars: int = 500,
) -> str:
    """Render ``records`` for a check request in the given ``mode``."""
    if not records:
        return no_emails_text(hours)
    if mode == "ids":
        lines = [f"Email UUIDs received in the last {hours} hours:"]
        for position, record in enumerate(records, start=1):
            lines.append(f"  {position}. {record.email_id} ({record.subject or 'No subject'})")
        lines.extend(["", REPLY_HINT])
        return "\n".join(lines)

    full = mode == "full"
    heading = (
        f"Here are your complete emails from the last {hours} hours:"
        if full
        else f"Here are your emails from the last {hours} hours:"
    )
    blocks = [heading, REPLY_HINT]
    for position, record in enumerate(records, start=1):
        blocks.append(
            format_email(
                record,
                position=position,
                preview_chars=None if full else preview_chars,
            )
        )
    return "\n\n".join(blocks)


def format_email(
    record: EmailRecord,
    *,
    position: int | None = None,
    preview_chars: int | None = None,
) -> str:
    """Render a single email block."""
    sender = record.sender.display() if record.sender else "Unknown sender"
    body = record.body.strip() or "No content"
    if preview_chars is not None and len(body) > preview_chars:
        body = body[:preview_chars].rstrip() + "..."
    title = f"Email {position}" if position is not None else "Email"
    return "\n".join(
        [
            _RULE,
            title,
            _THIN_RULE,
            f"From: {sender}",
            f"Subject: {record.subject or 'No subject'}",
            f"Date: {display_datetime(record.date) or 'Unknown date'}",
            f"Email UUID: {record.email_id}",
            _THIN_RULE,
            "Body:",
            body,
            _RULE,
        ]
    )


def format_draft(email_id: str, body: str, knowledge: Sequence[KnowledgeSnippet] = ()) -> str:
    """Render a freshly drafted reply awaiting confirmation."""
    parts = [
        f"I have generated a reply for emailId: {email_id}",
        "",
        _THIN_RULE,
        body,
        _THIN_RULE,
    ]
    sources = [snippet.source for snippet in knowledge if snippet.source]
    if sources:
        parts.extend(["", "Knowledge used: " + ", ".join(sources)])
    parts.extend(
        [
            "",
            "To send this reply, please say 'confirm reply' or "
            f"'confirm reply emailId: {email_id}'.",
        ]
    )
    return "\n".join(parts)


def reply_subject(subject: str | None) -> str:
    """Prefix ``Re:`` unless the subject already carries it."""
    subject = (subject or "").strip()
    if subject.lower().startswith("re:"):
        return subject
    return f"Re: {subject}" if subject else "Re: (no subject)"


__all__ = [
    "REPLY_HINT",
    "format_draft",
    "format_email",
    "format_listing",
    "no_emails_text",
    "reply_subject",
]
