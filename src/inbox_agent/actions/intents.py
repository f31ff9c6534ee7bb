"""Free-text intent parsing for the email actions."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

from ..core.identifiers import normalize_email_id

CheckMode = Literal["summary", "ids", "full"]


@dataclass(frozen=True, slots=True)
class ExplicitRef:
    """Target named by its mail UUID."""

    email_id: str


@dataclass(frozen=True, slots=True)
class OrdinalRef:
    """Target named by its 1-based position in the latest listing."""

    position: int


@dataclass(frozen=True, slots=True)
class ContextRef:
    """Target implied by the conversation ("this email")."""


EmailRef = ExplicitRef | OrdinalRef | ContextRef


@dataclass(frozen=True, slots=True)
class CheckIntent:
    """List recently received mail."""

    mode: CheckMode = "summary"


@dataclass(frozen=True, slots=True)
class GenerateReplyIntent:
    """Draft a reply that waits for confirmation."""

    ref: EmailRef | None


@dataclass(frozen=True, slots=True)
class ConfirmReplyIntent:
    """Send a previously drafted reply."""

    email_id: str | None = None


@dataclass(frozen=True, slots=True)
class CustomReplyIntent:
    """Reply immediately with a user supplied body."""

    ref: EmailRef | None
    body: str


@dataclass(frozen=True, slots=True)
class SendEmailIntent:
    """Compose a new message."""

    to: tuple[str, ...]
    subject: str
    body: str
    cc: tuple[str, ...] = ()


Intent = (
    CheckIntent
    | GenerateReplyIntent
    | ConfirmReplyIntent
    | CustomReplyIntent
    | SendEmailIntent
)

_EMAIL_ID = re.compile(r"email\s*id\s*(?:[:=]\s*|\s+)<?([^\s<>,;]+)", re.IGNORECASE)
_BARE_UUID = re.compile(
    r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b", re.IGNORECASE
)
_ORDINAL = re.compile(r"\bemail\s+(?:#|number\s+|no\.?\s*)?(\d+)\b", re.IGNORECASE)
_MESSAGE_BODY = re.compile(r"\bmessage\s*:\s*(.+)$", re.IGNORECASE | re.DOTALL)
_GENERATE = re.compile(
    r"\b(?:generate|create|draft|write)\s+(?:a\s+)?(?:reply|response)\b"
    r"|\b(?:reply|respond)\s+(?:to|for)\b",
    re.IGNORECASE,
)
_CONFIRM = re.compile(r"\b(?:confirm|send)\s+(?:the\s+)?reply\b", re.IGNORECASE)
_SEND = re.compile(r"\b(?:send|compose|write)\s+(?:an?\s+)?(?:new\s+)?e?mail\b", re.IGNORECASE)
_TO = re.compile(r"\bto\s*[:=]\s*['\"]?([^'\"\s,;]+)", re.IGNORECASE)
_CC = re.compile(r"\bcc\s*[:=]\s*['\"]?([^'\"\s,;]+)", re.IGNORECASE)
_SUBJECT = re.compile(
    r"\bsubject\s*[:=]\s*(.+?)\s*(?:,?\s*(?:and\s+)?\b(?:body|text|cc)\s*[:=]|\n|$)",
    re.IGNORECASE,
)
_BODY = re.compile(r"\b(?:body|text)\s*[:=]\s*(.+)$", re.IGNORECASE | re.DOTALL)
_SAYING = re.compile(r"\bto\s+(\S+@\S+?)\s+saying\s+(.+)$", re.IGNORECASE | re.DOTALL)
_ADDRESS = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_CHECK_PHRASES = (
    "check email",
    "check mail",
    "check my email",
    "check my mail",
    "new email",
    "received email",
    "receive email",
    "have i received",
    "have you received",
    "any email",
    "inbox",
    "mailbox",
    "show email",
    "show my email",
    "display email",
    "read email",
)
_ID_PHRASES = (
    "what emailid",
    "list email ids",
    "which email ids",
    "emailid do you have",
    "email ids saved",
    "email uuids",
)
_FULL_PHRASES = ("show full", "display full", "complete email", "full email")


def parse_intent(text: str) -> Intent | None:
    """Map a chat message to an email intent, or ``None`` when unrelated."""
    stripped = text.strip()
    lowered = stripped.lower()
    if not lowered:
        return None

    # Composed mail may quote reply wording in its subject or body.
    if _SEND.search(lowered):
        send = _parse_send(stripped)
        if send is not None:
            return send

    if _CONFIRM.search(lowered):
        return ConfirmReplyIntent(email_id=_explicit_id(stripped))

    body_match = _MESSAGE_BODY.search(stripped)
    if body_match and ("reply" in lowered or "respond" in lowered):
        body = body_match.group(1).strip()
        if body:
            return CustomReplyIntent(ref=parse_ref(stripped[: body_match.start()]), body=body)

    if _GENERATE.search(lowered) and not lowered.startswith(("send", "compose")):
        return GenerateReplyIntent(ref=parse_ref(stripped))

    if "email to" in lowered:
        send = _parse_send(stripped)
        if send is not None:
            return send

    if any(phrase in lowered for phrase in _ID_PHRASES):
        return CheckIntent(mode="ids")
    if any(phrase in lowered for phrase in _CHECK_PHRASES + _FULL_PHRASES):
        mode: CheckMode = "full" if any(p in lowered for p in _FULL_PHRASES) else "summary"
        return CheckIntent(mode=mode)
    return None


def parse_ref(text: str) -> EmailRef | None:
    """Extract the reply target from ``text``."""
    explicit = _explicit_id(text)
    if explicit is not None:
        return ExplicitRef(explicit)
    bare = _BARE_UUID.search(text)
    if bare:
        return ExplicitRef(normalize_email_id(bare.group(0)))
    ordinal = _ORDINAL.search(text)
    if ordinal:
        return OrdinalRef(int(ordinal.group(1)))
    if "this email" in text.lower() or "this message" in text.lower():
        return ContextRef()
    return None


def _explicit_id(text: str) -> str | None:
    match = _EMAIL_ID.search(text)
    if not match:
        return None
    return normalize_email_id(match.group(1))


def _parse_send(text: str) -> SendEmailIntent | None:
    saying = _SAYING.search(text)
    to_match = _TO.search(text)
    if to_match is None and saying is None:
        return None
    if to_match is not None:
        recipient = to_match.group(1)
        body_match = _BODY.search(text)
        body = body_match.group(1).strip() if body_match else ""
    else:
        recipient = saying.group(1)
        body = saying.group(2).strip()
    subject_match = _SUBJECT.search(text)
    subject = subject_match.group(1).strip() if subject_match else "No subject"
    recipients = tuple(address for address in [recipient] if _ADDRESS.match(address))
    cc = tuple(match for match in _CC.findall(text) if _ADDRESS.match(match))
    return SendEmailIntent(to=recipients, subject=subject, body=body, cc=cc)


__all__ = [
    "CheckIntent",
    "CheckMode",
    "ConfirmReplyIntent",
    "ContextRef",
    "CustomReplyIntent",
    "EmailRef",
    "ExplicitRef",
    "GenerateReplyIntent",
    "Intent",
    "OrdinalRef",
    "SendEmailIntent",
    "parse_intent",
    "parse_ref",
]
