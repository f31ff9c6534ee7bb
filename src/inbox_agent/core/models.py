"""Core domain models used across the application."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from .datetime_utils import parse_datetime, serialize_datetime, utc_now

EMAIL_COLLECTION = "emails"


class MemorySource:
    """Well-known ``content.source`` values written by the mail subsystem."""

    EMAIL = "EMAIL"
    NOTIFICATION = "EMAIL_NOTIFICATION"
    CHECK_EMAIL = "CHECK_EMAIL"
    GENERATE_REPLY = "GENERATE_EMAIL_REPLY"
    REPLY_EMAIL = "REPLY_EMAIL"
    SEND_EMAIL = "SEND_EMAIL"
    EMAIL_ERROR = "EMAIL_ERROR"


class SessionState(Enum):
    """Lifecycle of an incoming mail session."""

    DISABLED = "disabled"
    CONNECTING = "connecting"
    CONNECTED_IDLE = "connected-idle"
    CONNECTED_FETCHING = "connected-fetching"
    ERROR_BACKOFF = "error-backoff"


@dataclass(frozen=True, slots=True)
class MailAddress:
    """A single mailbox address with optional display name."""

    address: str
    name: str | None = None

    def display(self) -> str:
        """Return ``Name <address>`` or the bare address."""
        return f"{self.name} <{self.address}>" if self.name else self.address


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class ParsedMail:
    """Normalized incoming message emitted by the mail session."""

    uid: int
    email_uuid: str
    message_id: str | None
    thread_id: str | None
    subject: str | None
    senders: tuple[MailAddress, ...]
    date: datetime | None
    text: str
    references: tuple[str, ...] = ()

    @property
    def sender(self) -> MailAddress | None:
        """Return the first sender, if any."""
        return self.senders[0] if self.senders else None


@dataclass(slots=True)
class HealthMetrics:
    """Point-in-time health of a mail session."""

    last_successful_fetch: float
    consecutive_failures: int
    is_healthy: bool


@dataclass(slots=True)
class MemoryContent:
    """Payload of a conversational memory."""

    text: str
    source: str
    thought: str | None = None
    actions: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Memory:
    """Generic conversational memory record."""

    agent_id: str
    room_id: str
    user_id: str
    content: MemoryContent
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utc_now)

    @property
    def collection(self) -> str | None:
        """Return ``metadata.collection`` when present."""
        value = self.content.metadata.get("collection")
        return value if isinstance(value, str) else None


@dataclass(slots=True)
class EmailRecord:
    """Typed view of the metadata stored on a mail memory."""

    email_id: str
    message_id: str | None
    thread_id: str | None
    subject: str | None
    senders: tuple[MailAddress, ...]
    date: datetime | None
    body: str
    references: tuple[str, ...] = ()

    @property
    def sender(self) -> MailAddress | None:
        """Return the first sender, if any."""
        return self.senders[0] if self.senders else None

    @classmethod
    def from_mail(cls, mail: ParsedMail, body: str) -> EmailRecord:
        """Build a record from a parsed message and its cleaned body."""
        return cls(
            email_id=mail.email_uuid,
            message_id=mail.message_id,
            thread_id=mail.thread_id,
            subject=mail.subject,
            senders=mail.senders,
            date=mail.date,
            body=body,
            references=mail.references,
        )

    def to_metadata(self) -> dict[str, Any]:
        """Serialise to the memory metadata layout."""
        return {
            "collection": EMAIL_COLLECTION,
            "from": [{"address": s.address, "name": s.name} for s in self.senders],
            "subject": self.subject,
            "date": serialize_datetime(self.date),
            "emailId": self.email_id,
            "messageId": self.message_id,
            "threadId": self.thread_id,
            "references": list(self.references),
            "body": self.body,
        }

    @classmethod
    def from_metadata(cls, metadata: dict[str, Any]) -> EmailRecord | None:
        """Rebuild a record from stored metadata; ``None`` when not an email."""
        email_id = metadata.get("emailId")
        if metadata.get("collection") != EMAIL_COLLECTION or not email_id:
            return None
        senders = tuple(
            MailAddress(address=entry["address"], name=entry.get("name"))
            for entry in metadata.get("from") or []
            if isinstance(entry, dict) and entry.get("address")
        )
        return cls(
            email_id=str(email_id),
            message_id=metadata.get("messageId"),
            thread_id=metadata.get("threadId"),
            subject=metadata.get("subject"),
            senders=senders,
            date=parse_datetime(metadata.get("date")),
            body=metadata.get("body") or "",
            references=tuple(metadata.get("references") or ()),
        )


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class PendingReply:
    """A drafted reply waiting for explicit confirmation."""

    target_email_uuid: str
    to: str
    subject: str
    body: str
    thread_id: str | None
    references: tuple[str, ...]
    in_reply_to: str | None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utc_now)
    expires_at: datetime | None = None

    @classmethod
    def with_ttl(cls, ttl: timedelta, **values: Any) -> PendingReply:
        """Create a pending reply expiring ``ttl`` after creation."""
        created_at = values.pop("created_at", None) or utc_now()
        return cls(created_at=created_at, expires_at=created_at + ttl, **values)

    def is_expired(self, now: datetime | None = None) -> bool:
        """Return ``True`` once ``expires_at`` has passed."""
        if self.expires_at is None:
            return False
        return (now or utc_now()) >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        """Serialise for storage in memory metadata."""
        return {
            "id": self.id,
            "targetEmailUUID": self.target_email_uuid,
            "to": self.to,
            "subject": self.subject,
            "body": self.body,
            "threadId": self.thread_id,
            "references": list(self.references),
            "inReplyTo": self.in_reply_to,
            "createdAt": serialize_datetime(self.created_at),
            "expiresAt": serialize_datetime(self.expires_at),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PendingReply:
        """Inverse of :meth:`to_dict`."""
        return cls(
            id=str(payload["id"]),
            target_email_uuid=str(payload["targetEmailUUID"]),
            to=str(payload["to"]),
            subject=str(payload.get("subject") or ""),
            body=str(payload.get("body") or ""),
            thread_id=payload.get("threadId"),
            references=tuple(payload.get("references") or ()),
            in_reply_to=payload.get("inReplyTo"),
            created_at=parse_datetime(payload.get("createdAt")) or utc_now(),
            expires_at=parse_datetime(payload.get("expiresAt")),
        )


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class OutgoingMessage:
    """A message handed to the outgoing sender."""

    to: tuple[str, ...]
    subject: str
    text: str | None = None
    html: str | None = None
    cc: tuple[str, ...] = ()
    bcc: tuple[str, ...] = ()
    reply_to: str | None = None
    in_reply_to: str | None = None
    references: tuple[str, ...] = ()
    attachments: tuple[str, ...] = ()
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def recipients(self) -> tuple[str, ...]:
        """All envelope recipients, including blind copies."""
        return self.to + self.cc + self.bcc


@dataclass(slots=True)
class SendResult:
    """Outcome of a single send."""

    success: bool
    message_id: str | None = None
    accepted: tuple[str, ...] = ()
    rejected: tuple[str, ...] = ()
    error: str | None = None


@dataclass(frozen=True, slots=True)
class KnowledgeSnippet:
    """Ranked context returned by a knowledge store."""

    text: str
    source: str | None = None


DEFAULT_REPLY_TEMPLATE = "Dear {{sender}},\n\n{{body}}\n\n{{bestRegard}},\n{{agentName}}"


@dataclass(slots=True)
class ReplyTemplate:
    """Per-agent formatting for generated replies."""

    template: str = DEFAULT_REPLY_TEMPLATE
    best_regard: str = "Best regards"
    position: str | None = None
    email_address: str | None = None
    company_name: str | None = None
    instructions: str | None = None


@dataclass(slots=True)
class MailNotification:
    """User-facing notice published by the dispatcher."""

    kind: str
    text: str
    email_ids: tuple[str, ...] = ()


__all__ = [
    "DEFAULT_REPLY_TEMPLATE",
    "EMAIL_COLLECTION",
    "EmailRecord",
    "HealthMetrics",
    "KnowledgeSnippet",
    "MailAddress",
    "MailNotification",
    "Memory",
    "MemoryContent",
    "MemorySource",
    "OutgoingMessage",
    "ParsedMail",
    "PendingReply",
    "ReplyTemplate",
    "SendResult",
    "SessionState",
]
