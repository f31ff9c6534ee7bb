"""Stable identifiers for incoming messages."""

from __future__ import annotations

import re
import uuid

# Fixed namespace so the same Message-ID always maps to the same mail UUID.
MAIL_NAMESPACE = uuid.UUID("6f1c4a52-3d1e-5b8a-9c2f-7e4d0b9a1c35")

_CANONICAL_UUID = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-8][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$"
)


class InvalidMailIdentifierError(ValueError):
    """Raised when a derived mail identifier is not a canonical UUID."""


def normalize_message_id(message_id: str | None) -> str | None:
    """Strip whitespace, quotes and angle brackets from a Message-ID."""
    if message_id is None:
        return None
    cleaned = message_id.strip().strip("\"'").strip().strip("<>").strip()
    return cleaned or None


def is_canonical_uuid(value: str | None) -> bool:
    """Return ``True`` when ``value`` is a lowercase RFC 4122 UUID string."""
    return bool(value) and bool(_CANONICAL_UUID.match(value or ""))


def derive_mail_uuid(message_id: str | None) -> str:
    """Return the mail UUID for ``message_id``.

    Identical Message-IDs always yield the same value. Messages without a
    Message-ID get a random identifier.
    """
    normalized = normalize_message_id(message_id)
    if normalized is None:
        derived = str(uuid.uuid4())
    else:
        derived = str(uuid.uuid5(MAIL_NAMESPACE, normalized))
    if not is_canonical_uuid(derived):
        raise InvalidMailIdentifierError(
            f"Derived identifier {derived!r} is not a canonical UUID"
        )
    return derived


def normalize_email_id(value: str) -> str:
    """Normalise a user supplied email id for comparisons."""
    return value.strip().strip("<>").lower()


__all__ = [
    "InvalidMailIdentifierError",
    "MAIL_NAMESPACE",
    "derive_mail_uuid",
    "is_canonical_uuid",
    "normalize_email_id",
    "normalize_message_id",
]
