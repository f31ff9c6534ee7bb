"""Utilities for parsing raw RFC822 messages into structured models."""

from __future__ import annotations

import re
from collections.abc import Iterable
from datetime import datetime
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import getaddresses, parsedate_to_datetime

import html2text

from ..core.datetime_utils import ensure_utc
from ..core.identifiers import derive_mail_uuid, normalize_message_id
from ..core.models import MailAddress, ParsedMail

_QUOTED_SEPARATOR = re.compile(
    r"^-{2,}\s*Original Message\s*-{2,}|^-{2,}\s*Forwarded Message\s*-{2,}",
    re.IGNORECASE | re.MULTILINE,
)
_THREAD_HEADERS = ("X-GM-THRID", "X-GM-Thread-Id")


class EmailParser:
    """Convert raw email payloads into :class:`ParsedMail` records."""

    def __init__(self) -> None:
        """Prepare internal parser instances."""
        self._parser = BytesParser(policy=policy.default)
        self._html = html2text.HTML2Text()
        self._html.ignore_images = True
        self._html.body_width = 0

    def parse(self, uid: int, payload: bytes) -> ParsedMail:
        """Parse raw RFC822 bytes.

        Raises:
            InvalidMailIdentifierError: when the mail UUID cannot be derived.
        """
        message = self._parser.parsebytes(payload)
        message_id = _header(message, "Message-ID")
        references = tuple(_split_references(_header(message, "References")))
        body_text, body_html = _extract_bodies(message)
        text = body_text
        if text is None and body_html is not None:
            text = self._html.handle(body_html).strip()

        return ParsedMail(
            uid=uid,
            email_uuid=derive_mail_uuid(message_id),
            message_id=message_id,
            thread_id=_resolve_thread_id(message, references, message_id),
            subject=_header(message, "Subject"),
            senders=tuple(_extract_addresses(message.get_all("From", []))),
            date=_try_parse_datetime(_header(message, "Date")),
            text=text or "",
            references=references,
        )


def clean_body(text: str | None) -> str:
    """Drop quoted or forwarded history below the first separator line."""
    if not text:
        return ""
    return _QUOTED_SEPARATOR.split(text, maxsplit=1)[0].strip()


def _header(message: EmailMessage, name: str) -> str | None:
    value = message.get(name)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _extract_addresses(headers: Iterable[str]) -> Iterable[MailAddress]:
    for name, email_address in getaddresses([str(header) for header in headers]):
        if email_address:
            yield MailAddress(address=email_address, name=name or None)


def _split_references(header_value: str | None) -> Iterable[str]:
    if not header_value:
        return []
    return [token for token in header_value.split() if token]


def _resolve_thread_id(
    message: EmailMessage, references: tuple[str, ...], message_id: str | None
) -> str | None:
    for header in _THREAD_HEADERS:
        value = _header(message, header)
        if value:
            return value
    if references:
        return normalize_message_id(references[0])
    return normalize_message_id(message_id)


def _collapse_chunks(chunks: Iterable[str], separator: str) -> str | None:
    filtered_chunks = [chunk for chunk in chunks if chunk]
    if not filtered_chunks:
        return None
    return separator.join(filtered_chunks)


def _extract_bodies(message: EmailMessage) -> tuple[str | None, str | None]:
    plain_chunks: list[str] = []
    html_chunks: list[str] = []

    for part in message.walk():
        if part.is_multipart():
            continue
        if part.get_content_disposition() == "attachment":
            continue
        try:
            content_obj = part.get_content()
        except (LookupError, ValueError):
            continue
        if not isinstance(content_obj, str):
            continue
        content = content_obj.strip()
        content_type = part.get_content_type()
        if content_type == "text/plain":
            plain_chunks.append(content)
        elif content_type == "text/html":
            html_chunks.append(content)

    text = _collapse_chunks(plain_chunks, "\n\n")
    html = _collapse_chunks(html_chunks, "\n")
    return text, html


def _try_parse_datetime(header_value: str | None) -> datetime | None:
    if header_value is None:
        return None
    try:
        return ensure_utc(parsedate_to_datetime(header_value))
    except (TypeError, ValueError):
        return None


__all__ = ["EmailParser", "clean_body"]
