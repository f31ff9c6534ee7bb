"""IMAP transport adapter providing mailbox access and IDLE waits."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator, Sequence
from datetime import datetime
from typing import Any, TypeVar

from imapclient import SEEN, IMAPClient
from imapclient.exceptions import IMAPClientAbortError, IMAPClientError, LoginError

from ..core.config import ImapSettings

LOGGER = logging.getLogger(__name__)

_T = TypeVar("_T")
_FETCH_KEY = b"BODY[]"
_NEW_MAIL_MARKER = b"EXISTS"


class ImapError(RuntimeError):
    """Wrap low level IMAP errors with additional context."""


class ImapAuthError(ImapError):
    """Credentials were rejected; retrying cannot succeed."""


class ImapNetworkError(ImapError):
    """Timeout, DNS, refused or dropped connection."""


class ImapTransport:
    """Blocking wrapper around ``imapclient`` for a single mailbox.

    Every method blocks on the network; async callers run them in a worker
    thread. Library exceptions are translated into :class:`ImapError`
    subclasses so callers can tell credential failures from network trouble.
    """

    def __init__(
        self,
        settings: ImapSettings,
        *,
        client_factory: Callable[..., Any] = IMAPClient,
    ) -> None:
        """Initialise the transport without opening a connection."""
        self._settings = settings
        self._client_factory = client_factory
        self._client: Any | None = None
        self._idling = False

    @property
    def mailbox(self) -> str:
        """Name of the monitored mailbox."""
        return self._settings.mailbox

    @property
    def connected(self) -> bool:
        """Whether a logged-in client is held."""
        return self._client is not None

    # Public API ---------------------------------------------------------------
    def connect(self) -> None:
        """Open the connection and authenticate."""
        if self._client is not None:
            return
        username = self._settings.username
        password = self._settings.app_password
        if not self._settings.host or username is None or password is None:
            raise ImapError("IMAP credentials are not configured")

        LOGGER.debug(
            "Connecting to IMAP host %s:%s (ssl=%s)",
            self._settings.host,
            self._settings.port,
            self._settings.use_ssl,
        )

        def _open() -> Any:
            client = self._client_factory(
                self._settings.host,
                port=self._settings.port,
                ssl=self._settings.use_ssl,
                use_uid=True,
                timeout=self._settings.timeout_seconds,
            )
            try:
                client.login(username, password)
            except BaseException:
                _safe_shutdown(client)
                raise
            return client

        self._client = self._call(_open, "connect")
        LOGGER.debug("Authenticated IMAP session for %s", username)

    def open_mailbox(self) -> int | None:
        """Select the mailbox and return its ``UIDNEXT`` when advertised."""
        client = self._require_connection()
        info = self._call(lambda: client.select_folder(self.mailbox), "select")
        uid_next = info.get(b"UIDNEXT") if isinstance(info, dict) else None
        return int(uid_next) if uid_next is not None else None

    def search_unseen_since(self, since: datetime) -> list[int]:
        """Return UIDs of unseen messages received on or after ``since``."""
        client = self._require_connection()
        criteria = ["UNSEEN", "SINCE", since.date()]
        return sorted(self._call(lambda: client.search(criteria), "search"))

    def search_after(self, last_uid: int) -> list[int]:
        """Return UIDs strictly greater than ``last_uid``."""
        client = self._require_connection()
        # ``N:*`` always matches the newest message even when its UID is lower.
        uids = self._call(
            lambda: client.search(["UID", f"{last_uid + 1}:*"]), "search"
        )
        return sorted(uid for uid in uids if uid > last_uid)

    def search_thread(self, reference: str) -> list[int]:
        """Return UIDs of messages whose ``References`` mention ``reference``."""
        client = self._require_connection()
        criteria = ["HEADER", "References", reference]
        return sorted(self._call(lambda: client.search(criteria), "search"))

    def fetch_messages(self, uids: Sequence[int]) -> dict[int, bytes]:
        """Return raw RFC822 payloads keyed by UID without setting ``\\Seen``."""
        if not uids:
            return {}
        client = self._require_connection()
        response = self._call(
            lambda: client.fetch(list(uids), ["BODY.PEEK[]"]), "fetch"
        )
        payloads: dict[int, bytes] = {}
        for uid, data in response.items():
            raw = data.get(_FETCH_KEY)
            if raw is None:
                LOGGER.warning("No RFC822 payload returned for UID %s", uid)
                continue
            payloads[int(uid)] = raw
        return payloads

    def mark_seen(self, uids: Sequence[int]) -> None:
        """Add the ``\\Seen`` flag to ``uids``."""
        if not uids:
            return
        client = self._require_connection()
        self._call(lambda: client.add_flags(list(uids), [SEEN]), "store")

    def wait_for_new_mail(self, timeout: float) -> bool:
        """Hold an IDLE command for up to ``timeout`` seconds.

        Returns ``True`` when the server announced new messages.
        """
        client = self._require_connection()

        def _idle() -> list[Any]:
            client.idle()
            self._idling = True
            try:
                return client.idle_check(timeout=timeout)
            finally:
                self._idling = False
                client.idle_done()

        responses = self._call(_idle, "idle")
        return _has_new_mail(responses)

    def logout(self) -> None:
        """Terminate the session, dropping the socket if a command is in flight."""
        client = self._client
        self._client = None
        if client is None:
            return
        if self._idling:
            LOGGER.debug("IMAP session is idling, shutting the socket down")
            _safe_shutdown(client)
            return
        try:
            client.logout()
        except (IMAPClientError, OSError) as exc:
            LOGGER.debug("IMAP logout raised; shutting down socket: %s", exc)
            _safe_shutdown(client)

    # Internal helpers ---------------------------------------------------------
    def _require_connection(self) -> Any:
        if self._client is None:
            raise ImapNetworkError("IMAP connection has not been established")
        return self._client

    def _call(self, operation: Callable[[], _T], action: str) -> _T:
        try:
            return operation()
        except LoginError as exc:
            raise ImapAuthError(f"IMAP authentication failed: {exc}") from exc
        except IMAPClientAbortError as exc:
            raise ImapNetworkError(f"IMAP connection aborted during {action}") from exc
        except IMAPClientError as exc:
            if "AUTHENTICATIONFAILED" in str(exc).upper():
                raise ImapAuthError(f"IMAP authentication failed: {exc}") from exc
            raise ImapError(f"IMAP {action} failed: {exc}") from exc
        except OSError as exc:
            raise ImapNetworkError(f"Network error during IMAP {action}: {exc}") from exc


def _safe_shutdown(client: Any) -> None:
    try:
        client.shutdown()
    except (IMAPClientError, OSError):  # pragma: no cover - socket already gone
        LOGGER.debug("IMAP shutdown raised; socket already closed")


def _has_new_mail(responses: Iterable[Any]) -> bool:
    for response in responses or ():
        if not isinstance(response, (tuple, list)) or len(response) < 2:
            continue
        marker = response[1]
        if isinstance(marker, str):
            marker = marker.encode()
        if marker == _NEW_MAIL_MARKER:
            return True
    return False


def chunked(items: Sequence[_T], size: int) -> Iterator[list[_T]]:
    """Yield successive lists of ``size`` elements."""
    bucket: list[_T] = []
    for item in items:
        bucket.append(item)
        if len(bucket) >= size:
            yield bucket
            bucket = []
    if bucket:
        yield bucket


__all__ = [
    "ImapAuthError",
    "ImapError",
    "ImapNetworkError",
    "ImapTransport",
    "chunked",
]
