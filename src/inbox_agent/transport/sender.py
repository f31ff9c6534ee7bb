"""Stateless outgoing mail sender."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from ..core.config import SmtpSettings
from ..core.models import OutgoingMessage, SendResult
from .smtp_client import SmtpClient, SmtpError

LOGGER = logging.getLogger(__name__)


class OutgoingMailSender:
    """Send one message per call over a fresh SMTP session.

    The sender never retries and never raises for delivery problems; the
    outcome is always reported through :class:`SendResult`.
    """

    def __init__(
        self,
        settings: SmtpSettings,
        *,
        client_factory: Callable[[SmtpSettings], SmtpClient] = SmtpClient,
    ) -> None:
        self._settings = settings
        self._client_factory = client_factory

    @property
    def from_address(self) -> str | None:
        """Configured sender address."""
        return self._settings.username

    async def send(self, message: OutgoingMessage) -> SendResult:
        """Deliver ``message`` and describe the outcome."""
        return await asyncio.to_thread(self._send_blocking, message)

    def _send_blocking(self, message: OutgoingMessage) -> SendResult:
        try:
            with self._client_factory(self._settings) as client:
                message_id, accepted, rejected = client.send(message)
        except SmtpError as exc:
            LOGGER.warning("Email to %s not sent: %s", ", ".join(message.to), exc)
            return SendResult(success=False, error=str(exc))
        return SendResult(
            success=bool(accepted),
            message_id=message_id,
            accepted=tuple(accepted),
            rejected=tuple(rejected),
            error=None if accepted else "All recipients were rejected",
        )


__all__ = ["OutgoingMailSender"]
