"""SMTP client for sending emails with proper error handling and security."""

from __future__ import annotations

import logging
import mimetypes
import smtplib
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, make_msgid
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ..core.models import OutgoingMessage

if TYPE_CHECKING:
    from ..core.config import SmtpSettings

LOGGER = logging.getLogger(__name__)


class SmtpError(Exception):
    """Base exception for SMTP operations.

    Raised when SMTP connection, authentication, or sending fails.
    """


class SmtpClient:
    """SMTP client for sending emails.

    Provides context manager interface for automatic connection management.
    Supports both TLS (STARTTLS) and SSL connections.

    Example:
        >>> settings = SmtpSettings(provider="smtp", host="smtp.example.com", ...)
        >>> with SmtpClient(settings) as client:
        ...     client.send(OutgoingMessage(to=("user@example.com",), ...))
    """

    def __init__(
        self,
        settings: SmtpSettings,
        *,
        smtp_factory: Any = smtplib.SMTP,
        smtp_ssl_factory: Any = smtplib.SMTP_SSL,
    ) -> None:
        """Initialize SMTP client with resolved configuration.

        Args:
            settings: SMTP configuration settings
            smtp_factory: Constructor for plain/STARTTLS connections
            smtp_ssl_factory: Constructor for implicit SSL connections
        """
        self._settings = settings
        self._smtp_factory = smtp_factory
        self._smtp_ssl_factory = smtp_ssl_factory
        self._connection: smtplib.SMTP | None = None

    def __enter__(self) -> SmtpClient:
        """Enter context manager, establishing connection."""
        self.connect()
        return self

    def __exit__(self, *args: object) -> None:
        """Exit context manager, closing connection."""
        self.disconnect()

    @property
    def sender_address(self) -> str:
        """Envelope sender address."""
        return self._settings.username or ""

    def connect(self) -> None:
        """Establish SMTP connection and authenticate.

        Raises:
            SmtpError: If connection or authentication fails
        """
        if not self._settings.host:
            raise SmtpError("SMTP host not configured")

        LOGGER.info(
            "Attempting SMTP connection to %s:%d",
            self._settings.host,
            self._settings.port,
        )

        try:
            if self._settings.use_tls:
                LOGGER.debug("Using STARTTLS for SMTP connection")
                self._connection = self._smtp_factory(
                    self._settings.host,
                    self._settings.port,
                    timeout=self._settings.timeout_seconds,
                )
                self._connection.starttls()
            else:
                LOGGER.debug("Using SSL for SMTP connection")
                self._connection = self._smtp_ssl_factory(
                    self._settings.host,
                    self._settings.port,
                    timeout=self._settings.timeout_seconds,
                )

            if self._settings.username and self._settings.password:
                LOGGER.debug("Authenticating as %s", self._settings.username)
                self._connection.login(
                    self._settings.username,
                    self._settings.password,
                )
                LOGGER.info("SMTP authentication successful")

            LOGGER.info("Connected to SMTP server: %s", self._settings.host)

        except smtplib.SMTPAuthenticationError as exc:
            LOGGER.error("SMTP authentication failed: %s", exc)
            raise SmtpError(f"SMTP authentication failed: {exc}") from exc
        except smtplib.SMTPConnectError as exc:
            LOGGER.error("SMTP connection failed: %s", exc)
            raise SmtpError(f"Failed to connect to SMTP server: {exc}") from exc
        except smtplib.SMTPException as exc:
            LOGGER.error("SMTP error: %s", exc)
            raise SmtpError(f"SMTP error: {exc}") from exc
        except OSError as exc:
            LOGGER.error("Network error connecting to SMTP server: %s", exc)
            raise SmtpError(f"Network error: {exc}") from exc

    def disconnect(self) -> None:
        """Close SMTP connection gracefully."""
        if self._connection:
            try:
                self._connection.quit()
                LOGGER.debug("SMTP connection closed")
            except (smtplib.SMTPException, OSError) as exc:
                LOGGER.warning("Error closing SMTP connection: %s", exc)
            finally:
                self._connection = None

    def send(self, message: OutgoingMessage) -> tuple[str, list[str], list[str]]:
        """Send an email message.

        Args:
            message: The email message to send

        Returns:
            The generated Message-ID with accepted and rejected recipients

        Raises:
            SmtpError: If sending fails or not connected
        """
        if not self._connection:
            raise SmtpError("Not connected to SMTP server")
        recipients = list(message.recipients)
        if not recipients:
            raise SmtpError("Message has no recipients")

        LOGGER.info(
            "Preparing to send email to %s: %s", ", ".join(message.to), message.subject
        )

        try:
            mime_message = self.build_mime_message(message)
            LOGGER.debug("Email headers: %s", dict(mime_message.items()))
            refused = self._connection.send_message(
                mime_message, from_addr=self.sender_address, to_addrs=recipients
            )
        except smtplib.SMTPRecipientsRefused as exc:
            LOGGER.error("All recipients refused: %s", exc)
            raise SmtpError(f"All recipients refused: {exc}") from exc
        except smtplib.SMTPSenderRefused as exc:
            LOGGER.error("Sender refused: %s", exc)
            raise SmtpError(f"Sender refused: {exc}") from exc
        except smtplib.SMTPDataError as exc:
            LOGGER.error("SMTP data error: %s", exc)
            raise SmtpError(f"SMTP data error: {exc}") from exc
        except smtplib.SMTPException as exc:
            LOGGER.error("Failed to send email: %s", exc)
            raise SmtpError(f"Failed to send email: {exc}") from exc
        except OSError as exc:
            LOGGER.error("Network error while sending email: %s", exc)
            raise SmtpError(f"Network error: {exc}") from exc

        refused = refused or {}
        rejected = sorted(refused)
        if rejected:
            LOGGER.warning("Some recipients were refused: %s", refused)
        accepted = [address for address in recipients if address not in refused]
        LOGGER.info("Email sent to %s: %s", ", ".join(accepted), message.subject)
        return str(mime_message["Message-ID"]), accepted, rejected

    def build_mime_message(self, message: OutgoingMessage) -> MIMEMultipart:
        """Build the MIME structure for ``message``.

        Args:
            message: Source email message

        Returns:
            MIME multipart message ready to send
        """
        mime_msg = MIMEMultipart("mixed")
        from_address = self.sender_address
        if self._settings.from_name:
            from_address = formataddr((self._settings.from_name, from_address))

        mime_msg["From"] = from_address
        mime_msg["To"] = ", ".join(message.to)
        if message.cc:
            mime_msg["Cc"] = ", ".join(message.cc)
        if message.reply_to:
            mime_msg["Reply-To"] = message.reply_to
        mime_msg["Subject"] = message.subject
        mime_msg["Date"] = formatdate(localtime=False)
        domain = self.sender_address.rpartition("@")[2] or None
        mime_msg["Message-ID"] = make_msgid(domain=domain)

        # Thread headers for proper email threading
        if message.in_reply_to:
            mime_msg["In-Reply-To"] = message.in_reply_to
        if message.references:
            mime_msg["References"] = " ".join(message.references)
        for name, value in message.headers.items():
            mime_msg[name] = value

        body = MIMEMultipart("alternative")
        body.attach(MIMEText(message.text or "", "plain", "utf-8"))
        if message.html:
            body.attach(MIMEText(message.html, "html", "utf-8"))
        mime_msg.attach(body)

        for attachment in message.attachments:
            mime_msg.attach(_load_attachment(Path(attachment)))

        return mime_msg


def _load_attachment(path: Path) -> MIMEApplication:
    try:
        payload = path.read_bytes()
    except OSError as exc:
        raise SmtpError(f"Unable to read attachment {path}: {exc}") from exc
    content_type, _ = mimetypes.guess_type(path.name)
    subtype = (content_type or "application/octet-stream").split("/", 1)[1]
    part = MIMEApplication(payload, _subtype=subtype)
    part.add_header("Content-Disposition", "attachment", filename=path.name)
    return part


__all__ = ["SmtpClient", "SmtpError"]
