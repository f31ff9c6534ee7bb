"""Application configuration models and loader utilities."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, cast

from dotenv import dotenv_values
from pydantic import BaseModel, Field, field_validator


class ConfigurationError(RuntimeError):
    """Raised when a mail section is only partially configured."""


class AgentSettings(BaseModel):
    """Identity of the agent and conversation the mailbox belongs to."""

    user_id: str = Field(default="local-user", description="Owner of the mailbox")
    agent_id: str = Field(default="local-agent", description="Agent identifier")
    agent_name: str = Field(default="Inbox Agent", description="Signature name")
    room_id: str = Field(default="email", description="Memory room for mail records")
    best_regard: str = Field(default="Best regards", description="Reply closing line")
    position: str | None = Field(default=None, description="Signature job title")
    email_address: str | None = Field(default=None, description="Signature address")
    company_name: str | None = Field(default=None, description="Signature company")
    reply_instructions: str | None = Field(
        default=None, description="Extra guidance added to reply prompts"
    )


class ImapSettings(BaseModel):
    """Settings controlling IMAP connectivity."""

    host: str | None = Field(default=None, description="IMAP hostname")
    port: int = Field(default=993, description="IMAP port, typically 993 for SSL")
    username: str | None = Field(default=None, description="Account username")
    app_password: str | None = Field(default=None, description="Account password")
    mailbox: str = Field(default="INBOX", description="Mailbox to monitor")
    use_ssl: bool = Field(default=True, description="Whether to enforce SSL")
    timeout_seconds: float = Field(
        default=30.0, gt=0, description="Socket timeout for IMAP commands"
    )


class SmtpSettings(BaseModel):
    """Settings for outgoing mail."""

    provider: Literal["smtp", "gmail"] | None = Field(
        default=None, description="Outgoing transport; unset disables sending"
    )
    host: str | None = Field(default=None, description="SMTP hostname")
    port: int = Field(default=465, description="SMTP port")
    username: str | None = Field(default=None, description="SMTP login")
    password: str | None = Field(default=None, description="SMTP password")
    from_name: str | None = Field(default=None, description="Display name")
    use_tls: bool | None = Field(
        default=None,
        description="Force STARTTLS; when unset port 465 means implicit SSL",
    )
    timeout_seconds: float = Field(default=30.0, gt=0, description="SMTP timeout")


class SessionSettings(BaseModel):
    """Initial fetch bounds, IDLE cadence, and reconnect policy."""

    initial_fetch_window_hours: int = Field(
        default=24, ge=1, description="Backfill unseen mail received this recently"
    )
    initial_fetch_limit: int = Field(
        default=25, ge=1, description="Maximum messages processed on backfill"
    )
    fetch_chunk_size: int = Field(
        default=10, ge=1, description="Messages fetched concurrently per chunk"
    )
    mark_as_read: bool = Field(
        default=True, description="Flag processed messages as \\Seen"
    )
    idle_renewal_seconds: int = Field(
        default=300, ge=1, description="Re-issue IDLE after this many seconds"
    )
    max_reconnect_attempts: int = Field(
        default=5, ge=1, description="Transient failures tolerated before disabling"
    )
    base_reconnect_delay_seconds: float = Field(
        default=5.0, ge=0, description="First backoff delay, doubled per failure"
    )


class HealthSettings(BaseModel):
    """Periodic health polling and connectivity feed handling."""

    check_interval_seconds: float = Field(default=300.0, gt=0)
    stale_after_seconds: float = Field(
        default=900.0, gt=0, description="Reset when no fetch succeeded this long"
    )
    change_feed_debounce_seconds: float = Field(default=2.0, ge=0)


class DispatcherSettings(BaseModel):
    """Memory batching and notification policy."""

    min_batch_size: int = Field(default=5, ge=1)
    max_batch_size: int = Field(default=20, ge=1)
    short_delay_seconds: float = Field(default=2.5, ge=0)
    long_delay_seconds: float = Field(default=10.0, ge=0)
    busy_queue_threshold: int = Field(
        default=10, ge=0, description="Queue length above which the short delay applies"
    )
    notification_interval_seconds: float = Field(default=60.0, gt=0)
    important_senders: list[str] = Field(
        default_factory=list, description="Sender addresses treated as important"
    )
    urgent_keywords: list[str] = Field(default_factory=lambda: ["urgent"])

    @field_validator("important_senders", "urgent_keywords", mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        """Accept comma separated strings from environment files."""
        if isinstance(value, str):
            return [item.strip().lower() for item in value.split(",") if item.strip()]
        return value


class WorkflowSettings(BaseModel):
    """Lookback windows and limits for the conversational email actions."""

    check_lookback_hours: int = Field(default=24, ge=1)
    check_count: int = Field(default=50, ge=1)
    confirm_lookback_days: int = Field(default=7, ge=1)
    confirm_count: int = Field(default=100, ge=1)
    pending_reply_ttl_hours: int = Field(
        default=168, ge=1, description="Drafts older than this cannot be confirmed"
    )
    knowledge_limit: int = Field(default=5, ge=0)
    preview_chars: int = Field(default=500, ge=1)


class LlmSettings(BaseModel):
    """Settings for the local LLM provider."""

    base_url: str | None = Field(
        default="http://localhost:11434", description="Ollama server URL"
    )
    model: str | None = Field(default="llama3.1:8b", description="Model identifier")
    timeout_seconds: int = Field(
        default=30, description="Request timeout for LLM calls"
    )
    temperature: float = Field(
        default=0.2,
        ge=0.0,
        le=1.0,
        description="Sampling temperature for LLM completions",
    )
    max_output_tokens: int | None = Field(
        default=512,
        ge=32,
        description="Maximum tokens to request from the provider",
    )
    fallback_enabled: bool = Field(
        default=True, description="Use deterministic fallback when LLM fails"
    )


class StorageSettings(BaseModel):
    """Settings for local persistence."""

    db_path: Path = Field(
        default=Path("./inbox_agent.db"), description="SQLite database path"
    )


class LoggingSettings(BaseModel):
    """Logging preferences."""

    level: str = Field(default="INFO", description="Root logging level")
    structured: bool = Field(
        default=False, description="Toggle JSON structured logging"
    )


class AppSettings(BaseModel):
    """Aggregated application configuration."""

    agent: AgentSettings = Field(default_factory=AgentSettings)
    imap: ImapSettings = Field(default_factory=ImapSettings)
    smtp: SmtpSettings = Field(default_factory=SmtpSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    health: HealthSettings = Field(default_factory=HealthSettings)
    dispatcher: DispatcherSettings = Field(default_factory=DispatcherSettings)
    workflow: WorkflowSettings = Field(default_factory=WorkflowSettings)
    llm: LlmSettings = Field(default_factory=LlmSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


ENV_PREFIX = "INBOX_AGENT_"
GMAIL_SMTP_HOST = "smtp.gmail.com"
GMAIL_SMTP_PORT = 465


def resolve_incoming_settings(settings: ImapSettings) -> ImapSettings | None:
    """Return ``settings`` when IMAP is fully configured, ``None`` when absent."""
    provided = {
        "host": settings.host,
        "username": settings.username,
        "app_password": settings.app_password,
    }
    if not any(provided.values()):
        return None
    missing = sorted(name for name, value in provided.items() if not value)
    if missing:
        raise ConfigurationError(
            f"Incomplete IMAP configuration, missing: {', '.join(missing)}"
        )
    return settings


def resolve_outgoing_settings(settings: SmtpSettings) -> SmtpSettings | None:
    """Return concrete SMTP settings, expanding the ``gmail`` provider shortcut."""
    if settings.provider is None:
        return None
    if not settings.username or not settings.password:
        raise ConfigurationError("Outgoing mail requires a username and password")
    if settings.provider == "gmail":
        return settings.model_copy(
            update={"host": GMAIL_SMTP_HOST, "port": GMAIL_SMTP_PORT, "use_tls": False}
        )
    if not settings.host:
        raise ConfigurationError("SMTP provider requires a host")
    use_tls = settings.use_tls
    if use_tls is None:
        use_tls = settings.port != 465
    return settings.model_copy(update={"use_tls": use_tls})


def _normalize_key(raw_key: str) -> list[str]:
    """Convert an environment variable key into a nested attribute path."""
    trimmed = raw_key.removeprefix(ENV_PREFIX)
    return [segment.lower() for segment in trimmed.split("__") if segment]


def _merge_into_tree(tree: dict[str, Any], path: list[str], value: Any) -> None:
    """Assign a value to a nested dictionary given a path."""
    cursor = tree
    for segment in path[:-1]:
        next_node = cursor.setdefault(segment, {})
        cursor = cast(dict[str, Any], next_node)
    cursor[path[-1]] = value


def _coerce_value(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    if value == "":
        return None
    lowercase_value = value.lower()
    if lowercase_value == "true":
        return True
    if lowercase_value == "false":
        return False
    return value


def _collect_env_values(
    env_file: Path | str | None, *, include_environment: bool = True
) -> dict[str, Any]:
    """Load configuration values from environment variables and optional file."""
    collected: dict[str, Any] = {}

    file_values = {}
    if env_file:
        env_path = Path(env_file)
        if env_path.is_file():
            file_values = {
                key: value
                for key, value in dotenv_values(env_path).items()
                if key and key.startswith(ENV_PREFIX)
            }

    env_values = {}
    if include_environment:
        env_values = {
            key: value
            for key, value in os.environ.items()
            if key.startswith(ENV_PREFIX)
        }

    combined: dict[str, Any] = {**file_values, **env_values}

    for key, value in combined.items():
        path = _normalize_key(key)
        if not path:
            continue
        _merge_into_tree(collected, path, _coerce_value(value))

    return collected


@lru_cache(maxsize=1)
def load_app_settings(
    env_file: Path | str | None = None,
    *,
    include_environment: bool = True,
    **overrides: Any,
) -> AppSettings:
    """Load application settings, applying env files and overrides."""
    collected = _collect_env_values(env_file, include_environment=include_environment)
    if overrides:
        collected.update(overrides)
    return AppSettings.model_validate(collected)


__all__ = [
    "AgentSettings",
    "AppSettings",
    "ConfigurationError",
    "DispatcherSettings",
    "HealthSettings",
    "ImapSettings",
    "LlmSettings",
    "LoggingSettings",
    "SessionSettings",
    "SmtpSettings",
    "StorageSettings",
    "WorkflowSettings",
    "load_app_settings",
    "resolve_incoming_settings",
    "resolve_outgoing_settings",
]
