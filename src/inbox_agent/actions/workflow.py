"""Conversational email actions: check, draft, confirm and custom replies."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from ..client import EmailClient
from ..core.config import AgentSettings, WorkflowSettings
from ..core.datetime_utils import serialize_datetime, utc_now
from ..core.identifiers import is_canonical_uuid, normalize_email_id
from ..core.interfaces import EmailNotConfiguredError, KnowledgeStore, MemoryStore
from ..core.models import (
    EMAIL_COLLECTION,
    EmailRecord,
    KnowledgeSnippet,
    Memory,
    MemoryContent,
    MemorySource,
    OutgoingMessage,
    PendingReply,
    SendResult,
)
from ..intelligence.drafter import DraftingError, ReplyDrafter
from .formatting import format_draft, format_listing, reply_subject
from .intents import (
    CheckIntent,
    CheckMode,
    ConfirmReplyIntent,
    ContextRef,
    CustomReplyIntent,
    EmailRef,
    ExplicitRef,
    GenerateReplyIntent,
    Intent,
    OrdinalRef,
    SendEmailIntent,
    parse_intent,
    parse_ref,
)

LOGGER = logging.getLogger(__name__)

MISSING_TARGET_TEXT = (
    "Please specify a valid email UUID to reply to (e.g., 'reply to emailId: <uuid>'). "
    "You can use 'check emails' to see available email UUIDs."
)
MISSING_RECIPIENT_TEXT = (
    "Please provide a recipient email address (e.g., 'to: example@domain.com')."
)


# Conversation states -------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Idle:
    """Nothing in flight."""


@dataclass(frozen=True, slots=True)
class AwaitingEmailIdForReply:
    """A reply was requested without a usable target."""

    body: str | None = None


@dataclass(frozen=True, slots=True)
class PendingReplyDrafted:
    """A draft exists and waits for confirmation."""

    pending: PendingReply


@dataclass(frozen=True, slots=True)
class Sent:
    """The last reply went out."""

    email_id: str
    to: str
    pending_reply_id: str | None = None


WorkflowState = Idle | AwaitingEmailIdForReply | PendingReplyDrafted | Sent


@dataclass(slots=True)
class ActionResult:
    """Outcome of a handled request."""

    success: bool
    text: str
    action: str
    data: dict[str, Any] = field(default_factory=dict)


class _ActionFailure(Exception):
    """Internal signal carrying a user-facing failure message."""

    def __init__(self, text: str, *, email_id: str | None = None) -> None:
        super().__init__(text)
        self.text = text
        self.email_id = email_id


# pylint: disable=too-many-instance-attributes
class EmailActionWorkflow:
    """Turn chat requests into mail actions backed by the memory store.

    Drafted replies are persisted as ``GENERATE_EMAIL_REPLY`` memories and
    become consumed once a ``REPLY_EMAIL`` memory references their id, so a
    draft is sent at most once even across restarts. Every failure is
    reported as an unsuccessful :class:`ActionResult` and leaves an
    ``EMAIL_ERROR`` audit memory behind.
    """

    def __init__(
        self,
        client: EmailClient,
        store: MemoryStore,
        drafter: ReplyDrafter,
        settings: WorkflowSettings,
        *,
        agent: AgentSettings,
        knowledge: KnowledgeStore | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._client = client
        self._store = store
        self._drafter = drafter
        self._settings = settings
        self._agent = agent
        self._knowledge = knowledge
        self._clock = clock
        self._state: WorkflowState = Idle()
        self._lock = asyncio.Lock()
        # Drafts sent by this process, honoured even if the sent record is lost.
        self._consumed: set[str] = set()

    @property
    def state(self) -> WorkflowState:
        """Current conversation state."""
        return self._state

    # Public API ---------------------------------------------------------------
    async def handle(self, text: str) -> ActionResult | None:
        """Parse ``text`` and run the matching action; ``None`` when unrelated."""
        intent = parse_intent(text)
        if intent is None and isinstance(self._state, AwaitingEmailIdForReply):
            intent = self._resume_awaiting(text)
        if intent is None:
            return None
        return await self.dispatch(intent)

    async def dispatch(self, intent: Intent) -> ActionResult:
        """Run an already parsed ``intent``."""
        if isinstance(intent, CheckIntent):
            return await self.check_emails(intent.mode)
        if isinstance(intent, GenerateReplyIntent):
            return await self.generate_reply(intent.ref)
        if isinstance(intent, ConfirmReplyIntent):
            return await self.confirm_reply(intent.email_id)
        if isinstance(intent, CustomReplyIntent):
            return await self.custom_reply(intent.ref, intent.body)
        return await self.send_email(intent)

    async def check_emails(self, mode: CheckMode = "summary") -> ActionResult:
        """List mail received inside the check window."""
        return await self._run("check", self._check, mode)

    async def generate_reply(self, ref: EmailRef | None) -> ActionResult:
        """Draft a reply for the referenced email and hold it for confirmation."""
        return await self._run("generate-reply", self._generate, ref)

    async def confirm_reply(self, email_id: str | None = None) -> ActionResult:
        """Send the most recent active draft, optionally scoped to ``email_id``."""
        return await self._run("confirm-reply", self._confirm, email_id)

    async def custom_reply(self, ref: EmailRef | None, body: str) -> ActionResult:
        """Send ``body`` as a reply right away."""
        return await self._run("custom-reply", self._custom, ref, body)

    async def send_email(self, intent: SendEmailIntent) -> ActionResult:
        """Send a freshly composed message."""
        return await self._run("send-email", self._send_new, intent)

    # Actions ------------------------------------------------------------------
    async def _check(self, mode: CheckMode) -> ActionResult:
        await self._client.sync()
        hours = self._settings.check_lookback_hours
        records = await self._recent_emails(
            timedelta(hours=hours), self._settings.check_count
        )
        text = format_listing(
            records, hours=hours, mode=mode, preview_chars=self._settings.preview_chars
        )
        listed = [_listing_entry(position, record) for position, record in enumerate(records, 1)]
        await self._remember(
            MemorySource.CHECK_EMAIL,
            text,
            metadata={"mode": mode, "emails": listed},
        )
        self._state = Idle()
        return ActionResult(True, text, "check", {"emails": listed})

    async def _generate(self, ref: EmailRef | None) -> ActionResult:
        async with self._lock:
            email_id = await self._resolve_target(ref)
            if email_id is None:
                self._state = AwaitingEmailIdForReply()
                raise _ActionFailure(MISSING_TARGET_TEXT)

            existing = await self._active_pending(email_id)
            if existing:
                pending = existing[0]
                self._state = PendingReplyDrafted(pending)
                LOGGER.info("Reusing pending reply %s for %s", pending.id, email_id)
                return ActionResult(
                    True,
                    format_draft(email_id, pending.body),
                    "generate-reply",
                    {"emailId": email_id, "pendingReplyId": pending.id, "existing": True},
                )

            record = await self._require_email(email_id)
            knowledge = await self._search_knowledge(record)
            try:
                draft = await self._drafter.draft(record, knowledge)
            except DraftingError as exc:
                raise _ActionFailure(
                    f"Sorry, I couldn't generate a reply for email UUID: {email_id}. {exc}",
                    email_id=email_id,
                ) from exc

            reference = record.message_id or email_id
            references = tuple(record.references)
            if reference not in references:
                references = (*references, reference)
            pending = PendingReply.with_ttl(
                timedelta(hours=self._settings.pending_reply_ttl_hours),
                created_at=self._clock(),
                target_email_uuid=email_id,
                to=record.sender.address,  # type: ignore[union-attr]
                subject=reply_subject(record.subject),
                body=draft.body,
                thread_id=record.thread_id,
                references=references,
                in_reply_to=reference,
            )
            text = format_draft(email_id, draft.body, knowledge)
            await self._remember(
                MemorySource.GENERATE_REPLY,
                text,
                thought=f"Drafted reply with {draft.provider}",
                metadata={
                    "emailId": email_id,
                    "pendingReplyId": pending.id,
                    "pendingReply": pending.to_dict(),
                    "status": "pending",
                    "provider": draft.provider,
                    "usedFallback": draft.used_fallback,
                    "knowledge": [snippet.source for snippet in knowledge if snippet.source],
                },
            )
            self._state = PendingReplyDrafted(pending)
            LOGGER.info("Drafted reply %s for %s", pending.id, email_id)
            return ActionResult(
                True,
                text,
                "generate-reply",
                {"emailId": email_id, "pendingReplyId": pending.id, "existing": False},
            )

    async def _confirm(self, email_id: str | None) -> ActionResult:
        async with self._lock:
            target = normalize_email_id(email_id) if email_id else None
            candidates = await self._active_pending(target)
            if not candidates:
                self._state = Idle()
                scope = f" for email UUID: {target}" if target else ""
                raise _ActionFailure(
                    f"No pending reply found{scope}. Please initiate a new reply with "
                    "'reply to emailId: <uuid>'.",
                    email_id=target,
                )
            pending = candidates[0]
            result = await self._deliver(
                OutgoingMessage(
                    to=(pending.to,),
                    subject=pending.subject,
                    text=pending.body,
                    in_reply_to=pending.in_reply_to,
                    references=pending.references,
                )
            )
            if not result.success:
                self._state = PendingReplyDrafted(pending)
                raise _ActionFailure(
                    f"Sorry, I couldn't send your reply to {pending.to}: {result.error}. "
                    "The draft is still pending; say 'confirm reply' to try again.",
                    email_id=pending.target_email_uuid,
                )
            self._consumed.add(pending.id)
            text = f"Your reply to {pending.to} has been sent."
            recorded = await self._record_sent(
                text,
                email_id=pending.target_email_uuid,
                to=pending.to,
                subject=pending.subject,
                result=result,
                consumed=[pending.id],
            )
            self._state = Sent(pending.target_email_uuid, pending.to, pending.id)
            return ActionResult(
                True,
                text,
                "confirm-reply",
                {
                    "emailId": pending.target_email_uuid,
                    "pendingReplyId": pending.id,
                    "messageId": result.message_id,
                    "recorded": recorded,
                },
            )

    async def _custom(self, ref: EmailRef | None, body: str) -> ActionResult:
        async with self._lock:
            email_id = await self._resolve_target(ref)
            if email_id is None:
                self._state = AwaitingEmailIdForReply(body=body)
                raise _ActionFailure(MISSING_TARGET_TEXT)
            record = await self._require_email(email_id)
            sender = record.sender.address  # type: ignore[union-attr]
            reference = record.message_id or email_id
            references = tuple(record.references)
            if reference not in references:
                references = (*references, reference)
            result = await self._deliver(
                OutgoingMessage(
                    to=(sender,),
                    subject=reply_subject(record.subject),
                    text=body,
                    in_reply_to=reference,
                    references=references,
                )
            )
            if not result.success:
                raise _ActionFailure(
                    f"Sorry, I couldn't send your reply to {sender}: {result.error}.",
                    email_id=email_id,
                )
            consumed = [pending.id for pending in await self._active_pending(email_id)]
            self._consumed.update(consumed)
            text = f"Your reply with message '{body}' has been sent to {sender}."
            recorded = await self._record_sent(
                text,
                email_id=email_id,
                to=sender,
                subject=reply_subject(record.subject),
                result=result,
                consumed=consumed,
                custom=True,
            )
            self._state = Sent(email_id, sender)
            return ActionResult(
                True,
                text,
                "custom-reply",
                {
                    "emailId": email_id,
                    "messageId": result.message_id,
                    "consumed": consumed,
                    "recorded": recorded,
                },
            )

    async def _send_new(self, intent: SendEmailIntent) -> ActionResult:
        if not intent.to:
            raise _ActionFailure(MISSING_RECIPIENT_TEXT)
        result = await self._deliver(
            OutgoingMessage(
                to=intent.to,
                subject=intent.subject,
                text=intent.body,
                cc=intent.cc,
            )
        )
        recipients = ", ".join(intent.to)
        if not result.success:
            raise _ActionFailure(
                f"Sorry, I couldn't send the email to {recipients}: {result.error}."
            )
        text = f"Email sent to {recipients}\nSubject: {intent.subject}\nBody: {intent.body}"
        await self._remember(
            MemorySource.SEND_EMAIL,
            text,
            metadata={
                "to": list(intent.to),
                "cc": list(intent.cc),
                "subject": intent.subject,
                "messageId": result.message_id,
                "status": "sent",
            },
        )
        return ActionResult(True, text, "send-email", {"messageId": result.message_id})

    # Internal helpers ---------------------------------------------------------
    async def _run(self, action: str, handler: Callable[..., Any], *args: Any) -> ActionResult:
        try:
            return await handler(*args)
        except _ActionFailure as failure:
            LOGGER.info("Email action %s failed: %s", action, failure.text)
            await self._audit(action, failure.text, failure.text, failure.email_id)
            return ActionResult(False, failure.text, action)
        except EmailNotConfiguredError as exc:
            text = f"Sorry, email is not available right now: {exc}."
            LOGGER.warning("Email action %s unavailable: %s", action, exc)
            await self._audit(action, text, str(exc), None)
            return ActionResult(False, text, action)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.exception("Email action %s crashed", action)
            text = f"Sorry, something went wrong while handling your email request: {exc}"
            await self._audit(action, text, repr(exc), None)
            return ActionResult(False, text, action)

    def _resume_awaiting(self, text: str) -> Intent | None:
        ref = parse_ref(text)
        if not isinstance(ref, ExplicitRef):
            return None
        awaiting = self._state
        if isinstance(awaiting, AwaitingEmailIdForReply) and awaiting.body:
            return CustomReplyIntent(ref=ref, body=awaiting.body)
        return GenerateReplyIntent(ref=ref)

    async def _resolve_target(self, ref: EmailRef | None) -> str | None:
        if ref is None:
            return None
        if isinstance(ref, ExplicitRef):
            email_id = normalize_email_id(ref.email_id)
        else:
            email_id = await self._from_latest_listing(ref)
        if email_id is None or not is_canonical_uuid(email_id):
            return None
        return email_id

    async def _from_latest_listing(self, ref: OrdinalRef | ContextRef) -> str | None:
        since = self._clock() - timedelta(hours=self._settings.check_lookback_hours)
        listings = await self._store.get_memories(
            room_id=self._agent.room_id,
            count=1,
            start=since,
            source=MemorySource.CHECK_EMAIL,
        )
        if not listings:
            return None
        emails = listings[0].content.metadata.get("emails") or []
        position = ref.position if isinstance(ref, OrdinalRef) else 1
        if position < 1 or position > len(emails):
            return None
        entry = emails[position - 1]
        email_id = entry.get("emailId") if isinstance(entry, dict) else None
        return normalize_email_id(str(email_id)) if email_id else None

    async def _recent_emails(self, window: timedelta, count: int) -> list[EmailRecord]:
        memories = await self._store.get_memories(
            room_id=self._agent.room_id,
            count=count,
            start=self._clock() - window,
            collection=EMAIL_COLLECTION,
        )
        records: list[EmailRecord] = []
        seen: set[str] = set()
        for memory in memories:
            record = EmailRecord.from_metadata(memory.content.metadata)
            if record is None or record.email_id in seen:
                continue
            seen.add(record.email_id)
            records.append(record)
        return records

    async def _require_email(self, email_id: str) -> EmailRecord:
        records = await self._recent_emails(
            timedelta(days=self._settings.confirm_lookback_days),
            self._settings.confirm_count,
        )
        record = next(
            (item for item in records if normalize_email_id(item.email_id) == email_id),
            None,
        )
        if record is None:
            raise _ActionFailure(
                f"Could not find email with UUID: {email_id}. "
                "Please use 'check emails' to verify available email UUIDs.",
                email_id=email_id,
            )
        if record.sender is None or not record.sender.address:
            raise _ActionFailure(
                f"Could not reply: No sender address found for email UUID: {email_id}.",
                email_id=email_id,
            )
        return record

    async def _active_pending(self, email_id: str | None) -> list[PendingReply]:
        now = self._clock()
        since = now - timedelta(days=self._settings.confirm_lookback_days)
        drafts = await self._store.get_memories(
            room_id=self._agent.room_id,
            count=self._settings.confirm_count,
            start=since,
            source=MemorySource.GENERATE_REPLY,
        )
        sent = await self._store.get_memories(
            room_id=self._agent.room_id,
            count=None,
            start=since,
            source=MemorySource.REPLY_EMAIL,
        )
        consumed = set(self._consumed)
        for memory in sent:
            consumed.update(memory.content.metadata.get("pendingReplyIds") or ())

        active: list[PendingReply] = []
        for memory in drafts:
            payload = memory.content.metadata.get("pendingReply")
            if not isinstance(payload, dict):
                continue
            try:
                pending = PendingReply.from_dict(payload)
            except (KeyError, TypeError) as exc:
                LOGGER.warning("Skipping malformed pending reply %s: %s", memory.id, exc)
                continue
            if pending.id in consumed or pending.is_expired(now):
                continue
            if email_id and normalize_email_id(pending.target_email_uuid) != email_id:
                continue
            active.append(pending)
        return active

    async def _search_knowledge(self, record: EmailRecord) -> Sequence[KnowledgeSnippet]:
        limit = self._settings.knowledge_limit
        if self._knowledge is None or limit == 0:
            return ()
        query = record.body or record.subject or ""
        try:
            return list(await self._knowledge.search(query, limit))[:limit]
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.warning("Knowledge search failed for %s: %s", record.email_id, exc)
            return ()

    async def _deliver(self, message: OutgoingMessage) -> SendResult:
        try:
            return await self._client.send(message)
        except EmailNotConfiguredError as exc:
            return SendResult(success=False, error=str(exc))

    async def _record_sent(
        self,
        text: str,
        *,
        email_id: str,
        to: str,
        subject: str,
        result: SendResult,
        consumed: list[str],
        custom: bool = False,
    ) -> bool:
        try:
            await self._remember(
                MemorySource.REPLY_EMAIL,
                text,
                metadata={
                    "emailId": email_id,
                    "pendingReplyIds": consumed,
                    "toAddress": to,
                    "subject": subject,
                    "messageId": result.message_id,
                    "custom": custom,
                    "status": "sent",
                    "sentAt": serialize_datetime(self._clock()),
                },
            )
        except Exception:  # pylint: disable=broad-except
            LOGGER.exception("Reply for %s was sent but could not be recorded", email_id)
            return False
        return True

    async def _audit(self, action: str, text: str, reason: str, email_id: str | None) -> None:
        try:
            await self._remember(
                MemorySource.EMAIL_ERROR,
                text,
                thought=reason,
                metadata={"action": action, "emailId": email_id, "status": "failed"},
            )
        except Exception:  # pylint: disable=broad-except
            LOGGER.exception("Could not record failure of %s", action)

    async def _remember(
        self,
        source: str,
        text: str,
        *,
        thought: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        await self._store.create_memory(
            Memory(
                agent_id=self._agent.agent_id,
                room_id=self._agent.room_id,
                user_id=self._agent.user_id,
                content=MemoryContent(
                    text=text,
                    source=source,
                    thought=thought,
                    metadata=metadata or {},
                ),
                created_at=self._clock(),
            )
        )


def _listing_entry(position: int, record: EmailRecord) -> dict[str, Any]:
    return {
        "position": position,
        "emailId": record.email_id,
        "messageId": record.message_id,
        "from": record.sender.address if record.sender else None,
        "subject": record.subject,
        "date": serialize_datetime(record.date),
    }


__all__ = [
    "ActionResult",
    "AwaitingEmailIdForReply",
    "EmailActionWorkflow",
    "Idle",
    "PendingReplyDrafted",
    "Sent",
    "WorkflowState",
]
