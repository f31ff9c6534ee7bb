"""Conversational email actions."""

from .intents import (
    CheckIntent,
    ConfirmReplyIntent,
    ContextRef,
    CustomReplyIntent,
    ExplicitRef,
    GenerateReplyIntent,
    OrdinalRef,
    SendEmailIntent,
    parse_intent,
)
from .workflow import (
    ActionResult,
    AwaitingEmailIdForReply,
    EmailActionWorkflow,
    Idle,
    PendingReplyDrafted,
    Sent,
)

__all__ = [
    "ActionResult",
    "AwaitingEmailIdForReply",
    "CheckIntent",
    "ConfirmReplyIntent",
    "ContextRef",
    "CustomReplyIntent",
    "EmailActionWorkflow",
    "ExplicitRef",
    "GenerateReplyIntent",
    "Idle",
    "OrdinalRef",
    "PendingReplyDrafted",
    "SendEmailIntent",
    "Sent",
    "parse_intent",
]
