"""Deterministic reply bodies used when the LLM is unavailable."""

from __future__ import annotations

import re

from inbox_agent.core.models import EmailRecord

_URGENT_PATTERNS = (
    re.compile(r"\burgent\b", re.IGNORECASE),
    re.compile(r"\bimmediately\b", re.IGNORECASE),
)
_QUESTION_HINTS = ("can you", "please let me know")
_TOPICS = ("meeting", "project", "deadline")


def key_topics(body: str) -> list[str]:
    """Return coarse topics mentioned in ``body``."""
    lowered = body.lower()
    topics = [topic for topic in _TOPICS if topic in lowered]
    if "question" in lowered or "?" in lowered:
        topics.append("question")
    return topics


def is_urgent(email: EmailRecord) -> bool:
    """Whether the subject or body asks for urgency."""
    text = f"{email.subject or ''}\n{email.body}"
    return any(pattern.search(text) for pattern in _URGENT_PATTERNS)


def is_question(body: str) -> bool:
    """Whether ``body`` reads as a question."""
    lowered = body.lower()
    return body.strip().endswith("?") or any(hint in lowered for hint in _QUESTION_HINTS)


def build_fallback_body(email: EmailRecord) -> str:
    """Return a short acknowledgement tailored to the email's tone."""
    topics = key_topics(email.body)
    if is_urgent(email):
        about = f" regarding {', '.join(topics)}" if topics else ""
        return (
            f"I understand your request is urgent{about}. I'm addressing it "
            "promptly and will provide a detailed response shortly."
        )
    if is_question(email.body):
        about = f" about {', '.join(topics)}" if topics else ""
        return (
            f"Thank you for your question{about}. I'm looking into it and will "
            "provide a detailed answer soon."
        )
    about = f" regarding {', '.join(topics)}" if topics else ""
    return f"Thank you for your email{about}. I'll get back to you soon with more details."


__all__ = ["build_fallback_body", "is_question", "is_urgent", "key_topics"]
