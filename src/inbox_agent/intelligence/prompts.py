"""Prompt templates for LLM-driven replies."""

from __future__ import annotations

from collections.abc import Sequence
from textwrap import dedent

from inbox_agent.core.models import EmailRecord, KnowledgeSnippet

DEFAULT_INSTRUCTIONS = """
# Instructions:
- Generate only the body of the email reply, without greetings or signatures.
- Write a concise, professional, and context-aware reply to the email.
- Directly answer the question raised in the email body using the relevant knowledge when it applies.
- Mention names, places or facts from the relevant knowledge explicitly when they answer the email.
- Keep the tone friendly and appropriate for an email response.
- Do not include sensitive information or fabricate details.
- Avoid placeholders such as [Your Company]; omit anything the knowledge does not provide.
""".strip()


def format_knowledge(snippets: Sequence[KnowledgeSnippet]) -> str:
    """Render snippets as a numbered list with their source labels."""
    if not snippets:
        return "No relevant knowledge provided."
    return "\n".join(
        f"{index}. {snippet.text} (Source: {snippet.source or 'unknown'})"
        for index, snippet in enumerate(snippets, start=1)
    )


def build_reply_prompt(
    email: EmailRecord,
    *,
    agent_name: str,
    knowledge: Sequence[KnowledgeSnippet],
    instructions: str | None = None,
) -> str:
    """Compose the prompt asking the LLM for a reply body."""
    sender = email.sender.address if email.sender else "(unknown sender)"
    subject = email.subject or "No subject"

    prompt = f"""
    # Task: Generate the body of a reply email for {agent_name}.
    Sender: {sender}
    Subject: {subject}
    Email ID: {email.email_id}
    """

    return "\n\n".join(
        [
            dedent(prompt).strip(),
            f"Email body (question to answer):\n{email.body}",
            f"# Relevant Knowledge:\n{format_knowledge(knowledge)}",
            (instructions or DEFAULT_INSTRUCTIONS).strip(),
        ]
    )


__all__ = ["DEFAULT_INSTRUCTIONS", "build_reply_prompt", "format_knowledge"]
