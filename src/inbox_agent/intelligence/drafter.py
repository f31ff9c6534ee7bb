"""Drafting service that produces reply bodies for stored emails."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass

from inbox_agent.core.interfaces import TemplateStore
from inbox_agent.core.models import EmailRecord, KnowledgeSnippet, ReplyTemplate

from .fallback import build_fallback_body
from .llm import LLMClient, LLMError
from .prompts import build_reply_prompt

LOGGER = logging.getLogger(__name__)


class DraftingError(RuntimeError):
    """Raised when drafting fails and no fallback can be produced."""


@dataclass(slots=True)
class DraftResult:
    """Rendered reply text and how it was produced."""

    body: str
    provider: str
    used_fallback: bool


class ReplyDrafter:
    """Generate reply drafts using an LLM with deterministic fallback."""

    def __init__(
        self,
        llm_client: LLMClient | None,
        *,
        agent_id: str,
        agent_name: str,
        templates: TemplateStore | None = None,
        fallback_enabled: bool = True,
    ) -> None:
        """Initialise the drafter with an optional LLM client and template store."""
        self._llm_client = llm_client
        self._agent_id = agent_id
        self._agent_name = agent_name
        self._templates = templates
        self._fallback_enabled = fallback_enabled

    async def draft(
        self, email: EmailRecord, knowledge: Sequence[KnowledgeSnippet]
    ) -> DraftResult:
        """Return the full reply text for ``email``, wrapped in the agent template."""
        template = await self._load_template()
        body: str | None = None
        provider = "none"
        used_fallback = False

        if self._llm_client is not None:
            prompt = build_reply_prompt(
                email,
                agent_name=self._agent_name,
                knowledge=knowledge,
                instructions=template.instructions,
            )
            try:
                body = await asyncio.to_thread(self._llm_client.generate, prompt)
                provider = self._llm_client.provider_id
            except LLMError as exc:
                LOGGER.warning("LLM drafting failed for %s: %s", email.email_id, exc)
                body = None

        if (body is None or not body.strip()) and self._fallback_enabled:
            body = build_fallback_body(email)
            provider = "deterministic"
            used_fallback = True

        if body is None or not body.strip():
            raise DraftingError("Draft reply could not be generated")

        return DraftResult(
            body=self.render(template, email, body.strip()),
            provider=provider,
            used_fallback=used_fallback,
        )

    def render(self, template: ReplyTemplate, email: EmailRecord, body: str) -> str:
        """Substitute placeholders of ``template``."""
        sender = email.sender.address.split("@")[0] if email.sender else ""
        replacements = {
            "{{sender}}": sender or "Sender",
            "{{agentName}}": self._agent_name,
            "{{position}}": template.position or "",
            "{{emailAddress}}": template.email_address or "",
            "{{companyName}}": template.company_name or "",
            "{{bestRegard}}": template.best_regard or "Best regards",
            "{{body}}": body,
        }
        text = template.template
        for placeholder, value in replacements.items():
            text = text.replace(placeholder, value)
        return text.strip()

    async def _load_template(self) -> ReplyTemplate:
        if self._templates is None:
            return ReplyTemplate()
        try:
            template = await self._templates.get_template(self._agent_id)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.warning("Template lookup failed for %s: %s", self._agent_id, exc)
            return ReplyTemplate()
        return template or ReplyTemplate()


__all__ = ["DraftResult", "DraftingError", "ReplyDrafter"]
