"""Tests for CLI helpers."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from inbox_agent.cli import build_parser, build_template_store
from inbox_agent.core.config import AgentSettings, AppSettings
from inbox_agent.core.models import EmailRecord, MailAddress
from inbox_agent.intelligence.drafter import ReplyDrafter


class _EchoLLM:
    provider_id = "echo"

    def __init__(self) -> None:
        self.prompts: list[str] = []

    def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        return "Friday works for me."


def test_parser_defaults_to_info() -> None:
    """Running without a command prints the configuration summary."""

    args = build_parser().parse_args([])

    assert args.command == "info"
    assert args.env_file is None


@pytest.mark.asyncio
async def test_template_store_carries_signature_into_drafts() -> None:
    """Configured signature settings shape the drafted reply."""

    settings = AppSettings(
        agent=AgentSettings(
            agent_name="Robin",
            best_regard="Kind regards",
            company_name="Acme",
            reply_instructions="Answer in one sentence.",
        )
    )
    store = build_template_store(settings)
    template = await store.get_template(settings.agent.agent_id)
    assert template is not None and template.company_name == "Acme"
    assert await store.get_template("someone-else") is None

    llm = _EchoLLM()
    drafter = ReplyDrafter(
        llm,
        agent_id=settings.agent.agent_id,
        agent_name=settings.agent.agent_name,
        templates=store,
    )
    email = EmailRecord(
        email_id="11111111-1111-4111-8111-111111111111",
        message_id="<m@example.com>",
        thread_id="m@example.com",
        subject="Meeting",
        senders=(MailAddress("alice@example.com"),),
        date=datetime(2024, 3, 1, tzinfo=UTC),
        body="Can we meet on Friday?",
    )

    draft = await drafter.draft(email, ())

    assert draft.body.endswith("Kind regards,\nRobin")
    assert "Answer in one sentence." in llm.prompts[0]
