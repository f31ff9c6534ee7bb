"""Command-line entry point for Inbox Agent."""

from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path

from inbox_agent.actions import EmailActionWorkflow
from inbox_agent.client import EmailClient
from inbox_agent.core import (
    AppSettings,
    ConfigurationError,
    configure_logging,
    load_app_settings,
)
from inbox_agent.core.collaborators import (
    LocalChangeFeed,
    StaticConnectivityOracle,
    StaticTemplateStore,
)
from inbox_agent.core.config import resolve_incoming_settings, resolve_outgoing_settings
from inbox_agent.core.models import ReplyTemplate
from inbox_agent.intelligence import ReplyDrafter, build_llm_client
from inbox_agent.storage import SqliteMemoryStore

LOGGER = logging.getLogger(__name__)

_EXIT_WORDS = {"exit", "quit", "bye"}


def build_parser() -> argparse.ArgumentParser:
    """Create and configure the CLI argument parser."""
    parser = argparse.ArgumentParser(description="Inbox Agent conversational mail client")
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to a .env file containing configuration overrides.",
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="info",
        choices=["info", "run", "chat"],
        help="Operation to execute.",
    )
    return parser


def execute(args: argparse.Namespace, settings: AppSettings) -> int:
    """Execute the requested CLI command and return an exit code."""
    command = args.command
    if command == "info":
        return _print_info(settings)
    try:
        if command == "run":
            asyncio.run(_run(settings))
        elif command == "chat":
            asyncio.run(_chat(settings))
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}")
        return 2
    except KeyboardInterrupt:
        print("Interrupted.")
    return 0


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()

    settings = load_app_settings(env_file=args.env_file)
    configure_logging(settings.logging)
    raise SystemExit(execute(args, settings))


def build_template_store(settings: AppSettings) -> StaticTemplateStore:
    """Register the configured signature as the agent's reply template."""
    agent = settings.agent
    template = ReplyTemplate(
        best_regard=agent.best_regard,
        position=agent.position,
        email_address=agent.email_address,
        company_name=agent.company_name,
        instructions=agent.reply_instructions,
    )
    return StaticTemplateStore({agent.agent_id: template})


def _print_info(settings: AppSettings) -> int:
    """Summarise which directions are configured."""
    try:
        incoming = resolve_incoming_settings(settings.imap)
        outgoing = resolve_outgoing_settings(settings.smtp)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}")
        return 2
    print("Inbox Agent is ready. Configure IMAP and SMTP settings to get started.")
    if incoming is not None:
        print(f"IMAP: {incoming.username} @ {incoming.host}:{incoming.port}/{incoming.mailbox}")
    else:
        print("IMAP: not configured")
    if outgoing is not None:
        print(f"SMTP: {outgoing.username} @ {outgoing.host}:{outgoing.port}")
    else:
        print("SMTP: not configured")
    print(f"LLM model: {settings.llm.model or 'disabled'}")
    print(f"Database path: {settings.storage.db_path}")
    return 0


def _build_client(settings: AppSettings, store: SqliteMemoryStore) -> EmailClient:
    oracle = StaticConnectivityOracle(default=True)
    return EmailClient(
        settings,
        store=store,
        connectivity=oracle,
        change_feed=LocalChangeFeed(oracle),
    )


async def _run(settings: AppSettings) -> None:
    """Keep the client running until interrupted."""
    with SqliteMemoryStore(settings.storage) as store:
        client = _build_client(settings, store)
        await client.start()
        print("Inbox Agent is listening for mail. Press Ctrl+C to stop.")
        try:
            await asyncio.Event().wait()
        finally:
            await client.stop()


async def _chat(settings: AppSettings) -> None:
    """Read requests from stdin and print workflow responses."""
    with SqliteMemoryStore(settings.storage) as store:
        client = _build_client(settings, store)
        drafter = ReplyDrafter(
            build_llm_client(settings.llm),
            agent_id=settings.agent.agent_id,
            agent_name=settings.agent.agent_name,
            templates=build_template_store(settings),
            fallback_enabled=settings.llm.fallback_enabled,
        )
        workflow = EmailActionWorkflow(
            client,
            store,
            drafter,
            settings.workflow,
            agent=settings.agent,
        )
        await client.start()
        print("Ask about your email (type 'exit' to leave).")
        try:
            while True:
                try:
                    line = await asyncio.to_thread(input, "> ")
                except EOFError:
                    break
                if line.strip().lower() in _EXIT_WORDS:
                    break
                if not line.strip():
                    continue
                result = await workflow.handle(line)
                if result is None:
                    print("I can check your email, draft replies and send messages.")
                else:
                    print(result.text)
        finally:
            await client.stop()


if __name__ == "__main__":
    main()
