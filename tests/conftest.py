"""Shared pytest fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import pytest

from inbox_agent.core.config import load_app_settings

WaitUntil = Callable[..., Awaitable[None]]


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    """Ensure each test sees a fresh settings instance."""

    load_app_settings.cache_clear()


@pytest.fixture
def wait_until() -> WaitUntil:
    """Poll a predicate while background tasks make progress."""

    async def _wait(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not reached before timeout")
            await asyncio.sleep(0.01)

    return _wait


@pytest.fixture
def recorded_sleep() -> tuple[list[float], Callable[[float], Awaitable[None]]]:
    """A sleep replacement that records delays and yields immediately."""

    delays: list[float] = []

    async def _sleep(delay: float) -> None:
        delays.append(delay)
        await asyncio.sleep(0)

    return delays, _sleep
