"""Fetch success and failure bookkeeping for a mail session."""

from __future__ import annotations

import time
from collections.abc import Callable

from ..core.models import HealthMetrics


class ConnectionHealthTracker:
    """Track the last successful fetch and consecutive failures."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._last_successful_fetch = 0.0
        self._consecutive_failures = 0

    @property
    def consecutive_failures(self) -> int:
        """Failures recorded since the last success or reset."""
        return self._consecutive_failures

    @property
    def last_successful_fetch(self) -> float:
        """Epoch seconds of the last successful fetch, ``0.0`` if none."""
        return self._last_successful_fetch

    def record_success(self) -> None:
        """Note a completed fetch and clear the failure streak."""
        self._last_successful_fetch = self._clock()
        self._consecutive_failures = 0

    def record_failure(self) -> int:
        """Count one failed attempt and return the new streak length."""
        self._consecutive_failures += 1
        return self._consecutive_failures

    def reset(self) -> None:
        """Clear the failure streak, keeping the last success time."""
        self._consecutive_failures = 0

    def seconds_since_success(self) -> float:
        """Elapsed time since the last success; infinite if there was none."""
        if not self._last_successful_fetch:
            return float("inf")
        return max(0.0, self._clock() - self._last_successful_fetch)

    def snapshot(self, *, is_healthy: bool) -> HealthMetrics:
        """Return metrics combined with the session's own health verdict."""
        return HealthMetrics(
            last_successful_fetch=self._last_successful_fetch,
            consecutive_failures=self._consecutive_failures,
            is_healthy=is_healthy,
        )


__all__ = ["ConnectionHealthTracker"]
