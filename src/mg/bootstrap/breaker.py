"""Shared rate-limit gate for concurrent bootstrap workers.

Every worker awaits the gate before each model attempt. A rate-limit failure
closes the gate for one backoff window; concurrent failures inside the window
ride the same timer. Five consecutive failures, or an explicit abort(), trip
the breaker for good and every waiter raises PipelineAbortedError.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger("mg.breaker")

BACKOFF_SCHEDULE = (15.0, 30.0, 60.0, 120.0, 300.0)   # seconds
MAX_RETRY_ATTEMPTS = 5


class PipelineAbortedError(Exception):
    """The breaker tripped; no worker should call the model again this run."""


def compute_backoff(consecutive_failures: int) -> float:
    """Seconds to wait after the n-th consecutive failure, clamped to the schedule."""
    idx = max(0, min(consecutive_failures - 1, len(BACKOFF_SCHEDULE) - 1))
    return BACKOFF_SCHEDULE[idx]


class RateLimitBreaker:
    """One instance per bootstrap run, shared by all workers on one event loop."""

    def __init__(
        self,
        backoff: Callable[[int], float] = compute_backoff,
        threshold: int = MAX_RETRY_ATTEMPTS,
    ) -> None:
        self._backoff = backoff
        self.threshold = threshold
        self.consecutive_failures = 0
        self.aborted = False
        self._open = asyncio.Event()
        self._open.set()
        self._timer: asyncio.TimerHandle | None = None

    @property
    def backoff_pending(self) -> bool:
        return self._timer is not None

    async def await_gate(self) -> None:
        if self.aborted:
            raise PipelineAbortedError("rate-limit breaker is open")
        await self._open.wait()
        if self.aborted:
            raise PipelineAbortedError("rate-limit breaker is open")

    def start_backoff(self) -> bool:
        """Register a rate-limit failure. False means the run must stop."""
        if self.aborted:
            return False
        self.consecutive_failures += 1
        if self.consecutive_failures >= self.threshold:
            logger.error("rate limited %d times in a row, aborting bootstrap", self.consecutive_failures)
            self.abort()
            return False
        if self._timer is None:
            delay = self._backoff(self.consecutive_failures)
            logger.warning("rate limited (%d consecutive), backing off %.0fs", self.consecutive_failures, delay)
            self._open.clear()
            self._timer = asyncio.get_running_loop().call_later(delay, self._reopen)
        return True

    def _reopen(self) -> None:
        self._timer = None
        self._open.set()

    def on_success(self) -> None:
        self.consecutive_failures = 0

    def abort(self) -> None:
        """Trip permanently and release everyone blocked on the gate."""
        self.aborted = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._open.set()

    def close(self) -> None:
        """Cancel any pending backoff timer without tripping."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._open.set()
