"""Polling cadence: exponential backoff and a non-overlapping poll scheduler."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

log = logging.getLogger(__name__)

MAX_BACKOFF_SECONDS = 60.0


@dataclass
class BackoffPolicy:
    """Delay doubles per consecutive failure (base, 2x, 4x, ...) up to a cap.

    The cap is ``MAX_BACKOFF_SECONDS`` unless the base interval is already
    longer, in which case the base is never exceeded.
    """

    base_interval: float = 5.0
    consecutive_failures: int = 0

    def __post_init__(self) -> None:
        self.base_interval = max(1.0, float(self.base_interval))

    @property
    def max_interval(self) -> float:
        return max(MAX_BACKOFF_SECONDS, self.base_interval)

    @property
    def current_interval(self) -> float:
        if self.consecutive_failures == 0:
            return self.base_interval
        delay = self.base_interval * 2 ** (self.consecutive_failures - 1)
        return min(delay, self.max_interval)

    def record_failure(self) -> float:
        self.consecutive_failures += 1
        log.info(
            "Backoff: %d consecutive failures, polling every %.0fs",
            self.consecutive_failures, self.current_interval,
        )
        return self.current_interval

    def record_success(self) -> float:
        if self.consecutive_failures:
            log.info("Backoff reset after %d failures", self.consecutive_failures)
        self.consecutive_failures = 0
        return self.base_interval

    def reset(self, base_interval: float | None = None) -> None:
        if base_interval is not None:
            self.base_interval = max(1.0, float(base_interval))
        self.consecutive_failures = 0


class PollScheduler:
    """Runs *cycle* repeatedly, one at a time, with backoff between runs.

    *cycle* returns True on success and False on failure; exceptions count as
    failures and are logged.  Every (re)schedule bumps a generation counter;
    a cycle that finishes after being superseded does not re-arm the timer.
    """

    def __init__(self, cycle: Callable[[], Awaitable[bool]], policy: BackoffPolicy) -> None:
        self._cycle = cycle
        self.policy = policy
        self.generation = 0
        self._timer: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None
        self._in_flight = False
        self._rerun_requested = False
        self._stopped = True
        self.idle = asyncio.Event()

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def start(self) -> None:
        """Run a cycle now; later cycles follow on the policy's interval."""
        self._stopped = False
        self.run_now()

    def schedule(self, delay: float) -> int:
        """Replace any pending timer with one firing after *delay* seconds."""
        self.generation += 1
        if self._timer is not None:
            self._timer.cancel()
        generation = self.generation
        self._timer = asyncio.get_running_loop().call_later(delay, self._fire, generation)
        return generation

    def run_now(self) -> None:
        """Supersede the current schedule and start a cycle immediately."""
        self.generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._launch(self.generation)

    def set_base_interval(self, seconds: float) -> None:
        self.policy.reset(seconds)
        if not self._stopped:
            self.schedule(self.policy.current_interval)

    async def stop(self) -> None:
        self._stopped = True
        self.generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    def _fire(self, generation: int) -> None:
        self._timer = None
        if generation != self.generation or self._stopped:
            return
        self._launch(generation)

    def _launch(self, generation: int) -> None:
        if self._in_flight:
            log.debug("Cycle already in flight, deferring")
            self._rerun_requested = True
            return
        self._task = asyncio.ensure_future(self._run(generation))

    async def _run(self, generation: int) -> None:
        self._in_flight = True
        self.idle.clear()
        try:
            ok = await self._cycle()
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("Poll cycle failed")
            ok = False
        finally:
            self._in_flight = False
            self.idle.set()

        delay = self.policy.record_success() if ok else self.policy.record_failure()

        if self._stopped:
            return
        if self._rerun_requested:
            self._rerun_requested = False
            self._launch(self.generation)
            return
        if generation != self.generation:
            log.debug("Cycle from generation %d superseded by %d", generation, self.generation)
            return
        self.schedule(delay)
