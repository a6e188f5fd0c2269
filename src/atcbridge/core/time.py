"""Clock abstraction for the bridge timers.

Every timer in the bridge (poll interval, reconnect backoff, stall sweep,
handoff ages) goes through a :class:`TimeSource` so tests can drive them
with :class:`SimTimeSource` instead of waiting on the wall clock.

    ts = SimTimeSource(start=0.0)
    task = asyncio.create_task(ts.sleep(30.0))
    ts.advance(30.0)  # resolves the sleeper
    await task
"""

from __future__ import annotations

import asyncio
import heapq
import time
from typing import Protocol

__all__ = [
    "TimeSource",
    "RealTimeSource",
    "SimTimeSource",
]


class TimeSource(Protocol):
    def monotonic(self) -> float:
        ...

    def wall_time(self) -> float:
        ...

    async def sleep(self, seconds: float) -> None:
        ...


class RealTimeSource:
    """System clocks and ``asyncio.sleep``."""

    def monotonic(self) -> float:
        return time.monotonic()

    def wall_time(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class SimTimeSource:
    """Deterministic simulated clock.

    Time only moves when :meth:`advance` or :meth:`set_time` is called;
    pending sleepers whose due time has been reached are resolved then.
    """

    def __init__(self, *, start: float = 0.0) -> None:
        self._now: float = float(start)
        self._wall_base: float = time.time()
        # (due_time, seq, future)
        self._sleepers: list[tuple[float, int, asyncio.Future[None]]] = []
        self._seq: int = 0

    def monotonic(self) -> float:
        return self._now

    def wall_time(self) -> float:
        return self._wall_base + self._now

    def set_time(self, t: float) -> None:
        """Set absolute simulated time (forward only).

        Raises:
            ValueError: If t is earlier than the current time.
        """
        if t < self._now:
            raise ValueError(f"Cannot set time backwards: {t} < {self._now}")
        self._now = t
        self._wake_due()

    def advance(self, dt: float) -> None:
        """Advance simulated time by *dt* seconds (must be >= 0)."""
        if dt < 0:
            raise ValueError(f"Cannot advance time backwards: dt={dt}")
        self._now += dt
        self._wake_due()

    async def sleep(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError(f"Sleep duration must be non-negative: {seconds}")
        if seconds == 0:
            await asyncio.sleep(0)
            return

        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._seq += 1
        heapq.heappush(self._sleepers, (self._now + seconds, self._seq, future))
        await future

    def pending_sleepers(self) -> int:
        return sum(1 for _, _, f in self._sleepers if not f.done())

    def next_due_monotonic(self) -> float | None:
        """Due time of the earliest pending sleeper, if any."""
        while self._sleepers and self._sleepers[0][2].done():
            heapq.heappop(self._sleepers)
        if not self._sleepers:
            return None
        return self._sleepers[0][0]

    def _wake_due(self) -> None:
        while self._sleepers and self._sleepers[0][0] <= self._now:
            _, _, future = heapq.heappop(self._sleepers)
            # Cancelled sleepers leave a done future behind.
            if not future.done():
                future.set_result(None)
