"""
Deadline tracking for protocol phases.

Every wait in the protocol is bounded by a timer armed here. A session owns
one TimeoutMonitor (its own timer set); all monitors of a process share a
clock, which tests replace with a ManualClock.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import time
from dataclasses import dataclass
from typing import Protocol


class Clock(Protocol):
    def now(self) -> float: ...


class MonotonicClock:
    def now(self) -> float:
        return time.monotonic()


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 0.0):
        self._now = start

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> float:
        if seconds < 0:
            raise ValueError("Cannot move a clock backwards")
        self._now += seconds
        return self._now

    def set(self, value: float) -> None:
        if value < self._now:
            raise ValueError("Cannot move a clock backwards")
        self._now = value


@dataclass(frozen=True)
class TimerHandle:
    timer_id: int
    phase_tag: str
    deadline: float


class TimeoutMonitor:
    """
    Priority queue of deadlines keyed by phase tag.

    Re-arming a tag replaces its previous timer; cancelling is idempotent;
    each expiry is reported exactly once.
    """

    def __init__(self, clock: Clock | None = None, poll_interval: float = 0.05):
        self.clock = clock or MonotonicClock()
        self.poll_interval = poll_interval
        self._ids = itertools.count(1)
        self._heap: list[tuple[float, int, str]] = []
        self._active: dict[str, TimerHandle] = {}

    def arm(self, deadline: float, phase_tag: str) -> TimerHandle:
        handle = TimerHandle(timer_id=next(self._ids), phase_tag=phase_tag, deadline=deadline)
        self._active[phase_tag] = handle
        heapq.heappush(self._heap, (deadline, handle.timer_id, phase_tag))
        return handle

    def arm_in(self, seconds: float, phase_tag: str) -> TimerHandle:
        return self.arm(self.clock.now() + seconds, phase_tag)

    def cancel(self, handle: TimerHandle | None) -> None:
        if handle is None:
            return
        current = self._active.get(handle.phase_tag)
        if current is not None and current.timer_id == handle.timer_id:
            del self._active[handle.phase_tag]

    def cancel_tag(self, phase_tag: str) -> None:
        self._active.pop(phase_tag, None)

    def cancel_all(self) -> None:
        self._active.clear()
        self._heap.clear()

    def is_armed(self, phase_tag: str) -> bool:
        return phase_tag in self._active

    def handle(self, phase_tag: str) -> TimerHandle | None:
        return self._active.get(phase_tag)

    def active_tags(self) -> list[str]:
        return sorted(self._active, key=lambda tag: self._active[tag].deadline)

    def _is_live(self, timer_id: int, phase_tag: str) -> bool:
        current = self._active.get(phase_tag)
        return current is not None and current.timer_id == timer_id

    def next_deadline(self) -> float | None:
        while self._heap and not self._is_live(self._heap[0][1], self._heap[0][2]):
            heapq.heappop(self._heap)
        return self._heap[0][0] if self._heap else None

    def poll_expired(self) -> list[str]:
        """Pop every timer whose deadline has passed, earliest first. Never blocks."""
        now = self.clock.now()
        expired: list[str] = []
        while self._heap and self._heap[0][0] <= now:
            _, timer_id, tag = heapq.heappop(self._heap)
            if self._is_live(timer_id, tag):
                del self._active[tag]
                expired.append(tag)
        return expired

    async def wait_expired(self) -> list[str]:
        """Block until at least one armed timer expires."""
        while True:
            expired = self.poll_expired()
            if expired:
                return expired
            deadline = self.next_deadline()
            delay = self.poll_interval
            if deadline is not None and isinstance(self.clock, MonotonicClock):
                delay = max(0.0, min(deadline - self.clock.now(), delay))
            await asyncio.sleep(delay)


__all__ = [
    "Clock",
    "MonotonicClock",
    "ManualClock",
    "TimerHandle",
    "TimeoutMonitor",
]
