"""Pausable interval timer driving batched chunk boundaries."""

from __future__ import annotations

import time
from typing import Callable, Optional


class IntervalTimer:
    """Accrues wall-clock time only while running.

    The chunk loop pauses the timer while the assistant is speaking, so if
    playback lasts T seconds the next boundary lands T seconds later than it
    otherwise would, and the accrued time before the pause is kept.
    """

    def __init__(self, interval_sec: float, clock: Optional[Callable[[], float]] = None):
        if interval_sec <= 0:
            raise ValueError("interval_sec must be positive")
        self.interval_sec = float(interval_sec)
        self._clock = clock or time.monotonic
        self._accrued = 0.0
        self._running_since: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._running_since is not None

    def start(self) -> None:
        self._accrued = 0.0
        self._running_since = self._clock()

    def restart(self) -> None:
        """Begin a new interval, keeping the paused/running state."""
        self._accrued = 0.0
        if self._running_since is not None:
            self._running_since = self._clock()

    def pause(self) -> None:
        if self._running_since is None:
            return
        self._accrued += self._clock() - self._running_since
        self._running_since = None

    def resume(self) -> None:
        if self._running_since is None:
            self._running_since = self._clock()

    def elapsed(self) -> float:
        if self._running_since is None:
            return self._accrued
        return self._accrued + (self._clock() - self._running_since)

    def remaining(self) -> float:
        return max(0.0, self.interval_sec - self.elapsed())

    def due(self) -> bool:
        return self.elapsed() >= self.interval_sec
