"""Time sources for the admission engine."""

import time
from abc import ABC, abstractmethod


class Clock(ABC):
    """Supplies the current time in epoch seconds."""

    @abstractmethod
    def now(self) -> float:
        ...


class SystemClock(Clock):
    """Wall-clock time."""

    def now(self) -> float:
        return time.time()


class ManualClock(Clock):
    """
    Deterministic clock for tests and simulations.

    Time only moves when `advance` or `set` is called.
    """

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._now = float(start)

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> float:
        if seconds < 0:
            raise ValueError("ManualClock cannot move backwards")
        self._now += seconds
        return self._now

    def set(self, timestamp: float) -> None:
        self._now = float(timestamp)


default_clock = SystemClock()
