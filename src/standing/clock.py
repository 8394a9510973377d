"""Time source for the engine, in whole seconds since the epoch."""

from __future__ import annotations

import time
from typing import Protocol


class Clock(Protocol):
    def now(self) -> int: ...


class SystemClock:
    def now(self) -> int:
        return int(time.time())


class FixedClock:
    """Manually advanced clock for tests and simulations."""

    def __init__(self, start: int = 1_700_000_000):
        self._now = int(start)

    def now(self) -> int:
        return self._now

    def set(self, value: int) -> None:
        if value < self._now:
            raise ValueError("FixedClock cannot move backwards")
        self._now = int(value)

    def advance(self, seconds: int) -> int:
        self.set(self._now + int(seconds))
        return self._now
