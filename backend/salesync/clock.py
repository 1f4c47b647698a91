"""
Clock and deadline helpers.

Every phase executor receives a Deadline instead of reading the wall clock
itself, so time-budget behaviour can be driven from tests with a fake clock.
"""

import time
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    """Source of elapsed time (monotonic) and timestamps (now)."""

    def monotonic(self) -> float:
        ...

    def now(self) -> datetime:
        ...

    def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    """Production clock."""

    def monotonic(self) -> float:
        return time.monotonic()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


class Deadline:
    """Point in monotonic time after which a tick must stop starting new work."""

    def __init__(self, clock: Clock, expires_at: float):
        self.clock = clock
        self.expires_at = expires_at

    @classmethod
    def after(cls, clock: Clock, seconds: float) -> "Deadline":
        return cls(clock, clock.monotonic() + seconds)

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self.clock.monotonic())

    def expired(self) -> bool:
        return self.clock.monotonic() >= self.expires_at
