"""Time source abstraction (injectable for testing).

DeviceHandle deadlines, telemetry caching and the digital twin's exposure
and thermal models all read time through a Clock so tests can advance time
deterministically instead of sleeping.

Example:
    class FakeClock:
        def __init__(self):
            self.now = 0.0

        def monotonic(self) -> float:
            return self.now

        def sleep(self, seconds: float) -> None:
            self.now += seconds

        def wall(self) -> datetime:
            return datetime(2026, 1, 1, tzinfo=UTC)
"""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

__all__ = ["Clock", "SystemClock"]


@runtime_checkable
class Clock(Protocol):  # pragma: no cover
    """Protocol for time functions."""

    def monotonic(self) -> float:
        """Return monotonic time in seconds."""
        ...

    def sleep(self, seconds: float) -> None:
        """Block for the given number of seconds."""
        ...

    def wall(self) -> datetime:
        """Return the current timezone-aware UTC wall-clock time."""
        ...


class SystemClock:
    """Default clock backed by the time module.

    monotonic() is unaffected by NTP or manual clock changes, so exposure
    deadlines stay correct across wall-clock adjustments during long
    integrations. wall() is only used to stamp frames.
    """

    def monotonic(self) -> float:
        """Return time.monotonic()."""
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        """Sleep without busy-waiting. Non-positive values return at once."""
        if seconds > 0:
            time.sleep(seconds)

    def wall(self) -> datetime:
        """Return the current UTC time."""
        return datetime.now(UTC)

    def __repr__(self) -> str:
        return "SystemClock()"
