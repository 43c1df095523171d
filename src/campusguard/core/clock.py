"""
Time source for CampusGuard

All scheduling decisions read time through a Clock so that check-in
deadlines can be evaluated deterministically.
"""

import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone


class Clock(ABC):
    """Provides wall-clock timestamps and a monotonic counter"""

    @abstractmethod
    def now(self) -> datetime:
        """Current time as a timezone-aware UTC datetime"""

    @abstractmethod
    def monotonic(self) -> float:
        """Monotonic seconds, used for measuring tick durations"""


class SystemClock(Clock):
    """Clock backed by the host system"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()


def to_timestamp(value: datetime) -> str:
    """Serialize a datetime for storage; fixed precision keeps string order equal to time order"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec='microseconds')


def from_timestamp(value):
    """Parse a stored timestamp, passing None through"""
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
