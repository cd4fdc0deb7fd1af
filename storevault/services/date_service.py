"""
Time helpers for backup scheduling.
All timestamps are naive UTC, matching what the database stores.
"""
import math
from datetime import datetime, timedelta, timezone
from typing import Optional


class DateService:
    """Service for time-related calculations"""

    @staticmethod
    def utcnow() -> datetime:
        """Current time as naive UTC"""
        return datetime.now(timezone.utc).replace(tzinfo=None)

    @staticmethod
    def next_due(last_run: Optional[datetime], interval: timedelta,
                 now: datetime) -> datetime:
        """
        Get the time the next run becomes due.

        With no previous run the next run is due immediately.
        """
        if last_run is None:
            return now
        return last_run + interval

    @staticmethod
    def minutes_until(target: datetime, now: datetime) -> int:
        """Whole minutes from now until target, rounded up, never negative"""
        seconds = (target - now).total_seconds()
        if seconds <= 0:
            return 0
        return int(math.ceil(seconds / 60.0))


def utcnow() -> datetime:
    return DateService.utcnow()
