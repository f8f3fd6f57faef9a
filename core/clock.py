# core/clock.py
"""
Clock sources. Components take a zero-argument callable returning a naive
UTC datetime so expiry and window arithmetic stay testable.
"""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as a naive UTC datetime (the store's convention)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def epoch_seconds(moment: datetime) -> int:
    """Whole seconds since the epoch for a naive UTC datetime"""
    return int(moment.replace(tzinfo=timezone.utc).timestamp())
