"""
Clock

Services take a zero-argument callable returning an aware UTC datetime,
so tests can drive expiry and cache TTLs deterministically.
"""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)
