from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns it is stored in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
