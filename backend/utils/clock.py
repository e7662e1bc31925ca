from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Naive UTC now; every DateTime column holds naive UTC values."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_ms(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    return int(value.replace(tzinfo=timezone.utc).timestamp() * 1000)


def from_ms(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).replace(tzinfo=None)
