from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current time as a UTC-naive datetime, the canonical stored form."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat_z(dt: Optional[datetime]) -> Optional[str]:
    """ISO-8601 with a trailing 'Z'; naive values are taken as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt.isoformat(timespec="milliseconds") + "Z"
