from datetime import datetime, timezone, timedelta
from typing import Optional

# Fixed width so that SQL string comparison matches chronological order
ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Render a datetime as a fixed-width UTC string like '2025-11-06T09:12:34.123456Z'."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(ISO_FORMAT)


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.strptime(value, ISO_FORMAT).replace(tzinfo=timezone.utc)


def now_iso() -> str:
    return to_iso(utcnow())


def seconds_before(dt: datetime, seconds: float) -> datetime:
    return dt - timedelta(seconds=seconds)
