"""
FANTASY EXCHANGE: UTC time buckets

Market state snaps to the UTC hour (YYYY-MM-DDTHH); the daily soul snaps to
the date (YYYY-MM-DD).
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Optional

HOUR_KEY_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})T(\d{2})$")
DATE_KEY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def utc_hour_key(dt: Optional[datetime] = None) -> str:
    """Current UTC hour key, e.g. 2026-02-02T18."""
    dt = dt or datetime.now(timezone.utc)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H")


def utc_date_key(dt: Optional[datetime] = None) -> str:
    dt = dt or datetime.now(timezone.utc)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%d")


def parse_hour_key(hour_key: str) -> Optional[datetime]:
    m = HOUR_KEY_RE.match(hour_key or "")
    if not m:
        return None
    y, mo, d, h = (int(g) for g in m.groups())
    try:
        return datetime(y, mo, d, h, tzinfo=timezone.utc)
    except ValueError:
        return None


def prev_utc_hour_key(hour_key: str) -> str:
    """The bucket one hour earlier. Malformed keys come back unchanged."""
    dt = parse_hour_key(hour_key)
    if dt is None:
        return hour_key
    return utc_hour_key(dt - timedelta(hours=1))


def is_date_key(value: str) -> bool:
    if not DATE_KEY_RE.match(value or ""):
        return False
    try:
        datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        return False
    return True
