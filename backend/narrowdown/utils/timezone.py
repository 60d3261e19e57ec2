"""
Timezone utilities for NarrowDown.
Provides consistent UTC datetime handling and release-date parsing.
"""
import re
from datetime import date, datetime, timezone
from typing import Any, Optional

_YEAR_RE = re.compile(r"(\d{4})")


def utc_now() -> datetime:
    """
    Get current UTC datetime with timezone info.
    Replacement for deprecated datetime.utcnow().
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure a datetime is UTC and timezone-aware.
    If timezone-naive, assumes it's already UTC and adds UTC timezone.
    If timezone-aware, converts to UTC.
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        # Assume naive datetime is already UTC
        return dt.replace(tzinfo=timezone.utc)
    else:
        return dt.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a stored timestamp into an aware UTC datetime.
    Accepts datetimes, epoch seconds and ISO-8601 strings; anything else yields None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def parse_release_date(value: Any) -> Optional[date]:
    """Parse a YYYY-MM-DD (or longer ISO) release date; invalid or empty values give None."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()[:10]
    try:
        return date.fromisoformat(text)
    except ValueError:
        return None


def extract_year(value: Any) -> Optional[int]:
    """Return the four-digit year of a release date or free-form year string."""
    parsed = parse_release_date(value)
    if parsed:
        return parsed.year
    if value is None:
        return None
    match = _YEAR_RE.search(str(value))
    return int(match.group(1)) if match else None


def age_in_days(release: Optional[date], now: Optional[datetime] = None) -> Optional[float]:
    """Days elapsed since release; negative for future releases, None when unknown."""
    if release is None:
        return None
    current = ensure_utc(now) if now else utc_now()
    released_at = datetime(release.year, release.month, release.day, tzinfo=timezone.utc)
    return (current - released_at).total_seconds() / 86400.0
