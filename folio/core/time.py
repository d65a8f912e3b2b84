"""Time utilities."""
from datetime import date, datetime, timedelta, timezone
from typing import Optional


def now_iso() -> str:
    """Get current time as ISO 8601 string with Z suffix."""
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def today_iso() -> str:
    """Current local calendar date as YYYY-MM-DD."""
    return date.today().isoformat()


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def parse_iso_date(value: Optional[str]) -> Optional[date]:
    """Parse the date part of an ISO 8601 string, or None when it is not one.

    Accepts ``YYYY-MM-DD`` optionally followed by a time component
    (``2024-03-01T10:00:00Z``). Anything else returns None.
    """
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if len(text) < 10:
        return None
    try:
        parsed = date.fromisoformat(text[:10])
    except ValueError:
        return None
    if len(text) > 10:
        try:
            datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
    return parsed


_RELATIVE_DAYS = {"today": 0, "yesterday": -1, "tomorrow": 1}


def to_date_only(value: Optional[str]) -> str:
    """Coerce user date input to ``YYYY-MM-DD``.

    Understands today/yesterday/tomorrow and any ISO 8601 timestamp;
    anything unparseable becomes today.
    """
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _RELATIVE_DAYS:
            return (date.today() + timedelta(days=_RELATIVE_DAYS[normalized])).isoformat()
        parsed = parse_iso_date(value)
        if parsed is not None:
            return parsed.isoformat()
    return today_iso()
