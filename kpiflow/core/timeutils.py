"""KPIFlow — UTC time helpers.

SQLite hands back naive datetimes even for values written as UTC-aware, so
every comparison goes through ``as_utc``.
"""

from datetime import date, datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(raw) -> datetime:
    """Parse a timestamp emitted by generated code into an aware UTC datetime.

    Accepts ISO-8601 strings (``Z`` suffix allowed), bare ``YYYY-MM-DD`` dates,
    ``date``/``datetime`` objects, and epoch numbers in seconds or milliseconds.

    Raises:
        ValueError: The value cannot be interpreted as a timestamp.
    """
    if isinstance(raw, bool):
        raise ValueError(f"Invalid timestamp: {raw!r}")
    if isinstance(raw, datetime):
        return as_utc(raw)
    if isinstance(raw, date):
        return datetime(raw.year, raw.month, raw.day, tzinfo=timezone.utc)
    if isinstance(raw, (int, float)):
        # Anything past year ~2286 in seconds is really milliseconds
        seconds = raw / 1000 if abs(raw) > 1e10 else raw
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError) as e:
            raise ValueError(f"Timestamp out of range: {raw!r}") from e
    if isinstance(raw, str) and raw.strip():
        text = raw.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return as_utc(datetime.fromisoformat(text))
        except ValueError:
            pass
        try:
            return parse_timestamp(float(text))
        except ValueError:
            pass
    raise ValueError(f"Invalid timestamp: {raw!r}")
