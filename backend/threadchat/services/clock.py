"""UTC date helpers tolerant of the timestamp shapes found on the wire."""

from datetime import datetime, timedelta, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_plus(ms: int) -> datetime:
    return utc_now() + timedelta(milliseconds=ms)


def from_epoch_ms(value: float) -> datetime | None:
    try:
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def to_epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def parse_to_utc(value) -> datetime | None:
    """
    Parse a datetime, epoch milliseconds or ISO-ish string into an aware UTC datetime.

    Returns None instead of raising when the value cannot be understood.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    if isinstance(value, (int, float)):
        return from_epoch_ms(value)

    s = str(value).strip()
    if not s:
        return None

    if s.lstrip("-").isdigit():
        return from_epoch_ms(int(s))

    try:
        parsed = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def ensure_date(value=None) -> datetime:
    return parse_to_utc(value) or utc_now()
