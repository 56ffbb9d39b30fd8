"""
Crosspost Time Helpers
======================
Scheduled times arrive as naive local wall-clock strings plus an IANA zone;
they are stored as UTC instants. The zone is kept on the post for display.
"""

from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def get_zone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"Unknown timezone: {name}")


def _strip_naive(value: str) -> str:
    """'2024-12-19T20:00:00.000Z' -> '2024-12-19T20:00:00'"""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1]
    return text.split(".")[0]


def convert_naive_to_utc(value: str, tz_name: str) -> datetime:
    """Interpret a wall-clock time in tz_name and return the UTC instant."""
    text = _strip_naive(value)
    if "T" not in text:
        raise ValueError(f"Invalid date format: {value}")
    naive = datetime.fromisoformat(text)
    if naive.tzinfo is not None:
        naive = naive.replace(tzinfo=None)
    return naive.replace(tzinfo=get_zone(tz_name)).astimezone(timezone.utc)


def parse_utc(value: str) -> datetime:
    """ISO instant; a missing offset is taken as UTC."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def resolve_scheduled_at(value: str, tz_name: Optional[str]) -> datetime:
    if tz_name and tz_name != "UTC":
        return convert_naive_to_utc(value, tz_name)
    return parse_utc(value)


def format_in_timezone(when: datetime, tz_name: Optional[str]) -> str:
    """'Dec 19, 2024 8:00 PM' in the post's zone; '... UTC' when there is none."""
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)

    suffix = ""
    if not tz_name or tz_name == "UTC":
        local = when.astimezone(timezone.utc)
        suffix = " UTC"
    else:
        try:
            local = when.astimezone(get_zone(tz_name))
        except ValueError:
            local = when.astimezone(timezone.utc)
            suffix = " UTC"

    hour = local.hour % 12 or 12
    meridiem = "AM" if local.hour < 12 else "PM"
    return f"{local.strftime('%b')} {local.day}, {local.year} {hour}:{local.minute:02d} {meridiem}{suffix}"
