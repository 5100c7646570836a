"""Time formatting helpers shared by the booking flow.

Absolute instants are exchanged with external systems as UTC ISO strings;
human-facing messages render them in the caller's timezone.
"""

from collections import OrderedDict
from datetime import datetime, timezone
from typing import Iterable, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def get_timezone(tz_name: str) -> Optional[ZoneInfo]:
    """Return the ZoneInfo for an IANA name, or None if it is not a valid zone."""
    if not isinstance(tz_name, str) or not tz_name.strip():
        return None
    try:
        return ZoneInfo(tz_name.strip())
    except (ZoneInfoNotFoundError, ValueError):
        return None


def to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def epoch_ms(dt: datetime) -> int:
    """Millisecond-resolution absolute time used for instant comparisons."""
    return int(to_utc(dt).timestamp() * 1000)


def parse_iso_datetime(value: str) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp; naive values are treated as UTC."""
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        return None
    return to_utc(dt)


def iso_z(dt: datetime, micro: bool = False) -> str:
    """UTC ISO string with a ``Z`` suffix; ``micro`` pads to six fractional digits."""
    utc = to_utc(dt)
    if micro:
        return utc.strftime("%Y-%m-%dT%H:%M:%S.") + "000000Z"
    return utc.strftime("%Y-%m-%dT%H:%M:%SZ")


def format_time_readable(dt: datetime, tz_name: Optional[str] = None) -> str:
    tz = get_timezone(tz_name) if tz_name else None
    local = dt.astimezone(tz) if tz else dt
    return local.strftime("%I:%M %p on %A, %B %d").lstrip("0")


def summarize_slots_by_day(
    starts: Iterable[datetime],
    tz_name: str,
    per_day: int = 3,
) -> str:
    """Group slot starts by local day, e.g. ``Tue, Oct 20: 9:00 AM, 9:30 AM (+4 more)``."""
    tz = get_timezone(tz_name) or timezone.utc
    by_day: "OrderedDict[str, List[datetime]]" = OrderedDict()
    for start in starts:
        local = start.astimezone(tz)
        by_day.setdefault(local.strftime("%a, %b %d"), []).append(local)

    if not by_day:
        return "No available slots found"

    parts = []
    for day, times in by_day.items():
        shown = ", ".join(t.strftime("%I:%M %p").lstrip("0") for t in times[:per_day])
        extra = f" (+{len(times) - per_day} more)" if len(times) > per_day else ""
        parts.append(f"{day}: {shown}{extra}")
    return "Available slots: " + " | ".join(parts)
