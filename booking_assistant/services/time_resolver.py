"""Time-phrase resolution for booking requests.

Turns expressions like "tomorrow 9am", "in 2 hours" or "friday afternoon"
into an absolute UTC instant. Phrases are interpreted in the caller's IANA
timezone against a reference "now", with a forward bias: a time that already
passed today means the next occurrence. Common phrasings are handled here
directly when every word of the phrase is understood; anything else is
delegated to ``dateparser``.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

import dateparser

from booking_assistant.config.settings import DEFAULT_TIMEZONE
from booking_assistant.core.errors import ResolutionFailure
from booking_assistant.utils.formatter import get_timezone, to_utc


logger = logging.getLogger("booking.time_resolver")

_ISO_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}")
_IN_RE = re.compile(r"\bin\s+(\d+)\s+(minutes?|mins?|hours?|hrs?|days?)\b")
_CLOCK_RE = re.compile(r"\b(\d{1,2}):(\d{2})\s*(am|pm)?\b")
_HOUR_RE = re.compile(r"\b(\d{1,2})\s*(am|pm)\b")
_AT_HOUR_RE = re.compile(r"\bat\s+(\d{1,2})\b")
_DAY_AFTER_RE = re.compile(r"\b(?:the\s+)?day after tomorrow\b")
_DAYPART_RE = re.compile(r"\b(morning|afternoon|evening|night|noon|midnight)\b")
_FILLER_RE = re.compile(r"\b(at|around|about|by|this|on|in|the|o'?clock)\b")

_WEEKDAYS = {
    "monday": 0, "mon": 0,
    "tuesday": 1, "tue": 1, "tues": 1,
    "wednesday": 2, "wed": 2,
    "thursday": 3, "thu": 3, "thur": 3, "thurs": 3,
    "friday": 4, "fri": 4,
    "saturday": 5, "sat": 5,
    "sunday": 6, "sun": 6,
}
_WEEKDAY_RE = re.compile(r"\b(" + "|".join(sorted(_WEEKDAYS, key=len, reverse=True)) + r")\b")

# "afternoon" must be checked before "noon".
_DAYPART_HOURS = (
    ("morning", 9),
    ("afternoon", 14),
    ("noon", 12),
    ("evening", 18),
    ("night", 18),
)


def _normalize(expression: str) -> str:
    expr = expression.lower().strip()
    expr = expr.replace("a.m.", "am").replace("p.m.", "pm")
    return re.sub(r"\s+", " ", expr)


def _extract_time_from_expr(expr: str) -> Tuple[Optional[int], int, Optional[str]]:
    """Extract (hour, minute, matched_text) from an expression.

    Returns (None, 0, None) when the expression carries no clock time.
    """
    for pattern in (_CLOCK_RE, _HOUR_RE, _AT_HOUR_RE):
        match = pattern.search(expr)
        if not match:
            continue
        groups = match.groups()
        hour = int(groups[0])
        minute = int(groups[1]) if len(groups) == 3 else 0
        ampm = groups[-1] if len(groups) > 1 else None

        if ampm == "pm" and hour < 12:
            hour += 12
        elif ampm == "am" and hour == 12:
            hour = 0

        if hour > 23 or minute > 59:
            return (None, 0, None)
        return (hour, minute, match.group(0))

    if re.search(r"\bnoon\b", expr):
        return (12, 0, "noon")
    if re.search(r"\bmidnight\b", expr):
        return (0, 0, "midnight")
    return (None, 0, None)


def _has_meridiem(time_text: str) -> bool:
    return time_text.endswith(("am", "pm")) or time_text in ("noon", "midnight")


def _daypart_hour(expr: str) -> Optional[int]:
    for word, hour in _DAYPART_HOURS:
        if word in expr:
            return hour
    return None


def _leftover(expr: str, *tokens: Optional[str]) -> str:
    """What remains of ``expr`` once the understood tokens and filler words are removed."""
    rest = expr
    for token in tokens:
        if token:
            rest = rest.replace(token, " ", 1)
    rest = _DAYPART_RE.sub(" ", rest)
    rest = _FILLER_RE.sub(" ", rest)
    return re.sub(r"[\s,.]+", "", rest)


def _at(day: datetime, hour: int, minute: int = 0) -> datetime:
    return day.replace(hour=hour, minute=minute, second=0, microsecond=0)


def _parse_natural_time(
    expression: str,
    now: datetime,
    timezone_name: str,
) -> Tuple[Optional[datetime], Optional[str]]:
    """Parse natural language time into a timezone-aware datetime.

    ``now`` must already be expressed in ``timezone_name``.

    Returns:
        (datetime, None) on success
        (None, error_message) on failure
    """
    tz = get_timezone(timezone_name)
    expr = _normalize(expression)

    if _ISO_RE.match(expression.strip()):
        raw = expression.strip().replace("Z", "+00:00")
        try:
            dt = datetime.fromisoformat(raw)
        except ValueError:
            dt = None
        if dt is not None:
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=tz)
            return (dt, None)

    match = _IN_RE.search(expr)
    if match:
        amount = int(match.group(1))
        unit = match.group(2)
        if unit.startswith("min"):
            delta = timedelta(minutes=amount)
        elif unit.startswith("h"):
            delta = timedelta(hours=amount)
        else:
            delta = timedelta(days=amount)
        return (now + delta, None)

    hour, minute, time_text = _extract_time_from_expr(expr)
    daypart = _daypart_hour(expr)
    # "tonight at 8", "tomorrow evening at 7:30"
    if hour is not None and hour < 12 and not _has_meridiem(time_text) and (daypart or 0) >= 14:
        hour += 12

    day_after = _DAY_AFTER_RE.search(expr)
    if day_after:
        anchor: Optional[Tuple[datetime, str]] = (now + timedelta(days=2), day_after.group(0))
    elif "tomorrow" in expr:
        anchor = (now + timedelta(days=1), "tomorrow")
    elif "tonight" in expr:
        anchor = (now, "tonight")
    elif "today" in expr:
        anchor = (now, "today")
    else:
        anchor = None

    if anchor is not None:
        day, token = anchor
        if not _leftover(expr, token, time_text):
            if hour is not None:
                return (_at(day, hour, minute), None)
            if daypart is not None:
                return (_at(day, daypart), None)
            if day == now:
                return (now + timedelta(hours=1), None)
            return (_at(day, 9), None)

    weekday = _WEEKDAY_RE.search(expr)
    if anchor is None and weekday and not _leftover(expr, weekday.group(0), time_text):
        if hour is None:
            hour, minute = daypart or 9, 0
        days_ahead = (_WEEKDAYS[weekday.group(1)] - now.weekday()) % 7
        result = _at(now + timedelta(days=days_ahead), hour, minute)
        if result <= now:
            result = result + timedelta(days=7)
        return (result, None)

    if anchor is None and not weekday and hour is not None and not _leftover(expr, time_text):
        result = _at(now, hour, minute)
        if result <= now:
            result = result + timedelta(days=1)
        return (result, None)

    parsed = dateparser.parse(
        expression,
        languages=["en"],
        settings={
            "PREFER_DATES_FROM": "future",
            "RELATIVE_BASE": now.replace(tzinfo=None),
            "TIMEZONE": timezone_name,
            "RETURN_AS_TIMEZONE_AWARE": True,
        },
    )
    if parsed is not None:
        return (parsed, None)

    return (
        None,
        f"Could not understand time '{expression}'. Please specify like 'tomorrow at 3pm' or '2025-01-21T15:00:00'.",
    )


def resolve_time_phrase(
    phrase: str,
    reference_now: Optional[datetime] = None,
    timezone_name: Optional[str] = None,
) -> datetime:
    """Resolve a time phrase to an absolute UTC instant.

    Raises:
        ResolutionFailure: the phrase is empty, the timezone is unknown, or
            the phrase cannot be parsed.
    """
    if not isinstance(phrase, str) or not phrase.strip():
        raise ResolutionFailure("A time phrase is required, e.g. 'tomorrow at 3pm'.")

    tz_name = (timezone_name or "").strip() or DEFAULT_TIMEZONE
    tz = get_timezone(tz_name)
    if tz is None:
        raise ResolutionFailure(f"'{tz_name}' is not a valid IANA timezone.")

    now = reference_now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now_local = now.astimezone(tz)

    resolved, error = _parse_natural_time(phrase, now_local, tz_name)
    if resolved is None:
        logger.info("Unparseable time phrase %r (%s)", phrase, tz_name)
        raise ResolutionFailure(error or f"Could not parse '{phrase}'.", phrase=phrase)

    instant = to_utc(resolved)
    logger.info("Resolved %r in %s to %s", phrase, tz_name, instant.isoformat())
    return instant
