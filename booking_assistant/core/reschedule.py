"""Reschedule resolver.

Finds an invitee's assistant-booked meeting (by explicit id or by a live
calendar search), checks that the new time is free and moves the event while
keeping its attendees and conference data. There is no persisted booking
store: every lookup queries the host calendar.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

from booking_assistant.config.settings import (
    DEFAULT_DURATION_MINUTES,
    DEFAULT_TIMEZONE,
    RESCHEDULE_SEARCH_DAYS,
    RESCHEDULE_SEARCH_MAX_RESULTS,
    assistant_marker,
)
from booking_assistant.core.errors import BookingError, Conflict, InvalidInput, NotFound
from booking_assistant.models.booking import (
    EMAIL_RE,
    AssistantMeeting,
    BookingLinks,
    BookingOutcome,
    BookingResult,
    Slot,
)
from booking_assistant.services import calendar
from booking_assistant.services.time_resolver import resolve_time_phrase
from booking_assistant.utils.formatter import format_time_readable, get_timezone, iso_z, to_utc


logger = logging.getLogger("booking.reschedule")

DEFAULT_REASON = "User requested reschedule"


def _is_invited(event: Dict[str, Any], invitee: str) -> bool:
    wanted = invitee.strip().lower()
    for attendee in event.get("attendees") or []:
        email = (attendee.get("email") or "").strip().lower()
        if email == wanted and attendee.get("responseStatus") != "declined":
            return True
    return False


def _is_assistant_booked(event: Dict[str, Any]) -> bool:
    return assistant_marker() in (event.get("description") or "")


async def list_assistant_meetings(invitee: str, now: Optional[datetime] = None) -> List[AssistantMeeting]:
    """Future meetings booked by the assistant where ``invitee`` is still attending.

    Results are ordered by start time, earliest first.
    """
    current = to_utc(now) if now else datetime.now(timezone.utc)
    events = await calendar.list_events(
        current,
        current + timedelta(days=RESCHEDULE_SEARCH_DAYS),
        query=assistant_marker(),
        max_results=RESCHEDULE_SEARCH_MAX_RESULTS,
    )
    matches = [
        calendar.event_to_meeting(ev)
        for ev in events
        if _is_invited(ev, invitee) and _is_assistant_booked(ev)
    ]
    matches = [m for m in matches if m.start is not None]
    matches.sort(key=lambda m: m.start)
    logger.info("Found %d assistant-booked meetings for %s", len(matches), invitee)
    return matches


def coerce_new_start(
    value: Union[str, datetime, None],
    timezone_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> datetime:
    """Turn an ISO timestamp, a time phrase or a datetime into a UTC instant.

    Naive values are read in ``timezone_name``.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            tz = get_timezone(timezone_name or DEFAULT_TIMEZONE)
            if tz is None:
                raise InvalidInput(f"'{timezone_name}' is not a valid IANA timezone")
            value = value.replace(tzinfo=tz)
        return to_utc(value)
    if not isinstance(value, str) or not value.strip():
        raise InvalidInput("A new start time is required.")
    return resolve_time_phrase(value, reference_now=now, timezone_name=timezone_name)


async def _find_meeting(invitee: str, event_id: Optional[str], now: Optional[datetime]) -> AssistantMeeting:
    if event_id:
        return calendar.event_to_meeting(await calendar.get_event(event_id))

    meetings = await list_assistant_meetings(invitee, now=now)
    if not meetings:
        raise NotFound(f"No upcoming meetings booked by the assistant were found for {invitee}.")
    return meetings[0]


def _update_body(
    meeting: AssistantMeeting,
    new_start: datetime,
    new_end: datetime,
    timezone_name: str,
    reason: str,
) -> Dict[str, Any]:
    original = meeting.raw
    body: Dict[str, Any] = {
        key: original[key]
        for key in ("summary", "location", "attendees", "conferenceData", "reminders")
        if key in original
    }
    description = original.get("description") or ""
    note = f"Rescheduled: {reason}"
    body["description"] = f"{description}\n\n{note}" if description else note
    body["start"] = {"dateTime": iso_z(new_start), "timeZone": timezone_name}
    body["end"] = {"dateTime": iso_z(new_end), "timeZone": timezone_name}
    return body


async def _reschedule(
    invitee: str,
    new_start: Union[str, datetime, None],
    reason: Optional[str],
    event_id: Optional[str],
    new_end: Union[str, datetime, None],
    timezone_name: Optional[str],
    now: Optional[datetime],
) -> BookingResult:
    invitee = (invitee or "").strip()
    if not event_id and not EMAIL_RE.match(invitee):
        raise InvalidInput("A valid invitee email is required to find the meeting.")
    if timezone_name and get_timezone(timezone_name) is None:
        raise InvalidInput(f"'{timezone_name}' is not a valid IANA timezone")

    meeting = await _find_meeting(invitee, event_id, now)
    tz_name = timezone_name or meeting.timezone or DEFAULT_TIMEZONE

    start = coerce_new_start(new_start, tz_name, now)
    if new_end is not None and new_end != "":
        end = coerce_new_start(new_end, tz_name, now)
    elif meeting.start and meeting.end and meeting.end > meeting.start:
        end = start + (meeting.end - meeting.start)
    else:
        end = start + timedelta(minutes=DEFAULT_DURATION_MINUTES)
    if end <= start:
        raise InvalidInput("The new end time must be after the new start time.")

    current = to_utc(now) if now else datetime.now(timezone.utc)
    if start <= current:
        raise InvalidInput("The new time must be in the future.")

    ignore = (meeting.start, meeting.end) if meeting.start and meeting.end else None
    try:
        await calendar.ensure_slot_free(start, end, tz_name, ignore=ignore)
    except Conflict as exc:
        raise Conflict("The new time slot is no longer available", **exc.details) from exc

    body = _update_body(meeting, start, end, tz_name, reason or DEFAULT_REASON)
    logger.info(
        "Moving event %s for %s from %s to %s",
        meeting.event_id,
        invitee or "(explicit id)",
        iso_z(meeting.start) if meeting.start else "?",
        iso_z(start),
    )
    updated = calendar.event_to_meeting(await calendar.update_event(meeting.event_id, body))

    before = format_time_readable(meeting.start, tz_name) if meeting.start else "its previous time"
    return BookingResult(
        outcome=BookingOutcome.SUCCESS,
        confirmed_slot=Slot(start=start, end=end),
        event_id=updated.event_id or meeting.event_id,
        links=BookingLinks(
            calendar_link=updated.html_link or meeting.html_link,
            conference_link=updated.conference_link or meeting.conference_link,
        ),
        message=f"Meeting moved from {before} to {format_time_readable(start, tz_name)}.",
        original_event=meeting.snapshot(),
        new_event=updated.snapshot(),
    )


async def reschedule_meeting(
    invitee: str,
    new_start: Union[str, datetime, None],
    reason: Optional[str] = None,
    event_id: Optional[str] = None,
    new_end: Union[str, datetime, None] = None,
    timezone_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> BookingResult:
    """Move an assistant-booked meeting to ``new_start``.

    A busy new slot is terminal: there is no slot list to fall back to.
    Never raises; failures become BookingResults.
    """
    try:
        return await _reschedule(invitee, new_start, reason, event_id, new_end, timezone_name, now)
    except BookingError as exc:
        logger.info("Reschedule for %s failed: %s (%s)", invitee, exc.message, exc.code)
        return BookingResult.from_error(exc)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Unexpected error while rescheduling for %s", invitee)
        return BookingResult(
            outcome=BookingOutcome.ERROR,
            status=500,
            error="RESCHEDULE_FAILED",
            message=f"Reschedule failed: {exc}",
        )
