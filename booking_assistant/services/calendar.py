"""Google Calendar gateway for the host calendar.

Conflict-checked event creation with Google Meet provisioning and attendee
notification, plus the event lookups and updates used by rescheduling.
Failures are raised as booking errors; callers decide how to report them.
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import httpx

from booking_assistant.config.settings import (
    GOOGLE_CALENDAR_API,
    HTTP_TIMEOUT_SECONDS,
    assistant_marker,
    calendar_id,
)
from booking_assistant.core.errors import Conflict, NotFound, Unauthenticated, UpstreamUnavailable
from booking_assistant.models.booking import AssistantMeeting
from booking_assistant.services.google_oauth import get_google_access_token
from booking_assistant.utils.formatter import epoch_ms, iso_z, parse_iso_datetime


logger = logging.getLogger("booking.calendar")

_MEET_URI_RE = re.compile(r"^https://meet\.google\.com/([a-z0-9-]+)$", re.IGNORECASE)

# Google may need a moment to attach conference data to a new event.
MEET_LINK_SETTLE_SECONDS = 0.5


@dataclass
class BookingRecord:
    """A calendar event created for a booking."""

    event_id: str
    start: datetime
    end: datetime
    html_link: Optional[str] = None
    conference_link: Optional[str] = None


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)


async def _calendar_auth_headers(force_refresh: bool = False) -> Dict[str, str]:
    token = await get_google_access_token(force_refresh=force_refresh)
    if not token:
        return {}
    return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}


async def _request(
    method: str,
    path: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    json: Optional[Dict[str, Any]] = None,
    not_found: Optional[str] = None,
) -> Dict[str, Any]:
    """Send one Calendar API request and return the decoded body.

    A 401 is retried once with a force-refreshed token. When ``not_found`` is
    given, 404/410 responses raise NotFound with that message.
    """
    headers = await _calendar_auth_headers()
    if not headers:
        raise Unauthenticated()

    url = f"{GOOGLE_CALENDAR_API}{path}"
    try:
        async with _client() as client:
            resp = await client.request(method, url, headers=headers, params=params, json=json)
            if resp.status_code == 401:
                logger.warning("Calendar API returned 401, retrying with fresh token...")
                headers = await _calendar_auth_headers(force_refresh=True)
                if not headers:
                    raise Unauthenticated()
                resp = await client.request(method, url, headers=headers, params=params, json=json)
    except httpx.RequestError as exc:
        logger.warning("Calendar %s %s failed: %r", method, path, exc)
        raise UpstreamUnavailable("Google Calendar request failed.", detail=repr(exc)) from exc

    if resp.status_code == 401:
        raise Unauthenticated()
    if not_found and resp.status_code in (404, 410):
        raise NotFound(not_found)
    if not resp.is_success:
        body = (resp.text or "").strip()[:800]
        logger.warning(
            "Calendar %s %s failed: status=%s body=%s",
            method,
            path,
            resp.status_code,
            body,
        )
        raise UpstreamUnavailable(
            f"Google Calendar rejected the request ({resp.status_code}).",
            upstream_status=resp.status_code,
            detail=body,
        )

    if not resp.content:
        return {}
    return resp.json()


def _events_path(event_id: Optional[str] = None) -> str:
    path = f"/calendars/{calendar_id()}/events"
    return f"{path}/{event_id}" if event_id else path


def _normalize_meet_link(raw: Optional[str]) -> Optional[str]:
    if not isinstance(raw, str) or not raw.strip():
        return None
    base = raw.strip().split("?")[0].rstrip("/")
    return base.lower() if _MEET_URI_RE.match(base) else None


def extract_meet_link(event: Dict[str, Any]) -> Optional[str]:
    conference_data = event.get("conferenceData") or {}
    for entry in conference_data.get("entryPoints") or []:
        if entry.get("entryPointType") == "video":
            link = _normalize_meet_link(entry.get("uri"))
            if link:
                return link
    return _normalize_meet_link(event.get("hangoutLink"))


def _event_time(info: Optional[Dict[str, Any]]) -> Optional[datetime]:
    info = info or {}
    return parse_iso_datetime(info.get("dateTime") or "")


def event_to_meeting(event: Dict[str, Any]) -> AssistantMeeting:
    start_info = event.get("start") or {}
    return AssistantMeeting(
        event_id=event.get("id", ""),
        summary=event.get("summary"),
        description=event.get("description") or "",
        start=_event_time(start_info),
        end=_event_time(event.get("end")),
        timezone=start_info.get("timeZone"),
        attendees=[a.get("email", "") for a in event.get("attendees") or [] if a.get("email")],
        html_link=event.get("htmlLink"),
        conference_link=extract_meet_link(event),
        raw=event,
    )


def build_description(invitee: str, notes: Optional[str]) -> str:
    """Event description carrying the assistant marker and the invitee."""
    body = f"{assistant_marker()}\nUser: {invitee}"
    return f"{notes}\n\n{body}" if notes else body


async def query_busy(start: datetime, end: datetime, timezone_name: str) -> List[Tuple[datetime, datetime]]:
    """Return the busy intervals of the host calendar inside [start, end)."""
    cal_id = calendar_id()
    body = {
        "timeMin": iso_z(start),
        "timeMax": iso_z(end),
        "timeZone": timezone_name,
        "items": [{"id": cal_id}],
    }
    data = await _request("POST", "/freeBusy", json=body)
    calendars = data.get("calendars") or {}
    busy = (calendars.get(cal_id) or {}).get("busy") or []

    intervals: List[Tuple[datetime, datetime]] = []
    for block in busy:
        block_start = parse_iso_datetime(block.get("start") or "")
        block_end = parse_iso_datetime(block.get("end") or "")
        if block_start and block_end:
            intervals.append((block_start, block_end))
    return intervals


async def ensure_slot_free(
    start: datetime,
    end: datetime,
    timezone_name: str,
    ignore: Optional[Tuple[datetime, datetime]] = None,
) -> None:
    """Raise Conflict if the host calendar is busy anywhere in [start, end).

    ``ignore`` skips a busy block with exactly that interval, e.g. the
    meeting that is being moved.
    """
    busy = await query_busy(start, end, timezone_name)
    if ignore is not None:
        ignored = (epoch_ms(ignore[0]), epoch_ms(ignore[1]))
        busy = [b for b in busy if (epoch_ms(b[0]), epoch_ms(b[1])) != ignored]
    if busy:
        logger.info("Slot %s - %s is busy: %s", iso_z(start), iso_z(end), busy)
        raise Conflict("Time is no longer available", busy=[(iso_z(s), iso_z(e)) for s, e in busy])


async def get_event(event_id: str) -> Dict[str, Any]:
    return await _request(
        "GET",
        _events_path(event_id),
        params={"conferenceDataVersion": 1},
        not_found="Event not found or not accessible",
    )


async def create_booking(
    *,
    invitee: str,
    start: datetime,
    duration_minutes: int,
    timezone_name: str,
    title: str,
    notes: Optional[str] = None,
) -> BookingRecord:
    """Create a conflict-checked event with a Meet link and invite the invitee.

    Raises:
        Conflict: the host calendar is busy during the requested interval.
        Unauthenticated / UpstreamUnavailable: calendar access failed.
    """
    end = start + timedelta(minutes=duration_minutes)
    await ensure_slot_free(start, end, timezone_name)

    body: Dict[str, Any] = {
        "summary": title,
        "description": build_description(invitee, notes),
        "start": {"dateTime": iso_z(start), "timeZone": timezone_name},
        "end": {"dateTime": iso_z(end), "timeZone": timezone_name},
        "attendees": [{"email": invitee}],
        "conferenceData": {
            "createRequest": {
                "requestId": str(uuid.uuid4()),
                "conferenceSolutionKey": {"type": "hangoutsMeet"},
            }
        },
    }
    params = {"conferenceDataVersion": 1, "sendUpdates": "all"}

    logger.info("Creating event '%s' for %s at %s (%s)", title, invitee, iso_z(start), timezone_name)
    event = await _request("POST", _events_path(), params=params, json=body)

    event_id = event.get("id", "")
    meet_link = extract_meet_link(event)
    if not meet_link and event_id:
        await asyncio.sleep(MEET_LINK_SETTLE_SECONDS)
        try:
            meet_link = extract_meet_link(await get_event(event_id))
        except (NotFound, UpstreamUnavailable) as exc:
            logger.warning("Could not refetch conference data for %s: %s", event_id, exc)

    return BookingRecord(
        event_id=event_id,
        start=start,
        end=end,
        html_link=event.get("htmlLink"),
        conference_link=meet_link,
    )


async def list_events(
    time_min: datetime,
    time_max: datetime,
    query: Optional[str] = None,
    max_results: int = 50,
) -> List[Dict[str, Any]]:
    """List non-cancelled single events in a window, start-time ascending."""
    params: Dict[str, Any] = {
        "timeMin": iso_z(time_min),
        "timeMax": iso_z(time_max),
        "singleEvents": True,
        "orderBy": "startTime",
        "maxResults": max_results,
    }
    if query:
        params["q"] = query
    data = await _request("GET", _events_path(), params=params)
    return [ev for ev in data.get("items") or [] if ev.get("status") != "cancelled"]


async def update_event(event_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
    """Replace an event, notifying attendees and keeping its conference data."""
    params = {"conferenceDataVersion": 1, "sendUpdates": "all"}
    return await _request(
        "PUT",
        _events_path(event_id),
        params=params,
        json=body,
        not_found="Event not found or not accessible",
    )
