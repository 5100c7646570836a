"""Availability gateway backed by the Calendly scheduling API.

Fetches the host's open slots for one event type (one per meeting length)
over the provider's seven-day maximum window. No retries happen here.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx

from booking_assistant.config.settings import (
    AVAILABILITY_HORIZON_DAYS,
    AVAILABILITY_START_OFFSET_SECONDS,
    CALENDLY_API,
    DEFAULT_TIMEZONE,
    HTTP_TIMEOUT_SECONDS,
    calendly_event_type,
    calendly_token,
)
from booking_assistant.core.errors import UpstreamUnavailable
from booking_assistant.models.booking import Slot
from booking_assistant.utils.formatter import iso_z, parse_iso_datetime


logger = logging.getLogger("booking.availability")


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)


def _to_slot(item: Dict[str, Any], duration_minutes: int) -> Optional[Slot]:
    start = parse_iso_datetime(item.get("start_time") or "")
    if start is None:
        return None
    end = parse_iso_datetime(item.get("end_time") or "") or start + timedelta(minutes=duration_minutes)
    return Slot(start=start, end=end, scheduling_url=item.get("scheduling_url") or None)


async def list_slots(
    duration_minutes: int,
    timezone_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[Slot]:
    """Return the open slots for ``duration_minutes``, start-time ascending.

    Raises:
        UpstreamUnavailable: missing provider configuration, network
            failure, or a non-success response.
    """
    tz_name = timezone_name or DEFAULT_TIMEZONE
    token = calendly_token()
    event_type = calendly_event_type(duration_minutes)
    if not token:
        raise UpstreamUnavailable("Availability provider is not configured (missing CALENDLY_TOKEN).")
    if not event_type:
        raise UpstreamUnavailable(f"No availability event type is configured for {duration_minutes}-minute meetings.")

    current = now or datetime.now(timezone.utc)
    window_start = current + timedelta(seconds=AVAILABILITY_START_OFFSET_SECONDS)
    window_end = current + timedelta(days=AVAILABILITY_HORIZON_DAYS)

    params = {
        "event_type": event_type,
        "start_time": iso_z(window_start, micro=True),
        "end_time": iso_z(window_end, micro=True),
        "timezone": tz_name,
    }
    headers = {"Authorization": f"Bearer {token}"}

    try:
        async with _client() as client:
            resp = await client.get(f"{CALENDLY_API}/event_type_available_times", params=params, headers=headers)
    except httpx.RequestError as exc:
        logger.warning("Availability request failed: %r", exc)
        raise UpstreamUnavailable("Failed to fetch availability.", detail=repr(exc)) from exc

    if not resp.is_success:
        body = (resp.text or "").strip()[:800]
        logger.warning("Availability provider returned %s: %s", resp.status_code, body)
        raise UpstreamUnavailable("Failed to fetch availability.", upstream_status=resp.status_code, detail=body)

    data = resp.json() or {}
    slots = [
        slot
        for slot in (_to_slot(item, duration_minutes) for item in data.get("collection") or [])
        if slot is not None
    ]
    slots.sort(key=lambda s: s.start_ms)

    logger.info("Fetched %d %d-minute slots (%s)", len(slots), duration_minutes, tz_name)
    return slots
