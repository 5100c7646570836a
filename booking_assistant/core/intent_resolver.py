"""Booking intent resolution.

Takes a booking request with either an absolute start time or a free-text
phrase, picks a slot from the live availability feed when needed, and books
it on the host calendar. If the chosen slot is taken between selection and
creation, exactly one retry is made against the next slot of the same
availability list. Every failure is returned as a BookingResult.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, List, Optional

from pydantic import ValidationError

from booking_assistant.config.settings import SUGGESTION_COUNT, default_title
from booking_assistant.core.errors import BookingError, Conflict, InvalidInput
from booking_assistant.models.booking import (
    BookingLinks,
    BookingOutcome,
    BookingRequest,
    BookingResult,
    Slot,
)
from booking_assistant.services.availability import list_slots
from booking_assistant.services.calendar import BookingRecord, create_booking
from booking_assistant.services.time_resolver import resolve_time_phrase
from booking_assistant.utils.formatter import epoch_ms, format_time_readable


logger = logging.getLogger("booking.intent")


def build_booking_request(**fields: Any) -> BookingRequest:
    """Validate raw fields into a BookingRequest, raising InvalidInput on failure."""
    try:
        return BookingRequest(**fields)
    except ValidationError as exc:
        errors = exc.errors()
        reason = errors[0].get("msg", "invalid booking request") if errors else "invalid booking request"
        if reason.startswith("Value error, "):
            reason = reason[len("Value error, "):]
        raise InvalidInput(reason) from exc


def select_slot_index(slots: List[Slot], target: datetime) -> Optional[int]:
    """Index of the slot starting exactly at ``target``, else the first one after it.

    ``slots`` must be ordered by start time.
    """
    target_ms = epoch_ms(target)
    for idx, slot in enumerate(slots):
        if slot.start_ms == target_ms:
            return idx
    for idx, slot in enumerate(slots):
        if slot.start_ms >= target_ms:
            return idx
    return None


def _proposal(slot: Slot, request: BookingRequest) -> BookingResult:
    return BookingResult(
        outcome=BookingOutcome.SUCCESS,
        proposed_slot=slot,
        message=f"{format_time_readable(slot.start, request.timezone)} is available.",
    )


def _confirmed(record: BookingRecord, request: BookingRequest, title: str, retried: bool) -> BookingResult:
    when = format_time_readable(record.start, request.timezone)
    return BookingResult(
        outcome=BookingOutcome.SUCCESS,
        confirmed_slot=Slot(start=record.start, end=record.end),
        event_id=record.event_id,
        links=BookingLinks(calendar_link=record.html_link, conference_link=record.conference_link),
        message=f"'{title}' is booked for {when}. An invitation was sent to {request.invitee}.",
        retried=retried,
    )


async def _create(request: BookingRequest, start: datetime, title: str, notes: Optional[str]) -> BookingRecord:
    return await create_booking(
        invitee=request.invitee,
        start=start,
        duration_minutes=request.duration,
        timezone_name=request.timezone,
        title=title,
        notes=notes,
    )


async def _resolve(request: BookingRequest, now: Optional[datetime]) -> BookingResult:
    title = request.title or default_title()

    if request.is_absolute:
        if not request.confirm:
            return _proposal(Slot.starting_at(request.start_time, request.duration), request)
        record = await _create(request, request.start_time, title, request.notes)
        logger.info("Booked %s at exact time %s", request.invitee, record.start.isoformat())
        return _confirmed(record, request, title, retried=False)

    phrase = request.datetime_text
    target = resolve_time_phrase(phrase, reference_now=now, timezone_name=request.timezone)

    slots = await list_slots(request.duration, request.timezone)
    if not slots:
        raise Conflict("No availability returned")

    idx = select_slot_index(slots, target)
    if idx is None:
        suggestions = [s.start for s in slots[:SUGGESTION_COUNT]]
        raise Conflict("Requested time not available", suggestions=suggestions)

    chosen = slots[idx]
    if epoch_ms(chosen.start) != epoch_ms(target):
        logger.info("No slot at %s; nearest later slot is %s", target.isoformat(), chosen.start.isoformat())
    if not request.confirm:
        return _proposal(chosen, request)

    notes = request.notes or f'Booked via assistant (request: "{phrase}" in {request.timezone})'
    try:
        record = await _create(request, chosen.start, title, notes)
        return _confirmed(record, request, title, retried=False)
    except Conflict:
        if idx + 1 >= len(slots):
            raise
        fallback = slots[idx + 1]
        logger.warning(
            "Slot %s was taken before booking; retrying once with %s",
            chosen.start.isoformat(),
            fallback.start.isoformat(),
        )

    retry_notes = f'Auto-picked next slot after conflict. Original: "{phrase}" in {request.timezone}'
    record = await _create(request, fallback.start, title, request.notes or retry_notes)
    return _confirmed(record, request, title, retried=True)


async def resolve_booking(request: BookingRequest, now: Optional[datetime] = None) -> BookingResult:
    """Resolve and book a request. Never raises; failures become BookingResults."""
    try:
        return await _resolve(request, now)
    except BookingError as exc:
        logger.info("Booking for %s failed: %s (%s)", request.invitee, exc.message, exc.code)
        return BookingResult.from_error(exc)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Unexpected error while booking for %s", request.invitee)
        return BookingResult(
            outcome=BookingOutcome.ERROR,
            status=500,
            error="BOOKING_FAILED",
            message=f"Booking failed: {exc}",
        )
