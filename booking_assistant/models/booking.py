"""Booking models for the booking assistant.

All of these are request-scoped values: nothing here is persisted, the host
calendar stays the only source of truth for booking state.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from booking_assistant.config.settings import (
    ALLOWED_DURATIONS,
    DEFAULT_DURATION_MINUTES,
    DEFAULT_TIMEZONE,
)
from booking_assistant.utils.formatter import epoch_ms, get_timezone, iso_z, to_utc


EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


class BookingOutcome(str, Enum):
    SUCCESS = "success"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    ERROR = "error"


class Slot(BaseModel):
    """One bookable interval returned by the availability provider."""

    start: datetime
    end: datetime
    scheduling_url: Optional[str] = None

    @field_validator("start", "end")
    @classmethod
    def _normalize_instant(cls, value: datetime) -> datetime:
        return to_utc(value)

    @classmethod
    def starting_at(cls, start: datetime, duration_minutes: int) -> "Slot":
        start = to_utc(start)
        return cls(start=start, end=start + timedelta(minutes=duration_minutes))

    @property
    def start_ms(self) -> int:
        return epoch_ms(self.start)


class BookingRequest(BaseModel):
    """A request to book a meeting with the host.

    Exactly one of ``start_time`` (absolute) or ``datetime_text`` (free-text
    phrase interpreted in ``timezone``) must be set.
    """

    invitee: str
    duration: int = DEFAULT_DURATION_MINUTES
    start_time: Optional[datetime] = None
    datetime_text: Optional[str] = None
    timezone: str = DEFAULT_TIMEZONE
    title: Optional[str] = None
    notes: Optional[str] = None
    confirm: bool = True

    @field_validator("invitee", mode="before")
    @classmethod
    def _validate_invitee(cls, value: Any) -> str:
        email = str(value or "").strip()
        if not EMAIL_RE.match(email):
            raise ValueError(f"'{email}' is not a valid email address")
        return email

    @field_validator("duration", mode="before")
    @classmethod
    def _validate_duration(cls, value: Any) -> int:
        if value is None or value == "":
            return DEFAULT_DURATION_MINUTES
        try:
            minutes = int(value)
        except (TypeError, ValueError):
            raise ValueError(f"duration must be one of {list(ALLOWED_DURATIONS)} minutes")
        if minutes not in ALLOWED_DURATIONS:
            raise ValueError(f"duration must be one of {list(ALLOWED_DURATIONS)} minutes")
        return minutes

    @field_validator("timezone", mode="before")
    @classmethod
    def _validate_timezone(cls, value: Any) -> str:
        if value is None or (isinstance(value, str) and not value.strip()):
            return DEFAULT_TIMEZONE
        if get_timezone(value) is None:
            raise ValueError(f"'{value}' is not a valid IANA timezone")
        return value.strip()

    @field_validator("datetime_text", "title", "notes", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @model_validator(mode="after")
    def _exactly_one_time(self) -> "BookingRequest":
        if (self.start_time is None) == (self.datetime_text is None):
            raise ValueError("provide exactly one of an absolute start time or a time phrase")
        if self.start_time is not None:
            if self.start_time.tzinfo is None:
                self.start_time = self.start_time.replace(tzinfo=get_timezone(self.timezone))
            self.start_time = to_utc(self.start_time)
        return self

    @property
    def is_absolute(self) -> bool:
        return self.start_time is not None


class BookingLinks(BaseModel):
    calendar_link: Optional[str] = None
    conference_link: Optional[str] = None


class EventSnapshot(BaseModel):
    event_id: Optional[str] = None
    summary: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    timezone: Optional[str] = None


class BookingResult(BaseModel):
    """Structured outcome of one booking or reschedule request."""

    outcome: BookingOutcome
    status: int = 200
    error: Optional[str] = None
    message: Optional[str] = None
    confirmed_slot: Optional[Slot] = None
    proposed_slot: Optional[Slot] = None
    event_id: Optional[str] = None
    links: Optional[BookingLinks] = None
    suggestions: List[datetime] = Field(default_factory=list)
    original_event: Optional[EventSnapshot] = None
    new_event: Optional[EventSnapshot] = None
    retried: bool = False

    @property
    def ok(self) -> bool:
        return self.outcome == BookingOutcome.SUCCESS

    @classmethod
    def from_error(cls, exc: Any) -> "BookingResult":
        """Build a failure result from a BookingError."""
        suggestions = getattr(exc, "details", {}).get("suggestions") or []
        return cls(
            outcome=exc.outcome,
            status=exc.status,
            error=exc.code,
            message=exc.message,
            suggestions=suggestions,
        )

    def to_response(self) -> Dict[str, Any]:
        body = self.model_dump(mode="json", exclude_none=True)
        body["ok"] = self.ok
        if not self.suggestions:
            body.pop("suggestions", None)
        return body


class AssistantMeeting(BaseModel):
    """A future calendar event previously booked by this assistant."""

    event_id: str
    summary: Optional[str] = None
    description: str = ""
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    timezone: Optional[str] = None
    attendees: List[str] = Field(default_factory=list)
    html_link: Optional[str] = None
    conference_link: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict, exclude=True)

    def snapshot(self) -> EventSnapshot:
        return EventSnapshot(
            event_id=self.event_id,
            summary=self.summary,
            start=self.start,
            end=self.end,
            timezone=self.timezone,
        )


class ToolCallEnvelope(BaseModel):
    """Canonical form of a tool call emitted by the conversational agent."""

    tool_name: str = ""
    arguments: Dict[str, Any] = Field(default_factory=dict)
    correlation_id: str
    conversation_id: Optional[str] = None


class ToolResult(BaseModel):
    """Result posted back to the agent for one tool call."""

    tool_call_id: str
    tool: str = ""
    ok: bool
    message: Optional[str] = None
    error: Optional[str] = None
    status: int = 200
    start_time: Optional[str] = None
    html_link: Optional[str] = None
    hangout_link: Optional[str] = None
    suggestions: List[str] = Field(default_factory=list)
    original_event: Optional[EventSnapshot] = None
    new_event: Optional[EventSnapshot] = None

    @classmethod
    def from_booking(cls, envelope: ToolCallEnvelope, result: BookingResult) -> "ToolResult":
        slot = result.confirmed_slot or result.proposed_slot
        links = result.links or BookingLinks()
        return cls(
            tool_call_id=envelope.correlation_id,
            tool=envelope.tool_name,
            ok=result.ok,
            message=result.message,
            error=result.error,
            status=result.status,
            start_time=iso_z(slot.start) if slot else None,
            html_link=links.calendar_link,
            hangout_link=links.conference_link,
            suggestions=[iso_z(s) for s in result.suggestions],
            original_event=result.original_event,
            new_event=result.new_event,
        )

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
