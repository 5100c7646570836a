"""Data models for the booking assistant."""

from booking_assistant.models.booking import (
    AssistantMeeting,
    BookingLinks,
    BookingOutcome,
    BookingRequest,
    BookingResult,
    EventSnapshot,
    Slot,
    ToolCallEnvelope,
    ToolResult,
)

__all__ = [
    "AssistantMeeting",
    "BookingLinks",
    "BookingOutcome",
    "BookingRequest",
    "BookingResult",
    "EventSnapshot",
    "Slot",
    "ToolCallEnvelope",
    "ToolResult",
]
