"""Error taxonomy for the booking flow.

Gateways raise these; the intent resolver, reschedule resolver and tool-call
dispatcher turn them into structured results at their boundary.
"""

from __future__ import annotations

from typing import Any

from booking_assistant.models.booking import BookingOutcome


class BookingError(Exception):
    """Base class for every failure the booking flow reports to its caller."""

    status = 500
    code = "BOOKING_ERROR"
    outcome = BookingOutcome.ERROR

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidInput(BookingError):
    """Missing or malformed request fields. Never retried."""

    status = 400
    code = "VALIDATION_ERROR"


class ResolutionFailure(InvalidInput):
    """A time phrase could not be interpreted."""

    code = "PARSE_ERROR"


class Unauthenticated(BookingError):
    """No valid calendar credential is available."""

    status = 401
    code = "AUTH_ERROR"

    def __init__(self, message: str = "", **details: Any) -> None:
        super().__init__(
            message or "Google Calendar is not connected. Visit /oauth/start to reauthorize.",
            **details,
        )


class NotFound(BookingError):
    status = 404
    code = "NOT_FOUND"
    outcome = BookingOutcome.NOT_FOUND


class Conflict(BookingError):
    """The slot is (or became) unavailable."""

    status = 409
    code = "TIME_CONFLICT"
    outcome = BookingOutcome.CONFLICT


class UpstreamUnavailable(BookingError):
    """The availability provider or calendar backend failed."""

    status = 502
    code = "UPSTREAM_UNAVAILABLE"
