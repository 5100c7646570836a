"""Configuration package for the booking assistant."""

from booking_assistant.config.settings import (
    ALLOWED_DURATIONS,
    AVAILABILITY_HORIZON_DAYS,
    DEFAULT_DURATION_MINUTES,
    DEFAULT_TIMEZONE,
    RESCHEDULE_SEARCH_DAYS,
    SUGGESTION_COUNT,
)

__all__ = [
    "ALLOWED_DURATIONS",
    "AVAILABILITY_HORIZON_DAYS",
    "DEFAULT_DURATION_MINUTES",
    "DEFAULT_TIMEZONE",
    "RESCHEDULE_SEARCH_DAYS",
    "SUGGESTION_COUNT",
]
