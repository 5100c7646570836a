"""Booking limits and environment-backed settings for the booking assistant.

Constants in this module describe the hard limits of the booking flow. The
accessor functions read the environment at call time so a `.env` file loaded
by the application (or a patched environment in tests) is always honoured.
"""

from __future__ import annotations

import os
from typing import Optional


# Fallback IANA timezone when a caller does not send one.
DEFAULT_TIMEZONE = "America/Los_Angeles"

# Meeting lengths (minutes) that the host publishes an event type for.
ALLOWED_DURATIONS = (15, 30)
DEFAULT_DURATION_MINUTES = 30

# The availability provider rejects windows longer than seven days.
AVAILABILITY_HORIZON_DAYS = 7

# Start the availability window slightly in the future; the provider rejects
# windows that start in the past.
AVAILABILITY_START_OFFSET_SECONDS = 60

# How far ahead a reschedule request searches for the invitee's meeting.
RESCHEDULE_SEARCH_DAYS = 30
RESCHEDULE_SEARCH_MAX_RESULTS = 50

# Number of upcoming slots offered back when the requested time cannot be met.
SUGGESTION_COUNT = 3

# Conversations left open without an end event are forgotten after this long.
SESSION_TTL_SECONDS = 2 * 60 * 60

HTTP_TIMEOUT_SECONDS = 20.0

GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
CALENDLY_API = "https://api.calendly.com"
TAVUS_API_DEFAULT = "https://tavusapi.com/v2"


def host_name() -> str:
    return os.getenv("HOST_NAME", "Hassaan")


def default_title() -> str:
    return f"Meeting with {host_name()}"


def assistant_marker() -> str:
    """Description marker stamped on every event this assistant books."""
    return os.getenv("ASSISTANT_MARKER") or f"Booked via {host_name()}'s assistant"


def calendar_id() -> str:
    return os.getenv("HOST_CALENDAR_ID", "primary")


def calendly_token() -> Optional[str]:
    return os.getenv("CALENDLY_TOKEN")


def calendly_event_type(duration_minutes: int) -> Optional[str]:
    return os.getenv(f"CALENDLY_EVENT_TYPE_{int(duration_minutes)}_URI")


def google_tokens_file() -> str:
    return os.getenv("GOOGLE_TOKENS_FILE", ".google-tokens.json")


def tavus_api_base() -> str:
    return (os.getenv("TAVUS_API_BASE") or TAVUS_API_DEFAULT).strip().rstrip("/")


def public_base_url() -> Optional[str]:
    base = os.getenv("PUBLIC_BASE_URL")
    return base.rstrip("/") if base else None


def tool_result_callback_url() -> Optional[str]:
    return os.getenv("TOOL_RESULT_CALLBACK_URL") or None
