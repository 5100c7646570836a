"""Client for the Tavus conversational video agent API.

Creates agent conversations seeded with the caller's email, timezone and a
short availability summary, and ends them on request.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional

import httpx

from booking_assistant.config.settings import (
    DEFAULT_DURATION_MINUTES,
    DEFAULT_TIMEZONE,
    HTTP_TIMEOUT_SECONDS,
    default_title,
    host_name,
    public_base_url,
    tavus_api_base,
)
from booking_assistant.core.errors import BookingError, InvalidInput, UpstreamUnavailable
from booking_assistant.services.availability import list_slots
from booking_assistant.utils.formatter import summarize_slots_by_day


logger = logging.getLogger("booking.tavus")


def _client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=HTTP_TIMEOUT_SECONDS)


def _api_key() -> str:
    return (os.getenv("TAVUS_API_KEY") or "").strip()


async def availability_summary(timezone_name: str) -> str:
    try:
        slots = await list_slots(DEFAULT_DURATION_MINUTES, timezone_name)
    except BookingError as exc:
        logger.warning("Availability summary unavailable: %s", exc.message)
        return "Unable to fetch availability"
    return summarize_slots_by_day([s.start for s in slots], timezone_name)


def build_conversational_context(email: str, timezone_name: str, availability: str) -> str:
    host = host_name()
    return (
        f"You are {host}'s calendar booking assistant.\n\n"
        "You MUST use tool calls to book, reschedule and end calls.\n"
        "To book a meeting call `update_calendar` with arguments "
        f'{{"email": "{email}", "duration": {DEFAULT_DURATION_MINUTES}, '
        f'"datetimeText": "<the time the user asked for>", "timezone": "{timezone_name}", '
        f'"title": "{default_title()}"}}.\n'
        "To move an existing meeting call `reschedule_meeting` with "
        f'{{"userEmail": "{email}", "newStartTime": "<new time>", "reason": "<why>"}}.\n'
        'When the user is done call `end_call` with {"reason": "user_completed_task"}.\n\n'
        f"User's email: {email or 'unknown'}. Timezone: {timezone_name}. "
        f"Meetings are {DEFAULT_DURATION_MINUTES} minutes. {availability}"
    )


async def start_conversation(email: str, timezone_name: Optional[str] = None) -> Dict[str, Any]:
    """Create a conversation and return its id and join URL."""
    api_key = _api_key()
    persona_id = (os.getenv("TAVUS_PERSONA_ID") or "").strip()
    replica_id = (os.getenv("TAVUS_REPLICA_ID") or "").strip()
    if not api_key or not persona_id or not replica_id:
        raise UpstreamUnavailable("Set TAVUS_API_KEY, TAVUS_PERSONA_ID and TAVUS_REPLICA_ID to start conversations.")

    tz_name = timezone_name or DEFAULT_TIMEZONE
    availability = await availability_summary(tz_name)
    payload: Dict[str, Any] = {
        "persona_id": persona_id,
        "replica_id": replica_id,
        "conversational_context": build_conversational_context(email, tz_name, availability),
    }
    base = public_base_url()
    if base:
        payload["callback_url"] = f"{base}/api/tavus/events"

    url = f"{tavus_api_base()}/conversations"
    try:
        async with _client() as client:
            resp = await client.post(url, json=payload, headers={"x-api-key": api_key})
    except httpx.RequestError as exc:
        logger.warning("Tavus conversation create failed: %r", exc)
        raise UpstreamUnavailable("Tavus conversation create failed.", detail=repr(exc)) from exc

    if not resp.is_success:
        body = (resp.text or "").strip()[:800]
        logger.error("Tavus conversation create returned %s: %s", resp.status_code, body)
        raise UpstreamUnavailable(
            "Tavus conversation create failed.",
            upstream_status=resp.status_code,
            detail=body,
        )

    data = resp.json() or {}
    conversation_url = data.get("conversation_url") or data.get("conversationUrl")
    if not conversation_url:
        raise UpstreamUnavailable("No conversation_url returned from Tavus.")

    logger.info("Conversation %s started for %s", data.get("conversation_id"), email or "anonymous")
    return {
        "conversation_id": data.get("conversation_id"),
        "conversation_url": conversation_url,
        "timezone": tz_name,
    }


async def end_conversation(conversation_id: str) -> None:
    if not conversation_id:
        raise InvalidInput("conversation_id is required")
    api_key = _api_key()
    if not api_key:
        raise UpstreamUnavailable("Set TAVUS_API_KEY to end conversations.")

    url = f"{tavus_api_base()}/conversations/{conversation_id}/end"
    try:
        async with _client() as client:
            resp = await client.post(url, headers={"x-api-key": api_key})
    except httpx.RequestError as exc:
        raise UpstreamUnavailable("Failed to end conversation.", detail=repr(exc)) from exc

    if not resp.is_success:
        logger.error("Ending conversation %s returned %s: %s", conversation_id, resp.status_code, resp.text[:500])
        raise UpstreamUnavailable("Failed to end conversation.", upstream_status=resp.status_code)
    logger.info("Conversation %s ended", conversation_id)
