"""Main entrypoint for the booking assistant FastAPI application.

Exposes the direct booking API, the Google OAuth bootstrap routes and the
webhook the conversational agent posts its events and tool calls to.
"""

import os
import secrets
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi import Request
from fastapi import status
from fastapi.responses import HTMLResponse
from fastapi.responses import JSONResponse
from fastapi.responses import RedirectResponse

import httpx

from booking_assistant.config.settings import ALLOWED_DURATIONS
from booking_assistant.config.settings import DEFAULT_DURATION_MINUTES
from booking_assistant.config.settings import DEFAULT_TIMEZONE
from booking_assistant.config.settings import tool_result_callback_url
from booking_assistant.core.dispatcher import ToolCallDispatcher
from booking_assistant.core.errors import BookingError
from booking_assistant.core.errors import InvalidInput
from booking_assistant.core.intent_resolver import build_booking_request
from booking_assistant.core.intent_resolver import resolve_booking
from booking_assistant.core.reschedule import list_assistant_meetings
from booking_assistant.core.reschedule import reschedule_meeting
from booking_assistant.core.sessions import SessionRegistry
from booking_assistant.models.booking import EMAIL_RE
from booking_assistant.models.booking import BookingResult
from booking_assistant.services import tavus
from booking_assistant.services.availability import list_slots
from booking_assistant.services.google_oauth import exchange_authorization_code
from booking_assistant.services.google_oauth import get_google_access_token
from booking_assistant.services.google_oauth import get_refresh_token
from booking_assistant.services.google_oauth import save_refresh_token
from booking_assistant.services.transport import LoggingTransport
from booking_assistant.services.transport import WebhookTransport
from booking_assistant.utils.formatter import get_timezone
from booking_assistant.utils.formatter import iso_z
from booking_assistant.utils.logger import generate_request_id
from booking_assistant.utils.logger import log_error
from booking_assistant.utils.logger import log_info
from booking_assistant.utils.logger import log_warn


load_dotenv()

app = FastAPI(title="Booking Assistant", version="0.1.0")

_OAUTH_STATE_CACHE: set[str] = set()

_sessions = SessionRegistry()
_dispatcher: Optional[ToolCallDispatcher] = None


def get_dispatcher() -> ToolCallDispatcher:
    """Build the dispatcher on first use so the callback URL comes from the loaded env."""
    global _dispatcher
    if _dispatcher is None:
        callback = tool_result_callback_url()
        transport = WebhookTransport(callback) if callback else LoggingTransport()
        _dispatcher = ToolCallDispatcher(transport=transport, sessions=_sessions)
    return _dispatcher


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request.state.request_id = generate_request_id()
    return await call_next(request)


def _request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


def _result_response(result: BookingResult) -> JSONResponse:
    return JSONResponse(result.to_response(), status_code=result.status)


def _error_response(exc: BookingError) -> JSONResponse:
    return _result_response(BookingResult.from_error(exc))


async def _read_json(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as exc:
        raise InvalidInput("Request body must be valid JSON") from exc
    if not isinstance(body, dict):
        raise InvalidInput("Request body must be a JSON object")
    return body


def _time_field(body: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = body.get(key)
        if isinstance(value, dict):
            value = value.get("iso") or value.get("value")
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _require_setup_token(request: Request) -> bool:
    required = os.getenv("OAUTH_SETUP_TOKEN")
    if not required:
        return True
    provided = request.query_params.get("setup_token")
    return bool(provided) and secrets.compare_digest(provided, required)


def _get_redirect_uri(request: Request) -> str:
    explicit = os.getenv("GOOGLE_OAUTH_REDIRECT_URI")
    if explicit:
        return explicit
    base = str(request.base_url).rstrip("/")
    return f"{base}/oauth2/callback"


@app.get("/oauth/start", status_code=status.HTTP_307_TEMPORARY_REDIRECT)
async def google_oauth_start(request: Request) -> RedirectResponse:
    if not _require_setup_token(request):
        return RedirectResponse(url="/health", status_code=status.HTTP_307_TEMPORARY_REDIRECT)

    client_id = os.getenv("GOOGLE_CLIENT_ID")
    if not client_id:
        return RedirectResponse(url="/health", status_code=status.HTTP_307_TEMPORARY_REDIRECT)

    state = secrets.token_urlsafe(24)
    _OAUTH_STATE_CACHE.add(state)

    params = {
        "client_id": client_id,
        "redirect_uri": _get_redirect_uri(request),
        "response_type": "code",
        "scope": "https://www.googleapis.com/auth/calendar",
        "access_type": "offline",
        "prompt": "consent",
        "include_granted_scopes": "true",
        "state": state,
    }

    if request.query_params.get("setup_token"):
        params["state"] = f"{state}:{request.query_params.get('setup_token')}"

    url = "https://accounts.google.com/o/oauth2/v2/auth?" + urlencode(params)
    return RedirectResponse(url=url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)


@app.get("/oauth2/callback")
async def google_oauth_callback(request: Request) -> HTMLResponse:
    error = request.query_params.get("error")
    if error:
        return HTMLResponse(f"OAuth error: {error}", status_code=status.HTTP_400_BAD_REQUEST)

    code = request.query_params.get("code")
    if not code:
        return HTMLResponse("Missing authorization code", status_code=status.HTTP_400_BAD_REQUEST)

    raw_state = request.query_params.get("state") or ""
    state = raw_state.split(":", 1)[0] if raw_state else ""
    setup_token = raw_state.split(":", 1)[1] if ":" in raw_state else request.query_params.get("setup_token")

    required = os.getenv("OAUTH_SETUP_TOKEN")
    if required:
        if not setup_token or not secrets.compare_digest(setup_token, required):
            return HTMLResponse("Forbidden", status_code=status.HTTP_403_FORBIDDEN)

    if not state or state not in _OAUTH_STATE_CACHE:
        return HTMLResponse("Invalid state", status_code=status.HTTP_400_BAD_REQUEST)
    _OAUTH_STATE_CACHE.discard(state)

    if not os.getenv("GOOGLE_CLIENT_ID") or not os.getenv("GOOGLE_CLIENT_SECRET"):
        return HTMLResponse(
            "Missing GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET on server",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    try:
        payload = await exchange_authorization_code(code, _get_redirect_uri(request))
    except httpx.HTTPError as exc:
        log_warn("Token exchange failed", request_id=_request_id(request), channel="oauth", error=repr(exc))
        return HTMLResponse(
            f"Token exchange failed: {exc!r}",
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    refresh_token = payload.get("refresh_token")
    if not refresh_token:
        return HTMLResponse(
            "No refresh_token returned. Try revoking access and re-running /oauth/start (prompt=consent is enabled).",
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    path = save_refresh_token(refresh_token)
    log_info("Google Calendar connected", request_id=_request_id(request), channel="oauth")

    html = "<h2>Google Calendar connected</h2>"
    html += f"<p>The refresh token was saved to <code>{path}</code>.</p>"
    html += "<p>For deployments, set it as <b>GOOGLE_REFRESH_TOKEN</b> instead.</p>"
    return HTMLResponse(html)


@app.get("/oauth/status")
async def google_oauth_status() -> dict:
    token = await get_google_access_token()
    return {
        "connected": token is not None,
        "has_refresh_token": bool(get_refresh_token()),
    }


@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check() -> dict:
    """Health check endpoint to verify that the service is running."""

    return {"status": "ok"}


@app.get("/api/availability")
async def availability(request: Request) -> JSONResponse:
    raw_duration = request.query_params.get("duration") or str(DEFAULT_DURATION_MINUTES)
    tz_name = request.query_params.get("timezone") or DEFAULT_TIMEZONE
    try:
        if not raw_duration.isdigit() or int(raw_duration) not in ALLOWED_DURATIONS:
            raise InvalidInput(f"duration must be one of {list(ALLOWED_DURATIONS)} minutes")
        if get_timezone(tz_name) is None:
            raise InvalidInput(f"'{tz_name}' is not a valid IANA timezone")
        slots = await list_slots(int(raw_duration), tz_name)
    except BookingError as exc:
        log_warn("Availability lookup failed", request_id=_request_id(request), error=exc.message)
        return _error_response(exc)

    return JSONResponse(
        {
            "ok": True,
            "duration": int(raw_duration),
            "timezone": tz_name,
            "slots": [
                {
                    "start_time": iso_z(s.start),
                    "end_time": iso_z(s.end),
                    "scheduling_url": s.scheduling_url,
                }
                for s in slots
            ],
        }
    )


@app.post("/api/book")
async def book(request: Request) -> JSONResponse:
    """Book a meeting at an exact time, or at a time phrase resolved against availability."""

    request_id = _request_id(request)
    try:
        body = await _read_json(request)
        fields: Dict[str, Any] = {
            "invitee": body.get("email"),
            "duration": body.get("duration"),
            "timezone": body.get("timezone"),
            "title": body.get("title"),
            "notes": body.get("notes"),
            "start_time": _time_field(body, "start_time", "iso_start", "startTime"),
            "datetime_text": _time_field(body, "datetimeText", "text", "when"),
        }
        booking_request = build_booking_request(**fields)
    except BookingError as exc:
        log_warn("Rejected booking request", request_id=request_id, error=exc.message)
        return _error_response(exc)

    log_info("Booking request", request_id=request_id, invitee=booking_request.invitee)
    result = await resolve_booking(booking_request)
    log_info("Booking finished", request_id=request_id, outcome=result.outcome.value, status=result.status)
    return _result_response(result)


@app.post("/api/intent")
async def intent(request: Request) -> JSONResponse:
    """Resolve a free-text time phrase to a slot; books it unless ``confirm`` is false."""

    request_id = _request_id(request)
    try:
        body = await _read_json(request)
        booking_request = build_booking_request(
            invitee=body.get("email"),
            duration=body.get("duration"),
            timezone=body.get("timezone"),
            title=body.get("title"),
            notes=body.get("notes"),
            datetime_text=_time_field(body, "text", "datetimeText", "when"),
            confirm=body.get("confirm", True) is not False,
        )
    except BookingError as exc:
        log_warn("Rejected intent request", request_id=request_id, error=exc.message)
        return _error_response(exc)

    result = await resolve_booking(booking_request)
    log_info("Intent resolved", request_id=request_id, outcome=result.outcome.value, retried=result.retried)
    return _result_response(result)


@app.post("/api/reschedule")
async def reschedule(request: Request) -> JSONResponse:
    request_id = _request_id(request)
    try:
        body = await _read_json(request)
    except BookingError as exc:
        return _error_response(exc)

    email = body.get("userEmail") or body.get("email") or ""
    new_start = _time_field(body, "newStartTime", "new_start_time")
    if not new_start:
        return _error_response(InvalidInput("newStartTime is required"))

    result = await reschedule_meeting(
        str(email),
        new_start,
        reason=body.get("reason"),
        event_id=body.get("eventId") or body.get("event_id"),
        new_end=_time_field(body, "newEndTime", "new_end_time"),
        timezone_name=body.get("timezone"),
    )
    log_info("Reschedule finished", request_id=request_id, outcome=result.outcome.value, status=result.status)
    return _result_response(result)


@app.get("/api/user-events")
async def user_events(request: Request) -> JSONResponse:
    email = (request.query_params.get("email") or "").strip()
    if not EMAIL_RE.match(email):
        return _error_response(InvalidInput("A valid email query parameter is required"))
    try:
        meetings = await list_assistant_meetings(email)
    except BookingError as exc:
        return _error_response(exc)
    return JSONResponse(
        {
            "ok": True,
            "email": email,
            "events": [m.model_dump(mode="json") for m in meetings],
        }
    )


@app.post("/api/tavus/start")
async def tavus_start(request: Request) -> JSONResponse:
    try:
        body = await _read_json(request)
        email = str(body.get("email") or "").strip()
        tz_name = body.get("timezone") or DEFAULT_TIMEZONE
        if get_timezone(tz_name) is None:
            raise InvalidInput(f"'{tz_name}' is not a valid IANA timezone")
        conversation = await tavus.start_conversation(email, tz_name)
    except BookingError as exc:
        log_error("Conversation start failed", request_id=_request_id(request), channel="tavus", error=exc.message)
        return _error_response(exc)

    if conversation.get("conversation_id"):
        _sessions.start(conversation["conversation_id"], email or None, tz_name)
    return JSONResponse({"ok": True, **conversation})


def _is_tool_call(payload: Any) -> bool:
    if isinstance(payload, list):
        return True
    if not isinstance(payload, dict):
        return False
    event_type = payload.get("event_type") or payload.get("type")
    if event_type:
        return event_type == "conversation.tool_call"
    return "tool" in payload or "name" in payload


@app.post("/api/tavus/events", status_code=status.HTTP_200_OK)
async def tavus_events(request: Request) -> JSONResponse:
    """Webhook for agent events; tool calls are dispatched, everything else is logged."""

    request_id = _request_id(request)
    try:
        payload = await request.json()
    except ValueError:
        return _error_response(InvalidInput("Request body must be valid JSON"))

    if not _is_tool_call(payload):
        log_info(
            "Agent system event",
            request_id=request_id,
            channel="tavus",
            event_type=payload.get("event_type") if isinstance(payload, dict) else None,
        )
        return JSONResponse({"status": "ok"})

    conversation_id = payload.get("conversation_id") if isinstance(payload, dict) else None
    result = await get_dispatcher().dispatch(payload, conversation_id=conversation_id)
    if result is None:
        return JSONResponse({"status": "duplicate"})
    return JSONResponse({"status": "ok", "result": result.to_payload()})


@app.post("/api/tavus/end-conversation")
async def tavus_end_conversation(request: Request) -> JSONResponse:
    try:
        body = await _read_json(request)
        conversation_id = str(body.get("conversation_id") or "").strip()
        await tavus.end_conversation(conversation_id)
    except BookingError as exc:
        return _error_response(exc)

    _sessions.end(conversation_id)
    return JSONResponse({"ok": True, "conversation_id": conversation_id})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Catch-all handler for uncaught exceptions.

    Ensures the service returns a 500 JSON error rather than crashing, and
    logs the error together with any request_id associated with the request.
    """

    request_id = getattr(request.state, "request_id", None)
    log_error("Unhandled exception", request_id=request_id, error=str(exc))

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )
