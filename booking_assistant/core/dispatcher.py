"""Tool-call dispatcher for the conversational agent.

The agent has emitted the same logical tool call in several shapes over time:

* a single-element list ``[{"name", "parameters", "id"}]``
* a nested object ``{"tool": {"name", "arguments"}, "tool_call_id"}``
* a flat object ``{"name", "arguments", "tool_call_id"}``

optionally wrapped in an app message ``{"event_type": ..., "properties": {...}}``.
``normalize_tool_call`` turns every shape into one ``ToolCallEnvelope`` at the
entry boundary; nothing past it looks at raw payloads.

Calls are de-duplicated on their correlation id while in flight. The set is
process-local; running several instances needs a shared store instead.
"""

from __future__ import annotations

import json
import logging
import uuid
from threading import Lock
from typing import Any, Dict, Iterable, Optional, Set, Union

from booking_assistant.config.settings import DEFAULT_TIMEZONE
from booking_assistant.core.errors import BookingError, InvalidInput
from booking_assistant.core.intent_resolver import build_booking_request, resolve_booking
from booking_assistant.core.reschedule import reschedule_meeting
from booking_assistant.core.sessions import SessionRegistry
from booking_assistant.models.booking import BookingResult, ToolCallEnvelope, ToolResult
from booking_assistant.services.transport import ConversationTransport, LoggingTransport
from booking_assistant.utils.formatter import parse_iso_datetime


logger = logging.getLogger("booking.dispatcher")

BOOK_TOOLS = frozenset({"update_calendar", "book_meeting"})
RESCHEDULE_TOOLS = frozenset({"reschedule_meeting"})
END_TOOLS = frozenset({"end_call"})

_ABSOLUTE_TIME_KEYS = ("iso_start", "start_time", "datetime", "date_time")
_PHRASE_KEYS = ("datetimeText", "when")


def _generate_call_id() -> str:
    return f"tool_{uuid.uuid4().hex[:12]}"


def _decode_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw.strip():
        try:
            decoded = json.loads(raw)
        except ValueError:
            logger.warning("Tool arguments are not valid JSON: %r", raw[:200])
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}


def _raw_call_id(payload: Any) -> Optional[str]:
    """Best-effort correlation id of a payload that may not be a valid tool call."""
    if isinstance(payload, list):
        payload = payload[0] if payload else None
    if not isinstance(payload, dict):
        return None
    properties = payload.get("properties")
    if isinstance(properties, (dict, list)) and ("event_type" in payload or "message_type" in payload):
        return _raw_call_id(properties)
    call_id = payload.get("tool_call_id") or payload.get("id") or payload.get("correlation_id")
    return str(call_id) if call_id else None


def normalize_tool_call(
    payload: Union[ToolCallEnvelope, Dict[str, Any], list],
    conversation_id: Optional[str] = None,
) -> ToolCallEnvelope:
    """Normalize any accepted tool-call shape into a ToolCallEnvelope.

    A missing correlation id is replaced with a generated one.

    Raises:
        InvalidInput: the payload is not a tool call in any known shape.
    """
    if isinstance(payload, ToolCallEnvelope):
        if conversation_id and not payload.conversation_id:
            return payload.model_copy(update={"conversation_id": conversation_id})
        return payload

    if isinstance(payload, list):
        if not payload:
            raise InvalidInput("Empty tool call list")
        payload = payload[0]

    if not isinstance(payload, dict):
        raise InvalidInput("Unrecognized tool call payload")

    properties = payload.get("properties")
    if isinstance(properties, (dict, list)) and ("event_type" in payload or "message_type" in payload):
        return normalize_tool_call(properties, conversation_id or payload.get("conversation_id"))

    tool = payload.get("tool")
    if isinstance(tool, dict):
        name = tool.get("name")
        raw_args = tool.get("arguments", tool.get("parameters"))
    else:
        name = payload.get("name") or (tool if isinstance(tool, str) else None)
        raw_args = payload.get("arguments", payload.get("parameters"))

    if not isinstance(name, str) or not name.strip():
        raise InvalidInput("Tool call has no tool name")

    correlation_id = _raw_call_id(payload)
    return ToolCallEnvelope(
        tool_name=name.strip(),
        arguments=_decode_arguments(raw_args),
        correlation_id=correlation_id or _generate_call_id(),
        conversation_id=conversation_id or payload.get("conversation_id"),
    )


def _first_str(args: Dict[str, Any], keys: Iterable[str]) -> Optional[str]:
    for key in keys:
        value = args.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _time_value(value: Any) -> Optional[str]:
    """A time given either as a string or as ``{"iso": ...}`` / ``{"value": ...}``."""
    if isinstance(value, dict):
        value = value.get("iso") or value.get("value")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _absolute_time(args: Dict[str, Any]) -> Optional[str]:
    for key in _ABSOLUTE_TIME_KEYS:
        found = _time_value(args.get(key))
        if found:
            return found
    return None


def _failure(envelope: ToolCallEnvelope, message: str, status: int = 400, error: str = "VALIDATION_ERROR") -> ToolResult:
    return ToolResult(
        tool_call_id=envelope.correlation_id,
        tool=envelope.tool_name,
        ok=False,
        message=message,
        error=error,
        status=status,
    )


class ToolCallDispatcher:
    """Routes agent tool calls to the booking core and reports results back."""

    def __init__(
        self,
        transport: Optional[ConversationTransport] = None,
        sessions: Optional[SessionRegistry] = None,
    ) -> None:
        self.transport = transport or LoggingTransport()
        self.sessions = sessions or SessionRegistry()
        self._in_flight: Set[str] = set()
        self._lock = Lock()

    def _claim(self, correlation_id: str) -> bool:
        with self._lock:
            if correlation_id in self._in_flight:
                return False
            self._in_flight.add(correlation_id)
            return True

    def _release(self, correlation_id: str) -> None:
        with self._lock:
            self._in_flight.discard(correlation_id)

    def is_in_flight(self, correlation_id: str) -> bool:
        with self._lock:
            return correlation_id in self._in_flight

    async def dispatch(
        self,
        payload: Union[ToolCallEnvelope, Dict[str, Any], list],
        conversation_id: Optional[str] = None,
    ) -> Optional[ToolResult]:
        """Handle one tool call and send its result to the transport.

        Returns None when the call is a duplicate of one still in flight; in
        that case nothing is sent.
        """
        try:
            envelope = normalize_tool_call(payload, conversation_id)
        except InvalidInput as exc:
            logger.warning("Rejected tool call payload: %s", exc.message)
            result = ToolResult(
                tool_call_id=_raw_call_id(payload) or _generate_call_id(),
                ok=False,
                message=exc.message,
                error=exc.code,
                status=exc.status,
            )
            await self.transport.send_tool_result(conversation_id, result)
            return result

        if not self._claim(envelope.correlation_id):
            logger.info("Dropping duplicate tool call %s (%s)", envelope.correlation_id, envelope.tool_name)
            return None

        try:
            logger.info(
                "Dispatching %s [%s] args=%s",
                envelope.tool_name,
                envelope.correlation_id,
                json.dumps(envelope.arguments, default=str)[:500],
            )
            try:
                result = await self._route(envelope)
            except Exception as exc:  # noqa: BLE001
                logger.exception("Tool call %s failed", envelope.correlation_id)
                result = _failure(envelope, f"Tool call failed: {exc}", status=500, error="TOOL_ERROR")

            await self.transport.send_tool_result(envelope.conversation_id, result)
            if result.ok and result.message and envelope.tool_name not in END_TOOLS:
                await self.transport.send_echo(envelope.conversation_id, result.message)
            return result
        finally:
            self._release(envelope.correlation_id)

    async def _route(self, envelope: ToolCallEnvelope) -> ToolResult:
        name = envelope.tool_name
        if name in BOOK_TOOLS:
            return await self._book(envelope)
        if name in RESCHEDULE_TOOLS:
            return await self._reschedule(envelope)
        if name in END_TOOLS:
            return self._end_session(envelope)

        logger.info("Unknown tool %s acknowledged without action", name)
        return ToolResult(
            tool_call_id=envelope.correlation_id,
            tool=name,
            ok=True,
            message="Tool call received and logged",
        )

    async def _book(self, envelope: ToolCallEnvelope) -> ToolResult:
        args = envelope.arguments
        session = self.sessions.get(envelope.conversation_id) or {}

        email = _first_str(args, ("email", "userEmail")) or session.get("email")
        absolute = _absolute_time(args)
        phrase = _first_str(args, _PHRASE_KEYS)
        if absolute and parse_iso_datetime(absolute) is None:
            # agents sometimes put a phrase in the absolute-time field
            phrase, absolute = phrase or absolute, None
        if not email or not (absolute or phrase):
            return _failure(envelope, "Missing email or time in tool args")

        fields: Dict[str, Any] = {
            "invitee": email,
            "duration": args.get("duration"),
            "timezone": _first_str(args, ("timezone",)) or session.get("timezone") or DEFAULT_TIMEZONE,
            "title": args.get("title"),
            "notes": args.get("notes"),
            "confirm": args.get("confirm", True) is not False,
        }
        if absolute:
            fields["start_time"] = absolute
        else:
            fields["datetime_text"] = phrase

        try:
            request = build_booking_request(**fields)
        except BookingError as exc:
            return ToolResult.from_booking(envelope, BookingResult.from_error(exc))

        result = await resolve_booking(request)
        return ToolResult.from_booking(envelope, result)

    async def _reschedule(self, envelope: ToolCallEnvelope) -> ToolResult:
        args = envelope.arguments
        session = self.sessions.get(envelope.conversation_id) or {}

        email = _first_str(args, ("userEmail", "email")) or session.get("email")
        event_id = _first_str(args, ("eventId", "event_id"))
        new_start = _time_value(args.get("newStartTime")) or _first_str(args, _PHRASE_KEYS)
        if not new_start:
            return _failure(envelope, "Missing newStartTime in tool args")
        if not email and not event_id:
            return _failure(envelope, "Missing email in tool args")

        result = await reschedule_meeting(
            email or "",
            new_start,
            reason=_first_str(args, ("reason",)),
            event_id=event_id,
            new_end=_time_value(args.get("newEndTime")),
            timezone_name=_first_str(args, ("timezone",)) or session.get("timezone"),
        )
        return ToolResult.from_booking(envelope, result)

    def _end_session(self, envelope: ToolCallEnvelope) -> ToolResult:
        reason = _first_str(envelope.arguments, ("reason",))
        self.sessions.end(envelope.conversation_id)
        message = "Call ended successfully"
        if reason:
            message = f"{message} ({reason})"
        return ToolResult(
            tool_call_id=envelope.correlation_id,
            tool=envelope.tool_name,
            ok=True,
            message=message,
        )
