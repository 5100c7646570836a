import asyncio
import json
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

from booking_assistant.core.dispatcher import ToolCallDispatcher, normalize_tool_call
from booking_assistant.core.errors import InvalidInput
from booking_assistant.core.sessions import SessionRegistry
from booking_assistant.models.booking import (
    BookingLinks,
    BookingOutcome,
    BookingResult,
    EventSnapshot,
    Slot,
)
from booking_assistant.services.transport import LoggingTransport


START = datetime(2025, 1, 21, 17, 30, tzinfo=timezone.utc)
MEET = "https://meet.google.com/abc-defg-hij"

BOOK_ARGS = {"email": "a@b.com", "datetimeText": "tomorrow 9am", "timezone": "America/Los_Angeles", "duration": 30}


def booked_result():
    return BookingResult(
        outcome=BookingOutcome.SUCCESS,
        confirmed_slot=Slot(start=START, end=START + timedelta(minutes=30)),
        event_id="ev1",
        links=BookingLinks(calendar_link="https://calendar.google.com/e1", conference_link=MEET),
        message="Booked.",
    )


def responses(transport):
    return [m for m in transport.sent if m["event_type"] == "conversation.respond"]


class TestNormalizeToolCall(unittest.TestCase):
    def test_flat_shape(self):
        env = normalize_tool_call({"name": "update_calendar", "arguments": BOOK_ARGS, "tool_call_id": "tc-1"})
        self.assertEqual((env.tool_name, env.correlation_id), ("update_calendar", "tc-1"))
        self.assertEqual(env.arguments, BOOK_ARGS)

    def test_nested_shape(self):
        env = normalize_tool_call(
            {"type": "conversation.tool_call", "tool_call_id": "tc-2", "tool": {"name": "end_call", "arguments": {"reason": "done"}}}
        )
        self.assertEqual((env.tool_name, env.correlation_id), ("end_call", "tc-2"))
        self.assertEqual(env.arguments, {"reason": "done"})

    def test_list_shape(self):
        env = normalize_tool_call([{"name": "book_meeting", "parameters": BOOK_ARGS, "id": "tc-3"}])
        self.assertEqual((env.tool_name, env.correlation_id), ("book_meeting", "tc-3"))
        self.assertEqual(env.arguments, BOOK_ARGS)

    def test_shapes_normalize_identically(self):
        shapes = [
            {"name": "update_calendar", "arguments": BOOK_ARGS, "tool_call_id": "tc"},
            {"tool": {"name": "update_calendar", "arguments": BOOK_ARGS}, "tool_call_id": "tc"},
            [{"name": "update_calendar", "parameters": BOOK_ARGS, "id": "tc"}],
        ]
        envelopes = {normalize_tool_call(s).model_dump_json() for s in shapes}
        self.assertEqual(len(envelopes), 1)

    def test_app_message_wrapper_and_string_arguments(self):
        env = normalize_tool_call(
            {
                "message_type": "conversation",
                "event_type": "conversation.tool_call",
                "conversation_id": "c1",
                "properties": {"name": "update_calendar", "arguments": json.dumps(BOOK_ARGS), "tool_call_id": "tc-4"},
            }
        )
        self.assertEqual(env.conversation_id, "c1")
        self.assertEqual(env.arguments, BOOK_ARGS)

    def test_undecodable_arguments_become_empty(self):
        env = normalize_tool_call({"name": "update_calendar", "arguments": "{not json", "tool_call_id": "tc-5"})
        self.assertEqual(env.arguments, {})

    def test_missing_id_is_generated(self):
        env = normalize_tool_call({"name": "end_call"})
        self.assertTrue(env.correlation_id.startswith("tool_"))

    def test_unrecognized_payload(self):
        with self.assertRaises(InvalidInput):
            normalize_tool_call({"foo": "bar"})
        with self.assertRaises(InvalidInput):
            normalize_tool_call([])


class TestToolCallDispatcher(unittest.TestCase):
    def test_duplicate_in_flight_call_is_dropped(self):
        async def run():
            gate = asyncio.Event()
            calls = []

            async def slow_booking(request, now=None):
                calls.append(request)
                await gate.wait()
                return booked_result()

            transport = LoggingTransport()
            dispatcher = ToolCallDispatcher(transport=transport)
            payload = {"name": "update_calendar", "arguments": BOOK_ARGS, "tool_call_id": "tc-1"}

            with patch("booking_assistant.core.dispatcher.resolve_booking", AsyncMock(side_effect=slow_booking)):
                first = asyncio.create_task(dispatcher.dispatch(payload))
                await asyncio.sleep(0)
                self.assertTrue(dispatcher.is_in_flight("tc-1"))

                duplicate = await dispatcher.dispatch(payload)
                self.assertIsNone(duplicate)

                gate.set()
                result = await first

            self.assertTrue(result.ok)
            self.assertEqual(len(calls), 1)
            self.assertEqual(len(responses(transport)), 1)
            self.assertFalse(dispatcher.is_in_flight("tc-1"))

        asyncio.run(run())

    def test_id_is_released_after_completion(self):
        async def run():
            dispatcher = ToolCallDispatcher()
            payload = {"name": "update_calendar", "arguments": BOOK_ARGS, "tool_call_id": "tc-1"}
            booking = AsyncMock(return_value=booked_result())
            with patch("booking_assistant.core.dispatcher.resolve_booking", booking):
                self.assertIsNotNone(await dispatcher.dispatch(payload))
                self.assertIsNotNone(await dispatcher.dispatch(payload))
            self.assertEqual(booking.await_count, 2)

        asyncio.run(run())

    def test_book_result_is_sent_back_with_correlation_id(self):
        async def run():
            transport = LoggingTransport()
            dispatcher = ToolCallDispatcher(transport=transport)
            booking = AsyncMock(return_value=booked_result())
            with patch("booking_assistant.core.dispatcher.resolve_booking", booking):
                result = await dispatcher.dispatch(
                    {"tool": {"name": "update_calendar", "arguments": json.dumps(BOOK_ARGS)}, "tool_call_id": "tc-7"},
                    conversation_id="c1",
                )

            request = booking.await_args.args[0]
            self.assertEqual(request.invitee, "a@b.com")
            self.assertEqual(request.datetime_text, "tomorrow 9am")
            self.assertEqual(request.timezone, "America/Los_Angeles")

            self.assertTrue(result.ok)
            self.assertEqual(result.start_time, "2025-01-21T17:30:00Z")
            self.assertEqual(result.hangout_link, MEET)

            sent = responses(transport)
            self.assertEqual(len(sent), 1)
            self.assertEqual(sent[0]["conversation_id"], "c1")
            text = json.loads(sent[0]["properties"]["text"])
            self.assertEqual(text["tool_call_id"], "tc-7")
            self.assertTrue(text["result"]["ok"])
            echoes = [m for m in transport.sent if m["event_type"] == "conversation.echo"]
            self.assertEqual(echoes[0]["properties"]["text"], "Booked.")

        asyncio.run(run())

    def test_absolute_time_argument_object(self):
        async def run():
            dispatcher = ToolCallDispatcher()
            booking = AsyncMock(return_value=booked_result())
            args = {"email": "a@b.com", "iso_start": {"iso": "2025-01-21T17:30:00Z"}}
            with patch("booking_assistant.core.dispatcher.resolve_booking", booking):
                await dispatcher.dispatch({"name": "book_meeting", "arguments": args, "tool_call_id": "tc-8"})
            request = booking.await_args.args[0]
            self.assertTrue(request.is_absolute)
            self.assertEqual(request.start_time, START)

        asyncio.run(run())

    def test_missing_email_or_time_skips_booking(self):
        async def run():
            dispatcher = ToolCallDispatcher()
            booking = AsyncMock(return_value=booked_result())
            with patch("booking_assistant.core.dispatcher.resolve_booking", booking):
                no_time = await dispatcher.dispatch(
                    {"name": "update_calendar", "arguments": {"email": "a@b.com"}, "tool_call_id": "tc-9"}
                )
                no_email = await dispatcher.dispatch(
                    {"name": "update_calendar", "arguments": {"when": "tomorrow 9am"}, "tool_call_id": "tc-10"}
                )
            for result in (no_time, no_email):
                self.assertFalse(result.ok)
                self.assertEqual(result.message, "Missing email or time in tool args")
            self.assertEqual(booking.await_count, 0)

        asyncio.run(run())

    def test_session_supplies_email_and_timezone(self):
        async def run():
            sessions = SessionRegistry()
            sessions.start("c1", "s@x.com", "America/New_York")
            dispatcher = ToolCallDispatcher(sessions=sessions)
            booking = AsyncMock(return_value=booked_result())
            with patch("booking_assistant.core.dispatcher.resolve_booking", booking):
                await dispatcher.dispatch(
                    {"name": "update_calendar", "arguments": {"when": "tomorrow 9am"}, "tool_call_id": "tc-11"},
                    conversation_id="c1",
                )
            request = booking.await_args.args[0]
            self.assertEqual(request.invitee, "s@x.com")
            self.assertEqual(request.timezone, "America/New_York")

        asyncio.run(run())

    def test_invalid_argument_values_fail_without_booking(self):
        async def run():
            dispatcher = ToolCallDispatcher()
            booking = AsyncMock(return_value=booked_result())
            args = {**BOOK_ARGS, "duration": 45}
            with patch("booking_assistant.core.dispatcher.resolve_booking", booking):
                result = await dispatcher.dispatch({"name": "update_calendar", "arguments": args, "tool_call_id": "tc-12"})
            self.assertFalse(result.ok)
            self.assertEqual(result.status, 400)
            self.assertEqual(booking.await_count, 0)

        asyncio.run(run())

    def test_booking_failure_is_reported_not_raised(self):
        async def run():
            dispatcher = ToolCallDispatcher()
            failure = BookingResult(outcome=BookingOutcome.CONFLICT, status=409, error="TIME_CONFLICT", message="No availability returned")
            with patch("booking_assistant.core.dispatcher.resolve_booking", AsyncMock(return_value=failure)):
                result = await dispatcher.dispatch({"name": "update_calendar", "arguments": BOOK_ARGS, "tool_call_id": "tc-13"})
            self.assertFalse(result.ok)
            self.assertEqual(result.status, 409)

            with patch("booking_assistant.core.dispatcher.resolve_booking", AsyncMock(side_effect=RuntimeError("boom"))):
                crashed = await dispatcher.dispatch({"name": "update_calendar", "arguments": BOOK_ARGS, "tool_call_id": "tc-14"})
            self.assertFalse(crashed.ok)
            self.assertEqual(crashed.status, 500)
            self.assertFalse(dispatcher.is_in_flight("tc-14"))

        asyncio.run(run())

    def test_reschedule_routing(self):
        async def run():
            dispatcher = ToolCallDispatcher()
            moved = booked_result().model_copy(
                update={"original_event": EventSnapshot(event_id="ev1", start=START - timedelta(days=1))}
            )
            reschedule = AsyncMock(return_value=moved)
            args = {"userEmail": "a@b.com", "newStartTime": "2025-01-21T17:30:00Z", "reason": "travel", "eventId": "ev1"}
            with patch("booking_assistant.core.dispatcher.reschedule_meeting", reschedule):
                result = await dispatcher.dispatch({"name": "reschedule_meeting", "arguments": args, "tool_call_id": "tc-15"})

            self.assertTrue(result.ok)
            self.assertEqual(result.original_event.event_id, "ev1")
            self.assertEqual(reschedule.await_args.args, ("a@b.com", "2025-01-21T17:30:00Z"))
            self.assertEqual(reschedule.await_args.kwargs["reason"], "travel")
            self.assertEqual(reschedule.await_args.kwargs["event_id"], "ev1")

        asyncio.run(run())

    def test_reschedule_without_new_time(self):
        async def run():
            dispatcher = ToolCallDispatcher()
            reschedule = AsyncMock()
            with patch("booking_assistant.core.dispatcher.reschedule_meeting", reschedule):
                result = await dispatcher.dispatch(
                    {"name": "reschedule_meeting", "arguments": {"userEmail": "a@b.com"}, "tool_call_id": "tc-16"}
                )
            self.assertFalse(result.ok)
            self.assertEqual(reschedule.await_count, 0)

        asyncio.run(run())

    def test_end_call_clears_session(self):
        async def run():
            sessions = SessionRegistry()
            sessions.start("c1", "a@b.com", "UTC")
            transport = LoggingTransport()
            dispatcher = ToolCallDispatcher(transport=transport, sessions=sessions)
            result = await dispatcher.dispatch(
                {"name": "end_call", "arguments": {"reason": "user_completed_task"}, "tool_call_id": "tc-17"},
                conversation_id="c1",
            )
            self.assertTrue(result.ok)
            self.assertEqual(result.message, "Call ended successfully (user_completed_task)")
            self.assertIsNone(sessions.get("c1"))
            self.assertEqual(len(transport.sent), 1)

        asyncio.run(run())

    def test_unknown_tool_is_acknowledged(self):
        async def run():
            dispatcher = ToolCallDispatcher()
            booking = AsyncMock()
            with patch("booking_assistant.core.dispatcher.resolve_booking", booking):
                result = await dispatcher.dispatch({"name": "get_weather", "arguments": {}, "tool_call_id": "tc-18"})
            self.assertTrue(result.ok)
            self.assertEqual(result.message, "Tool call received and logged")
            self.assertEqual(booking.await_count, 0)

        asyncio.run(run())

    def test_rejected_payload_keeps_its_call_id(self):
        async def run():
            transport = LoggingTransport()
            dispatcher = ToolCallDispatcher(transport=transport)
            result = await dispatcher.dispatch({"tool_call_id": "tc-19", "arguments": {}}, conversation_id="c1")
            self.assertFalse(result.ok)
            self.assertEqual(result.tool_call_id, "tc-19")
            self.assertEqual(result.status, 400)
            text = json.loads(responses(transport)[0]["properties"]["text"])
            self.assertEqual(text["tool_call_id"], "tc-19")

            wrapped = await dispatcher.dispatch(
                {"event_type": "conversation.tool_call", "properties": {"id": "tc-20"}},
                conversation_id="c1",
            )
            self.assertEqual(wrapped.tool_call_id, "tc-20")

            anonymous = await dispatcher.dispatch({"foo": "bar"})
            self.assertTrue(anonymous.tool_call_id.startswith("tool_"))

        asyncio.run(run())


if __name__ == "__main__":
    unittest.main()
