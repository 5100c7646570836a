import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

import main
from booking_assistant.core.dispatcher import ToolCallDispatcher
from booking_assistant.core.errors import NotFound, Unauthenticated, UpstreamUnavailable
from booking_assistant.models.booking import BookingLinks, BookingOutcome, BookingResult, Slot
from booking_assistant.services.transport import LoggingTransport


START = datetime(2025, 1, 21, 17, 30, tzinfo=timezone.utc)


def booked():
    return BookingResult(
        outcome=BookingOutcome.SUCCESS,
        confirmed_slot=Slot(start=START, end=START + timedelta(minutes=30)),
        event_id="ev1",
        links=BookingLinks(calendar_link="https://calendar.google.com/e1", conference_link="https://meet.google.com/abc-defg-hij"),
        message="Booked.",
    )


class TestBookingApi(unittest.TestCase):
    def setUp(self):
        self.client = TestClient(main.app)

    def test_health(self):
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok"})

    def test_book_missing_email_is_400(self):
        resp = self.client.post("/api/book", json={"start_time": "2025-01-21T17:30:00Z"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["error"], "VALIDATION_ERROR")
        self.assertFalse(resp.json()["ok"])

    def test_book_without_time_is_400(self):
        resp = self.client.post("/api/book", json={"email": "a@b.com"})
        self.assertEqual(resp.status_code, 400)

    def test_book_success(self):
        resolve = AsyncMock(return_value=booked())
        with patch("main.resolve_booking", resolve):
            resp = self.client.post(
                "/api/book",
                json={"email": "a@b.com", "start_time": "2025-01-21T17:30:00Z", "duration": 30},
            )
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["ok"])
        self.assertEqual(body["event_id"], "ev1")
        self.assertEqual(body["links"]["conference_link"], "https://meet.google.com/abc-defg-hij")
        self.assertEqual(resolve.await_args.args[0].start_time, START)

    def test_book_status_follows_result(self):
        cases = [
            (BookingResult.from_error(Unauthenticated()), 401),
            (BookingResult(outcome=BookingOutcome.CONFLICT, status=409, message="Time is no longer available"), 409),
            (BookingResult.from_error(UpstreamUnavailable("Failed to fetch availability.")), 502),
        ]
        for result, expected in cases:
            with patch("main.resolve_booking", AsyncMock(return_value=result)):
                resp = self.client.post("/api/book", json={"email": "a@b.com", "datetimeText": "tomorrow 9am"})
            self.assertEqual(resp.status_code, expected)

    def test_intent_passes_confirm_flag(self):
        resolve = AsyncMock(return_value=booked())
        with patch("main.resolve_booking", resolve):
            resp = self.client.post(
                "/api/intent",
                json={"email": "a@b.com", "text": "tomorrow 9am", "timezone": "America/New_York", "confirm": False},
            )
        self.assertEqual(resp.status_code, 200)
        request = resolve.await_args.args[0]
        self.assertFalse(request.confirm)
        self.assertEqual(request.datetime_text, "tomorrow 9am")
        self.assertEqual(request.timezone, "America/New_York")

    def test_reschedule_not_found(self):
        result = BookingResult.from_error(NotFound("No upcoming meetings booked by the assistant were found for a@b.com."))
        with patch("main.reschedule_meeting", AsyncMock(return_value=result)):
            resp = self.client.post("/api/reschedule", json={"userEmail": "a@b.com", "newStartTime": "tomorrow 3pm"})
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["outcome"], "not_found")

    def test_reschedule_requires_new_time(self):
        resp = self.client.post("/api/reschedule", json={"userEmail": "a@b.com"})
        self.assertEqual(resp.status_code, 400)

    def test_availability(self):
        slots = [Slot(start=START, end=START + timedelta(minutes=30))]
        with patch("main.list_slots", AsyncMock(return_value=slots)):
            resp = self.client.get("/api/availability?duration=30&timezone=America/Los_Angeles")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["slots"][0]["start_time"], "2025-01-21T17:30:00Z")

    def test_availability_rejects_bad_duration(self):
        resp = self.client.get("/api/availability?duration=45")
        self.assertEqual(resp.status_code, 400)

    def test_user_events_requires_email(self):
        resp = self.client.get("/api/user-events?email=nope")
        self.assertEqual(resp.status_code, 400)

    def test_end_conversation_requires_id(self):
        resp = self.client.post("/api/tavus/end-conversation", json={})
        self.assertEqual(resp.status_code, 400)


class TestAgentWebhook(unittest.TestCase):
    def setUp(self):
        self.client = TestClient(main.app)
        self.transport = LoggingTransport()
        self.previous = main._dispatcher
        main._dispatcher = ToolCallDispatcher(transport=self.transport)

    def tearDown(self):
        main._dispatcher = self.previous

    def test_system_event_is_acknowledged(self):
        resp = self.client.post(
            "/api/tavus/events",
            json={"event_type": "system.replica_joined", "conversation_id": "c1", "properties": {}},
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"status": "ok"})
        self.assertEqual(self.transport.sent, [])

    def test_tool_call_event_is_dispatched(self):
        with patch("booking_assistant.core.dispatcher.resolve_booking", AsyncMock(return_value=booked())):
            resp = self.client.post(
                "/api/tavus/events",
                json={
                    "message_type": "conversation",
                    "event_type": "conversation.tool_call",
                    "conversation_id": "c1",
                    "properties": {
                        "name": "update_calendar",
                        "arguments": '{"email": "a@b.com", "datetimeText": "tomorrow 9am"}',
                        "tool_call_id": "tc-1",
                    },
                },
            )
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["status"], "ok")
        self.assertEqual(body["result"]["tool_call_id"], "tc-1")
        self.assertTrue(body["result"]["ok"])
        self.assertEqual(self.transport.sent[0]["conversation_id"], "c1")

    def test_unknown_tool_is_acknowledged(self):
        resp = self.client.post("/api/tavus/events", json=[{"name": "lookup_weather", "parameters": {}, "id": "tc-2"}])
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["result"]["message"], "Tool call received and logged")


if __name__ == "__main__":
    unittest.main()
