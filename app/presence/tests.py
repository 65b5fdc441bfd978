from datetime import datetime, timedelta, timezone as dt_timezone
from decimal import Decimal
from io import StringIO
from unittest.mock import Mock

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.db import connection
from django.db.models import ProtectedError
from django.test import TestCase, TransactionTestCase, override_settings
from rest_framework import status
from rest_framework.test import APITestCase

from core.exceptions import NotFoundError, ValidationError
from devices.models import Device
from devices.services.registry import register_device, set_active
from events.models import AttendanceEvent, MemberSequence
from events.services.store import append_event
from events.tests import run_concurrently
from presence.services.billing import PAYMENT_REMINDER_MESSAGE, on_billing_transition
from presence.services.door_access import process_door_access
from presence.services.resolver import current_status, format_duration, session_duration


User = get_user_model()

NINE = datetime(2026, 2, 1, 9, 0, tzinfo=dt_timezone.utc)
HALF_TEN = datetime(2026, 2, 1, 10, 30, tzinfo=dt_timezone.utc)


def make_device(device_id="D1", address="192.168.1.10", location="Lobby"):
    return register_device(device_id=device_id, name="Door", location=location, address=address, port=4370)


def record(member_id, event_type, at, outcome=AttendanceEvent.OUTCOME_SUCCESS, device_id="D1"):
    return append_event(
        member_id,
        device_id,
        event_type,
        method=AttendanceEvent.METHOD_CARD,
        outcome=outcome,
        location="Lobby",
        source_address="192.168.1.10",
        timestamp=at,
    )


class FormatDurationTests(TestCase):
    def test_format_duration(self):
        self.assertEqual(format_duration(125), "2h 5m")
        self.assertEqual(format_duration(45), "45m")
        self.assertEqual(format_duration(60), "1h 0m")
        self.assertEqual(format_duration(0), "0m")
        self.assertIsNone(format_duration(None))


class SessionResolverTests(TestCase):
    def setUp(self):
        make_device()

    def test_member_without_events_is_out(self):
        self.assertEqual(current_status("M1"), "out")

    def test_check_in_then_check_out(self):
        record("M1", AttendanceEvent.TYPE_CHECK_IN, NINE)
        self.assertEqual(current_status("M1"), "in")

        record("M1", AttendanceEvent.TYPE_CHECK_OUT, HALF_TEN)
        self.assertEqual(current_status("M1"), "out")
        self.assertEqual(session_duration("M1", NINE), 90)

    def test_open_session_has_no_duration(self):
        record("M1", AttendanceEvent.TYPE_CHECK_IN, NINE)

        self.assertIsNone(session_duration("M1", NINE))

    def test_duration_is_floored_to_whole_minutes(self):
        record("M1", AttendanceEvent.TYPE_CHECK_IN, NINE)
        record("M1", AttendanceEvent.TYPE_CHECK_OUT, NINE + timedelta(minutes=45, seconds=59))

        self.assertEqual(session_duration("M1", NINE), 45)

    def test_backdated_checkout_is_not_matched(self):
        record("M1", AttendanceEvent.TYPE_CHECK_IN, NINE)
        record("M1", AttendanceEvent.TYPE_CHECK_OUT, NINE - timedelta(minutes=10))

        self.assertIsNone(session_duration("M1", NINE))
        self.assertEqual(current_status("M1"), "in")

    def test_nearest_subsequent_checkout_closes_the_session(self):
        record("M1", AttendanceEvent.TYPE_CHECK_IN, NINE)
        record("M1", AttendanceEvent.TYPE_CHECK_OUT, NINE + timedelta(hours=3))
        record("M1", AttendanceEvent.TYPE_CHECK_OUT, HALF_TEN)

        self.assertEqual(session_duration("M1", NINE), 90)

    def test_naive_check_in_time_is_read_as_utc(self):
        record("M1", AttendanceEvent.TYPE_CHECK_IN, NINE)
        record("M1", AttendanceEvent.TYPE_CHECK_OUT, HALF_TEN)

        self.assertEqual(session_duration("M1", datetime(2026, 2, 1, 9, 0)), 90)

    def test_members_are_independent(self):
        record("M1", AttendanceEvent.TYPE_CHECK_IN, NINE)
        record("M2", AttendanceEvent.TYPE_CHECK_OUT, HALF_TEN)

        self.assertEqual(current_status("M1"), "in")
        self.assertEqual(current_status("M2"), "out")


class OutcomePolicyTests(TestCase):
    def setUp(self):
        make_device()
        record("M1", AttendanceEvent.TYPE_CHECK_IN, NINE, outcome=AttendanceEvent.OUTCOME_DENIED)

    def test_denied_check_in_does_not_flip_presence_by_default(self):
        self.assertEqual(current_status("M1"), "out")

    def test_any_outcome_policy_counts_denied_events(self):
        self.assertEqual(current_status("M1", success_only=False), "in")

    @override_settings(ATTENDANCE_PRESENCE_SUCCESS_ONLY=False)
    def test_policy_follows_setting(self):
        self.assertEqual(current_status("M1"), "in")

    def test_denied_checkout_does_not_close_session_by_default(self):
        record("M2", AttendanceEvent.TYPE_CHECK_IN, NINE)
        record("M2", AttendanceEvent.TYPE_CHECK_OUT, NINE + timedelta(minutes=20), outcome=AttendanceEvent.OUTCOME_ERROR)
        record("M2", AttendanceEvent.TYPE_CHECK_OUT, HALF_TEN)

        self.assertEqual(session_duration("M2", NINE), 90)
        self.assertEqual(session_duration("M2", NINE, success_only=False), 20)


class ProcessDoorAccessTests(TestCase):
    def setUp(self):
        self.device = make_device(location="Main entrance")

    def test_swipes_toggle_presence_and_measure_the_session(self):
        first = process_door_access("M1", "d1", timestamp=NINE)
        second = process_door_access("M1", "d1", timestamp=HALF_TEN)

        self.assertEqual(first.event.event_type, AttendanceEvent.TYPE_CHECK_IN)
        self.assertIsNone(first.event.duration_minutes)
        self.assertEqual(second.event.event_type, AttendanceEvent.TYPE_CHECK_OUT)
        self.assertEqual(second.event.duration_minutes, 90)
        self.assertEqual(second.event.location, "Main entrance")
        self.assertEqual(second.event.source_address, "192.168.1.10")
        self.assertEqual(current_status("M1"), "out")

    def test_explicit_event_type_is_kept(self):
        result = process_door_access("M1", "D1", event_type=AttendanceEvent.TYPE_CHECK_OUT, timestamp=NINE)

        self.assertEqual(result.event.event_type, AttendanceEvent.TYPE_CHECK_OUT)
        self.assertIsNone(result.event.duration_minutes)

    def test_refused_swipe_is_recorded_with_reason(self):
        result = process_door_access(
            "M1",
            "D1",
            outcome=AttendanceEvent.OUTCOME_DENIED,
            reason="Payment overdue - access suspended",
            timestamp=NINE,
        )

        self.assertFalse(result.granted)
        self.assertEqual(result.reason, "Payment overdue - access suspended")
        self.assertEqual(current_status("M1"), "out")

    def test_inactive_device_records_denial(self):
        set_active("D1", False)

        result = process_door_access("M1", "D1", timestamp=NINE)

        self.assertFalse(result.granted)
        self.assertEqual(result.event.outcome, AttendanceEvent.OUTCOME_DENIED)
        self.assertEqual(result.reason, "Device is inactive")

    def test_unknown_device_records_nothing(self):
        with self.assertRaises(NotFoundError):
            process_door_access("M1", "ghost", timestamp=NINE)

        self.assertEqual(AttendanceEvent.objects.count(), 0)

    def test_swipe_refreshes_device_heartbeat(self):
        process_door_access("M1", "D1", timestamp=NINE)

        self.device.refresh_from_db()
        self.assertIsNotNone(self.device.last_heartbeat)

    def test_overlong_member_id_is_rejected_before_anything_is_written(self):
        with self.assertRaises(ValidationError) as exc:
            process_door_access("M" * 65, "D1", timestamp=NINE)

        self.assertIn("member_id", exc.exception.detail)
        self.assertEqual(MemberSequence.objects.count(), 0)
        self.assertEqual(AttendanceEvent.objects.count(), 0)

    def test_leading_zero_device_address_is_used_as_source(self):
        make_device(device_id="D2", address="192.168.001.010")

        result = process_door_access("M1", "D2", timestamp=NINE)

        self.assertEqual(result.event.source_address, "192.168.001.010")

    def test_malformed_swipe_is_rejected(self):
        with self.assertRaises(ValidationError):
            process_door_access("M1", "D1", method="smoke-signal", timestamp=NINE)

        self.assertEqual(AttendanceEvent.objects.count(), 0)


class DoorAccessWebhookTests(APITestCase):
    def setUp(self):
        make_device()

    def test_granted_swipe_returns_created(self):
        payload = {
            "member_id": "M1",
            "device_id": "d1",
            "timestamp": "2026-02-01T09:00:00Z",
            "metadata": {"card_id": "CARD-1"},
        }

        response = self.client.post("/api/attendance/access", payload, format="json")

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        body = response.json()
        self.assertTrue(body["access"])
        self.assertEqual(body["event_type"], AttendanceEvent.TYPE_CHECK_IN)
        self.assertEqual(AttendanceEvent.objects.get().metadata, {"card_id": "CARD-1"})

    def test_checkout_reports_formatted_duration(self):
        self.client.post(
            "/api/attendance/access",
            {"member_id": "M1", "device_id": "D1", "timestamp": "2026-02-01T09:00:00Z"},
            format="json",
        )

        response = self.client.post(
            "/api/attendance/access",
            {"member_id": "M1", "device_id": "D1", "timestamp": "2026-02-01T10:30:00Z"},
            format="json",
        )

        body = response.json()
        self.assertEqual(body["event_type"], AttendanceEvent.TYPE_CHECK_OUT)
        self.assertEqual(body["duration_minutes"], 90)
        self.assertEqual(body["formatted_duration"], "1h 30m")

    def test_refused_swipe_returns_forbidden_but_is_logged(self):
        response = self.client.post(
            "/api/attendance/access",
            {"member_id": "M1", "device_id": "D1", "outcome": "denied", "reason": "Membership has expired"},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertFalse(response.json()["access"])
        self.assertEqual(AttendanceEvent.objects.get().reason, "Membership has expired")

    def test_unknown_device_returns_not_found(self):
        response = self.client.post(
            "/api/attendance/access",
            {"member_id": "M1", "device_id": "ghost"},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(AttendanceEvent.objects.count(), 0)

    def test_invalid_payloads_are_rejected(self):
        missing = self.client.post("/api/attendance/access", {"member_id": "M1"}, format="json")
        bad_time = self.client.post(
            "/api/attendance/access",
            {"member_id": "M1", "device_id": "D1", "timestamp": "nine o'clock"},
            format="json",
        )
        bad_json = self.client.post("/api/attendance/access", "{not json", content_type="application/json")
        bad_enum = self.client.post(
            "/api/attendance/access",
            {"member_id": "M1", "device_id": "D1", "outcome": "perhaps"},
            format="json",
        )

        self.assertEqual(missing.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(bad_time.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(bad_json.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(bad_enum.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("outcome", bad_enum.json()["detail"])
        self.assertEqual(AttendanceEvent.objects.count(), 0)

    def test_overlong_member_id_returns_bad_request(self):
        response = self.client.post(
            "/api/attendance/access",
            {"member_id": "M" * 65, "device_id": "D1"},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("member_id", response.json()["detail"])

    @override_settings(DEVICE_ALLOWED_IPS=["10.9.9.9"])
    def test_source_outside_allow_list_is_refused(self):
        response = self.client.post(
            "/api/attendance/access",
            {"member_id": "M1", "device_id": "D1"},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.json()["detail"], "Unauthorized source")


class PresenceApiTests(APITestCase):
    def setUp(self):
        self.user = User.objects.create_user(username="frontdesk", password="pwd12345")
        make_device()
        self.client.force_authenticate(self.user)

    def test_presence_of_unknown_member_is_out(self):
        response = self.client.get("/api/presence/M9/")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["status"], "out")
        self.assertIsNone(response.data["last_activity"])

    def test_presence_reports_last_activity(self):
        record("M1", AttendanceEvent.TYPE_CHECK_IN, NINE)

        response = self.client.get("/api/presence/M1/")

        self.assertEqual(response.data["status"], "in")
        self.assertEqual(response.data["last_activity"]["device_id"], "D1")

    def test_session_endpoint(self):
        record("M1", AttendanceEvent.TYPE_CHECK_IN, NINE)
        record("M1", AttendanceEvent.TYPE_CHECK_OUT, HALF_TEN)

        response = self.client.get("/api/presence/M1/session/", {"check_in": "2026-02-01T09:00:00+00:00"})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["duration_minutes"], 90)
        self.assertEqual(response.data["formatted_duration"], "1h 30m")
        self.assertFalse(response.data["open"])

    def test_session_endpoint_requires_check_in(self):
        response = self.client.get("/api/presence/M1/session/")

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_presence_requires_authentication(self):
        self.client.force_authenticate(None)

        response = self.client.get("/api/presence/M1/")

        self.assertIn(response.status_code, (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN))


class BillingTransitionTests(TestCase):
    def setUp(self):
        self.gateway = Mock()

    def test_becoming_overdue_suspends_access(self):
        command = on_billing_transition("M1", "paid", "overdue", gateway=self.gateway)

        self.assertEqual(command, "access_suspended")
        self.gateway.notify_access_suspended.assert_called_once_with("M1")

    def test_paying_confirms_payment(self):
        command = on_billing_transition("M1", "overdue", "paid", amount=Decimal("49.99"), gateway=self.gateway)

        self.assertEqual(command, "payment_confirmed")
        self.gateway.notify_payment_confirmed.assert_called_once_with("M1", Decimal("49.99"))

    def test_falling_due_sends_reminder(self):
        command = on_billing_transition("M1", "paid", "pending", gateway=self.gateway)

        self.assertEqual(command, "payment_reminder")
        self.gateway.notify_payment_reminder.assert_called_once_with("M1", PAYMENT_REMINDER_MESSAGE)

    def test_no_change_sends_nothing(self):
        self.assertIsNone(on_billing_transition("M1", "paid", "paid", gateway=self.gateway))
        self.assertIsNone(on_billing_transition("M1", "overdue", "pending", gateway=self.gateway))
        self.assertEqual(self.gateway.method_calls, [])

    def test_unknown_state_is_rejected(self):
        with self.assertRaises(ValidationError):
            on_billing_transition("M1", "paid", "bankrupt", gateway=self.gateway)


class BillingApiTests(APITestCase):
    def setUp(self):
        self.user = User.objects.create_user(username="billing", password="pwd12345")
        self.client.force_authenticate(self.user)

    def test_transition_is_accepted(self):
        response = self.client.post(
            "/api/presence/M1/billing/",
            {"previous": "pending", "current": "paid", "amount": "20.00"},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_202_ACCEPTED)
        self.assertEqual(response.data["command"], "payment_confirmed")

    def test_bad_amount_is_rejected(self):
        response = self.client.post(
            "/api/presence/M1/billing/",
            {"previous": "pending", "current": "paid", "amount": "lots"},
            format="json",
        )

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)


class MemberPresenceCommandTests(TestCase):
    def setUp(self):
        make_device()

    def test_command_reports_presence(self):
        record("M1", AttendanceEvent.TYPE_CHECK_IN, NINE)

        stdout = StringIO()
        call_command("member_presence", "M1", stdout=stdout)

        self.assertIn("M1: in", stdout.getvalue())
        self.assertIn("D1", stdout.getvalue())

    def test_command_can_count_every_outcome(self):
        record("M1", AttendanceEvent.TYPE_CHECK_IN, NINE, outcome=AttendanceEvent.OUTCOME_DENIED)

        default = StringIO()
        any_outcome = StringIO()
        call_command("member_presence", "M1", stdout=default)
        call_command("member_presence", "M1", "--any-outcome", stdout=any_outcome)

        self.assertIn("M1: out", default.getvalue())
        self.assertIn("M1: in", any_outcome.getvalue())


class DeviceModelReferenceTests(TestCase):
    def test_device_with_events_cannot_be_deleted(self):
        make_device()
        record("M1", AttendanceEvent.TYPE_CHECK_IN, NINE)

        with self.assertRaises(ProtectedError):
            Device.objects.get(device_id="D1").delete()


class ConcurrentDoorAccessTests(TransactionTestCase):
    def setUp(self):
        if connection.vendor == "sqlite" and connection.is_in_memory_db():
            self.skipTest("threads need a file-backed test database")
        make_device()

    def test_racing_swipes_alternate_check_in_and_check_out(self):
        results, errors = run_concurrently(8, lambda index: process_door_access("M1", "D1"))

        self.assertEqual(errors, [])
        self.assertEqual(len(results), 8)

        types = list(AttendanceEvent.objects.order_by("timestamp", "sequence").values_list("event_type", flat=True))
        expected = [AttendanceEvent.TYPE_CHECK_IN, AttendanceEvent.TYPE_CHECK_OUT] * 4
        self.assertEqual(types, expected)
        self.assertEqual(current_status("M1"), "out")

        checkouts = AttendanceEvent.objects.filter(event_type=AttendanceEvent.TYPE_CHECK_OUT)
        self.assertTrue(all(event.duration_minutes is not None for event in checkouts))
