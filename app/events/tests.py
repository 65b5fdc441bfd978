import threading
from datetime import datetime, timedelta, timezone as dt_timezone

from django.contrib.auth import get_user_model
from django.db import connection
from django.test import TestCase, TransactionTestCase
from rest_framework import status
from rest_framework.test import APITestCase

from core.exceptions import ValidationError
from devices.services.registry import register_device
from events.models import AppendOnlyError, AttendanceEvent, MemberSequence
from events.serializers import AttendanceEventSerializer
from events.services.store import (
    append_event,
    events_for_device,
    first_checkout_after,
    latest_for_member,
    lock_member,
)


User = get_user_model()

NINE = datetime(2026, 2, 1, 9, 0, tzinfo=dt_timezone.utc)


def make_device(device_id="D1", address="192.168.1.10"):
    return register_device(
        device_id=device_id,
        name=f"Door {device_id}",
        location="Lobby",
        address=address,
        port=4370,
    )


def append(member_id="M1", event_type=AttendanceEvent.TYPE_CHECK_IN, at=NINE, device_id="D1", **kwargs):
    kwargs.setdefault("method", AttendanceEvent.METHOD_CARD)
    kwargs.setdefault("outcome", AttendanceEvent.OUTCOME_SUCCESS)
    kwargs.setdefault("location", "Lobby")
    kwargs.setdefault("source_address", "192.168.1.10")
    return append_event(member_id, device_id, event_type, timestamp=at, **kwargs)


def run_concurrently(count, func):
    """Run ``func(index)`` on ``count`` threads released together; return (results, errors)."""
    barrier = threading.Barrier(count)
    results, errors = [], []

    def worker(index):
        try:
            barrier.wait()
            results.append(func(index))
        except Exception as exc:
            errors.append(exc)
        finally:
            connection.close()

    threads = [threading.Thread(target=worker, args=(index,)) for index in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return results, errors


class AppendEventTests(TestCase):
    def setUp(self):
        self.device = make_device()

    def test_round_trip_through_latest_for_member(self):
        event = append(
            reason=None,
            metadata={"card_id": "CARD-7", "temperature": 36.6, "additional_data": {"door": 2}},
        )

        stored = latest_for_member("M1")

        self.assertEqual(stored.pk, event.pk)
        self.assertEqual(AttendanceEventSerializer(stored).data, AttendanceEventSerializer(event).data)
        self.assertEqual(stored.metadata, {"card_id": "CARD-7", "temperature": 36.6, "additional_data": {"door": 2}})
        self.assertEqual(stored.timestamp, NINE)
        self.assertEqual(stored.device, self.device)
        self.assertIsNone(stored.recorded_by)

    def test_timestamp_defaults_to_ingestion_time(self):
        event = append_event("M1", "D1", AttendanceEvent.TYPE_CHECK_IN, location="Lobby", source_address="10.0.0.1")

        self.assertIsNotNone(event.timestamp)
        self.assertLessEqual(event.timestamp, event.created_at + timedelta(seconds=1))

    def test_naive_timestamp_is_read_as_utc(self):
        event = append(at=datetime(2026, 2, 1, 9, 0))

        self.assertEqual(event.timestamp, NINE)

    def test_device_id_is_matched_case_insensitively(self):
        event = append(device_id="d1")

        self.assertEqual(event.device, self.device)

    def test_structural_errors_are_rejected_without_writing(self):
        cases = [
            ({"event_type": "teleport"}, "event_type"),
            ({"method": "telepathy"}, "method"),
            ({"outcome": "maybe"}, "outcome"),
            ({"location": ""}, "location"),
            ({"source_address": "not-an-ip"}, "source_address"),
            ({"member_id": ""}, "member_id"),
            ({"member_id": "M" * 65}, "member_id"),
            ({"device_id": "ghost"}, "device_id"),
            ({"metadata": {"shoe_size": 44}}, "metadata"),
            ({"metadata": {"temperature": "hot"}}, "metadata"),
            ({"metadata": ["card"]}, "metadata"),
        ]
        for overrides, field in cases:
            with self.subTest(field=field, overrides=overrides):
                with self.assertRaises(ValidationError) as exc:
                    append(**overrides)
                self.assertIn(field, exc.exception.detail)

        self.assertEqual(AttendanceEvent.objects.count(), 0)
        self.assertEqual(MemberSequence.objects.count(), 0)

    def test_denied_and_error_outcomes_are_recorded(self):
        denied = append(outcome=AttendanceEvent.OUTCOME_DENIED, reason="Payment overdue")
        failed = append(at=NINE + timedelta(minutes=1), outcome=AttendanceEvent.OUTCOME_ERROR, reason="Reader fault")

        self.assertEqual(denied.reason, "Payment overdue")
        self.assertEqual(failed.outcome, AttendanceEvent.OUTCOME_ERROR)
        self.assertEqual(AttendanceEvent.objects.count(), 2)

    def test_sequences_are_per_member(self):
        first = append(member_id="M1")
        second = append(member_id="M1", at=NINE - timedelta(hours=1))
        other = append(member_id="M2")

        self.assertEqual((first.sequence, second.sequence, other.sequence), (1, 2, 1))
        self.assertEqual(MemberSequence.objects.get(member_id="M1").last_sequence, 2)

    def test_leading_zero_source_address_is_kept(self):
        event = append(source_address="192.168.001.010")

        self.assertEqual(event.source_address, "192.168.001.010")

    def test_malformed_member_id_is_rejected_before_locking(self):
        for member_id in ["", "   ", "M" * 65]:
            with self.subTest(member_id=member_id):
                with self.assertRaises(ValidationError) as exc:
                    lock_member(member_id)
                self.assertIn("member_id", exc.exception.detail)

        self.assertEqual(MemberSequence.objects.count(), 0)

    def test_failed_append_does_not_affect_other_members(self):
        append(member_id="M2")
        with self.assertRaises(ValidationError):
            append(member_id="M1", event_type="bogus")

        self.assertEqual(latest_for_member("M2").member_id, "M2")
        self.assertIsNone(latest_for_member("M1"))


class AppendOnlyTests(TestCase):
    def setUp(self):
        make_device()
        self.event = append()

    def test_saved_event_cannot_be_rewritten(self):
        self.event.event_type = AttendanceEvent.TYPE_CHECK_OUT

        with self.assertRaises(AppendOnlyError):
            self.event.save()
        self.assertEqual(AttendanceEvent.objects.get().event_type, AttendanceEvent.TYPE_CHECK_IN)

    def test_saved_event_cannot_be_deleted(self):
        with self.assertRaises(AppendOnlyError):
            self.event.delete()
        self.assertEqual(AttendanceEvent.objects.count(), 1)


class EventRetrievalTests(TestCase):
    def setUp(self):
        make_device("D1")
        make_device("D2", address="192.168.1.11")

    def test_latest_for_member_orders_by_timestamp_not_arrival(self):
        newest = append(at=NINE + timedelta(hours=2), event_type=AttendanceEvent.TYPE_CHECK_OUT)
        append(at=NINE)

        self.assertEqual(latest_for_member("M1").pk, newest.pk)

    def test_equal_timestamps_resolve_by_append_order(self):
        append(at=NINE, device_id="D1")
        later = append(at=NINE, device_id="D2", event_type=AttendanceEvent.TYPE_CHECK_OUT)

        self.assertEqual(latest_for_member("M1").pk, later.pk)

    def test_latest_for_member_can_skip_unsuccessful_events(self):
        granted = append(at=NINE)
        append(at=NINE + timedelta(minutes=5), outcome=AttendanceEvent.OUTCOME_DENIED)

        self.assertEqual(latest_for_member("M1").outcome, AttendanceEvent.OUTCOME_DENIED)
        self.assertEqual(latest_for_member("M1", success_only=True).pk, granted.pk)

    def test_first_checkout_after_picks_nearest_later_checkout(self):
        append(at=NINE - timedelta(hours=3), event_type=AttendanceEvent.TYPE_CHECK_OUT)
        far = append(at=NINE + timedelta(hours=5), event_type=AttendanceEvent.TYPE_CHECK_OUT)
        near = append(at=NINE + timedelta(hours=1), event_type=AttendanceEvent.TYPE_CHECK_OUT)

        self.assertEqual(first_checkout_after("M1", NINE).pk, near.pk)
        self.assertNotEqual(first_checkout_after("M1", NINE).pk, far.pk)

    def test_first_checkout_after_is_strict(self):
        append(at=NINE, event_type=AttendanceEvent.TYPE_CHECK_OUT)

        self.assertIsNone(first_checkout_after("M1", NINE))

    def test_first_checkout_after_ignores_check_ins_and_other_members(self):
        append(at=NINE + timedelta(minutes=10))
        append(member_id="M2", at=NINE + timedelta(minutes=20), event_type=AttendanceEvent.TYPE_CHECK_OUT)

        self.assertIsNone(first_checkout_after("M1", NINE))

    def test_events_for_device(self):
        append(member_id="M1", at=NINE, device_id="D1")
        latest = append(member_id="M2", at=NINE + timedelta(minutes=1), device_id="D1")
        append(member_id="M3", at=NINE + timedelta(minutes=2), device_id="D2")

        events = events_for_device("d1")

        self.assertEqual([event.member_id for event in events], ["M2", "M1"])
        self.assertEqual(events_for_device("D1", limit=1)[0].pk, latest.pk)


class AttendanceEventApiTests(APITestCase):
    def setUp(self):
        self.operator = User.objects.create_user(username="frontdesk", password="pwd12345")
        make_device("D1")
        make_device("D2", address="192.168.1.11")
        append(member_id="M1", at=NINE, device_id="D1")
        append(member_id="M1", at=NINE + timedelta(hours=1), event_type=AttendanceEvent.TYPE_CHECK_OUT, device_id="D2")
        append(member_id="M2", at=NINE + timedelta(minutes=30), device_id="D1", outcome=AttendanceEvent.OUTCOME_DENIED)

    def test_list_requires_authentication(self):
        response = self.client.get("/api/events/")

        self.assertIn(response.status_code, (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN))

    def test_list_is_newest_first_and_paginated(self):
        self.client.force_authenticate(self.operator)

        response = self.client.get("/api/events/", {"limit": 2})

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["count"], 3)
        self.assertEqual(len(response.data["results"]), 2)
        self.assertEqual(response.data["results"][0]["event_type"], AttendanceEvent.TYPE_CHECK_OUT)
        self.assertEqual(response.data["results"][0]["device_id"], "D2")

    def test_list_filters(self):
        self.client.force_authenticate(self.operator)

        by_member = self.client.get("/api/events/", {"member_id": "M1"})
        by_device = self.client.get("/api/events/", {"device_id": "d1"})
        by_outcome = self.client.get("/api/events/", {"outcome": "denied"})
        by_window = self.client.get(
            "/api/events/",
            {"date_from": "2026-02-01T09:15:00Z", "date_to": "2026-02-01T09:45:00Z"},
        )

        self.assertEqual(by_member.data["count"], 2)
        self.assertEqual(by_device.data["count"], 2)
        self.assertEqual(by_outcome.data["results"][0]["member_id"], "M2")
        self.assertEqual(by_window.data["count"], 1)

    def test_invalid_date_filter_is_rejected(self):
        self.client.force_authenticate(self.operator)

        response = self.client.get("/api/events/", {"date_from": "yesterday"})

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_manual_entry_records_operator(self):
        self.client.force_authenticate(self.operator)
        payload = {
            "member_id": "M3",
            "device_id": "d1",
            "event_type": "check-in",
            "timestamp": "2026-02-01T11:00:00Z",
        }

        response = self.client.post("/api/events/", payload, format="json")

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        event = AttendanceEvent.objects.get(member_id="M3")
        self.assertEqual(event.recorded_by, self.operator)
        self.assertEqual(event.method, AttendanceEvent.METHOD_MANUAL)
        self.assertEqual(event.location, "Manual Entry")
        self.assertEqual(event.reason, "Manual entry")
        self.assertEqual(event.source_address, "127.0.0.1")

    def test_manual_checkout_carries_session_duration(self):
        self.client.force_authenticate(self.operator)
        self.client.post(
            "/api/events/",
            {"member_id": "M3", "device_id": "D1", "event_type": "check-in", "timestamp": "2026-02-01T11:00:00Z"},
            format="json",
        )

        response = self.client.post(
            "/api/events/",
            {"member_id": "M3", "device_id": "D1", "event_type": "check-out", "timestamp": "2026-02-01T13:05:00Z"},
            format="json",
        )

        self.assertEqual(response.data["duration_minutes"], 125)
        self.assertEqual(response.data["formatted_duration"], "2h 5m")

    def test_manual_entry_for_unknown_device_is_rejected(self):
        self.client.force_authenticate(self.operator)
        payload = {"member_id": "M3", "device_id": "ghost", "event_type": "check-in"}

        response = self.client.post("/api/events/", payload, format="json")

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("device_id", response.data)
        self.assertFalse(AttendanceEvent.objects.filter(member_id="M3").exists())

    def test_events_cannot_be_updated_or_deleted(self):
        self.client.force_authenticate(self.operator)
        event = AttendanceEvent.objects.filter(member_id="M1").first()

        put = self.client.put(f"/api/events/{event.pk}/", {"event_type": "check-out"}, format="json")
        delete = self.client.delete(f"/api/events/{event.pk}/")

        self.assertEqual(put.status_code, status.HTTP_405_METHOD_NOT_ALLOWED)
        self.assertEqual(delete.status_code, status.HTTP_405_METHOD_NOT_ALLOWED)
        self.assertEqual(AttendanceEvent.objects.count(), 3)

    def test_device_event_listing(self):
        self.client.force_authenticate(self.operator)

        response = self.client.get("/api/devices/D1/events/")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([item["member_id"] for item in response.data], ["M2", "M1"])


class ConcurrentAppendTests(TransactionTestCase):
    def setUp(self):
        if connection.vendor == "sqlite" and connection.is_in_memory_db():
            self.skipTest("threads need a file-backed test database")
        make_device()

    def test_concurrent_appends_for_one_member_get_gap_free_sequences(self):
        results, errors = run_concurrently(
            16,
            lambda index: append_event(
                "M1", "D1", AttendanceEvent.TYPE_CHECK_IN, location="Lobby", source_address="192.168.1.10"
            ),
        )

        self.assertEqual(errors, [])
        self.assertEqual(sorted(event.sequence for event in results), list(range(1, 17)))
        self.assertEqual(MemberSequence.objects.get(member_id="M1").last_sequence, 16)

        by_sequence = list(AttendanceEvent.objects.order_by("sequence").values_list("pk", flat=True))
        by_time = list(AttendanceEvent.objects.order_by("timestamp", "sequence").values_list("pk", flat=True))
        self.assertEqual(by_time, by_sequence)

    def test_concurrent_appends_for_different_members_all_succeed(self):
        results, errors = run_concurrently(16, lambda index: append(member_id=f"M{index}"))

        self.assertEqual(errors, [])
        self.assertEqual(len(results), 16)
        self.assertEqual({event.sequence for event in results}, {1})
