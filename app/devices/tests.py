from datetime import datetime, timedelta, timezone as dt_timezone
from io import StringIO

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import TestCase, override_settings
from rest_framework import status
from rest_framework.test import APITestCase

from core.exceptions import ConflictError, NotFoundError, ValidationError
from devices.models import Device
from devices.services.registry import (
    derive_status,
    device_status,
    heartbeat,
    register_device,
    set_active,
)


User = get_user_model()

T0 = datetime(2026, 2, 1, 9, 0, tzinfo=dt_timezone.utc)


def make_device(device_id="d1", address="192.168.1.10", port=4370, **kwargs):
    return register_device(
        device_id=device_id,
        name=kwargs.pop("name", "Main door"),
        location=kwargs.pop("location", "Lobby"),
        role=kwargs.pop("role", Device.ROLE_BOTH),
        address=address,
        port=port,
        **kwargs,
    )


class DeviceRegistrationTests(TestCase):
    def test_device_id_is_normalized_to_upper_case(self):
        device = make_device(device_id="  gate-a ")

        self.assertEqual(device.device_id, "GATE-A")
        self.assertEqual(Device.objects.get().device_id, "GATE-A")

    def test_defaults_are_applied(self):
        device = make_device()

        self.assertTrue(device.active)
        self.assertIsNone(device.last_heartbeat)
        self.assertEqual(device.timeout_ms, 5000)
        self.assertEqual(device.retry_attempts, 3)
        self.assertTrue(device.logging_enabled)

    def test_custom_settings_are_stored(self):
        device = make_device(device_settings={"timeout_ms": 8000, "retry_attempts": 0, "logging_enabled": False})

        self.assertEqual(device.timeout_ms, 8000)
        self.assertEqual(device.retry_attempts, 0)
        self.assertFalse(device.logging_enabled)

    def test_unknown_settings_key_is_rejected(self):
        with self.assertRaises(ValidationError):
            make_device(device_settings={"timeout": 8000})
        self.assertEqual(Device.objects.count(), 0)

    def test_valid_dotted_quad_addresses_are_accepted(self):
        addresses = ["0.0.0.0", "10.0.0.1", "255.255.255.255", "192.168.001.010", "010.0.0.1", "999.1.1.1"]
        for index, address in enumerate(addresses):
            with self.subTest(address=address):
                device = make_device(device_id=f"ip-{index}", address=address)
                self.assertEqual(device.address, address)

    def test_malformed_addresses_are_rejected(self):
        for address in ["", "abc", "1.2.3", "1.2.3.4.5", "1234.1.1.1", "1.2.3.-4", "::1", "1.2.3.x", " 1.2.3.4x"]:
            with self.subTest(address=address):
                with self.assertRaises(ValidationError) as exc:
                    make_device(device_id="bad-ip", address=address)
                self.assertIn("address", exc.exception.detail)
        self.assertEqual(Device.objects.count(), 0)

    def test_port_boundaries(self):
        self.assertEqual(make_device(device_id="p-low", port=1).port, 1)
        self.assertEqual(make_device(device_id="p-high", port=65535).port, 65535)

    def test_ports_outside_range_are_rejected(self):
        for port in [0, -1, 65536, 70000, None]:
            with self.subTest(port=port):
                with self.assertRaises(ValidationError) as exc:
                    make_device(device_id="bad-port", port=port)
                self.assertIn("port", exc.exception.detail)

    def test_unknown_role_is_rejected(self):
        with self.assertRaises(ValidationError) as exc:
            make_device(role="sideways")
        self.assertIn("role", exc.exception.detail)

    def test_missing_name_is_rejected(self):
        with self.assertRaises(ValidationError) as exc:
            make_device(name="")
        self.assertIn("name", exc.exception.detail)

    def test_duplicate_device_id_conflicts_case_insensitively(self):
        make_device(device_id="D1")

        with self.assertRaises(ConflictError):
            make_device(device_id="d1", address="10.0.0.2")
        self.assertEqual(Device.objects.count(), 1)


class DeviceHeartbeatTests(TestCase):
    def test_heartbeat_sets_last_heartbeat(self):
        make_device(device_id="d2")

        heartbeat("d2", now=T0)

        self.assertEqual(Device.objects.get(device_id="D2").last_heartbeat, T0)

    def test_heartbeat_is_last_writer_wins(self):
        make_device(device_id="d2")

        heartbeat("D2", now=T0 + timedelta(minutes=1))
        heartbeat("D2", now=T0)

        self.assertEqual(Device.objects.get(device_id="D2").last_heartbeat, T0)

    def test_heartbeat_for_unknown_device_raises_not_found(self):
        with self.assertRaises(NotFoundError):
            heartbeat("ghost", now=T0)


class DeviceStatusTests(TestCase):
    def test_inactive_whatever_the_heartbeat(self):
        self.assertEqual(derive_status(False, T0, T0), Device.STATUS_INACTIVE)
        self.assertEqual(derive_status(False, None, T0), Device.STATUS_INACTIVE)

    def test_never_seen_device_is_offline(self):
        self.assertEqual(derive_status(True, None, T0), Device.STATUS_OFFLINE)

    def test_window_edges(self):
        self.assertEqual(derive_status(True, T0 - timedelta(seconds=299), T0), Device.STATUS_ONLINE)
        self.assertEqual(derive_status(True, T0 - timedelta(seconds=300), T0), Device.STATUS_OFFLINE)
        self.assertEqual(derive_status(True, T0 - timedelta(seconds=301), T0), Device.STATUS_OFFLINE)

    @override_settings(DEVICE_HEARTBEAT_WINDOW_SECONDS=60)
    def test_window_follows_setting(self):
        self.assertEqual(derive_status(True, T0 - timedelta(seconds=90), T0), Device.STATUS_OFFLINE)

    def test_status_after_heartbeat_ages_out(self):
        make_device(device_id="d2")
        heartbeat("d2", now=T0)

        self.assertEqual(device_status("d2", T0 + timedelta(minutes=4)), Device.STATUS_ONLINE)
        self.assertEqual(device_status("d2", T0 + timedelta(minutes=6)), Device.STATUS_OFFLINE)

    def test_deactivated_device_reports_inactive(self):
        make_device(device_id="d3")
        heartbeat("d3", now=T0)

        set_active("d3", False)

        self.assertEqual(device_status("d3", T0 + timedelta(seconds=1)), Device.STATUS_INACTIVE)

    def test_status_of_unknown_device_raises_not_found(self):
        with self.assertRaises(NotFoundError):
            device_status("ghost", T0)


class DeviceApiTests(APITestCase):
    def setUp(self):
        self.user1 = User.objects.create_user(username="alice", password="pwd12345")
        self.user2 = User.objects.create_user(username="bob", password="pwd12345")

    def test_register_device_sets_owner_and_normalizes_id(self):
        self.client.force_authenticate(self.user1)
        payload = {
            "device_id": "gate-a",
            "name": "Main door",
            "location": "Lobby",
            "role": "entry",
            "address": "192.168.1.20",
            "port": 4370,
            "settings": {"timeout_ms": 8000},
        }

        response = self.client.post("/api/devices/", payload, format="json")

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        device = Device.objects.get(device_id="GATE-A")
        self.assertEqual(device.owner, self.user1)
        self.assertEqual(device.timeout_ms, 8000)
        self.assertEqual(response.data["status"], Device.STATUS_OFFLINE)
        self.assertEqual(
            response.data["settings"],
            {"timeout_ms": 8000, "retry_attempts": 3, "logging_enabled": True},
        )

    def test_register_rejects_bad_address_and_port(self):
        self.client.force_authenticate(self.user1)
        payload = {
            "device_id": "gate-b",
            "name": "Side door",
            "location": "Yard",
            "address": "300.1.1",
            "port": 0,
        }

        response = self.client.post("/api/devices/", payload, format="json")

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn("address", response.data)
        self.assertIn("port", response.data)

    def test_register_duplicate_returns_conflict(self):
        make_device(device_id="GATE-C")
        self.client.force_authenticate(self.user1)
        payload = {
            "device_id": "gate-c",
            "name": "Copy",
            "location": "Lobby",
            "address": "192.168.1.21",
            "port": 4370,
        }

        response = self.client.post("/api/devices/", payload, format="json")

        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)

    def test_user_only_sees_own_devices_with_owner_filter(self):
        make_device(device_id="dev-alice", owner=self.user1)
        make_device(device_id="dev-bob", owner=self.user2, address="192.168.1.11")

        self.client.force_authenticate(self.user1)
        response = self.client.get("/api/devices/?owner_only=1")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data), 1)
        self.assertEqual(response.data[0]["device_id"], "DEV-ALICE")

    def test_retrieve_is_case_insensitive_and_unknown_is_404(self):
        make_device(device_id="gate-d")
        self.client.force_authenticate(self.user1)

        self.assertEqual(self.client.get("/api/devices/gate-d/").status_code, status.HTTP_200_OK)
        self.assertEqual(self.client.get("/api/devices/ghost/").status_code, status.HTTP_404_NOT_FOUND)

    def test_deactivate_and_activate(self):
        make_device(device_id="gate-e")
        self.client.force_authenticate(self.user1)

        response = self.client.post("/api/devices/GATE-E/deactivate/")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(response.data["active"])
        self.assertEqual(response.data["status"], Device.STATUS_INACTIVE)

        response = self.client.post("/api/devices/GATE-E/activate/")
        self.assertTrue(response.data["active"])
        self.assertEqual(Device.objects.count(), 1)

    def test_devices_cannot_be_deleted(self):
        make_device(device_id="gate-f")
        self.client.force_authenticate(self.user1)

        response = self.client.delete("/api/devices/GATE-F/")

        self.assertEqual(response.status_code, status.HTTP_405_METHOD_NOT_ALLOWED)
        self.assertEqual(Device.objects.count(), 1)

    def test_anonymous_requests_are_refused(self):
        response = self.client.get("/api/devices/")

        self.assertIn(response.status_code, (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN))


class DeviceHeartbeatWebhookTests(APITestCase):
    def setUp(self):
        make_device(device_id="d2")

    def test_heartbeat_marks_device_online(self):
        response = self.client.post("/api/devices/heartbeat", {"device_id": "d2"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json()["status"], "ok")
        device = Device.objects.get(device_id="D2")
        self.assertIsNotNone(device.last_heartbeat)

        user = User.objects.create_user(username="carol", password="pwd12345")
        self.client.force_authenticate(user)
        status_response = self.client.get("/api/devices/D2/status/")
        self.assertEqual(status_response.data["status"], Device.STATUS_ONLINE)

    def test_heartbeat_for_unknown_device_returns_404(self):
        response = self.client.post("/api/devices/heartbeat", {"device_id": "ghost"}, format="json")

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_heartbeat_requires_device_id(self):
        response = self.client.post("/api/devices/heartbeat", {}, format="json")

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    @override_settings(DEVICE_WEBHOOK_TOKEN="s3cret")
    def test_heartbeat_requires_token_when_configured(self):
        response = self.client.post("/api/devices/heartbeat", {"device_id": "d2"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        response = self.client.post(
            "/api/devices/heartbeat",
            {"device_id": "d2"},
            format="json",
            HTTP_X_DEVICE_TOKEN="s3cret",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)


class DeviceStatusCommandTests(TestCase):
    def test_command_lists_devices_with_status(self):
        make_device(device_id="d1")
        make_device(device_id="d2", address="192.168.1.11")
        set_active("d2", False)

        stdout = StringIO()
        call_command("device_status", stdout=stdout)

        output = stdout.getvalue()
        self.assertIn("D1\toffline", output)
        self.assertIn("D2\tinactive", output)
        self.assertIn("2 device(s) evaluated", output)

    def test_command_raises_for_unknown_device(self):
        with self.assertRaises(CommandError) as exc:
            call_command("device_status", "--device-id", "ghost")

        self.assertIn("GHOST", str(exc.exception))
