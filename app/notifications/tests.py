from decimal import Decimal
from unittest.mock import patch

import requests
from django.test import SimpleTestCase, override_settings

from notifications.gateway import (
    HttpNotificationGateway,
    LoggingNotificationGateway,
    NotificationGateway,
    get_notification_gateway,
)


class HttpNotificationGatewayTests(SimpleTestCase):
    def setUp(self):
        self.gateway = HttpNotificationGateway("http://notify.local/hooks", timeout=3)

    @patch("notifications.gateway.requests.post")
    def test_payment_confirmation_is_posted(self, mock_post):
        self.gateway.notify_payment_confirmed("M1", Decimal("49.99"))

        mock_post.assert_called_once_with(
            "http://notify.local/hooks",
            json={"command": "payment_confirmed", "member_id": "M1", "amount": "49.99"},
            timeout=3,
        )
        mock_post.return_value.raise_for_status.assert_called_once_with()

    @patch("notifications.gateway.requests.post")
    def test_suspension_and_reminder_commands(self, mock_post):
        self.gateway.notify_access_suspended("M1")
        self.gateway.notify_payment_reminder("M1", "Please pay")

        bodies = [call.kwargs["json"] for call in mock_post.call_args_list]
        self.assertEqual(
            bodies,
            [
                {"command": "access_suspended", "member_id": "M1"},
                {"command": "payment_reminder", "member_id": "M1", "message": "Please pay"},
            ],
        )

    @patch("notifications.gateway.requests.post", side_effect=requests.ConnectionError("down"))
    def test_delivery_failure_is_logged_not_raised(self, mock_post):
        with self.assertLogs("notifications.gateway", level="ERROR") as logs:
            self.gateway.notify_access_suspended("M1")

        self.assertIn("Notification delivery failed", logs.output[0])

    @patch("notifications.gateway.requests.post")
    def test_error_status_is_logged_not_raised(self, mock_post):
        mock_post.return_value.raise_for_status.side_effect = requests.HTTPError("502")

        with self.assertLogs("notifications.gateway", level="ERROR"):
            self.gateway.notify_payment_reminder("M1", "Please pay")


class GatewaySelectionTests(SimpleTestCase):
    @override_settings(NOTIFICATION_WEBHOOK_URL="")
    def test_logging_gateway_without_url(self):
        self.assertIsInstance(get_notification_gateway(), LoggingNotificationGateway)

    @override_settings(NOTIFICATION_WEBHOOK_URL="http://notify.local/hooks", NOTIFICATION_TIMEOUT=5)
    def test_http_gateway_with_url(self):
        gateway = get_notification_gateway()

        self.assertIsInstance(gateway, HttpNotificationGateway)
        self.assertEqual(gateway.url, "http://notify.local/hooks")
        self.assertEqual(gateway.timeout, 5)

    def test_logging_gateway_writes_member_id(self):
        with self.assertLogs("notifications.gateway", level="INFO") as logs:
            LoggingNotificationGateway().notify_access_suspended("M1")

        self.assertIn("Access suspension notification", logs.output[0])

    def test_every_gateway_implements_the_notification_commands(self):
        commands = [name for name in vars(NotificationGateway) if name.startswith("notify_")]

        self.assertEqual(len(commands), 3)
        for gateway_class in (LoggingNotificationGateway, HttpNotificationGateway):
            for name in commands:
                with self.subTest(gateway=gateway_class.__name__, command=name):
                    self.assertIsNot(getattr(gateway_class, name), getattr(NotificationGateway, name))
