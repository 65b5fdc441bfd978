"""Outbound member notifications.

Commands are fire-and-forget: callers never see a result and delivery
failures are logged, not raised.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Protocol

import requests
from django.conf import settings


logger = logging.getLogger(__name__)

COMMAND_ACCESS_SUSPENDED = "access_suspended"
COMMAND_PAYMENT_CONFIRMED = "payment_confirmed"
COMMAND_PAYMENT_REMINDER = "payment_reminder"


class NotificationGateway(Protocol):
    def notify_access_suspended(self, member_id: str) -> None: ...

    def notify_payment_confirmed(self, member_id: str, amount: Decimal | float | None) -> None: ...

    def notify_payment_reminder(self, member_id: str, message: str) -> None: ...


def _amount_value(amount: Decimal | float | None) -> str | None:
    if amount is None:
        return None
    return str(amount)


class LoggingNotificationGateway:
    def notify_access_suspended(self, member_id: str) -> None:
        logger.info("Access suspension notification", extra={"member_id": member_id})

    def notify_payment_confirmed(self, member_id: str, amount: Decimal | float | None) -> None:
        logger.info(
            "Payment confirmation notification",
            extra={"member_id": member_id, "amount": _amount_value(amount)},
        )

    def notify_payment_reminder(self, member_id: str, message: str) -> None:
        logger.info("Payment reminder notification", extra={"member_id": member_id, "reminder": message})


class HttpNotificationGateway:
    def __init__(self, url: str, timeout: int = 10):
        self.url = url
        self.timeout = timeout

    def _send(self, command: str, payload: dict) -> None:
        body = {"command": command, **payload}
        try:
            response = requests.post(self.url, json=body, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException:
            logger.exception("Notification delivery failed", extra={"command": command, "url": self.url})

    def notify_access_suspended(self, member_id: str) -> None:
        self._send(COMMAND_ACCESS_SUSPENDED, {"member_id": member_id})

    def notify_payment_confirmed(self, member_id: str, amount: Decimal | float | None) -> None:
        self._send(COMMAND_PAYMENT_CONFIRMED, {"member_id": member_id, "amount": _amount_value(amount)})

    def notify_payment_reminder(self, member_id: str, message: str) -> None:
        self._send(COMMAND_PAYMENT_REMINDER, {"member_id": member_id, "message": message})


def get_notification_gateway() -> NotificationGateway:
    url = getattr(settings, "NOTIFICATION_WEBHOOK_URL", "")
    if url:
        return HttpNotificationGateway(url, timeout=getattr(settings, "NOTIFICATION_TIMEOUT", 10))
    return LoggingNotificationGateway()
