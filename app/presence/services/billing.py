from __future__ import annotations

import logging
from decimal import Decimal
from enum import Enum

from core.exceptions import ValidationError
from notifications.gateway import (
    COMMAND_ACCESS_SUSPENDED,
    COMMAND_PAYMENT_CONFIRMED,
    COMMAND_PAYMENT_REMINDER,
    NotificationGateway,
    get_notification_gateway,
)


logger = logging.getLogger(__name__)

PAYMENT_REMINDER_MESSAGE = "Your membership payment is due. Please settle it to keep your door access."


class BillingState(str, Enum):
    """Member billing state as computed by the billing system."""

    PAID = "paid"
    PENDING = "pending"
    OVERDUE = "overdue"


def _billing_state(value, field: str) -> BillingState:
    try:
        return BillingState(value)
    except ValueError as exc:
        choices = ", ".join(state.value for state in BillingState)
        raise ValidationError({field: [f"Must be one of: {choices}."]}) from exc


def on_billing_transition(
    member_id: str,
    previous,
    current,
    amount: Decimal | float | None = None,
    gateway: NotificationGateway | None = None,
) -> str | None:
    """Issue the notification command a billing state change calls for.

    Returns the command name, or None when the transition needs no notice.
    """
    previous = _billing_state(previous, "previous")
    current = _billing_state(current, "current")
    if previous == current:
        return None

    gateway = gateway or get_notification_gateway()
    command = None
    if current is BillingState.OVERDUE:
        gateway.notify_access_suspended(member_id)
        command = COMMAND_ACCESS_SUSPENDED
    elif current is BillingState.PAID:
        gateway.notify_payment_confirmed(member_id, amount)
        command = COMMAND_PAYMENT_CONFIRMED
    elif previous is BillingState.PAID:
        gateway.notify_payment_reminder(member_id, PAYMENT_REMINDER_MESSAGE)
        command = COMMAND_PAYMENT_REMINDER

    if command:
        logger.info(
            "Billing notification issued",
            extra={"member_id": member_id, "command": command, "from_state": previous.value, "to_state": current.value},
        )
    return command
