from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from django.db import transaction

from devices.services.registry import get_device, heartbeat
from events.models import AttendanceEvent
from events.services.store import append_event, as_aware, latest_for_member, lock_member
from presence.services.resolver import PRESENCE_IN, current_status, minutes_between


logger = logging.getLogger(__name__)

INACTIVE_DEVICE_REASON = "Device is inactive"
MANUAL_ENTRY_LOCATION = "Manual Entry"
MANUAL_ENTRY_REASON = "Manual entry"


@dataclass(frozen=True)
class AccessResult:
    event: AttendanceEvent

    @property
    def granted(self) -> bool:
        return self.event.outcome == AttendanceEvent.OUTCOME_SUCCESS

    @property
    def reason(self) -> str | None:
        return self.event.reason


def _closing_duration(member_id: str, at: datetime) -> int | None:
    # Only successful events can open a session that a check-out closes.
    last = latest_for_member(member_id, success_only=True)
    if last is None or last.event_type != AttendanceEvent.TYPE_CHECK_IN or last.timestamp >= at:
        return None
    return minutes_between(last.timestamp, at)


def process_door_access(
    member_id: str,
    device_id: str,
    *,
    event_type: str | None = None,
    method: str = AttendanceEvent.METHOD_CARD,
    outcome: str = AttendanceEvent.OUTCOME_SUCCESS,
    reason: str | None = None,
    timestamp: datetime | None = None,
    metadata: dict | None = None,
    source_address: str | None = None,
) -> AccessResult:
    """Record one swipe reported by a door controller.

    The controller decides whether the door opened and reports it as
    ``outcome``; an inactive device always records a denial. Without an
    explicit ``event_type`` the swipe toggles the member's presence.
    """
    device = get_device(device_id)

    if not device.active:
        outcome = AttendanceEvent.OUTCOME_DENIED
        reason = INACTIVE_DEVICE_REASON

    with transaction.atomic():
        lock_member(member_id)
        at = as_aware(timestamp)
        if event_type is None:
            in_now = current_status(member_id) == PRESENCE_IN
            event_type = AttendanceEvent.TYPE_CHECK_OUT if in_now else AttendanceEvent.TYPE_CHECK_IN

        duration = None
        if event_type == AttendanceEvent.TYPE_CHECK_OUT and outcome == AttendanceEvent.OUTCOME_SUCCESS:
            duration = _closing_duration(member_id, at)

        event = append_event(
            member_id,
            device.device_id,
            event_type,
            method=method,
            outcome=outcome,
            location=device.location,
            source_address=source_address or device.address,
            reason=reason,
            metadata=metadata,
            timestamp=at,
            duration_minutes=duration,
        )

    heartbeat(device.device_id)

    result = AccessResult(event=event)
    if result.granted:
        logger.info(
            "Door access granted",
            extra={"member_id": event.member_id, "event_type": event.event_type, "location": device.location},
        )
    else:
        logger.info(
            "Door access refused",
            extra={"member_id": event.member_id, "outcome": event.outcome, "reason": event.reason},
        )
    return result


def record_manual_event(
    member_id: str,
    device_id: str,
    event_type: str,
    recorded_by,
    *,
    reason: str | None = None,
    source_address: str = "",
    timestamp: datetime | None = None,
) -> AttendanceEvent:
    """Append an operator correction; it never rewrites earlier events."""
    with transaction.atomic():
        lock_member(member_id)
        at = as_aware(timestamp)
        duration = None
        if event_type == AttendanceEvent.TYPE_CHECK_OUT:
            duration = _closing_duration(member_id, at)

        event = append_event(
            member_id,
            device_id,
            event_type,
            method=AttendanceEvent.METHOD_MANUAL,
            outcome=AttendanceEvent.OUTCOME_SUCCESS,
            location=MANUAL_ENTRY_LOCATION,
            source_address=source_address,
            reason=reason or MANUAL_ENTRY_REASON,
            recorded_by=recorded_by,
            timestamp=at,
            duration_minutes=duration,
        )

    logger.info(
        "Manual attendance recorded",
        extra={"member_id": event.member_id, "event_type": event.event_type, "recorded_by": getattr(recorded_by, "pk", None)},
    )
    return event
