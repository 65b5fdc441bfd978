"""Presence and session durations, rebuilt from the attendance log on every call.

Nothing here is cached: a member is "in" when the most recent participating
event is a check-in, and "out" otherwise (including when there are no events).
"""

from __future__ import annotations

from datetime import datetime, timedelta

from django.conf import settings

from events.models import AttendanceEvent
from events.services.store import as_aware, first_checkout_after, latest_for_member

PRESENCE_IN = "in"
PRESENCE_OUT = "out"


def success_only_policy(success_only: bool | None = None) -> bool:
    """Whether only ``outcome == success`` events take part in derivation.

    An explicit argument wins over the ``ATTENDANCE_PRESENCE_SUCCESS_ONLY`` setting.
    """
    if success_only is None:
        return bool(getattr(settings, "ATTENDANCE_PRESENCE_SUCCESS_ONLY", True))
    return success_only


def presence_from_event(event: AttendanceEvent | None) -> str:
    if event is not None and event.event_type == AttendanceEvent.TYPE_CHECK_IN:
        return PRESENCE_IN
    return PRESENCE_OUT


def current_status(member_id: str, success_only: bool | None = None) -> str:
    return presence_from_event(latest_for_member(member_id, success_only=success_only_policy(success_only)))


def minutes_between(start: datetime, end: datetime) -> int:
    return (end - start) // timedelta(minutes=1)


def session_duration(member_id: str, check_in_at: datetime, success_only: bool | None = None) -> int | None:
    """Whole minutes from ``check_in_at`` to the nearest later check-out.

    Returns None when no check-out follows, whether the session is still open
    or was never closed.
    """
    check_in_at = as_aware(check_in_at)
    checkout = first_checkout_after(member_id, check_in_at, success_only=success_only_policy(success_only))
    if checkout is None:
        return None
    return minutes_between(check_in_at, checkout.timestamp)


def format_duration(minutes: int | None) -> str | None:
    if minutes is None:
        return None
    hours, rest = divmod(int(minutes), 60)
    if hours > 0:
        return f"{hours}h {rest}m"
    return f"{rest}m"
