from __future__ import annotations

import logging
from datetime import datetime, timezone as dt_timezone

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import transaction
from django.db.models import QuerySet
from django.utils import timezone

from core.exceptions import ValidationError
from devices.models import Device
from devices.services.registry import normalize_device_id
from events.models import AttendanceEvent, MemberSequence


logger = logging.getLogger(__name__)

METADATA_STRING_KEYS = ("card_id", "biometric_id", "mobile_device_id")
METADATA_KEYS = METADATA_STRING_KEYS + ("temperature", "additional_data")


def as_aware(dt: datetime | None) -> datetime:
    """``dt`` as an aware datetime; naive values are read as UTC, None is now."""
    if dt is None:
        return timezone.now()
    if timezone.is_naive(dt):
        return timezone.make_aware(dt, dt_timezone.utc)
    return dt


def _metadata_errors(metadata) -> list[str]:
    if not isinstance(metadata, dict):
        return ["Must be an object."]

    errors = []
    unknown = sorted(set(metadata) - set(METADATA_KEYS))
    if unknown:
        errors.append(f"Unknown keys: {', '.join(unknown)}.")
    for key in METADATA_STRING_KEYS:
        value = metadata.get(key)
        if value is not None and not isinstance(value, str):
            errors.append(f"{key} must be a string.")
    temperature = metadata.get("temperature")
    if temperature is not None and (isinstance(temperature, bool) or not isinstance(temperature, (int, float))):
        errors.append("temperature must be a number.")
    return errors


def lock_member(member_id: str) -> MemberSequence:
    """Lock the member's sequence row until the surrounding transaction ends.

    The id is validated first so a malformed one never reaches the database.
    """
    counter = MemberSequence(member_id=str(member_id or "").strip())
    try:
        counter.full_clean(exclude=["last_sequence"], validate_unique=False)
    except DjangoValidationError as exc:
        raise ValidationError.from_django(exc) from exc

    MemberSequence.objects.get_or_create(member_id=counter.member_id)
    return MemberSequence.objects.select_for_update().get(member_id=counter.member_id)


def _next_sequence(member_id: str) -> int:
    counter = lock_member(member_id)
    counter.last_sequence += 1
    counter.save(update_fields=["last_sequence"])
    return counter.last_sequence


def append_event(
    member_id: str,
    device_id: str,
    event_type: str,
    method: str = AttendanceEvent.METHOD_CARD,
    outcome: str = AttendanceEvent.OUTCOME_SUCCESS,
    location: str = "",
    source_address: str = "",
    *,
    reason: str | None = None,
    metadata: dict | None = None,
    recorded_by=None,
    timestamp: datetime | None = None,
    duration_minutes: int | None = None,
) -> AttendanceEvent:
    """Validate the structure of an event and append it to the member's log.

    Whether access should have been granted is decided upstream and only
    recorded through ``outcome``. Appends for one member are serialized on
    that member's sequence row, so the (timestamp, sequence) order seen by
    readers is total and stable.
    """
    member_id = str(member_id or "").strip()
    errors: dict[str, list[str]] = {}

    device = Device.objects.filter(device_id=normalize_device_id(device_id)).first()
    if device is None:
        errors["device_id"] = [f"Unknown device '{normalize_device_id(device_id)}'."]

    metadata = {} if metadata is None else metadata
    metadata_errors = _metadata_errors(metadata)
    if metadata_errors:
        errors["metadata"] = metadata_errors

    if timestamp is not None and not isinstance(timestamp, datetime):
        errors["timestamp"] = ["Must be a datetime."]
        timestamp = None
    # Defaulted timestamps are taken under the member lock so they follow sequence order.
    stamp_on_append = timestamp is None

    event = AttendanceEvent(
        member_id=member_id,
        device=device,
        event_type=event_type,
        timestamp=as_aware(timestamp),
        method=method,
        outcome=outcome,
        reason=reason or None,
        duration_minutes=duration_minutes,
        location=str(location or "").strip(),
        source_address=str(source_address or "").strip(),
        metadata=metadata if not metadata_errors else {},
        recorded_by=recorded_by,
        sequence=0,
    )

    exclude = ["sequence"]
    if device is None:
        exclude.append("device")
    if metadata_errors:
        exclude.append("metadata")
    try:
        event.full_clean(exclude=exclude, validate_unique=False, validate_constraints=False)
    except DjangoValidationError as exc:
        for field, messages in exc.message_dict.items():
            errors.setdefault(field, []).extend(messages)

    if errors:
        logger.info("Attendance event rejected", extra={"member_id": member_id, "errors": errors})
        raise ValidationError(errors)

    with transaction.atomic():
        event.sequence = _next_sequence(member_id)
        if stamp_on_append:
            event.timestamp = timezone.now()
        event.save()

    logger.info(
        "Attendance event appended",
        extra={
            "member_id": event.member_id,
            "device_id": device.device_id,
            "event_type": event.event_type,
            "outcome": event.outcome,
            "sequence": event.sequence,
        },
    )
    return event


def _member_events(member_id: str, success_only: bool) -> QuerySet:
    queryset = AttendanceEvent.objects.filter(member_id=str(member_id or "").strip())
    if success_only:
        queryset = queryset.filter(outcome=AttendanceEvent.OUTCOME_SUCCESS)
    return queryset.select_related("device", "recorded_by")


def latest_for_member(member_id: str, success_only: bool = False) -> AttendanceEvent | None:
    return _member_events(member_id, success_only).order_by("-timestamp", "-sequence").first()


def first_checkout_after(member_id: str, after: datetime, success_only: bool = False) -> AttendanceEvent | None:
    """Nearest check-out strictly later than ``after``.

    Check-outs stamped at or before ``after`` never match, even when they were
    appended later.
    """
    return (
        _member_events(member_id, success_only)
        .filter(event_type=AttendanceEvent.TYPE_CHECK_OUT, timestamp__gt=as_aware(after))
        .order_by("timestamp", "sequence")
        .first()
    )


def events_for_device(device_id: str, limit: int | None = None) -> list[AttendanceEvent]:
    queryset = (
        AttendanceEvent.objects.filter(device__device_id=normalize_device_id(device_id))
        .select_related("device", "recorded_by")
        .order_by("-timestamp", "-id")
    )
    if limit is not None:
        queryset = queryset[:limit]
    return list(queryset)


def search_events(
    *,
    member_id: str | None = None,
    device_id: str | None = None,
    event_type: str | None = None,
    outcome: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
) -> QuerySet:
    queryset = AttendanceEvent.objects.select_related("device", "recorded_by")
    if member_id:
        queryset = queryset.filter(member_id=member_id.strip())
    if device_id:
        queryset = queryset.filter(device__device_id=normalize_device_id(device_id))
    if event_type:
        queryset = queryset.filter(event_type=event_type)
    if outcome:
        queryset = queryset.filter(outcome=outcome)
    if date_from:
        queryset = queryset.filter(timestamp__gte=as_aware(date_from))
    if date_to:
        queryset = queryset.filter(timestamp__lte=as_aware(date_to))
    return queryset.order_by("-timestamp", "-sequence")
