from __future__ import annotations

import logging
from datetime import datetime, timedelta

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import IntegrityError, transaction
from django.utils import timezone

from core.exceptions import ConflictError, NotFoundError, ValidationError
from devices.models import Device


logger = logging.getLogger(__name__)

DEVICE_SETTINGS_KEYS = ("timeout_ms", "retry_attempts", "logging_enabled")


def normalize_device_id(value) -> str:
    return str(value or "").strip().upper()


def _validated_settings(device_settings: dict | None) -> dict:
    if device_settings is None:
        return {}
    if not isinstance(device_settings, dict):
        raise ValidationError({"settings": ["Must be an object."]})

    unknown = sorted(set(device_settings) - set(DEVICE_SETTINGS_KEYS))
    if unknown:
        raise ValidationError({"settings": [f"Unknown keys: {', '.join(unknown)}."]})

    for key in ("timeout_ms", "retry_attempts"):
        value = device_settings.get(key)
        if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
            raise ValidationError({key: ["Must be an integer."]})
    logging_enabled = device_settings.get("logging_enabled")
    if logging_enabled is not None and not isinstance(logging_enabled, bool):
        raise ValidationError({"logging_enabled": ["Must be a boolean."]})

    return {key: value for key, value in device_settings.items() if value is not None}


def register_device(
    device_id: str,
    name: str,
    location: str,
    role: str = Device.ROLE_BOTH,
    address: str = "",
    port: int | None = None,
    device_settings: dict | None = None,
    *,
    firmware: str | None = None,
    owner=None,
) -> Device:
    normalized_id = normalize_device_id(device_id)
    device = Device(
        device_id=normalized_id,
        name=str(name or "").strip(),
        location=str(location or "").strip(),
        role=role,
        address=str(address or "").strip(),
        port=port,
        firmware=firmware or None,
        owner=owner,
        **_validated_settings(device_settings),
    )

    try:
        device.full_clean(validate_unique=False)
    except DjangoValidationError as exc:
        raise ValidationError.from_django(exc) from exc

    if Device.objects.filter(device_id=normalized_id).exists():
        raise ConflictError(f"Device '{normalized_id}' is already registered.")

    try:
        with transaction.atomic():
            device.save()
    except IntegrityError as exc:
        raise ConflictError(f"Device '{normalized_id}' is already registered.") from exc

    logger.info(
        "Device registered",
        extra={"device_id": device.device_id, "address": device.address, "port": device.port},
    )
    return device


def get_device(device_id: str) -> Device:
    normalized_id = normalize_device_id(device_id)
    device = Device.objects.filter(device_id=normalized_id).first()
    if device is None:
        raise NotFoundError(f"Device '{normalized_id}' not found.")
    return device


def heartbeat(device_id: str, now: datetime | None = None) -> None:
    normalized_id = normalize_device_id(device_id)
    updated = Device.objects.filter(device_id=normalized_id).update(last_heartbeat=now or timezone.now())
    if not updated:
        raise NotFoundError(f"Device '{normalized_id}' not found.")


def derive_status(active: bool, last_heartbeat: datetime | None, now: datetime, window_seconds: int | None = None) -> str:
    """Liveness of a device at ``now``.

    A device is online while its last heartbeat is strictly newer than
    ``now - window``. Deactivated devices are inactive whatever their heartbeat.
    """
    if not active:
        return Device.STATUS_INACTIVE
    if last_heartbeat is None:
        return Device.STATUS_OFFLINE

    if window_seconds is None:
        window_seconds = settings.DEVICE_HEARTBEAT_WINDOW_SECONDS
    if last_heartbeat > now - timedelta(seconds=window_seconds):
        return Device.STATUS_ONLINE
    return Device.STATUS_OFFLINE


def status_of(device: Device, now: datetime) -> str:
    return derive_status(device.active, device.last_heartbeat, now)


def device_status(device_id: str, now: datetime) -> str:
    return status_of(get_device(device_id), now)


def set_active(device_id: str, active: bool) -> Device:
    device = get_device(device_id)
    if device.active != active:
        device.active = active
        device.save(update_fields=["active", "updated_at"])
        logger.info("Device active flag changed", extra={"device_id": device.device_id, "active": active})
    return device
