from django.conf import settings
from django.db import models
from django.utils import timezone

from core.validators import validate_source_address
from devices.models import Device


class AppendOnlyError(Exception):
    """Raised on attempts to rewrite or remove a stored attendance event."""


class AttendanceEvent(models.Model):
    TYPE_CHECK_IN = "check-in"
    TYPE_CHECK_OUT = "check-out"
    TYPE_CHOICES = [
        (TYPE_CHECK_IN, "Check-in"),
        (TYPE_CHECK_OUT, "Check-out"),
    ]

    METHOD_CARD = "card"
    METHOD_BIOMETRIC = "biometric"
    METHOD_MOBILE = "mobile"
    METHOD_MANUAL = "manual"
    METHOD_CHOICES = [
        (METHOD_CARD, "Card"),
        (METHOD_BIOMETRIC, "Biometric"),
        (METHOD_MOBILE, "Mobile"),
        (METHOD_MANUAL, "Manual"),
    ]

    OUTCOME_SUCCESS = "success"
    OUTCOME_DENIED = "denied"
    OUTCOME_ERROR = "error"
    OUTCOME_CHOICES = [
        (OUTCOME_SUCCESS, "Success"),
        (OUTCOME_DENIED, "Denied"),
        (OUTCOME_ERROR, "Error"),
    ]

    member_id = models.CharField(max_length=64)
    device = models.ForeignKey(Device, on_delete=models.PROTECT, related_name="attendance_events")
    event_type = models.CharField(max_length=16, choices=TYPE_CHOICES)
    timestamp = models.DateTimeField(default=timezone.now)
    method = models.CharField(max_length=16, choices=METHOD_CHOICES, default=METHOD_CARD)
    outcome = models.CharField(max_length=16, choices=OUTCOME_CHOICES, default=OUTCOME_SUCCESS)
    reason = models.CharField(max_length=255, null=True, blank=True)
    duration_minutes = models.PositiveIntegerField(null=True, blank=True)
    location = models.CharField(max_length=200)
    source_address = models.CharField(max_length=45, validators=[validate_source_address])
    metadata = models.JSONField(default=dict, blank=True)
    recorded_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="recorded_attendance_events",
        null=True,
        blank=True,
    )
    sequence = models.PositiveBigIntegerField(editable=False)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["member_id", "sequence"], name="uq_event_member_sequence"),
        ]
        indexes = [
            models.Index(fields=["member_id", "-timestamp"], name="events_member_ts_idx"),
            models.Index(fields=["device", "-timestamp"], name="events_device_ts_idx"),
            models.Index(fields=["-timestamp"], name="events_ts_idx"),
        ]

    def __str__(self):
        return f"{self.member_id} {self.event_type} @ {self.timestamp.isoformat()}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise AppendOnlyError("Attendance events are append-only; record a correction instead.")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise AppendOnlyError("Attendance events are append-only and cannot be deleted.")


class MemberSequence(models.Model):
    """Per-member append counter; its row lock serializes event ingestion for one member."""

    member_id = models.CharField(max_length=64, unique=True)
    last_sequence = models.PositiveBigIntegerField(default=0)

    def __str__(self):
        return f"{self.member_id}#{self.last_sequence}"
