from django.conf import settings
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models

from core.validators import validate_dotted_quad


class Device(models.Model):
    ROLE_ENTRY = "entry"
    ROLE_EXIT = "exit"
    ROLE_BOTH = "both"
    ROLE_CHOICES = [
        (ROLE_ENTRY, "Entry"),
        (ROLE_EXIT, "Exit"),
        (ROLE_BOTH, "Both"),
    ]

    STATUS_INACTIVE = "inactive"
    STATUS_ONLINE = "online"
    STATUS_OFFLINE = "offline"

    device_id = models.CharField(max_length=64, unique=True)
    name = models.CharField(max_length=100)
    location = models.CharField(max_length=200)
    role = models.CharField(max_length=8, choices=ROLE_CHOICES, default=ROLE_BOTH)

    address = models.CharField(max_length=15, validators=[validate_dotted_quad])
    port = models.PositiveIntegerField(validators=[MinValueValidator(1), MaxValueValidator(65535)])

    active = models.BooleanField(default=True)
    last_heartbeat = models.DateTimeField(null=True, blank=True)
    firmware = models.CharField(max_length=64, null=True, blank=True)

    timeout_ms = models.PositiveIntegerField(default=5000, validators=[MinValueValidator(1)])
    retry_attempts = models.PositiveIntegerField(default=3)
    logging_enabled = models.BooleanField(default=True)

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        related_name="devices",
        null=True,
        blank=True,
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["active"], name="devices_active_idx"),
        ]

    def __str__(self):
        return f"{self.device_id} ({self.name})"
