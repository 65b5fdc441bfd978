import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("devices", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="MemberSequence",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("member_id", models.CharField(max_length=64, unique=True)),
                ("last_sequence", models.PositiveBigIntegerField(default=0)),
            ],
        ),
        migrations.CreateModel(
            name="AttendanceEvent",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("member_id", models.CharField(max_length=64)),
                (
                    "event_type",
                    models.CharField(choices=[("check-in", "Check-in"), ("check-out", "Check-out")], max_length=16),
                ),
                ("timestamp", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "method",
                    models.CharField(
                        choices=[
                            ("card", "Card"),
                            ("biometric", "Biometric"),
                            ("mobile", "Mobile"),
                            ("manual", "Manual"),
                        ],
                        default="card",
                        max_length=16,
                    ),
                ),
                (
                    "outcome",
                    models.CharField(
                        choices=[("success", "Success"), ("denied", "Denied"), ("error", "Error")],
                        default="success",
                        max_length=16,
                    ),
                ),
                ("reason", models.CharField(blank=True, max_length=255, null=True)),
                ("duration_minutes", models.PositiveIntegerField(blank=True, null=True)),
                ("location", models.CharField(max_length=200)),
                ("source_address", models.GenericIPAddressField()),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("sequence", models.PositiveBigIntegerField(editable=False)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "device",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="attendance_events",
                        to="devices.device",
                    ),
                ),
                (
                    "recorded_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="recorded_attendance_events",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "constraints": [
                    models.UniqueConstraint(fields=("member_id", "sequence"), name="uq_event_member_sequence"),
                ],
                "indexes": [
                    models.Index(fields=["member_id", "-timestamp"], name="events_member_ts_idx"),
                    models.Index(fields=["device", "-timestamp"], name="events_device_ts_idx"),
                    models.Index(fields=["-timestamp"], name="events_ts_idx"),
                ],
            },
        ),
    ]
