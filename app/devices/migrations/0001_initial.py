import django.core.validators
import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Device",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("device_id", models.CharField(max_length=64, unique=True)),
                ("name", models.CharField(max_length=100)),
                ("location", models.CharField(max_length=200)),
                (
                    "role",
                    models.CharField(
                        choices=[("entry", "Entry"), ("exit", "Exit"), ("both", "Both")],
                        default="both",
                        max_length=8,
                    ),
                ),
                ("address", models.GenericIPAddressField(protocol="IPv4")),
                (
                    "port",
                    models.PositiveIntegerField(
                        validators=[
                            django.core.validators.MinValueValidator(1),
                            django.core.validators.MaxValueValidator(65535),
                        ]
                    ),
                ),
                ("active", models.BooleanField(default=True)),
                ("last_heartbeat", models.DateTimeField(blank=True, null=True)),
                ("firmware", models.CharField(blank=True, max_length=64, null=True)),
                (
                    "timeout_ms",
                    models.PositiveIntegerField(default=5000, validators=[django.core.validators.MinValueValidator(1)]),
                ),
                ("retry_attempts", models.PositiveIntegerField(default=3)),
                ("logging_enabled", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "owner",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="devices",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "indexes": [models.Index(fields=["active"], name="devices_active_idx")],
            },
        ),
    ]
