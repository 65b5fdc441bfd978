from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone

from core.exceptions import NotFoundError
from devices.models import Device
from devices.services.registry import get_device, status_of


class Command(BaseCommand):
    help = "Show the heartbeat-derived status of registered devices"

    def add_arguments(self, parser):
        parser.add_argument("--device-id", help="Only show this device")

    def handle(self, *args, **options):
        device_id = (options.get("device_id") or "").strip()
        now = timezone.now()

        if device_id:
            try:
                devices = [get_device(device_id)]
            except NotFoundError as exc:
                raise CommandError(str(exc.detail)) from exc
        else:
            devices = Device.objects.all().order_by("device_id")

        shown = 0
        for device in devices:
            last_heartbeat = device.last_heartbeat.isoformat() if device.last_heartbeat else "-"
            self.stdout.write(
                f"{device.device_id}\t{status_of(device, now)}\t{device.location}\tlast_heartbeat={last_heartbeat}"
            )
            shown += 1

        self.stdout.write(self.style.SUCCESS(f"{shown} device(s) evaluated at {now.isoformat()}"))
