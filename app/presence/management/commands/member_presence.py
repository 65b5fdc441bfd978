from django.core.management.base import BaseCommand

from events.services.store import latest_for_member
from presence.services.resolver import presence_from_event, success_only_policy


class Command(BaseCommand):
    help = "Show a member's presence rebuilt from the attendance log"

    def add_arguments(self, parser):
        parser.add_argument("member_id")
        parser.add_argument(
            "--any-outcome",
            action="store_true",
            help="Let denied and error events take part in the derivation",
        )

    def handle(self, *args, **options):
        member_id = options["member_id"].strip()
        success_only = False if options["any_outcome"] else success_only_policy()

        last = latest_for_member(member_id, success_only=success_only)
        if last is None:
            self.stdout.write(f"{member_id}: out (no attendance events)")
            return

        self.stdout.write(
            f"{member_id}: {presence_from_event(last)} "
            f"(last {last.event_type} at {last.timestamp.isoformat()} on {last.device.device_id})"
        )
