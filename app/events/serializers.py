from rest_framework import serializers

from events.models import AttendanceEvent
from presence.services.resolver import format_duration


class AttendanceEventSerializer(serializers.ModelSerializer):
    device_id = serializers.CharField(source="device.device_id", read_only=True)
    formatted_duration = serializers.SerializerMethodField()

    class Meta:
        model = AttendanceEvent
        fields = [
            "id",
            "member_id",
            "device_id",
            "event_type",
            "timestamp",
            "method",
            "outcome",
            "reason",
            "duration_minutes",
            "formatted_duration",
            "location",
            "source_address",
            "metadata",
            "recorded_by",
            "sequence",
            "created_at",
        ]
        read_only_fields = fields

    def get_formatted_duration(self, obj: AttendanceEvent):
        return format_duration(obj.duration_minutes)


class ManualEventSerializer(serializers.Serializer):
    member_id = serializers.CharField(max_length=64)
    device_id = serializers.CharField(max_length=64)
    event_type = serializers.ChoiceField(choices=AttendanceEvent.TYPE_CHOICES)
    reason = serializers.CharField(max_length=255, required=False, allow_blank=True)
    timestamp = serializers.DateTimeField(required=False)
