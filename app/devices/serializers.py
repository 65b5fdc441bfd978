from django.utils import timezone
from rest_framework import serializers

from devices.models import Device
from devices.services.registry import DEVICE_SETTINGS_KEYS, register_device, status_of


class DeviceSettingsSerializer(serializers.Serializer):
    timeout_ms = serializers.IntegerField(min_value=1, required=False)
    retry_attempts = serializers.IntegerField(min_value=0, required=False)
    logging_enabled = serializers.BooleanField(required=False)


class DeviceSerializer(serializers.ModelSerializer):
    owner = serializers.HiddenField(default=serializers.CurrentUserDefault())
    device_id = serializers.CharField(max_length=64)
    settings = DeviceSettingsSerializer(source="*", required=False)
    status = serializers.SerializerMethodField()

    class Meta:
        model = Device
        fields = [
            "device_id",
            "owner",
            "name",
            "location",
            "role",
            "address",
            "port",
            "firmware",
            "active",
            "last_heartbeat",
            "settings",
            "status",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["active", "last_heartbeat", "created_at", "updated_at"]

    def get_status(self, obj: Device) -> str:
        now = self.context.get("now") or timezone.now()
        return status_of(obj, now)

    def create(self, validated_data):
        device_settings = {key: validated_data.pop(key) for key in DEVICE_SETTINGS_KEYS if key in validated_data}
        return register_device(
            device_id=validated_data["device_id"],
            name=validated_data["name"],
            location=validated_data["location"],
            role=validated_data.get("role", Device.ROLE_BOTH),
            address=validated_data["address"],
            port=validated_data["port"],
            device_settings=device_settings or None,
            firmware=validated_data.get("firmware"),
            owner=validated_data.get("owner"),
        )
