from __future__ import annotations

import logging

from django.http import HttpRequest, JsonResponse
from django.utils import timezone
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST
from rest_framework import mixins, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from core.exceptions import DomainError, error_payload
from core.webhooks import client_ip, is_trusted_device_request, parse_json_body
from devices.models import Device
from devices.serializers import DeviceSerializer
from devices.services.registry import get_device, heartbeat, set_active, status_of
from events.serializers import AttendanceEventSerializer
from events.services.store import events_for_device


logger = logging.getLogger(__name__)


class DeviceViewSet(
    mixins.CreateModelMixin,
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    viewsets.GenericViewSet,
):
    queryset = Device.objects.none()
    serializer_class = DeviceSerializer
    lookup_field = "device_id"

    def get_queryset(self):
        queryset = Device.objects.all().order_by("device_id")
        owner_only = str(self.request.query_params.get("owner_only", "")).lower() in {"1", "true", "yes"}

        if owner_only and self.request.user.is_authenticated:
            return queryset.filter(owner=self.request.user)

        return queryset

    def get_object(self):
        device = get_device(self.kwargs[self.lookup_field])
        self.check_object_permissions(self.request, device)
        return device

    def get_serializer_context(self):
        context = super().get_serializer_context()
        context["now"] = timezone.now()
        return context

    @action(detail=True, methods=["post"])
    def deactivate(self, request, device_id=None):
        device = set_active(device_id, False)
        return Response(self.get_serializer(device).data)

    @action(detail=True, methods=["post"])
    def activate(self, request, device_id=None):
        device = set_active(device_id, True)
        return Response(self.get_serializer(device).data)

    @action(detail=True, methods=["get"])
    def status(self, request, device_id=None):
        device = self.get_object()
        now = timezone.now()
        return Response(
            {
                "device_id": device.device_id,
                "status": status_of(device, now),
                "last_heartbeat": device.last_heartbeat,
                "evaluated_at": now,
            }
        )

    @action(detail=True, methods=["get"])
    def events(self, request, device_id=None):
        device = self.get_object()
        try:
            limit = int(request.query_params.get("limit", 50))
        except ValueError:
            return Response({"detail": "limit must be an integer"}, status=400)

        events = events_for_device(device.device_id, limit=max(limit, 1))
        return Response(AttendanceEventSerializer(events, many=True).data)


@csrf_exempt
@require_POST
def device_heartbeat(request: HttpRequest) -> JsonResponse:
    if not is_trusted_device_request(request):
        return JsonResponse({"detail": "Unauthorized source"}, status=403)

    payload = parse_json_body(request)
    if payload is None:
        return JsonResponse({"detail": "Invalid JSON"}, status=400)

    device_id = str(payload.get("device_id") or "").strip()
    if not device_id:
        return JsonResponse({"detail": "device_id is required"}, status=400)

    try:
        heartbeat(device_id)
    except DomainError as exc:
        return JsonResponse(error_payload(exc), status=exc.status_code)

    logger.debug("Device heartbeat", extra={"device_id": device_id, "client_ip": client_ip(request)})
    return JsonResponse({"status": "ok"})
