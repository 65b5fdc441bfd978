from django.utils.dateparse import parse_datetime
from rest_framework import mixins, status, viewsets
from rest_framework.pagination import PageNumberPagination
from rest_framework.response import Response

from core.exceptions import ValidationError
from core.webhooks import client_ip
from events.models import AttendanceEvent
from events.serializers import AttendanceEventSerializer, ManualEventSerializer
from events.services.store import search_events
from presence.services.door_access import record_manual_event


class EventLogPagination(PageNumberPagination):
    page_size = 50
    page_size_query_param = "limit"
    max_page_size = 100


def _parse_datetime_param(params, name: str):
    value = (params.get(name) or "").strip()
    if not value:
        return None
    try:
        parsed = parse_datetime(value)
    except ValueError:
        parsed = None
    if parsed is None:
        raise ValidationError({name: ["Invalid datetime."]})
    return parsed


class AttendanceEventViewSet(
    mixins.CreateModelMixin,
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    viewsets.GenericViewSet,
):
    """Read access to the attendance log plus manual corrections.

    Events are append-only, so there is no update or delete route.
    """

    queryset = AttendanceEvent.objects.none()
    serializer_class = AttendanceEventSerializer
    pagination_class = EventLogPagination

    def get_queryset(self):
        params = self.request.query_params
        return search_events(
            member_id=params.get("member_id"),
            device_id=params.get("device_id"),
            event_type=params.get("event_type"),
            outcome=params.get("outcome"),
            date_from=_parse_datetime_param(params, "date_from"),
            date_to=_parse_datetime_param(params, "date_to"),
        )

    def create(self, request, *args, **kwargs):
        serializer = ManualEventSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        event = record_manual_event(
            data["member_id"],
            data["device_id"],
            data["event_type"],
            request.user,
            reason=data.get("reason"),
            source_address=client_ip(request),
            timestamp=data.get("timestamp"),
        )
        return Response(AttendanceEventSerializer(event).data, status=status.HTTP_201_CREATED)
