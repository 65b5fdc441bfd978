from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation

from django.http import HttpRequest, JsonResponse
from django.utils.dateparse import parse_datetime
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from core.exceptions import DomainError, ValidationError, error_payload
from core.webhooks import client_ip, is_trusted_device_request, parse_json_body
from events.models import AttendanceEvent
from events.serializers import AttendanceEventSerializer
from events.services.store import latest_for_member
from presence.services.billing import on_billing_transition
from presence.services.door_access import process_door_access
from presence.services.resolver import (
    format_duration,
    presence_from_event,
    session_duration,
    success_only_policy,
)


logger = logging.getLogger(__name__)


class MemberPresenceView(APIView):
    def get(self, request, member_id: str):
        last = latest_for_member(member_id, success_only=success_only_policy())
        return Response(
            {
                "member_id": member_id,
                "status": presence_from_event(last),
                "last_activity": AttendanceEventSerializer(last).data if last else None,
            }
        )


class MemberSessionView(APIView):
    def get(self, request, member_id: str):
        check_in_raw = (request.query_params.get("check_in") or "").strip()
        try:
            check_in_at = parse_datetime(check_in_raw) if check_in_raw else None
        except ValueError:
            check_in_at = None
        if check_in_at is None:
            raise ValidationError({"check_in": ["A valid ISO 8601 datetime is required."]})

        minutes = session_duration(member_id, check_in_at)
        return Response(
            {
                "member_id": member_id,
                "check_in": check_in_raw,
                "duration_minutes": minutes,
                "formatted_duration": format_duration(minutes),
                "open": minutes is None,
            }
        )


class MemberBillingView(APIView):
    def post(self, request, member_id: str):
        amount = request.data.get("amount")
        if amount is not None:
            try:
                amount = Decimal(str(amount))
            except InvalidOperation as exc:
                raise ValidationError({"amount": ["Must be a number."]}) from exc

        command = on_billing_transition(
            member_id,
            request.data.get("previous"),
            request.data.get("current"),
            amount=amount,
        )
        return Response(
            {"member_id": member_id, "command": command},
            status=status.HTTP_202_ACCEPTED,
        )


@csrf_exempt
@require_POST
def door_access_webhook(request: HttpRequest) -> JsonResponse:
    ip = client_ip(request)
    if not is_trusted_device_request(request):
        return JsonResponse({"detail": "Unauthorized source"}, status=403)

    payload = parse_json_body(request)
    if payload is None:
        return JsonResponse({"detail": "Invalid JSON"}, status=400)
    logger.info("Door access payload received", extra={"client_ip": ip, "payload": payload})

    member_id = str(payload.get("member_id") or "").strip()
    device_id = str(payload.get("device_id") or "").strip()
    if not member_id or not device_id:
        return JsonResponse({"detail": "member_id and device_id are required"}, status=400)

    timestamp = None
    if payload.get("timestamp"):
        try:
            timestamp = parse_datetime(str(payload["timestamp"]))
        except ValueError:
            timestamp = None
        if timestamp is None:
            return JsonResponse({"detail": "Invalid timestamp"}, status=400)

    try:
        result = process_door_access(
            member_id,
            device_id,
            event_type=payload.get("event_type") or None,
            method=payload.get("method") or AttendanceEvent.METHOD_CARD,
            outcome=payload.get("outcome") or AttendanceEvent.OUTCOME_SUCCESS,
            reason=payload.get("reason") or None,
            timestamp=timestamp,
            metadata=payload.get("metadata"),
            source_address=payload.get("source_address") or None,
        )
    except DomainError as exc:
        return JsonResponse(error_payload(exc), status=exc.status_code)

    event = result.event
    body = {
        "access": result.granted,
        "event_id": event.id,
        "event_type": event.event_type,
        "reason": result.reason,
        "duration_minutes": event.duration_minutes,
        "formatted_duration": format_duration(event.duration_minutes),
    }
    if not result.granted:
        return JsonResponse(body, status=403)
    return JsonResponse(body, status=201)
