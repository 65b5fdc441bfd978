from __future__ import annotations

import json

from django.conf import settings
from django.http import HttpRequest


def client_ip(request: HttpRequest) -> str:
    forwarded = request.META.get("HTTP_X_FORWARDED_FOR")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.META.get("REMOTE_ADDR", "")


def is_allowed_ip(ip: str) -> bool:
    allowed = getattr(settings, "DEVICE_ALLOWED_IPS", [])
    if not allowed:
        return True
    return ip in allowed


def is_allowed_token(request: HttpRequest) -> bool:
    expected = getattr(settings, "DEVICE_WEBHOOK_TOKEN", "")
    if not expected:
        return True
    provided = request.headers.get("X-DEVICE-TOKEN", "")
    return provided == expected


def is_trusted_device_request(request: HttpRequest) -> bool:
    return is_allowed_ip(client_ip(request)) and is_allowed_token(request)


def parse_json_body(request: HttpRequest) -> dict | None:
    """Decoded JSON object from the request body, or None if it is not one."""
    raw_body = request.body.decode("utf-8", errors="replace")
    try:
        payload = json.loads(raw_body or "{}")
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None
