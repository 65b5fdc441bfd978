from __future__ import annotations

from django.core.exceptions import ValidationError as DjangoValidationError
from rest_framework import status
from rest_framework.exceptions import APIException


class DomainError(APIException):
    """Base class for errors reported synchronously to the caller."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Request could not be processed."
    default_code = "domain_error"


class ValidationError(DomainError):
    """Malformed input; raised before anything is written."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid input."
    default_code = "invalid"

    @classmethod
    def from_django(cls, exc: DjangoValidationError) -> "ValidationError":
        if hasattr(exc, "error_dict"):
            return cls({field: [str(m) for m in messages] for field, messages in exc.message_dict.items()})
        return cls([str(m) for m in exc.messages])


class ConflictError(DomainError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Resource already exists."
    default_code = "conflict"


class NotFoundError(DomainError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Resource not found."
    default_code = "not_found"


def error_payload(exc: DomainError) -> dict:
    detail = exc.detail
    if isinstance(detail, str):
        return {"detail": str(detail)}
    return {"detail": detail}
