from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from django.db import DatabaseError
from rest_framework import status
from rest_framework.exceptions import APIException

logger = logging.getLogger(__name__)


class ServiceError(APIException):
    """Base class for errors raised by the service layer.

    Service errors are DRF exceptions so views can let them propagate and the
    project exception handler renders them with the standard error envelope.
    """

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "Service operation failed."
    default_code = "service_error"

    def __init__(
        self,
        message: str | None = None,
        *,
        errors: Any = None,
        status_code: int | None = None,
        code: str | None = None,
    ) -> None:
        if status_code is not None:
            self.status_code = status_code
        self.message = message or str(self.default_detail)
        self.errors = errors
        self.code = code or self.default_code
        super().__init__(detail=self.message, code=self.code)

    def __str__(self) -> str:
        return self.message


class ValidationError(ServiceError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Validation failed."
    default_code = "validation_error"


class NotFoundError(ServiceError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Resource not found."
    default_code = "not_found"

    def __init__(self, resource: str, identifier: Any = None) -> None:
        self.resource = resource
        self.identifier = identifier
        if identifier is None:
            message = f"{resource} not found"
        else:
            message = f"{resource} with ID {identifier} not found"
        super().__init__(message)


class ForbiddenError(ServiceError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Access denied."
    default_code = "permission_denied"


class ConflictError(ServiceError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Resource conflict."
    default_code = "conflict"


class InvalidTransitionError(ValidationError):
    default_code = "invalid_transition"

    def __init__(
        self,
        entity: str,
        from_status: str,
        to_status: str,
        allowed: list[str] | None = None,
    ) -> None:
        self.entity = entity
        self.from_status = from_status
        self.to_status = to_status
        self.allowed = list(allowed or [])
        super().__init__(
            f"Invalid {entity} status transition from '{from_status}' to '{to_status}'",
            errors={
                "from": from_status,
                "to": to_status,
                "allowed": self.allowed,
            },
        )


@contextmanager
def storage_errors(operation: str):
    """Re-raise database failures during ``operation`` as a ``ServiceError``."""
    try:
        yield
    except DatabaseError as exc:
        logger.exception("storage_error operation=%s", operation)
        raise ServiceError(f"Failed to {operation}") from exc
