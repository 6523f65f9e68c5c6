import secrets

from django.core.exceptions import ValidationError as DjangoValidationError
from django.utils import timezone

from common.errors import NotFoundError

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def generate_code(prefix, length=4):
    """Human-readable record code such as ``ORD-20260114-7KQ2``."""
    suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))
    return f"{prefix}-{timezone.now():%Y%m%d}-{suffix}"


def get_or_not_found(queryset, resource, identifier):
    """Fetch one row by primary key, mapping misses and malformed ids to ``NotFoundError``."""
    try:
        return queryset.get(pk=identifier)
    except (queryset.model.DoesNotExist, DjangoValidationError, ValueError, TypeError):
        raise NotFoundError(resource, identifier)


def model_snapshot(instance, fields):
    return {field: getattr(instance, field) for field in fields}
