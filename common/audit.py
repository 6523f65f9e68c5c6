import json
import logging

from django.core.serializers.json import DjangoJSONEncoder
from django.db import DatabaseError, transaction

from core.models import AuditLog

logger = logging.getLogger(__name__)


def get_request_id(request):
    return getattr(request, "request_id", None) or request.headers.get("X-Request-ID")


def _json_safe(value):
    if value is None:
        return None
    return json.loads(json.dumps(value, cls=DjangoJSONEncoder))


def _actor_or_none(actor):
    if actor is None or not getattr(actor, "is_authenticated", False):
        return None
    return actor


def create_audit_log(
    *,
    actor=None,
    action,
    entity,
    entity_id=None,
    before_snapshot=None,
    after_snapshot=None,
    request_id=None,
):
    return AuditLog.objects.create(
        actor=_actor_or_none(actor),
        action=action,
        entity=entity,
        entity_id="" if entity_id is None else str(entity_id),
        before_snapshot=_json_safe(before_snapshot),
        after_snapshot=_json_safe(after_snapshot),
        request_id=request_id,
    )


def log_activity(
    *,
    entity_type,
    entity_id,
    action,
    actor=None,
    previous_state=None,
    new_state=None,
    request_id=None,
):
    """Record an activity-log entry without ever failing the caller.

    The mutation that triggered the entry has already been written, so a
    storage failure here is logged and swallowed.
    """
    try:
        with transaction.atomic():
            return create_audit_log(
                actor=actor,
                action=action,
                entity=entity_type,
                entity_id=entity_id,
                before_snapshot=previous_state,
                after_snapshot=new_state,
                request_id=request_id,
            )
    except DatabaseError:
        logger.exception(
            "activity_log_failed entity=%s entity_id=%s action=%s",
            entity_type,
            entity_id,
            action,
        )
        return None


def create_audit_log_from_request(
    request,
    *,
    action,
    entity,
    entity_id=None,
    before_snapshot=None,
    after_snapshot=None,
):
    return log_activity(
        entity_type=entity,
        entity_id=entity_id,
        action=action,
        actor=getattr(request, "user", None),
        previous_state=before_snapshot,
        new_state=after_snapshot,
        request_id=get_request_id(request),
    )
