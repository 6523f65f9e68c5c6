import logging

from django.db import DatabaseError, transaction

from core.models import Notification

logger = logging.getLogger(__name__)


def create_notification(*, user, title, message, type=Notification.Type.INFO, link=""):
    return Notification.objects.create(
        user=user,
        title=title,
        message=message,
        type=type,
        link=link or "",
    )


def notify_user(*, user, title, message, type=Notification.Type.INFO, link="", actor=None):
    """Notify ``user`` unless they triggered the event themselves.

    Delivery failures are logged and never propagate to the caller.
    """
    if user is None:
        return None
    if actor is not None and getattr(actor, "pk", None) == user.pk:
        return None

    try:
        with transaction.atomic():
            return create_notification(user=user, title=title, message=message, type=type, link=link)
    except DatabaseError:
        logger.exception("notification_failed user=%s title=%s", user.pk, title)
        return None
