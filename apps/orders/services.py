import logging

from django.db import DatabaseError, transaction

from apps.orders.models import OrderActivity

logger = logging.getLogger(__name__)


def record_activity(order, activity_type, description, details=None, actor=None):
    return OrderActivity.objects.create(
        order=order,
        activity_type=activity_type,
        description=description[:255],
        details=details or {},
        created_by=actor,
    )


def record_activity_safely(order, activity_type, description, details=None, actor=None):
    """Like record_activity, but a failed write is logged instead of raised."""
    try:
        with transaction.atomic():
            return record_activity(order, activity_type, description, details=details, actor=actor)
    except DatabaseError:
        logger.exception("Could not record %s activity for order %s", activity_type, order.pk)
        return None
