import logging
from functools import partial

from django.db import DatabaseError, transaction

from apps.orders.events import publish_status_change
from apps.orders.models import Order
from apps.orders.notifications import STATUS_TEMPLATES, send_order_email

logger = logging.getLogger(__name__)


def _load_order(order_id):
    try:
        return Order.objects.select_related("client", "engineer").get(pk=order_id)
    except (Order.DoesNotExist, DatabaseError):
        logger.exception("Side effects skipped: order %s could not be loaded", order_id)
        return None


def run_transition_effects(order_id, previous, current, trigger):
    order = _load_order(order_id)
    if order is None:
        return
    template_key = STATUS_TEMPLATES.get(current)
    if template_key:
        send_order_email(order, template_key)
    publish_status_change(order, previous, current, trigger)


def run_email(order_id, template_key):
    order = _load_order(order_id)
    if order is not None:
        send_order_email(order, template_key)


def queue_transition_effects(order, previous, current, trigger):
    transaction.on_commit(partial(run_transition_effects, order.pk, previous, current, trigger))


def queue_email(order, template_key):
    transaction.on_commit(partial(run_email, order.pk, template_key))
