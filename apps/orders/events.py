import logging
from collections import defaultdict

from django.dispatch import Signal
from django.utils import timezone

logger = logging.getLogger(__name__)

# kwargs: order_id, event
order_status_changed = Signal()


class Subscription:
    def __init__(self, feed, order_id, handler):
        self.feed = feed
        self.order_id = order_id
        self.handler = handler

    @property
    def active(self):
        return self in self.feed._subscriptions.get(self.order_id, ())

    def cancel(self):
        self.feed.unsubscribe(self)


class OrderChangeFeed:
    """Per-order registry of change handlers.

    Handlers registered for an order receive its events in the order they
    were published until the subscription is cancelled.
    """

    def __init__(self):
        self._subscriptions = defaultdict(list)

    def subscribe(self, order_id, handler):
        subscription = Subscription(self, str(order_id), handler)
        self._subscriptions[subscription.order_id].append(subscription)
        return subscription

    def unsubscribe(self, subscription):
        subscriptions = self._subscriptions.get(subscription.order_id)
        if not subscriptions or subscription not in subscriptions:
            return
        subscriptions.remove(subscription)
        if not subscriptions:
            del self._subscriptions[subscription.order_id]

    def publish(self, order_id, event):
        for subscription in list(self._subscriptions.get(str(order_id), ())):
            try:
                subscription.handler(event)
            except Exception:
                logger.exception("Order change handler failed for order %s", order_id)

    def receive(self, sender, order_id, event, **kwargs):
        self.publish(order_id, event)


feed = OrderChangeFeed()
order_status_changed.connect(feed.receive, dispatch_uid="orders.change_feed")


def publish_status_change(order, previous, current, trigger):
    event = {
        "order_id": str(order.pk),
        "order_number": order.order_number,
        "previous": previous,
        "status": current,
        "trigger": trigger,
        "occurred_at": timezone.now().isoformat(),
    }
    for receiver, result in order_status_changed.send_robust(sender=order.__class__, order_id=str(order.pk), event=event):
        if isinstance(result, Exception):
            logger.error("Receiver %r failed for order %s: %s", receiver, order.pk, result)
    return event
