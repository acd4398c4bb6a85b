import logging

from django.conf import settings
from django.core.cache import cache
from django.db import DatabaseError
from django.utils import timezone

from apps.orders.exceptions import GuardViolation
from apps.orders.models import ChecklistItem, CompletionChecklistItem, OrderStatus

logger = logging.getLogger(__name__)

CHECKLIST_DESCRIPTIONS = {
    ChecklistItem.DOORS_TESTED: "Verify all doors open and close smoothly",
    ChecklistItem.DRAWERS_ALIGNED: "Check drawer alignment and smooth operation",
    ChecklistItem.PUSH_MECHANISM: "Test push-to-open mechanism on all applicable units",
    ChecklistItem.AREA_CLEANED: "Remove all packaging and clean workspace",
    ChecklistItem.CUSTOMER_WALKTHROUGH: "Demonstrated operation to customer",
    ChecklistItem.WARRANTY_EXPLAINED: "Explained warranty terms and care instructions",
}

CHECKLIST_KEYS = tuple(ChecklistItem.values)


def _cache_key(order_id):
    return f"orders:checklist:{order_id}"


def completed_checklist_items(order):
    completed = set(order.checklist_items.filter(is_completed=True).values_list("item_key", flat=True))
    return [key for key in CHECKLIST_KEYS if key in completed]


def is_checklist_complete(order):
    return len(completed_checklist_items(order)) == len(CHECKLIST_KEYS)


def cached_checklist_items(order_id):
    return cache.get(_cache_key(order_id))


def set_checklist_item(order, item_key, completed, actor=None):
    if item_key not in CHECKLIST_KEYS:
        raise GuardViolation(f"Unknown checklist item '{item_key}'.", code="unknown_checklist_item")
    if order.status == OrderStatus.COMPLETED:
        raise GuardViolation("The checklist is locked once the job is signed off.", code="order_completed")

    item, _ = CompletionChecklistItem.objects.get_or_create(order=order, item_key=item_key)
    if item.is_completed != completed:
        item.is_completed = completed
        item.completed_at = timezone.now() if completed else None
        item.completed_by = actor if completed else None
        item.save(update_fields=["is_completed", "completed_at", "completed_by", "updated_at"])

    items = completed_checklist_items(order)
    cache.set(_cache_key(order.pk), items, timeout=settings.CHECKLIST_CACHE_TTL_SECONDS)
    return items


def checklist_state(order):
    """Catalog rows with their completion state, in catalog order.

    Falls back to the cached mirror when the store cannot be read. The
    completion gate never uses this fallback.
    """
    try:
        rows = {item.item_key: item for item in order.checklist_items.all()}
    except DatabaseError:
        logger.warning("Checklist read failed for order %s, serving cached mirror", order.pk)
        mirrored = set(cached_checklist_items(order.pk) or ())
        return [
            {
                "key": key,
                "label": ChecklistItem(key).label,
                "description": CHECKLIST_DESCRIPTIONS[key],
                "completed": key in mirrored,
                "completed_at": None,
            }
            for key in CHECKLIST_KEYS
        ]

    state = []
    for key in CHECKLIST_KEYS:
        row = rows.get(key)
        state.append(
            {
                "key": key,
                "label": ChecklistItem(key).label,
                "description": CHECKLIST_DESCRIPTIONS[key],
                "completed": bool(row and row.is_completed),
                "completed_at": row.completed_at.isoformat() if row and row.completed_at else None,
            }
        )
    return state
