from decimal import Decimal

from django.db.models import Count, DecimalField, F, Q, Sum, Value
from django.db.models.functions import Coalesce
from django.utils import timezone

from apps.orders.checklist import CHECKLIST_KEYS, checklist_state
from apps.orders.models import OrderStatus

PROGRESSION = (
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.SCHEDULED,
    OrderStatus.IN_PROGRESS,
    OrderStatus.COMPLETED,
)

STATUS_BADGES = {
    OrderStatus.PENDING: {"label": "Awaiting payment", "tone": "warning"},
    OrderStatus.CONFIRMED: {"label": "Confirmed", "tone": "info"},
    OrderStatus.SCHEDULED: {"label": "Install booked", "tone": "info"},
    OrderStatus.IN_PROGRESS: {"label": "Installing", "tone": "primary"},
    OrderStatus.COMPLETED: {"label": "Completed", "tone": "success"},
    OrderStatus.REVISIT_REQUIRED: {"label": "Revisit required", "tone": "danger"},
}


def status_badge(order):
    badge = dict(STATUS_BADGES.get(order.status, {"label": str(order.status), "tone": "neutral"}))
    badge["status"] = str(order.status)
    badge["paid"] = order.is_fully_paid
    badge["override"] = order.manual_status_override
    return badge


def progress_steps(order):
    if order.status == OrderStatus.REVISIT_REQUIRED:
        current = len(PROGRESSION)
    else:
        current = PROGRESSION.index(order.status)

    steps = []
    for index, status in enumerate(PROGRESSION):
        if index < current or (index == current and status == OrderStatus.COMPLETED):
            state = "done"
        elif index == current:
            state = "current"
        else:
            state = "upcoming"
        steps.append({"status": status.value, "label": status.label, "state": state})

    if order.status == OrderStatus.REVISIT_REQUIRED:
        steps.append(
            {
                "status": OrderStatus.REVISIT_REQUIRED.value,
                "label": OrderStatus.REVISIT_REQUIRED.label,
                "state": "current",
            }
        )
    return steps


def checklist_progress(order):
    items = checklist_state(order)
    done = sum(1 for item in items if item["completed"])
    return {
        "completed": done,
        "total": len(CHECKLIST_KEYS),
        "complete": done == len(CHECKLIST_KEYS),
        "items": items,
    }


def dashboard_kpis(queryset):
    money = DecimalField(max_digits=16, decimal_places=2)
    today = timezone.localdate()

    queryset = queryset.select_related(None).prefetch_related(None).order_by()
    by_status = dict(queryset.values_list("status").annotate(total=Count("id")))
    totals = queryset.aggregate(
        revenue=Coalesce(Sum("total_amount"), Value(Decimal("0.00")), output_field=money),
        collected=Coalesce(Sum("amount_paid"), Value(Decimal("0.00")), output_field=money),
        outstanding=Coalesce(Sum(F("total_amount") - F("amount_paid")), Value(Decimal("0.00")), output_field=money),
        jobs_today=Count(
            "id",
            filter=Q(
                scheduled_install_date=today,
                status__in=[OrderStatus.SCHEDULED, OrderStatus.IN_PROGRESS],
            ),
        ),
        awaiting_scheduling=Count("id", filter=Q(status=OrderStatus.CONFIRMED)),
        overridden=Count("id", filter=Q(manual_status_override=True)),
    )

    return {
        "by_status": {status: by_status.get(status, 0) for status in OrderStatus.values},
        "total_orders": sum(by_status.values()),
        **totals,
    }
