from apps.orders.models import OrderStatus

BOOKED_STATUSES = (OrderStatus.SCHEDULED, OrderStatus.IN_PROGRESS, OrderStatus.REVISIT_REQUIRED)

CLIENT_BLOCKED = "client_blocked"
DOUBLE_BOOKING = "double_booking"
OUTSIDE_HOURS = "outside_hours"

HIGH = "high"
MEDIUM = "medium"


def _conflict(kind, severity, message):
    return {"type": kind, "severity": severity, "message": message}


def client_blocked_entry(client, day):
    return client.blocked_dates.filter(blocked_date=day).first()


def jobs_booked(engineer, day, exclude_order=None):
    queryset = engineer.orders.filter(scheduled_install_date=day, status__in=BOOKED_STATUSES)
    if exclude_order is not None:
        queryset = queryset.exclude(pk=exclude_order.pk)
    return queryset.count()


def detect_conflicts(order, engineer, install_date):
    """Problems with booking ``engineer`` for ``order`` on ``install_date``.

    High severity conflicts block the booking; medium ones are warnings.
    """
    if install_date is None:
        return []

    conflicts = []
    blocked = client_blocked_entry(order.client, install_date)
    if blocked is not None:
        message = f"{order.client.full_name} is unavailable on {install_date:%d %B %Y}"
        if blocked.reason:
            message = f"{message} ({blocked.reason})"
        conflicts.append(_conflict(CLIENT_BLOCKED, HIGH, f"{message}."))

    if engineer is not None:
        booked = jobs_booked(engineer, install_date, exclude_order=order)
        if booked >= engineer.max_jobs_per_day:
            conflicts.append(
                _conflict(
                    DOUBLE_BOOKING,
                    HIGH,
                    f"{engineer.name} already has {booked} of {engineer.max_jobs_per_day} jobs on {install_date:%d %B %Y}.",
                )
            )
        if not engineer.works_on(install_date):
            conflicts.append(
                _conflict(OUTSIDE_HOURS, MEDIUM, f"{engineer.name} does not normally work on {install_date:%A}s.")
            )
    return conflicts


def blocking(conflicts):
    return [conflict for conflict in conflicts if conflict["severity"] == HIGH]
