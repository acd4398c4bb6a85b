import logging
from collections import namedtuple

from django.db import DatabaseError, transaction
from django.utils import timezone

from apps.accounts.models import UserRole
from apps.common.permissions import ROLE_CAPABILITIES, STAFF_ROLES, resolve_role
from apps.orders.checklist import is_checklist_complete
from apps.orders.dispatcher import queue_email, queue_transition_effects
from apps.orders.exceptions import (
    ActionNotPermitted,
    GuardViolation,
    TransitionFailed,
    TransitionNotPermitted,
    WorkflowError,
)
from apps.orders.models import ActivityType, EngineerStatus, OrderStatus, TransitionTrigger
from apps.orders.services import record_activity, record_activity_safely
from apps.scheduling.conflicts import blocking, detect_conflicts

logger = logging.getLogger(__name__)

Transition = namedtuple("Transition", "source target trigger capability guards")


def _guard_paid_in_full(order):
    if order.amount_paid < order.total_amount:
        raise GuardViolation(
            f"Payment outstanding: {order.amount_paid} of {order.total_amount} received.",
            code="payment_outstanding",
        )


def _guard_engineer_assigned(order):
    if order.engineer_id is None:
        raise GuardViolation("Assign an engineer before scheduling the installation.", code="engineer_unassigned")


def _guard_install_date(order):
    if order.scheduled_install_date is None:
        raise GuardViolation("Set an installation date before scheduling.", code="install_date_missing")


def _guard_checklist_complete(order):
    if not is_checklist_complete(order):
        raise GuardViolation(
            "All completion checklist items must be ticked before sign-off.",
            code="checklist_incomplete",
        )


def _guard_job_started(order):
    if order.engineer_status != EngineerStatus.IN_PROGRESS:
        raise GuardViolation("The engineer has not started this job.", code="job_not_started")


TRANSITIONS = {
    (t.source.value, t.target.value): t
    for t in (
        Transition(
            OrderStatus.PENDING,
            OrderStatus.CONFIRMED,
            TransitionTrigger.PAYMENT_RECEIVED,
            "orders.confirm",
            (_guard_paid_in_full,),
        ),
        Transition(
            OrderStatus.CONFIRMED,
            OrderStatus.SCHEDULED,
            TransitionTrigger.INSTALL_BOOKED,
            "orders.schedule",
            (_guard_engineer_assigned, _guard_install_date),
        ),
        Transition(
            OrderStatus.SCHEDULED,
            OrderStatus.IN_PROGRESS,
            TransitionTrigger.JOB_STARTED,
            "orders.start",
            (),
        ),
        Transition(
            OrderStatus.IN_PROGRESS,
            OrderStatus.COMPLETED,
            TransitionTrigger.SIGN_OFF,
            "orders.complete",
            (_guard_checklist_complete, _guard_job_started),
        ),
        Transition(
            OrderStatus.COMPLETED,
            OrderStatus.REVISIT_REQUIRED,
            TransitionTrigger.ISSUE_FLAGGED,
            "orders.flag_revisit",
            (),
        ),
    )
}

ENGINEER_STATUS_SEQUENCE = list(EngineerStatus.values)


def _parse_status(value):
    try:
        return OrderStatus(value)
    except ValueError:
        raise GuardViolation(f"Unknown order status '{value}'.", code="invalid_status")


def _is_assigned_engineer(order, actor):
    engineer = getattr(actor, "engineer_profile", None)
    return engineer is not None and order.engineer_id == engineer.pk


def ensure_allowed(order, actor, capability):
    """Raise ActionNotPermitted unless the actor holds the capability for this order."""
    if actor is None:
        return
    role = resolve_role(actor)
    if capability not in ROLE_CAPABILITIES.get(role, set()):
        raise ActionNotPermitted()
    if role == UserRole.ENGINEER and not _is_assigned_engineer(order, actor):
        raise ActionNotPermitted("Only the engineer assigned to this job can update it.")
    if role == UserRole.CLIENT and getattr(actor, "client_profile", None) != order.client:
        raise ActionNotPermitted()


def _authorize(order, actor, transition):
    if actor is None:
        return
    role = resolve_role(actor)
    if transition.capability not in ROLE_CAPABILITIES.get(role, set()):
        raise TransitionNotPermitted()
    if role == UserRole.ENGINEER and not _is_assigned_engineer(order, actor):
        raise TransitionNotPermitted("Only the engineer assigned to this job can move it.")
    if role == UserRole.CLIENT and getattr(actor, "client_profile", None) != order.client:
        raise TransitionNotPermitted()


def _coupled_fields(order, target, now):
    changes = {}
    if target == OrderStatus.CONFIRMED and order.paid_at is None:
        changes["paid_at"] = now
    elif target == OrderStatus.IN_PROGRESS and order.engineer_status == EngineerStatus.SCHEDULED:
        changes["engineer_status"] = EngineerStatus.IN_PROGRESS
    elif target == OrderStatus.COMPLETED:
        changes["engineer_status"] = EngineerStatus.COMPLETED
        changes["engineer_signed_off_at"] = now
    return changes


def _commit(order, changes):
    previous = {field: getattr(order, field) for field in changes}
    for field, value in changes.items():
        setattr(order, field, value)
    try:
        with transaction.atomic():
            order.save(update_fields=[*changes, "updated_at"])
    except DatabaseError:
        for field, value in previous.items():
            setattr(order, field, value)
        logger.exception("Could not persist changes to order %s", order.order_number)
        raise TransitionFailed()


def _log_transition(order, previous, target, trigger, actor, notes, override):
    label = OrderStatus(target).label
    if override:
        description = f"Status manually set to {label}"
        activity_type = ActivityType.MANUAL_OVERRIDE
    else:
        description = f"Status changed to {label}"
        activity_type = ActivityType.STATUS_CHANGE
    activity = record_activity_safely(
        order,
        activity_type,
        description,
        details={
            "from": previous,
            "to": str(target),
            "trigger": str(trigger),
            "override": override,
            "notes": notes,
        },
        actor=actor,
    )
    queue_transition_effects(order, previous, str(target), str(trigger))
    return activity


def request_transition(order, target, actor, notes="", changes=None):
    target = _parse_status(target)
    previous = str(order.status)
    transition = TRANSITIONS.get((previous, target.value))
    if transition is None:
        logger.info("Rejected %s -> %s for order %s", previous, target, order.order_number)
        raise WorkflowError(
            f"Cannot move an order from {OrderStatus(previous).label} to {target.label}.",
            code="invalid_transition",
        )

    _authorize(order, actor, transition)
    for guard in transition.guards:
        guard(order)

    fields = _coupled_fields(order, target, timezone.now())
    fields.update(changes or {})
    fields["status"] = target.value
    _commit(order, fields)
    logger.info("Order %s moved %s -> %s (%s)", order.order_number, previous, target, transition.trigger)
    return _log_transition(order, previous, target, transition.trigger, actor, notes, override=False)


def override_status(order, target, actor, notes):
    target = _parse_status(target)
    if actor is None or "orders.override" not in ROLE_CAPABILITIES.get(resolve_role(actor), set()):
        raise TransitionNotPermitted("Only administrators can override an order status.")
    notes = (notes or "").strip()
    if not notes:
        raise GuardViolation("Explain why the status is being overridden.", code="notes_required")

    previous = str(order.status)
    _commit(
        order,
        {
            "status": target.value,
            "manual_status_override": True,
            "manual_status_notes": notes,
        },
    )
    logger.warning("Order %s status overridden %s -> %s by %s", order.order_number, previous, target, actor)
    return _log_transition(order, previous, target, TransitionTrigger.MANUAL_OVERRIDE, actor, notes, override=True)


def advance_engineer_status(order, target, actor):
    ensure_allowed(order, actor, "jobs.update")
    if target not in ENGINEER_STATUS_SEQUENCE:
        raise GuardViolation(f"Unknown job status '{target}'.", code="invalid_engineer_status")
    if order.status not in (OrderStatus.SCHEDULED, OrderStatus.IN_PROGRESS):
        raise GuardViolation("This job is not active.", code="job_not_active")

    current_index = ENGINEER_STATUS_SEQUENCE.index(order.engineer_status)
    target_index = ENGINEER_STATUS_SEQUENCE.index(target)
    if target_index == current_index:
        return None
    if target_index != current_index + 1:
        raise GuardViolation(
            f"Job status can only move from {EngineerStatus(order.engineer_status).label} "
            f"to {EngineerStatus(ENGINEER_STATUS_SEQUENCE[current_index + 1]).label}."
            if current_index + 1 < len(ENGINEER_STATUS_SEQUENCE)
            else "This job is already complete.",
            code="invalid_engineer_status",
        )

    if target == EngineerStatus.COMPLETED:
        return request_transition(order, OrderStatus.COMPLETED, actor)
    if order.status == OrderStatus.SCHEDULED and target == EngineerStatus.IN_PROGRESS:
        return request_transition(order, OrderStatus.IN_PROGRESS, actor, changes={"engineer_status": target})

    previous = order.engineer_status
    _commit(order, {"engineer_status": target})
    return record_activity_safely(
        order,
        ActivityType.ENGINEER_STATUS_UPDATE,
        f"Engineer status changed to {EngineerStatus(target).label}",
        details={"from": previous, "to": target},
        actor=actor,
    )


def assign_installation(order, engineer, install_date, time_window, actor):
    """Book (or rebook) the engineer and date; returns the non-blocking scheduling warnings."""
    if actor is not None and resolve_role(actor) not in STAFF_ROLES:
        raise ActionNotPermitted("Only staff can book installations.")
    if order.status in (OrderStatus.IN_PROGRESS, OrderStatus.COMPLETED):
        raise GuardViolation("The installation can no longer be rebooked.", code="job_locked")
    if order.status in (OrderStatus.SCHEDULED, OrderStatus.REVISIT_REQUIRED):
        if engineer is None:
            raise GuardViolation(
                "A booked installation needs an engineer. Override the status to unbook it.",
                code="engineer_unassigned",
            )
        if install_date is None:
            raise GuardViolation(
                "A booked installation needs a date. Override the status to unbook it.",
                code="install_date_missing",
            )

    conflicts = detect_conflicts(order, engineer, install_date)
    blockers = blocking(conflicts)
    if blockers:
        logger.info("Booking for order %s refused: %s", order.order_number, [c["type"] for c in blockers])
        raise GuardViolation(
            " ".join(conflict["message"] for conflict in blockers),
            code="scheduling_conflict",
            fields={"conflicts": blockers},
        )
    warnings = [conflict for conflict in conflicts if conflict not in blockers]

    _commit(
        order,
        {
            "engineer": engineer,
            "scheduled_install_date": install_date,
            "time_window": time_window or "",
            "engineer_status": EngineerStatus.SCHEDULED,
        },
    )
    record_activity_safely(
        order,
        ActivityType.ENGINEER_ASSIGNED,
        f"Installation booked with {engineer.name if engineer else 'no engineer'}",
        details={
            "engineer_id": str(engineer.pk) if engineer else None,
            "install_date": install_date.isoformat() if install_date else None,
            "time_window": time_window or "",
            "warnings": warnings,
        },
        actor=actor,
    )

    if order.status == OrderStatus.CONFIRMED and engineer is not None and install_date is not None:
        request_transition(order, OrderStatus.SCHEDULED, actor)
    return warnings


def sign_agreement(order, actor):
    ensure_allowed(order, actor, "orders.sign_agreement")
    if order.agreement_signed_at is not None:
        raise GuardViolation("The agreement has already been signed.", code="agreement_already_signed")

    _commit(order, {"agreement_signed_at": timezone.now()})
    activity = record_activity(
        order,
        ActivityType.AGREEMENT_SIGNED,
        "Installation agreement signed",
        details={"signed_at": order.agreement_signed_at.isoformat()},
        actor=actor,
    )
    queue_email(order, "agreement_signed")
    return activity


def available_transitions(order, user):
    """Targets the user could request from the order's current status, ignoring guards."""
    role = resolve_role(user)
    capabilities = ROLE_CAPABILITIES.get(role, set())
    targets = []
    for (source, target), transition in TRANSITIONS.items():
        if source != order.status or transition.capability not in capabilities:
            continue
        if role == UserRole.ENGINEER and not _is_assigned_engineer(order, user):
            continue
        targets.append(target.value)
    return targets
