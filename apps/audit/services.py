from apps.audit.models import AuditLog
from apps.common.permissions import resolve_role


def record_audit(*, actor, action, entity_type, entity_id, payload=None):
    """Append an audit entry for actions that outlive the entity they touch."""
    return AuditLog.objects.create(
        actor=actor,
        actor_role=resolve_role(actor) if actor else "",
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        payload=payload or {},
    )
