from rest_framework.permissions import BasePermission

from apps.accounts.models import UserRole


STAFF_CAPABILITIES = {
    "clients.view",
    "clients.manage",
    "clients.block_dates",
    "engineers.view",
    "engineers.manage",
    "orders.view",
    "orders.create",
    "orders.manage",
    "orders.confirm",
    "orders.schedule",
    "orders.flag_revisit",
    "orders.sign_agreement",
    "payments.create",
    "payments.record",
    "payments.verify",
    "dashboard.view",
}

ROLE_CAPABILITIES = {
    UserRole.ADMIN: STAFF_CAPABILITIES | {
        "orders.override",
        "orders.delete",
    },
    UserRole.MANAGER: set(STAFF_CAPABILITIES),
    UserRole.ENGINEER: {
        "orders.view",
        "orders.start",
        "orders.complete",
        "orders.flag_revisit",
        "jobs.update",
        "checklist.update",
        "dashboard.view",
    },
    UserRole.CLIENT: {
        "orders.view",
        "clients.block_dates",
        "orders.confirm",
        "orders.sign_agreement",
        "payments.create",
        "payments.verify",
        "dashboard.view",
    },
}

STAFF_ROLES = (UserRole.ADMIN, UserRole.MANAGER)


def resolve_role(user):
    if getattr(user, "is_superuser", False):
        return UserRole.ADMIN
    group_names = set(user.groups.values_list("name", flat=True))
    for role in (UserRole.ADMIN, UserRole.MANAGER, UserRole.ENGINEER, UserRole.CLIENT):
        if role in group_names:
            return role
    return getattr(user, "role", UserRole.CLIENT)


def has_capability(user, capability):
    if not user or not user.is_authenticated:
        return False
    return capability in ROLE_CAPABILITIES.get(resolve_role(user), set())


class RolePermission(BasePermission):
    def has_permission(self, request, view):
        if not request.user or not request.user.is_authenticated:
            return False

        capability_map = getattr(view, "capability_map", {})
        action = getattr(view, "action", request.method.lower())
        required = capability_map.get(action) or capability_map.get(request.method.lower()) or set()
        if not required:
            return True

        user_caps = ROLE_CAPABILITIES.get(resolve_role(request.user), set())
        return all(cap in user_caps for cap in required)
