import logging
from dataclasses import dataclass

from django.db import models
from django.db.models import Q
from rest_framework.permissions import BasePermission

from core.models import User

logger = logging.getLogger("security.authorization")


class Resource(models.TextChoices):
    DASHBOARD = "dashboard", "Dashboard"
    ORGANIZATIONS = "organizations", "Organizations"
    ORDERS = "orders", "Orders"
    MANUFACTURING = "manufacturing", "Manufacturing"
    QUOTES = "quotes", "Quotes"
    FINANCE = "finance", "Finance"
    SALESPEOPLE = "salespeople", "Salespeople"
    USERS = "users", "Users"
    TASKS = "tasks", "Tasks"


class Permission(models.TextChoices):
    VIEW = "view", "View"
    WRITE = "write", "Write"
    DELETE = "delete", "Delete"
    VIEW_ALL = "view_all", "View all records"


@dataclass(frozen=True)
class ResourceCapabilities:
    view: bool = False
    write: bool = False
    delete: bool = False
    view_all: bool = False

    def allows(self, permission):
        return bool(getattr(self, Permission(permission).value))


NONE = ResourceCapabilities()
READ_OWN = ResourceCapabilities(view=True)
READ_ALL = ResourceCapabilities(view=True, view_all=True)
WRITE_OWN = ResourceCapabilities(view=True, write=True)
WRITE_ALL = ResourceCapabilities(view=True, write=True, view_all=True)
FULL = ResourceCapabilities(view=True, write=True, delete=True, view_all=True)

# Organizations, salespeople and users have no per-record ownership, so no
# role carries view_all on them.
ROLE_PERMISSIONS = {
    User.Role.ADMIN: {
        Resource.DASHBOARD: WRITE_OWN,
        Resource.ORGANIZATIONS: ResourceCapabilities(view=True, write=True, delete=True),
        Resource.ORDERS: FULL,
        Resource.MANUFACTURING: FULL,
        Resource.QUOTES: FULL,
        Resource.FINANCE: WRITE_ALL,
        Resource.SALESPEOPLE: ResourceCapabilities(view=True, write=True, delete=True),
        Resource.USERS: ResourceCapabilities(view=True, write=True, delete=True),
        Resource.TASKS: FULL,
    },
    User.Role.SALES: {
        Resource.DASHBOARD: READ_OWN,
        Resource.ORGANIZATIONS: WRITE_OWN,
        Resource.ORDERS: WRITE_OWN,
        Resource.MANUFACTURING: NONE,
        Resource.QUOTES: WRITE_OWN,
        Resource.FINANCE: NONE,
        Resource.SALESPEOPLE: READ_OWN,
        Resource.USERS: NONE,
        Resource.TASKS: WRITE_OWN,
    },
    User.Role.DESIGNER: {
        Resource.DASHBOARD: READ_OWN,
        Resource.ORGANIZATIONS: READ_OWN,
        Resource.ORDERS: READ_OWN,
        Resource.MANUFACTURING: NONE,
        Resource.QUOTES: NONE,
        Resource.FINANCE: NONE,
        Resource.SALESPEOPLE: NONE,
        Resource.USERS: NONE,
        Resource.TASKS: WRITE_OWN,
    },
    User.Role.OPS: {
        Resource.DASHBOARD: READ_OWN,
        Resource.ORGANIZATIONS: READ_OWN,
        Resource.ORDERS: WRITE_ALL,
        Resource.MANUFACTURING: WRITE_ALL,
        Resource.QUOTES: READ_ALL,
        Resource.FINANCE: READ_ALL,
        Resource.SALESPEOPLE: READ_OWN,
        Resource.USERS: NONE,
        Resource.TASKS: WRITE_ALL,
    },
    User.Role.MANUFACTURER: {
        Resource.DASHBOARD: READ_OWN,
        Resource.ORGANIZATIONS: READ_OWN,
        Resource.ORDERS: READ_OWN,
        Resource.MANUFACTURING: WRITE_OWN,
        Resource.QUOTES: NONE,
        Resource.FINANCE: NONE,
        Resource.SALESPEOPLE: NONE,
        Resource.USERS: NONE,
        Resource.TASKS: WRITE_OWN,
    },
    User.Role.FINANCE: {
        Resource.DASHBOARD: READ_OWN,
        Resource.ORGANIZATIONS: READ_OWN,
        Resource.ORDERS: READ_ALL,
        Resource.MANUFACTURING: NONE,
        Resource.QUOTES: WRITE_ALL,
        Resource.FINANCE: WRITE_ALL,
        Resource.SALESPEOPLE: READ_OWN,
        Resource.USERS: READ_OWN,
        Resource.TASKS: WRITE_ALL,
    },
}


def _check_role_permissions():
    for role in User.Role:
        resources = ROLE_PERMISSIONS.get(role)
        if resources is None:
            raise RuntimeError(f"Role {role!r} has no permission entry.")
        missing = [resource for resource in Resource if resource not in resources]
        if missing:
            raise RuntimeError(f"Role {role!r} is missing permissions for: {', '.join(missing)}.")


_check_role_permissions()


def get_user_role(user):
    if not user or not user.is_authenticated:
        return None
    if user.is_superuser:
        return User.Role.ADMIN
    role = getattr(user, "role", None)
    if role:
        return role
    if getattr(user, "is_staff", False):
        return User.Role.ADMIN
    return User.Role.SALES


def get_capabilities(role, resource):
    if role not in User.Role.values or resource not in Resource.values:
        return NONE
    return ROLE_PERMISSIONS[User.Role(role)][Resource(resource)]


def has_permission(role, resource, permission):
    """Pure role check: does ``role`` hold ``permission`` on ``resource``."""
    if permission not in Permission.values:
        return False
    return get_capabilities(role, resource).allows(permission)


def user_has_permission(user, resource, permission):
    if not user or not user.is_authenticated:
        return False
    if user.is_superuser:
        return True
    return has_permission(get_user_role(user), resource, permission)


def can_view_all(user, resource):
    return user_has_permission(user, resource, Permission.VIEW_ALL)


def scope_queryset_for_user(queryset, user, resource, owner_fields):
    """Restrict ``queryset`` to rows owned by ``user`` unless the role sees everything."""
    if not user or not user.is_authenticated:
        return queryset.none()
    if can_view_all(user, resource):
        return queryset

    ownership = Q()
    for field in owner_fields:
        ownership |= Q(**{field: user})
    return queryset.filter(ownership).distinct()


DEFAULT_ACTION_PERMISSIONS = {
    "list": Permission.VIEW,
    "retrieve": Permission.VIEW,
    "create": Permission.WRITE,
    "update": Permission.WRITE,
    "partial_update": Permission.WRITE,
    "destroy": Permission.DELETE,
}


class ResourcePermission(BasePermission):
    """Check the role capability for the view's resource and log denied attempts.

    Views declare ``permission_resource`` and may extend or override the
    action mapping with ``permission_action_map``.
    """

    message = "You do not have permission to perform this action."

    def has_permission(self, request, view):
        resource = getattr(view, "permission_resource", None)
        if resource is None:
            return True

        action_map = {**DEFAULT_ACTION_PERMISSIONS, **getattr(view, "permission_action_map", {})}
        action_key = getattr(view, "action", None) or request.method.lower()
        required = action_map.get(action_key)
        if required is None:
            return True

        allowed = user_has_permission(request.user, resource, required)
        if not allowed:
            logger.warning(
                "permission_denied resource=%s permission=%s user=%s role=%s method=%s path=%s view=%s action=%s",
                resource,
                required,
                getattr(request.user, "username", "anonymous"),
                get_user_role(request.user),
                request.method,
                request.path,
                view.__class__.__name__,
                action_key,
                extra={
                    "request_id": getattr(request, "request_id", None),
                    "role": get_user_role(request.user),
                    "resource": str(resource),
                    "permission": str(required),
                },
            )
        return allowed


class AdminRolePermission(BasePermission):
    """Restrict a view to the admin role and log denied attempts."""

    message = "Only administrators can perform this action."

    def has_permission(self, request, view):
        allowed = get_user_role(request.user) == User.Role.ADMIN
        if not allowed:
            logger.warning(
                "permission_denied resource=admin user=%s role=%s method=%s path=%s view=%s",
                getattr(request.user, "username", "anonymous"),
                get_user_role(request.user),
                request.method,
                request.path,
                view.__class__.__name__,
            )
        return allowed
