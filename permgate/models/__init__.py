"""Models package — import all models so create_all can discover them."""

from permgate.models.permission import Permission, RolePermission
from permgate.models.user_permission import UserPermission
from permgate.models.route_permission import RoutePermission
from permgate.models.audit_log import AuditLog

__all__ = [
    "Permission", "RolePermission", "UserPermission",
    "RoutePermission", "AuditLog",
]
