"""Seed default permissions, role assignments and the default hierarchy."""

from sqlalchemy.orm import Session
from permgate.models.permission import Permission, RolePermission

DEFAULT_HIERARCHY = {
    "admin": {"level": 100, "inherits": ["manager"]},
    "manager": {"level": 50, "inherits": ["user"]},
    "user": {"level": 1, "inherits": []},
}


def seed_roles(db: Session) -> None:
    """Insert default permissions and role assignments if they don't already exist."""
    permissions_data = [
        {"name": "admin", "level": 100, "description": "Administrator role, bypasses route checks"},
        {"name": "manager", "level": 50, "description": "Manager role"},
        {"name": "user", "level": 1, "description": "Default role for signed-in users"},
        {"name": "users.manage", "level": 100, "description": "Create, edit and deactivate users"},
        {"name": "permissions.manage", "level": 100, "description": "Grant and revoke permissions"},
        {"name": "reports.view", "level": 50, "description": "View reports"},
        {"name": "reports.export", "level": 50, "description": "Export reports"},
        {"name": "profile.view", "level": 1, "description": "View own profile"},
    ]
    role_assignments = {
        "admin": ["users.manage", "permissions.manage"],
        "manager": ["reports.view", "reports.export"],
        "user": ["profile.view"],
    }

    for permission_data in permissions_data:
        existing = db.query(Permission).filter(Permission.name == permission_data["name"]).first()
        if not existing:
            db.add(Permission(is_active=True, **permission_data))
    db.flush()

    for role_name, names in role_assignments.items():
        for name in names:
            permission = db.query(Permission).filter(Permission.name == name).first()
            assigned = db.query(RolePermission).filter(
                RolePermission.role_name == role_name,
                RolePermission.permission_id == permission.id,
            ).first()
            if not assigned:
                db.add(RolePermission(role_name=role_name, permission_id=permission.id))

    db.commit()
