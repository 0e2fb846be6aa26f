"""Shared fixtures: an in-memory permission store that counts its reads."""

from collections import Counter
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest

from permgate.core.config import PermissionConfig, PermissionsSection, SecuritySection
from permgate.core.exceptions import AuditError, StoreError
from permgate.schemas.schemas import (
    AuditAction,
    Permission,
    PermissionStrategy,
    RoutePermissionBinding,
    UserPermissionGrant,
)


class FakePermissionStore:
    """PermissionStore + GrantStore kept in dicts. Set ``fail`` to simulate an outage."""

    def __init__(self):
        self.permissions: Dict[int, Permission] = {}
        self.grants: List[UserPermissionGrant] = []
        self.bindings: List[RoutePermissionBinding] = []
        self.role_permissions: Dict[str, List[int]] = {}
        self.calls = Counter()
        self.fail = False
        self._next_id = 1

    # ---- test helpers ----
    def add_permission(self, name: str, **fields) -> Permission:
        permission = Permission(id=self._next_id, name=name, **fields)
        self.permissions[permission.id] = permission
        self._next_id += 1
        return permission

    def permission(self, name: str) -> Permission:
        for permission in self.permissions.values():
            if permission.name == name:
                return permission
        return self.add_permission(name)

    def give(self, user_id: str, *names: str, expires_at: Optional[datetime] = None, is_active: bool = True):
        for name in names:
            self.grants.append(UserPermissionGrant(
                user_id=user_id,
                permission_id=self.permission(name).id,
                granted_at=datetime.now(timezone.utc),
                expires_at=expires_at,
                is_active=is_active,
            ))

    def bind(self, route: str, method: str, *names: str, is_active: bool = True):
        for name in names:
            self.bindings.append(RoutePermissionBinding(
                route=route, method=method, permission_id=self.permission(name).id, is_active=is_active,
            ))

    def assign(self, role: str, *names: str):
        self.role_permissions.setdefault(role, []).extend(self.permission(name).id for name in names)

    def _call(self, operation: str):
        self.calls[operation] += 1
        if self.fail:
            raise StoreError(operation, ConnectionError("store is down"))

    # ---- PermissionStore ----
    def find_active_grants_for_user(self, user_id):
        self._call("find_active_grants_for_user")
        return [g for g in self.grants if g.user_id == str(user_id) and g.is_active]

    def find_permissions_by_ids(self, ids):
        self._call("find_permissions_by_ids")
        ids = list(ids)
        return [self.permissions[i] for i in ids if i in self.permissions and self.permissions[i].is_active]

    def find_active_route_bindings(self, route, method):
        self._call("find_active_route_bindings")
        return [
            b for b in self.bindings
            if b.route == route and b.is_active and b.method in (method.upper(), "*")
        ]

    def find_permissions_by_role_name(self, role):
        self._call("find_permissions_by_role_name")
        found = [p for p in self.permissions.values() if p.name == role and p.is_active]
        for permission_id in self.role_permissions.get(role, []):
            permission = self.permissions[permission_id]
            if permission.is_active and permission not in found:
                found.append(permission)
        return found

    # ---- GrantStore ----
    def find_permission_by_name(self, name):
        self._call("find_permission_by_name")
        for permission in self.permissions.values():
            if permission.name == name and permission.is_active:
                return permission
        return None

    def grant_permission(self, user_id, permission_id, expires_at=None):
        self._call("grant_permission")
        grant = UserPermissionGrant(
            user_id=str(user_id), permission_id=permission_id,
            granted_at=datetime.now(timezone.utc), expires_at=expires_at,
        )
        self.grants.append(grant)
        return grant

    def revoke_permission(self, user_id, permission_id):
        self._call("revoke_permission")
        revoked = 0
        for index, grant in enumerate(self.grants):
            if grant.user_id == str(user_id) and grant.permission_id == permission_id and grant.is_active:
                self.grants[index] = grant.model_copy(update={"is_active": False})
                revoked += 1
        return revoked


class ManualClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingAuditSink:
    def __init__(self):
        self.checks = []
        self.grant_changes = []
        self.modifications = []
        self.fail = False

    def record_check(self, user_id, route, allowed, metadata=None):
        if self.fail:
            raise AuditError("record_check", RuntimeError("audit table locked"))
        self.checks.append({"user_id": user_id, "route": route, "allowed": allowed, "metadata": metadata})

    def record_grant_change(self, actor_id, permission_name, action, target_user_id, metadata=None):
        if self.fail:
            raise AuditError("record_grant_change", RuntimeError("audit table locked"))
        self.grant_changes.append({
            "actor_id": actor_id,
            "permission_name": permission_name,
            "action": AuditAction(action),
            "target_user_id": target_user_id,
            "metadata": metadata,
        })

    def record_modification(self, actor_id, permission_name, metadata=None):
        if self.fail:
            raise AuditError("record_modification", RuntimeError("audit table locked"))
        self.modifications.append({"actor_id": actor_id, "permission_name": permission_name, "metadata": metadata})


def make_config(
    strategy: PermissionStrategy = PermissionStrategy.whitelist,
    public_routes=("/auth/login", "/auth/register"),
    admin_role: str = "admin",
    enable_caching: bool = True,
    cache_timeout: int = 60,
    enable_audit_log: bool = True,
    role_hierarchy=None,
) -> PermissionConfig:
    return PermissionConfig(
        permissions=PermissionsSection(
            admin_role=admin_role,
            public_routes=list(public_routes),
            permission_strategy=strategy,
        ),
        security=SecuritySection(
            enable_caching=enable_caching,
            cache_timeout=cache_timeout,
            enable_audit_log=enable_audit_log,
        ),
        role_hierarchy=role_hierarchy or {},
    )


@pytest.fixture
def store():
    return FakePermissionStore()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def company_hierarchy():
    return {
        "admin": {"level": 100, "inherits": ["manager"]},
        "manager": {"level": 50, "inherits": ["user"]},
        "user": {"level": 1},
    }
