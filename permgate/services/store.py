"""Permission store — the read port consumed by the core and its SQLAlchemy adapter.

The core only ever talks to ``PermissionStore``. Table and column mapping lives
entirely in the adapter, so deployments with other schemas provide their own
implementation instead of remapping field names.
"""

from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Protocol

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from permgate.core.exceptions import StoreError
from permgate.models.permission import Permission as PermissionRow, RolePermission
from permgate.models.route_permission import RoutePermission
from permgate.models.user_permission import UserPermission
from permgate.schemas.schemas import (
    Permission,
    PermissionId,
    RoutePermissionBinding,
    UserPermissionGrant,
)


class PermissionStore(Protocol):
    """Read access to permissions, grants and route bindings.

    Every method raises ``StoreError`` when the backend fails.
    """

    def find_active_grants_for_user(self, user_id: str) -> List[UserPermissionGrant]:
        ...

    def find_permissions_by_ids(self, ids: Iterable[PermissionId]) -> List[Permission]:
        ...

    def find_active_route_bindings(self, route: str, method: str) -> List[RoutePermissionBinding]:
        ...

    def find_permissions_by_role_name(self, role: str) -> List[Permission]:
        ...


class GrantStore(PermissionStore, Protocol):
    """Write side used by grant administration."""

    def find_permission_by_name(self, name: str) -> Optional[Permission]:
        ...

    def grant_permission(
        self, user_id: str, permission_id: PermissionId, expires_at: Optional[datetime] = None,
    ) -> UserPermissionGrant:
        ...

    def revoke_permission(self, user_id: str, permission_id: PermissionId) -> int:
        ...


def _to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class SqlAlchemyPermissionStore:
    """PermissionStore backed by the SQLAlchemy models.

    Opens one short-lived session per call so a single instance can be shared
    by concurrent request handlers.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    # ---- reads ----
    def find_active_grants_for_user(self, user_id: str) -> List[UserPermissionGrant]:
        try:
            with self._session_factory() as db:
                rows = (
                    db.query(UserPermission)
                    .filter(
                        UserPermission.user_id == str(user_id),
                        UserPermission.is_active.is_(True),
                    )
                    .order_by(UserPermission.id)
                    .all()
                )
                return [UserPermissionGrant.model_validate(row) for row in rows]
        except SQLAlchemyError as e:
            raise StoreError("find_active_grants_for_user", e) from e

    def find_permissions_by_ids(self, ids: Iterable[PermissionId]) -> List[Permission]:
        ids = list(ids)
        if not ids:
            return []
        try:
            with self._session_factory() as db:
                rows = (
                    db.query(PermissionRow)
                    .filter(PermissionRow.id.in_(ids), PermissionRow.is_active.is_(True))
                    .order_by(PermissionRow.id)
                    .all()
                )
                return [Permission.model_validate(row) for row in rows]
        except SQLAlchemyError as e:
            raise StoreError("find_permissions_by_ids", e) from e

    def find_active_route_bindings(self, route: str, method: str) -> List[RoutePermissionBinding]:
        try:
            with self._session_factory() as db:
                rows = (
                    db.query(RoutePermission)
                    .filter(
                        RoutePermission.route == route,
                        or_(RoutePermission.method == method.upper(), RoutePermission.method == "*"),
                        RoutePermission.is_active.is_(True),
                    )
                    .order_by(RoutePermission.id)
                    .all()
                )
                return [RoutePermissionBinding.model_validate(row) for row in rows]
        except SQLAlchemyError as e:
            raise StoreError("find_active_route_bindings", e) from e

    def find_permissions_by_role_name(self, role: str) -> List[Permission]:
        """The role's own permission record plus everything assigned to the role."""
        try:
            with self._session_factory() as db:
                own = (
                    db.query(PermissionRow)
                    .filter(PermissionRow.name == role, PermissionRow.is_active.is_(True))
                    .all()
                )
                assigned = (
                    db.query(PermissionRow)
                    .join(RolePermission, RolePermission.permission_id == PermissionRow.id)
                    .filter(RolePermission.role_name == role, PermissionRow.is_active.is_(True))
                    .order_by(PermissionRow.id)
                    .all()
                )
                seen = set()
                permissions = []
                for row in own + assigned:
                    if row.id not in seen:
                        seen.add(row.id)
                        permissions.append(Permission.model_validate(row))
                return permissions
        except SQLAlchemyError as e:
            raise StoreError("find_permissions_by_role_name", e) from e

    def find_permission_by_name(self, name: str) -> Optional[Permission]:
        try:
            with self._session_factory() as db:
                row = (
                    db.query(PermissionRow)
                    .filter(PermissionRow.name == name, PermissionRow.is_active.is_(True))
                    .first()
                )
                return Permission.model_validate(row) if row else None
        except SQLAlchemyError as e:
            raise StoreError("find_permission_by_name", e) from e

    # ---- writes ----
    def create_permission(
        self, name: str, description: Optional[str] = None, level: Optional[int] = None,
    ) -> Permission:
        try:
            with self._session_factory() as db:
                row = PermissionRow(name=name, description=description, level=level, is_active=True)
                db.add(row)
                db.commit()
                db.refresh(row)
                return Permission.model_validate(row)
        except SQLAlchemyError as e:
            raise StoreError("create_permission", e) from e

    def grant_permission(
        self, user_id: str, permission_id: PermissionId, expires_at: Optional[datetime] = None,
    ) -> UserPermissionGrant:
        """Grant a permission, refreshing the expiry of an existing active grant."""
        try:
            with self._session_factory() as db:
                row = (
                    db.query(UserPermission)
                    .filter(
                        UserPermission.user_id == str(user_id),
                        UserPermission.permission_id == permission_id,
                        UserPermission.is_active.is_(True),
                    )
                    .first()
                )
                if row is None:
                    row = UserPermission(
                        user_id=str(user_id),
                        permission_id=permission_id,
                        granted_at=datetime.now(timezone.utc).replace(tzinfo=None),
                        is_active=True,
                    )
                    db.add(row)
                row.expires_at = _to_naive_utc(expires_at)
                db.commit()
                db.refresh(row)
                return UserPermissionGrant.model_validate(row)
        except SQLAlchemyError as e:
            raise StoreError("grant_permission", e) from e

    def revoke_permission(self, user_id: str, permission_id: PermissionId) -> int:
        """Deactivate every active grant of the permission; returns how many changed."""
        try:
            with self._session_factory() as db:
                count = (
                    db.query(UserPermission)
                    .filter(
                        UserPermission.user_id == str(user_id),
                        UserPermission.permission_id == permission_id,
                        UserPermission.is_active.is_(True),
                    )
                    .update({"is_active": False}, synchronize_session=False)
                )
                db.commit()
                return count
        except SQLAlchemyError as e:
            raise StoreError("revoke_permission", e) from e

    def bind_route(self, route: str, method: str, permission_id: PermissionId) -> RoutePermissionBinding:
        try:
            with self._session_factory() as db:
                row = RoutePermission(
                    route=route, method=method.upper(), permission_id=permission_id, is_active=True,
                )
                db.add(row)
                db.commit()
                db.refresh(row)
                return RoutePermissionBinding.model_validate(row)
        except SQLAlchemyError as e:
            raise StoreError("bind_route", e) from e

    def assign_role_permission(self, role_name: str, permission_id: PermissionId) -> None:
        try:
            with self._session_factory() as db:
                exists = (
                    db.query(RolePermission)
                    .filter(
                        RolePermission.role_name == role_name,
                        RolePermission.permission_id == permission_id,
                    )
                    .first()
                )
                if exists is None:
                    db.add(RolePermission(role_name=role_name, permission_id=permission_id))
                    db.commit()
        except SQLAlchemyError as e:
            raise StoreError("assign_role_permission", e) from e
