"""Grant service — grants and revokes user permissions, keeping the cache honest."""

import logging
from datetime import datetime
from typing import Optional

from permgate.core.exceptions import PermissionNotFoundError
from permgate.schemas.schemas import AuditAction, UserPermissionGrant
from permgate.services.audit_service import AuditSink
from permgate.services.permission_service import PermissionResolutionEngine
from permgate.services.store import GrantStore

logger = logging.getLogger("permgate")


class GrantService:
    """Every mutation invalidates the affected user and records an audit event."""

    def __init__(
        self,
        store: GrantStore,
        engine: PermissionResolutionEngine,
        audit_sink: Optional[AuditSink] = None,
        audit_enabled: bool = True,
    ):
        self._store = store
        self._engine = engine
        self._audit_sink = audit_sink
        self._audit_enabled = audit_enabled and audit_sink is not None

    def grant(
        self,
        actor_id: str,
        user_id: str,
        permission_name: str,
        expires_at: Optional[datetime] = None,
    ) -> UserPermissionGrant:
        """Grant ``permission_name`` to ``user_id``.

        Raises:
            PermissionNotFoundError: If no active permission has that name.
            StoreError: If the store write fails.
        """
        permission = self._store.find_permission_by_name(permission_name)
        if permission is None:
            raise PermissionNotFoundError(permission_name)

        grant = self._store.grant_permission(user_id, permission.id, expires_at)
        self._engine.invalidate_user(user_id)
        logger.info("Granted %s to user %s (by %s)", permission_name, user_id, actor_id)

        self._audit(actor_id, permission_name, AuditAction.grant, user_id, {
            "permission_id": permission.id,
            "expires_at": expires_at.isoformat() if expires_at else None,
        })
        return grant

    def revoke(self, actor_id: str, user_id: str, permission_name: str) -> int:
        """Revoke every active grant of ``permission_name``; returns how many were revoked."""
        permission = self._store.find_permission_by_name(permission_name)
        if permission is None:
            raise PermissionNotFoundError(permission_name)

        revoked = self._store.revoke_permission(user_id, permission.id)
        self._engine.invalidate_user(user_id)
        logger.info("Revoked %s from user %s (by %s, %d grants)", permission_name, user_id, actor_id, revoked)

        self._audit(actor_id, permission_name, AuditAction.revoke, user_id, {
            "permission_id": permission.id,
            "revoked": revoked,
        })
        return revoked

    def _audit(self, actor_id, permission_name, action, target_user_id, metadata) -> None:
        if not self._audit_enabled:
            return
        try:
            self._audit_sink.record_grant_change(actor_id, permission_name, action, target_user_id, metadata)
        except Exception:
            logger.exception("Failed to record %s of %s for user %s", action.value, permission_name, target_user_id)
