"""Audit service — append-only trail of permission checks and grant changes."""

import json
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from permgate.core.exceptions import AuditError
from permgate.models.audit_log import AuditLog
from permgate.schemas.schemas import AuditAction, AuditEvent


class AuditSink(Protocol):
    """Receives audit events. Implementations raise AuditError on failure."""

    def record_check(
        self, user_id: str, route: str, allowed: bool, metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...

    def record_grant_change(
        self,
        actor_id: str,
        permission_name: str,
        action: AuditAction,
        target_user_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...

    def record_modification(
        self, actor_id: str, permission_name: str, metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        ...


class NullAuditSink:
    """Discards every event; used when auditing is disabled."""

    def record_check(self, user_id, route, allowed, metadata=None) -> None:
        return None

    def record_grant_change(self, actor_id, permission_name, action, target_user_id, metadata=None) -> None:
        return None

    def record_modification(self, actor_id, permission_name, metadata=None) -> None:
        return None


def _to_event(entry: AuditLog) -> AuditEvent:
    return AuditEvent(
        id=entry.id,
        user_id=entry.user_id,
        action=AuditAction(entry.action),
        target=entry.target,
        result=entry.result,
        metadata=json.loads(entry.metadata_json) if entry.metadata_json else {},
        created_at=entry.created_at,
    )


class SqlAlchemyAuditSink:
    """Persists audit events to the audit_logs table.

    Each record commits immediately so an event is never lost to a later rollback.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def log(
        self,
        user_id: str,
        action: AuditAction,
        target: str,
        result: bool,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        """Write a single audit log record.

        Args:
            action: check, grant, revoke or modify
            target: the route for checks, the permission name otherwise
        """
        try:
            with self._session_factory() as db:
                entry = AuditLog(
                    user_id=str(user_id),
                    action=AuditAction(action).value,
                    target=target,
                    result=result,
                    metadata_json=json.dumps(metadata, default=str) if metadata else None,
                )
                db.add(entry)
                db.commit()
                db.refresh(entry)
                return _to_event(entry)
        except SQLAlchemyError as e:
            raise AuditError(f"log {action}", e) from e

    def record_check(
        self, user_id: str, route: str, allowed: bool, metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.log(user_id, AuditAction.check, route, allowed, metadata or {})

    def record_grant_change(
        self,
        actor_id: str,
        permission_name: str,
        action: AuditAction,
        target_user_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        action = AuditAction(action)
        if action not in (AuditAction.grant, AuditAction.revoke):
            raise ValueError(f"Not a grant change: {action.value}")
        self.log(
            actor_id, action, permission_name, True,
            {**(metadata or {}), "target_user_id": str(target_user_id)},
        )

    def record_modification(
        self, actor_id: str, permission_name: str, metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.log(actor_id, AuditAction.modify, permission_name, True, metadata or {})

    def query_logs(
        self,
        user_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        target: Optional[str] = None,
        result: Optional[bool] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[AuditEvent]:
        """Query audit logs with filters, newest first."""
        try:
            with self._session_factory() as db:
                query = db.query(AuditLog)

                if user_id:
                    query = query.filter(AuditLog.user_id == str(user_id))
                if action:
                    query = query.filter(AuditLog.action == AuditAction(action).value)
                if target:
                    query = query.filter(AuditLog.target == target)
                if result is not None:
                    query = query.filter(AuditLog.result.is_(result))
                if start:
                    query = query.filter(AuditLog.created_at >= start)
                if end:
                    query = query.filter(AuditLog.created_at <= end)

                entries = (
                    query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
                    .offset(offset)
                    .limit(limit)
                    .all()
                )
                return [_to_event(entry) for entry in entries]
        except SQLAlchemyError as e:
            raise AuditError("query_logs", e) from e
