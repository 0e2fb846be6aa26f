"""Permission administration API router."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from permgate.api.deps import RequireAdmin, get_gate
from permgate.core.exceptions import not_found
from permgate.core.security import get_current_user_id
from permgate.schemas.schemas import (
    AuditAction,
    AuditLogPage,
    EffectivePermissionsOut,
    GrantRequest,
    HierarchyRequest,
    HierarchyValidationOut,
    MessageResponse,
    RevokeRequest,
    RolePermissionsOut,
    UserPermissionGrant,
)
from permgate.services.gate import PermissionGate

router = APIRouter(prefix="/admin/permissions", tags=["permissions"])

require_admin = RequireAdmin()


@router.get("/users/{user_id}", response_model=EffectivePermissionsOut)
def get_user_permissions(
    user_id: str,
    gate: PermissionGate = Depends(get_gate),
    _: object = Depends(require_admin),
):
    """Effective permissions of a user."""
    return EffectivePermissionsOut(user_id=user_id, permissions=gate.get_effective_permissions(user_id))


@router.post("/users/{user_id}/invalidate", response_model=MessageResponse)
def invalidate_user(
    user_id: str,
    gate: PermissionGate = Depends(get_gate),
    _: object = Depends(require_admin),
):
    """Drop the cached permissions of a user."""
    gate.invalidate_user(user_id)
    return MessageResponse(message=f"Permissions cache cleared for user {user_id}")


@router.post("/grants", response_model=UserPermissionGrant)
def grant_permission(
    body: GrantRequest,
    gate: PermissionGate = Depends(get_gate),
    actor_id: str = Depends(get_current_user_id),
    _: object = Depends(require_admin),
):
    """Grant a permission to a user."""
    return gate.grants.grant(actor_id, body.user_id, body.permission_name, body.expires_at)


@router.post("/revocations", response_model=MessageResponse)
def revoke_permission(
    body: RevokeRequest,
    gate: PermissionGate = Depends(get_gate),
    actor_id: str = Depends(get_current_user_id),
    _: object = Depends(require_admin),
):
    """Revoke a permission from a user."""
    revoked = gate.grants.revoke(actor_id, body.user_id, body.permission_name)
    return MessageResponse(message=f"Revoked {revoked} grant(s) of {body.permission_name}")


@router.get("/roles/{role}", response_model=RolePermissionsOut)
def get_role_permissions(
    role: str,
    gate: PermissionGate = Depends(get_gate),
    _: object = Depends(require_admin),
):
    """Permissions a role holds directly or inherits."""
    return RolePermissionsOut(role=role, permissions=gate.get_role_permissions(role))


@router.post("/hierarchy/validate", response_model=HierarchyValidationOut)
def validate_hierarchy(
    body: HierarchyRequest,
    gate: PermissionGate = Depends(get_gate),
    _: object = Depends(require_admin),
):
    """Check a hierarchy without installing it."""
    errors = gate.hierarchy_errors(body.roles)
    return HierarchyValidationOut(valid=not errors, errors=errors)


@router.put("/hierarchy", response_model=MessageResponse)
def rebuild_hierarchy(
    body: HierarchyRequest,
    gate: PermissionGate = Depends(get_gate),
    _: object = Depends(require_admin),
    actor_id: str = Depends(get_current_user_id),
):
    """Install a new role hierarchy."""
    gate.rebuild_hierarchy(body.roles, actor_id=actor_id)
    return MessageResponse(message=f"Role hierarchy rebuilt with {len(body.roles)} roles")


@router.get("/audit", response_model=AuditLogPage)
def get_audit_logs(
    user_id: Optional[str] = Query(None),
    action: Optional[AuditAction] = Query(None),
    target: Optional[str] = Query(None),
    result: Optional[bool] = Query(None),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    gate: PermissionGate = Depends(get_gate),
    _: object = Depends(require_admin),
):
    """Query the audit trail, newest first."""
    query_logs = getattr(gate.audit_sink, "query_logs", None)
    if query_logs is None:
        raise not_found("Audit log is not queryable")
    logs = query_logs(
        user_id=user_id, action=action, target=target, result=result,
        start=start, end=end, limit=limit, offset=offset,
    )
    return AuditLogPage(logs=logs, limit=limit, offset=offset)
