"""Pydantic schemas for permission records, decisions and API payloads."""

from pydantic import BaseModel, Field, TypeAdapter
from typing import Optional, List, Dict, Any, Set, Union
from datetime import datetime, timezone
from enum import Enum


PermissionId = Union[int, str]


class PermissionStrategy(str, Enum):
    """Default policy for routes without any permission binding."""
    whitelist = "whitelist"
    blacklist = "blacklist"


class CombineStrategy(str, Enum):
    """How a list of required permission names is combined."""
    AND = "AND"
    OR = "OR"


class AuditAction(str, Enum):
    check = "check"
    grant = "grant"
    revoke = "revoke"
    modify = "modify"


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; they are stored as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---- Permission records ----
class Permission(BaseModel):
    id: PermissionId
    name: str
    description: Optional[str] = None
    level: Optional[int] = None
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class UserPermissionGrant(BaseModel):
    user_id: str
    permission_id: PermissionId
    granted_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    is_active: bool = True

    class Config:
        from_attributes = True

    def is_effective(self, now: Optional[datetime] = None) -> bool:
        """Return True if the grant is active and not yet expired."""
        if not self.is_active:
            return False
        if self.expires_at is None:
            return True
        now = _as_utc(now or datetime.now(timezone.utc))
        return _as_utc(self.expires_at) > now


class RoutePermissionBinding(BaseModel):
    route: str
    method: str = "*"
    permission_id: PermissionId
    is_active: bool = True

    class Config:
        from_attributes = True


# ---- Role hierarchy ----
class RoleDefinition(BaseModel):
    level: int
    inherits: List[str] = Field(default_factory=list)


RoleHierarchySpec = Dict[str, RoleDefinition]


_hierarchy_adapter = TypeAdapter(Dict[str, RoleDefinition])


def parse_hierarchy(raw: Dict[str, Any]) -> RoleHierarchySpec:
    """Coerce a plain mapping (e.g. loaded from JSON) into a hierarchy spec."""
    return _hierarchy_adapter.validate_python(raw)


# ---- Decisions / audit ----
class AuthorizationDecision(BaseModel):
    allowed: bool
    strategy: PermissionStrategy
    required_permission_ids: Set[PermissionId] = Field(default_factory=set)
    user_permission_ids: Set[PermissionId] = Field(default_factory=set)
    required_permission_names: List[str] = Field(default_factory=list)
    combine_strategy: Optional[CombineStrategy] = None
    public: bool = False
    admin_bypass: bool = False
    reason: str = ""


class AuditEvent(BaseModel):
    id: Optional[int] = None
    user_id: str
    action: AuditAction
    target: str
    result: bool
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# ---- API payloads ----
class MessageResponse(BaseModel):
    message: str


class GrantRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    permission_name: str = Field(..., min_length=1)
    expires_at: Optional[datetime] = None


class RevokeRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    permission_name: str = Field(..., min_length=1)


class HierarchyRequest(BaseModel):
    roles: Dict[str, RoleDefinition]


class HierarchyValidationOut(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)


class EffectivePermissionsOut(BaseModel):
    user_id: str
    permissions: List[Permission]


class RolePermissionsOut(BaseModel):
    role: str
    permissions: List[Permission]


class AuditLogPage(BaseModel):
    logs: List[AuditEvent]
    limit: int
    offset: int
