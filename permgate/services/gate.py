"""Permission gate — the surface exposed to HTTP handlers and the CLI.

Wires the store, cache, role hierarchy, resolution engine and authorizer
together from a ``PermissionConfig``.
"""

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from pydantic import ValidationError
from sqlalchemy.orm import Session

from permgate.core.config import PermissionConfig, Settings
from permgate.core.exceptions import ConfigurationError
from permgate.schemas.schemas import (
    AuthorizationDecision,
    CombineStrategy,
    Permission,
    PermissionId,
    RoleHierarchySpec,
    parse_hierarchy,
)
from permgate.services.audit_service import AuditSink, NullAuditSink, SqlAlchemyAuditSink
from permgate.services.authorizer import RouteAuthorizer, RouteRequirementRegistry
from permgate.services.cache_service import PermissionCache, RedisPermissionCache
from permgate.services.grant_service import GrantService
from permgate.services.hierarchy_service import RoleHierarchyResolver, hierarchy_errors
from permgate.services.permission_service import PermissionResolutionEngine
from permgate.services.store import PermissionStore, SqlAlchemyPermissionStore

logger = logging.getLogger("permgate")


def coerce_hierarchy(raw: Mapping[str, Any]) -> RoleHierarchySpec:
    """Turn a plain mapping into a hierarchy spec, reporting malformed entries."""
    try:
        return parse_hierarchy(raw)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
        raise ConfigurationError(errors) from e


def _encode_permissions(permissions: List[Permission]) -> List[Dict[str, Any]]:
    return [permission.model_dump(mode="json") for permission in permissions]


def _decode_permissions(raw: List[Dict[str, Any]]) -> List[Permission]:
    return [Permission.model_validate(item) for item in raw]


def build_cache(config: PermissionConfig, backend: str = "memory", redis_url: Optional[str] = None):
    """Cache for user permissions, or None when caching is disabled."""
    if not config.security.enable_caching:
        return None
    if backend == "redis":
        return RedisPermissionCache(
            config.security.cache_timeout,
            url=redis_url or "redis://localhost:6379/0",
            encode=_encode_permissions,
            decode=_decode_permissions,
        )
    if backend != "memory":
        raise ConfigurationError([f"Unknown cache backend: {backend}"])
    return PermissionCache(config.security.cache_timeout)


class PermissionGate:
    """Authorization engine facade."""

    def __init__(
        self,
        config: PermissionConfig,
        store: PermissionStore,
        cache=None,
        audit_sink: Optional[AuditSink] = None,
        registry: Optional[RouteRequirementRegistry] = None,
    ):
        self.config = config
        self.store = store
        self.audit_sink = audit_sink if audit_sink is not None else NullAuditSink()
        audit_enabled = config.security.enable_audit_log

        self.hierarchy = RoleHierarchyResolver(store)
        self.engine = PermissionResolutionEngine(store, cache)
        self.authorizer = RouteAuthorizer(
            store,
            self.engine,
            strategy=config.permissions.permission_strategy,
            public_routes=config.permissions.public_routes,
            admin_role=config.permissions.admin_role,
            audit_sink=self.audit_sink,
            audit_enabled=audit_enabled,
            registry=registry,
        )
        self.grants = GrantService(store, self.engine, self.audit_sink, audit_enabled)

    @classmethod
    def from_settings(cls, settings: Settings, session_factory: Callable[[], Session]) -> "PermissionGate":
        """Build a gate over the SQL store, with the configured cache backend."""
        config = settings.permission_config()
        return cls(
            config,
            SqlAlchemyPermissionStore(session_factory),
            cache=build_cache(config, settings.CACHE_BACKEND, settings.REDIS_URL),
            audit_sink=SqlAlchemyAuditSink(session_factory),
        )

    @property
    def registry(self) -> RouteRequirementRegistry:
        return self.authorizer.registry

    def initialize(self) -> None:
        """Build the configured role hierarchy, if there is one."""
        if self.config.role_hierarchy:
            self.rebuild_hierarchy(self.config.role_hierarchy)

    # ---- authorization ----
    def authorize(
        self,
        route: str,
        method: str,
        user_id: str,
        required_permission_names: Optional[Sequence[str]] = None,
        strategy: Optional[CombineStrategy] = None,
    ) -> AuthorizationDecision:
        return self.authorizer.authorize(route, method, user_id, required_permission_names, strategy)

    def get_effective_permissions(self, user_id: str) -> List[Permission]:
        return self.engine.get_user_permissions(user_id)

    def validate_user_permissions(
        self, user_id: str, required_names: Sequence[str], strategy: CombineStrategy = CombineStrategy.AND,
    ) -> bool:
        return self.engine.validate_user_permissions(user_id, required_names, strategy)

    def invalidate_user(self, user_id: str) -> None:
        self.engine.invalidate_user(user_id)

    def invalidate_all(self) -> None:
        self.engine.invalidate_all()

    # ---- role hierarchy ----
    def validate_hierarchy_spec(self, spec: Mapping[str, Any]) -> None:
        """Raise ConfigurationError if the hierarchy is malformed, cyclic or mis-leveled."""
        self.hierarchy.validate_hierarchy(coerce_hierarchy(spec))

    def hierarchy_errors(self, spec: Mapping[str, Any]) -> List[str]:
        try:
            return hierarchy_errors(coerce_hierarchy(spec))
        except ConfigurationError as e:
            return e.errors

    def rebuild_hierarchy(self, spec: Mapping[str, Any], actor_id: Optional[str] = None) -> None:
        """Validate and install a new hierarchy; the previous tree keeps serving on failure.

        A rebuild made on behalf of ``actor_id`` is recorded as a modify event.
        """
        roles = coerce_hierarchy(spec)
        root = self.hierarchy.build_tree(roles, refresh=True)
        if actor_id is None or not self.config.security.enable_audit_log:
            return
        try:
            self.audit_sink.record_modification(
                actor_id, "role_hierarchy", {"roles": sorted(roles), "root": root.role},
            )
        except Exception:
            logger.exception("Failed to audit hierarchy rebuild by %s", actor_id)

    def inherited_permissions(self, role: str) -> set:
        return self.hierarchy.inherited_permissions(role)

    def get_role_permissions(self, role: str) -> List[Permission]:
        return self.hierarchy.inherited_permission_records(role)

    def role_has_permission(self, role: str, permission_id: PermissionId) -> bool:
        return permission_id in self.hierarchy.inherited_permissions(role)
