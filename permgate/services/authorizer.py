"""Route authorizer — decides access to a route + method for a user."""

import logging
import threading
from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from permgate.schemas.schemas import (
    AuthorizationDecision,
    CombineStrategy,
    PermissionStrategy,
)
from permgate.services.audit_service import AuditSink
from permgate.services.permission_service import PermissionResolutionEngine, names_satisfied
from permgate.services.store import PermissionStore

logger = logging.getLogger("permgate")


@dataclass(frozen=True)
class RouteRequirement:
    names: Tuple[str, ...]
    strategy: CombineStrategy = CombineStrategy.AND


class RouteRequirementRegistry:
    """Explicit route -> required permission names table.

    Endpoints declare their requirements here instead of through decorator
    metadata. Method ``*`` applies to every verb of the route. A route may carry
    several requirements; all of them must hold.
    """

    def __init__(self):
        self._requirements: Dict[Tuple[str, str], Tuple[RouteRequirement, ...]] = {}
        self._lock = threading.Lock()

    def register(
        self,
        route: str,
        method: str,
        names: Iterable[str],
        strategy: CombineStrategy = CombineStrategy.AND,
    ) -> RouteRequirement:
        """Replace every requirement of ``route`` + ``method`` with this one."""
        requirement = RouteRequirement(tuple(names), CombineStrategy(strategy))
        with self._lock:
            self._requirements[(route, method.upper())] = (requirement,)
        return requirement

    def add(
        self,
        route: str,
        method: str,
        names: Iterable[str],
        strategy: CombineStrategy = CombineStrategy.AND,
    ) -> RouteRequirement:
        """Add a requirement next to the existing ones; adding it twice is a no-op."""
        requirement = RouteRequirement(tuple(names), CombineStrategy(strategy))
        key = (route, method.upper())
        with self._lock:
            existing = self._requirements.get(key, ())
            if requirement not in existing:
                self._requirements[key] = existing + (requirement,)
        return requirement

    def unregister(self, route: str, method: str) -> None:
        with self._lock:
            self._requirements.pop((route, method.upper()), None)

    def lookup(self, route: str, method: str) -> Tuple[RouteRequirement, ...]:
        """Requirements for the exact method, else those declared for ``*``."""
        with self._lock:
            requirements = self._requirements.get((route, method.upper()))
            if requirements is None:
                requirements = self._requirements.get((route, "*"), ())
        return requirements

    def __len__(self) -> int:
        with self._lock:
            return len(self._requirements)


def is_public_route(route: str, patterns: Iterable[str]) -> bool:
    """Exact match, or shell-style match for patterns such as ``/docs*``."""
    for pattern in patterns:
        if route == pattern:
            return True
        if any(ch in pattern for ch in "*?[") and fnmatchcase(route, pattern):
            return True
    return False


def _sorted_ids(ids) -> List:
    return sorted(ids, key=str)


class RouteAuthorizer:
    """Applies public routes, admin bypass, route bindings and explicit requirements.

    Decision order:
      1. public route -> allow
      2. user holds the admin role permission -> allow
      3. no active route binding -> allow under blacklist, deny under whitelist
      4. bindings exist -> the user must hold every bound permission (always AND)
      5. explicit required names (argument or registry) -> second gate, AND/OR
    """

    def __init__(
        self,
        store: PermissionStore,
        engine: PermissionResolutionEngine,
        strategy: PermissionStrategy = PermissionStrategy.whitelist,
        public_routes: Sequence[str] = (),
        admin_role: str = "admin",
        audit_sink: Optional[AuditSink] = None,
        audit_enabled: bool = True,
        audit_public_checks: bool = False,
        registry: Optional[RouteRequirementRegistry] = None,
    ):
        self._store = store
        self._engine = engine
        self.strategy = PermissionStrategy(strategy)
        self.public_routes = list(public_routes)
        self.admin_role = admin_role
        self._audit_sink = audit_sink
        self.audit_enabled = audit_enabled and audit_sink is not None
        self.audit_public_checks = audit_public_checks
        self.registry = registry if registry is not None else RouteRequirementRegistry()

    def authorize(
        self,
        route: str,
        method: str,
        user_id: str,
        required_permission_names: Optional[Sequence[str]] = None,
        strategy: Optional[CombineStrategy] = None,
    ) -> AuthorizationDecision:
        """Decide whether ``user_id`` may call ``method`` on ``route``.

        Raises:
            StoreError: If permissions or bindings cannot be read. The caller
                decides how to fail (the HTTP adapter denies).
        """
        method = method.upper()

        if is_public_route(route, self.public_routes):
            decision = AuthorizationDecision(
                allowed=True, strategy=self.strategy, public=True, reason="public route",
            )
            if self.audit_public_checks:
                self._audit(user_id, route, method, decision)
            return decision

        requirements = self._resolve_requirements(route, method, required_permission_names, strategy)
        names = list(dict.fromkeys(name for requirement in requirements for name in requirement.names))
        # several requirements are all enforced, so together they combine as AND
        combine = requirements[0].strategy if len(requirements) == 1 else CombineStrategy.AND

        user_permissions = self._engine.get_user_permissions(user_id)
        held_ids = {permission.id for permission in user_permissions}

        if any(permission.name == self.admin_role for permission in user_permissions):
            decision = AuthorizationDecision(
                allowed=True,
                strategy=self.strategy,
                user_permission_ids=held_ids,
                required_permission_names=names,
                combine_strategy=combine if names else None,
                admin_bypass=True,
                reason="admin role",
            )
            self._audit(user_id, route, method, decision)
            return decision

        bindings = self._store.find_active_route_bindings(route, method)
        required_ids = {binding.permission_id for binding in bindings}

        if not bindings:
            allowed = self.strategy == PermissionStrategy.blacklist
            reason = (
                "no route binding, blacklist allows"
                if allowed else "no route binding, whitelist denies"
            )
        else:
            missing = required_ids - held_ids
            allowed = not missing
            reason = "route bindings satisfied" if allowed else "missing bound permissions"

        if allowed and requirements:
            allowed = all(
                names_satisfied(user_permissions, requirement.names, requirement.strategy)
                for requirement in requirements
            )
            reason = (
                f"required permissions satisfied ({combine.value})"
                if allowed else f"required permissions not satisfied ({combine.value})"
            )

        decision = AuthorizationDecision(
            allowed=allowed,
            strategy=self.strategy,
            required_permission_ids=required_ids,
            user_permission_ids=held_ids,
            required_permission_names=names,
            combine_strategy=combine if names else None,
            reason=reason,
        )
        if not allowed:
            logger.debug("Denied %s %s for user %s: %s", method, route, user_id, reason)
        self._audit(user_id, route, method, decision)
        return decision

    def _resolve_requirements(
        self,
        route: str,
        method: str,
        names: Optional[Sequence[str]],
        strategy: Optional[CombineStrategy],
    ) -> Tuple[RouteRequirement, ...]:
        """Explicit names from the caller, otherwise what the registry holds."""
        if names:
            return (RouteRequirement(tuple(names), CombineStrategy(strategy or CombineStrategy.AND)),)
        requirements = tuple(r for r in self.registry.lookup(route, method) if r.names)
        if strategy:
            requirements = tuple(
                RouteRequirement(requirement.names, CombineStrategy(strategy))
                for requirement in requirements
            )
        return requirements

    def _audit(self, user_id: str, route: str, method: str, decision: AuthorizationDecision) -> None:
        if not self.audit_enabled:
            return
        metadata = {
            "method": method,
            "strategy": decision.strategy.value,
            "required_permissions": _sorted_ids(decision.required_permission_ids),
            "user_permissions": _sorted_ids(decision.user_permission_ids),
            "required_names": decision.required_permission_names,
            "admin_bypass": decision.admin_bypass,
            "public": decision.public,
        }
        try:
            self._audit_sink.record_check(user_id, route, decision.allowed, metadata)
        except Exception:
            # audit never changes the outcome
            logger.exception("Failed to record permission check for user %s on %s", user_id, route)
