"""FastAPI dependencies that put routes behind the permission gate."""

import logging
import threading
from typing import Optional, Sequence, Set, Tuple

from fastapi import Depends, Request

from permgate.core.exceptions import PermissionDeniedError, StoreError, service_unavailable, unauthorized
from permgate.core.security import get_optional_user_id
from permgate.schemas.schemas import AuthorizationDecision, CombineStrategy
from permgate.services.gate import PermissionGate

logger = logging.getLogger("permgate")


def get_gate(request: Request) -> PermissionGate:
    """The gate built at startup and kept on the application state."""
    return request.app.state.gate


class RequirePermission:
    """Dependency that authorizes the current route for the bearer-token user.

    The permission names are checked on top of the route bindings stored in the
    database. They are also added to the gate's route registry, once per route
    template, next to the requirements of any other dependency on that route.

    Args:
        permissions: required permission names; empty means route bindings
            plus whatever the registry holds for the route.
        strategy: AND (all names) or OR (any name).
        fallback: "allow" lets anonymous callers through, "deny" rejects them.
    """

    def __init__(
        self,
        permissions: Sequence[str] = (),
        strategy: CombineStrategy = CombineStrategy.AND,
        fallback: str = "deny",
    ):
        if fallback not in ("allow", "deny"):
            raise ValueError("fallback must be 'allow' or 'deny'")
        self.permissions = tuple(permissions)
        self.strategy = CombineStrategy(strategy)
        self.fallback = fallback
        self._registered: Set[Tuple[int, str, str]] = set()
        self._lock = threading.Lock()

    def required_names(self, gate: PermissionGate) -> Tuple[str, ...]:
        return self.permissions

    def _register(self, gate: PermissionGate, path: str, method: str, names: Tuple[str, ...]) -> None:
        key = (id(gate.registry), path, method)
        with self._lock:
            if key in self._registered:
                return
            self._registered.add(key)
        gate.registry.add(path, method, names, self.strategy)

    def __call__(
        self,
        request: Request,
        user_id: Optional[str] = Depends(get_optional_user_id),
    ) -> AuthorizationDecision:
        gate = get_gate(request)
        route = request.scope.get("route")
        path = getattr(route, "path", request.url.path)
        method = request.method
        names = self.required_names(gate)

        if names:
            self._register(gate, path, method, names)

        if user_id is None:
            if self.fallback == "allow":
                decision = AuthorizationDecision(
                    allowed=True,
                    strategy=gate.config.permissions.permission_strategy,
                    reason="anonymous fallback",
                )
                request.state.authorization = decision
                return decision
            raise unauthorized()

        try:
            decision = gate.authorize(path, method, user_id, names or None, self.strategy if names else None)
        except StoreError as e:
            # undetermined is treated as denied
            logger.error("Authorization of %s %s for user %s failed: %s", method, path, user_id, e.message)
            raise service_unavailable()

        request.state.authorization = decision
        if not decision.allowed:
            raise PermissionDeniedError(user_id, f"{method} {path}", decision.reason)
        return decision


class RequireAdmin(RequirePermission):
    """Requires the admin role permission configured on the gate."""

    def __init__(self):
        super().__init__()

    def required_names(self, gate: PermissionGate) -> Tuple[str, ...]:
        return (gate.config.permissions.admin_role,)
