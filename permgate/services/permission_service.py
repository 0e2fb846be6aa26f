"""Permission service — resolves a user's effective permissions through the cache."""

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Sequence

from permgate.core.exceptions import CacheError
from permgate.schemas.schemas import CombineStrategy, Permission
from permgate.services.store import PermissionStore

logger = logging.getLogger("permgate")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def names_satisfied(
    permissions: Iterable[Permission],
    required_names: Sequence[str],
    strategy: CombineStrategy = CombineStrategy.AND,
) -> bool:
    """Test required permission names against held permissions.

    AND needs every name (vacuously true when nothing is required); OR needs at
    least one (false when nothing is required).
    """
    held = {permission.name for permission in permissions}
    if CombineStrategy(strategy) == CombineStrategy.OR:
        return any(name in held for name in required_names)
    return all(name in held for name in required_names)


class PermissionResolutionEngine:
    """Produces effective permission sets from direct user grants.

    The engine does not watch the store: every path that grants, revokes or edits
    permissions must call ``invalidate_user`` (or ``invalidate_all``).
    """

    def __init__(
        self,
        store: PermissionStore,
        cache=None,
        now: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._cache = cache
        self._now = now

    @property
    def caching_enabled(self) -> bool:
        return self._cache is not None

    def get_user_permissions(self, user_id: str) -> List[Permission]:
        """Active, unexpired permissions granted to the user.

        Raises:
            StoreError: If the store cannot be read. Never reported as "no permissions".
        """
        key = str(user_id)
        generation = None
        if self._cache is not None:
            try:
                cached, found = self._cache.get(key)
                if found:
                    return list(cached)
                # taken before the store read so a concurrent invalidation wins
                generation = self._cache.generation(key)
            except CacheError as e:
                logger.warning("Permission cache read failed for user %s: %s", key, e.message)

        permissions = self._load_user_permissions(key)

        if generation is not None:
            try:
                if not self._cache.set_if_generation(key, permissions, generation):
                    logger.debug("Not caching permissions for user %s: invalidated during load", key)
            except CacheError as e:
                logger.warning("Permission cache write failed for user %s: %s", key, e.message)
        return list(permissions)

    def _load_user_permissions(self, user_id: str) -> List[Permission]:
        now = self._now()
        grants = [
            grant for grant in self._store.find_active_grants_for_user(user_id)
            if grant.is_effective(now)
        ]
        if not grants:
            return []
        ids = list(dict.fromkeys(grant.permission_id for grant in grants))
        return [p for p in self._store.find_permissions_by_ids(ids) if p.is_active]

    def invalidate_user(self, user_id: str) -> None:
        """Forget the cached permissions of one user."""
        if self._cache is not None:
            self._cache.invalidate(str(user_id))
            logger.debug("Invalidated cached permissions for user %s", user_id)

    def invalidate_all(self) -> None:
        if self._cache is not None:
            self._cache.invalidate_all()

    def validate_user_permissions(
        self,
        user_id: str,
        required_names: Sequence[str],
        strategy: CombineStrategy = CombineStrategy.AND,
    ) -> bool:
        """Check permission names (not ids) against the user's effective permissions."""
        return names_satisfied(self.get_user_permissions(user_id), required_names, strategy)

    def has_permission(self, user_id: str, name: str) -> bool:
        return self.validate_user_permissions(user_id, [name])
