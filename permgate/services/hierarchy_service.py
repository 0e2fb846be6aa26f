"""Role hierarchy service — validates the declared hierarchy and resolves inherited permissions.

A role that ``inherits`` another receives that role's capabilities, so a node's
effective permissions are its own plus everything below it in the tree.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from permgate.core.exceptions import ConfigurationError, RoleNotFoundError
from permgate.schemas.schemas import Permission, PermissionId, RoleHierarchySpec
from permgate.services.store import PermissionStore

logger = logging.getLogger("permgate")

_WHITE, _GRAY, _BLACK = 0, 1, 2


@dataclass
class RoleNode:
    """A role in the built tree. Children are owned by this node only."""
    role: str
    level: int
    children: List["RoleNode"] = field(default_factory=list)
    permissions: Set[PermissionId] = field(default_factory=set)


def find_roots(spec: RoleHierarchySpec) -> List[str]:
    """Roles that no other role inherits, in declaration order."""
    inherited = {child for definition in spec.values() for child in definition.inherits}
    return [role for role in spec if role not in inherited]


def find_cycle(spec: RoleHierarchySpec) -> Optional[List[str]]:
    """Return the first cycle as a role path (first role repeated at the end), or None."""
    color = {role: _WHITE for role in spec}
    path: List[str] = []

    def visit(role: str) -> Optional[List[str]]:
        color[role] = _GRAY
        path.append(role)
        for child in spec[role].inherits:
            if child not in spec:
                continue
            if color[child] == _GRAY:
                return path[path.index(child):] + [child]
            if color[child] == _WHITE:
                cycle = visit(child)
                if cycle:
                    return cycle
        path.pop()
        color[role] = _BLACK
        return None

    for role in spec:
        if color[role] == _WHITE:
            cycle = visit(role)
            if cycle:
                return cycle
    return None


def hierarchy_errors(spec: RoleHierarchySpec) -> List[str]:
    """Collect every problem with a hierarchy spec; an empty list means it is valid."""
    if not spec:
        return ["Role hierarchy is empty"]

    errors = []
    for role, definition in spec.items():
        seen = set()
        for child in definition.inherits:
            if child in seen:
                errors.append(f"Role '{role}' lists '{child}' more than once")
            seen.add(child)
            if child not in spec:
                errors.append(f"Role '{role}' inherits undefined role '{child}'")

    cycle = find_cycle(spec)
    if cycle:
        errors.append("Cycle detected in role hierarchy: " + " -> ".join(cycle))

    for role, definition in spec.items():
        for child in definition.inherits:
            if child in spec and spec[child].level >= definition.level:
                errors.append(
                    f"Role '{role}' (level {definition.level}) cannot inherit "
                    f"'{child}' (level {spec[child].level}): inherited roles must have a lower level"
                )

    if not cycle:
        roots = find_roots(spec)
        if len(roots) > 1:
            errors.append(
                "Role hierarchy must have exactly one root role, found: " + ", ".join(roots)
            )
    return errors


def find_role_node(node: RoleNode, role: str) -> Optional[RoleNode]:
    """Depth-first search, children visited in declaration order."""
    if node.role == role:
        return node
    for child in node.children:
        found = find_role_node(child, role)
        if found is not None:
            return found
    return None


def collect_permissions(node: RoleNode) -> Set[PermissionId]:
    """Union of the node's permissions and every descendant's."""
    collected: Set[PermissionId] = set()
    stack = [node]
    while stack:
        current = stack.pop()
        collected.update(current.permissions)
        stack.extend(current.children)
    return collected


def _index_tree(root: RoleNode) -> Dict[str, RoleNode]:
    # first node in depth-first order wins, matching find_role_node
    index: Dict[str, RoleNode] = {}
    stack = [root]
    while stack:
        node = stack.pop()
        index.setdefault(node.role, node)
        stack.extend(reversed(node.children))
    return index


class RoleHierarchyResolver:
    """Builds the role tree from a hierarchy spec and answers inheritance queries.

    The tree is rebuilt off-lock and swapped in as a whole, so concurrent readers
    always see one complete tree. A rejected spec leaves the previous tree in place.
    """

    def __init__(self, store: PermissionStore):
        self._store = store
        self._lock = threading.RLock()
        self._tree: Optional[RoleNode] = None
        self._index: Dict[str, RoleNode] = {}
        self._spec: Optional[RoleHierarchySpec] = None
        self._role_permissions: Dict[str, Set[PermissionId]] = {}
        self._inherited: Dict[str, Set[PermissionId]] = {}

    @property
    def tree(self) -> Optional[RoleNode]:
        with self._lock:
            return self._tree

    @property
    def spec(self) -> Optional[RoleHierarchySpec]:
        with self._lock:
            return dict(self._spec) if self._spec is not None else None

    def validate_hierarchy(self, spec: RoleHierarchySpec) -> None:
        """Raise ConfigurationError listing every cycle, level or root problem."""
        errors = hierarchy_errors(spec)
        if errors:
            raise ConfigurationError(errors)

    def build_tree(self, spec: RoleHierarchySpec, refresh: bool = False) -> RoleNode:
        """Validate ``spec``, build its tree and make it the serving tree.

        Args:
            refresh: ignore previously cached per-role permissions and re-read
                them from the store.
        """
        try:
            self.validate_hierarchy(spec)
        except ConfigurationError as e:
            logger.warning("Rejected role hierarchy: %s", e.errors)
            raise

        with self._lock:
            known = {} if refresh else dict(self._role_permissions)

        # store reads happen here, outside the lock
        resolved: Dict[str, Set[PermissionId]] = {}
        root = self._build_node(find_roots(spec)[0], spec, known, resolved)
        index = _index_tree(root)

        with self._lock:
            self._tree = root
            self._index = index
            self._spec = dict(spec)
            self._role_permissions = resolved
            self._inherited = {}
        logger.info("Role hierarchy built: %d roles, root '%s'", len(spec), root.role)
        return root

    def _build_node(
        self,
        role: str,
        spec: RoleHierarchySpec,
        known: Dict[str, Set[PermissionId]],
        resolved: Dict[str, Set[PermissionId]],
    ) -> RoleNode:
        definition = spec[role]
        children = [self._build_node(child, spec, known, resolved) for child in definition.inherits]
        if role not in resolved:
            if role in known:
                resolved[role] = known[role]
            else:
                permissions = self._store.find_permissions_by_role_name(role)
                resolved[role] = {permission.id for permission in permissions}
        return RoleNode(
            role=role,
            level=definition.level,
            children=children,
            permissions=set(resolved[role]),
        )

    def inherited_permissions(self, role: str, tree: Optional[RoleNode] = None) -> Set[PermissionId]:
        """Permission ids of ``role`` and every role below it.

        Searches ``tree`` when given, otherwise the serving tree.

        Raises:
            RoleNotFoundError: If the role is not in the tree.
            ConfigurationError: If no tree has been built yet.
        """
        if tree is not None:
            node = find_role_node(tree, role)
            if node is None:
                raise RoleNotFoundError(role)
            return collect_permissions(node)

        with self._lock:
            if self._tree is None:
                raise ConfigurationError(["Role hierarchy not initialized"])
            cached = self._inherited.get(role)
            if cached is not None:
                return set(cached)
            node = self._index.get(role)
            if node is None:
                raise RoleNotFoundError(role)
            permissions = collect_permissions(node)
            self._inherited[role] = permissions
            return set(permissions)

    def inherited_permission_records(self, role: str) -> List[Permission]:
        """Like inherited_permissions, resolved to permission records."""
        return self._store.find_permissions_by_ids(sorted(self.inherited_permissions(role), key=str))

    def role_level(self, role: str) -> int:
        with self._lock:
            node = self._index.get(role)
        if node is None:
            raise RoleNotFoundError(role)
        return node.level

    def clear_cache(self) -> None:
        """Drop the tree and every cached per-role permission set."""
        with self._lock:
            self._tree = None
            self._index = {}
            self._spec = None
            self._role_permissions = {}
            self._inherited = {}
