"""Tests for the role hierarchy resolver."""

import pytest

from permgate.core.exceptions import ConfigurationError, RoleNotFoundError
from permgate.schemas.schemas import parse_hierarchy
from permgate.services.hierarchy_service import (
    RoleHierarchyResolver,
    RoleNode,
    collect_permissions,
    find_cycle,
    find_roots,
    hierarchy_errors,
)


def spec(raw):
    return parse_hierarchy(raw)


@pytest.fixture
def resolver(store):
    return RoleHierarchyResolver(store)


@pytest.fixture
def seeded(store):
    store.permission("admin")
    store.permission("manager")
    store.permission("user")
    store.assign("admin", "users.manage")
    store.assign("manager", "reports.view")
    store.assign("user", "profile.view")
    return store


# ========== Validation ==========

def test_valid_hierarchy_has_no_errors(resolver, company_hierarchy):
    resolver.validate_hierarchy(spec(company_hierarchy))
    assert hierarchy_errors(spec(company_hierarchy)) == []


def test_back_edge_is_reported_as_cycle_naming_both_roles(resolver):
    cyclic = spec({
        "a": {"level": 10, "inherits": ["b"]},
        "b": {"level": 5, "inherits": ["a"]},
    })
    with pytest.raises(ConfigurationError) as exc:
        resolver.validate_hierarchy(cyclic)

    cycle_errors = [e for e in exc.value.errors if e.startswith("Cycle detected")]
    assert len(cycle_errors) == 1
    assert "a -> b -> a" in cycle_errors[0]


def test_self_inheritance_is_a_cycle():
    assert find_cycle(spec({"root": {"level": 1, "inherits": ["root"]}})) == ["root", "root"]


def test_find_cycle_returns_only_the_looping_part():
    cyclic = spec({
        "top": {"level": 9, "inherits": ["x"]},
        "x": {"level": 5, "inherits": ["y"]},
        "y": {"level": 3, "inherits": ["x"]},
    })
    assert find_cycle(cyclic) == ["x", "y", "x"]


def test_child_with_higher_level_names_both_roles():
    errors = hierarchy_errors(spec({
        "manager": {"level": 50, "inherits": ["admin"]},
        "admin": {"level": 100},
    }))
    assert len(errors) == 1
    assert "'manager'" in errors[0] and "'admin'" in errors[0]


def test_equal_levels_are_rejected():
    errors = hierarchy_errors(spec({
        "lead": {"level": 40, "inherits": ["member"]},
        "member": {"level": 40},
    }))
    assert any("cannot inherit" in e for e in errors)


def test_undefined_inherited_role_is_rejected():
    errors = hierarchy_errors(spec({"admin": {"level": 100, "inherits": ["ghost"]}}))
    assert errors == ["Role 'admin' inherits undefined role 'ghost'"]


def test_duplicate_inherited_role_is_rejected():
    errors = hierarchy_errors(spec({
        "admin": {"level": 100, "inherits": ["user", "user"]},
        "user": {"level": 1},
    }))
    assert "Role 'admin' lists 'user' more than once" in errors


def test_multiple_roots_are_a_configuration_error(resolver):
    forest = spec({
        "admin": {"level": 100, "inherits": ["user"]},
        "user": {"level": 1},
        "auditor": {"level": 30},
    })
    with pytest.raises(ConfigurationError) as exc:
        resolver.validate_hierarchy(forest)
    assert "admin, auditor" in exc.value.message


def test_empty_hierarchy_is_rejected():
    assert hierarchy_errors({}) == ["Role hierarchy is empty"]


def test_find_roots_keeps_declaration_order(company_hierarchy):
    assert find_roots(spec(company_hierarchy)) == ["admin"]


# ========== Tree building and inheritance ==========

def test_build_tree_links_children_in_spec_order(resolver, seeded, company_hierarchy):
    root = resolver.build_tree(spec(company_hierarchy))

    assert root.role == "admin"
    assert [child.role for child in root.children] == ["manager"]
    assert root.children[0].children[0].role == "user"
    assert root.children[0].children[0].children == []
    assert resolver.tree is root


def test_admin_inherits_manager_permission_but_user_does_not(resolver, seeded, company_hierarchy):
    resolver.build_tree(spec(company_hierarchy))
    reports_view = seeded.permission("reports.view").id

    assert reports_view in resolver.inherited_permissions("admin")
    assert reports_view in resolver.inherited_permissions("manager")
    assert reports_view not in resolver.inherited_permissions("user")


def test_leaf_role_has_exactly_its_own_permissions(resolver, seeded, company_hierarchy):
    resolver.build_tree(spec(company_hierarchy))
    expected = {seeded.permission("user").id, seeded.permission("profile.view").id}

    assert resolver.inherited_permissions("user") == expected


def test_root_inherits_union_of_every_node(resolver, seeded, company_hierarchy):
    root = resolver.build_tree(spec(company_hierarchy))

    union = set()
    stack = [root]
    while stack:
        node = stack.pop()
        union |= node.permissions
        stack.extend(node.children)

    assert resolver.inherited_permissions("admin") == union
    assert union == set(seeded.permissions)


def test_inherited_permissions_on_explicit_tree():
    tree = RoleNode("top", 10, [RoleNode("leaf", 1, [], {"b"})], {"a"})
    resolver = RoleHierarchyResolver(store=None)

    assert resolver.inherited_permissions("top", tree) == {"a", "b"}
    assert resolver.inherited_permissions("leaf", tree) == {"b"}
    with pytest.raises(RoleNotFoundError):
        resolver.inherited_permissions("missing", tree)


def test_unknown_role_raises_role_not_found(resolver, seeded, company_hierarchy):
    resolver.build_tree(spec(company_hierarchy))
    with pytest.raises(RoleNotFoundError) as exc:
        resolver.inherited_permissions("intern")
    assert exc.value.role == "intern"


def test_query_before_build_is_a_configuration_error(resolver):
    with pytest.raises(ConfigurationError):
        resolver.inherited_permissions("admin")


def test_diamond_hierarchy_reads_shared_role_once(resolver, store):
    store.assign("base", "read")
    diamond = spec({
        "top": {"level": 10, "inherits": ["left", "right"]},
        "left": {"level": 5, "inherits": ["base"]},
        "right": {"level": 5, "inherits": ["base"]},
        "base": {"level": 1},
    })
    resolver.build_tree(diamond)

    assert store.permission("read").id in resolver.inherited_permissions("top")
    assert store.calls["find_permissions_by_role_name"] == 4


def test_role_permissions_are_cached_across_rebuilds(resolver, seeded, company_hierarchy):
    resolver.build_tree(spec(company_hierarchy))
    resolver.build_tree(spec(company_hierarchy))
    assert seeded.calls["find_permissions_by_role_name"] == 3

    resolver.build_tree(spec(company_hierarchy), refresh=True)
    assert seeded.calls["find_permissions_by_role_name"] == 6


def test_rejected_rebuild_keeps_serving_previous_tree(resolver, seeded, company_hierarchy):
    original = resolver.build_tree(spec(company_hierarchy))
    cyclic = spec({
        "admin": {"level": 100, "inherits": ["user"]},
        "user": {"level": 1, "inherits": ["admin"]},
    })

    with pytest.raises(ConfigurationError):
        resolver.build_tree(cyclic)

    assert resolver.tree is original
    assert seeded.permission("reports.view").id in resolver.inherited_permissions("admin")


def test_clear_cache_drops_tree_and_role_permissions(resolver, seeded, company_hierarchy):
    resolver.build_tree(spec(company_hierarchy))
    resolver.clear_cache()

    assert resolver.tree is None
    with pytest.raises(ConfigurationError):
        resolver.inherited_permissions("admin")

    resolver.build_tree(spec(company_hierarchy))
    assert seeded.calls["find_permissions_by_role_name"] == 6


def test_inherited_permission_records_resolves_ids(resolver, seeded, company_hierarchy):
    resolver.build_tree(spec(company_hierarchy))
    names = {p.name for p in resolver.inherited_permission_records("manager")}
    assert names == {"manager", "reports.view", "user", "profile.view"}


def test_role_level(resolver, seeded, company_hierarchy):
    resolver.build_tree(spec(company_hierarchy))
    assert resolver.role_level("manager") == 50
    with pytest.raises(RoleNotFoundError):
        resolver.role_level("nobody")


def test_collect_permissions_walks_whole_subtree():
    tree = RoleNode("a", 3, [RoleNode("b", 2, [RoleNode("c", 1, [], {3})], {2})], {1})
    assert collect_permissions(tree) == {1, 2, 3}
    assert collect_permissions(tree.children[0]) == {2, 3}
