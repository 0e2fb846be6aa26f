"""Tests for the SQLAlchemy store and audit sink against in-memory SQLite."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import permgate.models  # noqa: F401
from conftest import make_config
from permgate.core.exceptions import AuditError, StoreError
from permgate.db.base import Base
from permgate.db.seeds.seed_roles import DEFAULT_HIERARCHY, seed_roles
from permgate.schemas.schemas import AuditAction, PermissionStrategy
from permgate.services.audit_service import SqlAlchemyAuditSink
from permgate.services.gate import PermissionGate, build_cache
from permgate.services.store import SqlAlchemyPermissionStore


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def seeded(session_factory):
    with session_factory() as db:
        seed_roles(db)
    return session_factory


@pytest.fixture
def sql_store(seeded):
    return SqlAlchemyPermissionStore(seeded)


def names(permissions):
    return [p.name for p in permissions]


# ========== Store reads ==========

def test_role_lookup_returns_own_and_assigned_permissions(sql_store):
    assert names(sql_store.find_permissions_by_role_name("manager")) == [
        "manager", "reports.view", "reports.export",
    ]
    assert sql_store.find_permissions_by_role_name("contractor") == []


def test_seeding_twice_does_not_duplicate(seeded, sql_store):
    with seeded() as db:
        seed_roles(db)
    assert names(sql_store.find_permissions_by_role_name("user")) == ["user", "profile.view"]


def test_find_permissions_by_ids(sql_store):
    view = sql_store.find_permission_by_name("reports.view")
    export = sql_store.find_permission_by_name("reports.export")

    assert names(sql_store.find_permissions_by_ids([export.id, view.id])) == ["reports.view", "reports.export"]
    assert sql_store.find_permissions_by_ids([]) == []
    assert sql_store.find_permission_by_name("missing") is None


def test_grant_and_revoke(sql_store):
    view = sql_store.find_permission_by_name("reports.view")

    grant = sql_store.grant_permission("42", view.id)
    assert grant.user_id == "42"
    assert grant.expires_at is None
    assert [g.permission_id for g in sql_store.find_active_grants_for_user("42")] == [view.id]

    assert sql_store.revoke_permission("42", view.id) == 1
    assert sql_store.find_active_grants_for_user("42") == []
    assert sql_store.revoke_permission("42", view.id) == 0


def test_regrant_refreshes_expiry_instead_of_duplicating(sql_store):
    view = sql_store.find_permission_by_name("reports.view")
    expires = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)

    sql_store.grant_permission("42", view.id)
    sql_store.grant_permission("42", view.id, expires)

    [grant] = sql_store.find_active_grants_for_user("42")
    assert grant.expires_at == expires.replace(tzinfo=None)
    assert grant.is_effective(datetime(2029, 12, 31, tzinfo=timezone.utc))
    assert not grant.is_effective(expires)


def test_route_bindings_match_method_or_wildcard(sql_store):
    view = sql_store.find_permission_by_name("reports.view")
    export = sql_store.find_permission_by_name("reports.export")
    sql_store.bind_route("/reports", "*", view.id)
    sql_store.bind_route("/reports", "post", export.id)

    assert [b.permission_id for b in sql_store.find_active_route_bindings("/reports", "GET")] == [view.id]
    assert [b.permission_id for b in sql_store.find_active_route_bindings("/reports", "post")] == [
        view.id, export.id,
    ]
    assert sql_store.find_active_route_bindings("/other", "GET") == []


def test_create_and_assign_permission(sql_store):
    audit = sql_store.create_permission("audit.read", "Read the audit trail", 50)
    sql_store.assign_role_permission("manager", audit.id)
    sql_store.assign_role_permission("manager", audit.id)

    assert names(sql_store.find_permissions_by_role_name("manager")).count("audit.read") == 1


def test_backend_failure_raises_store_error(engine, sql_store):
    Base.metadata.drop_all(bind=engine)

    with pytest.raises(StoreError) as exc:
        sql_store.find_active_grants_for_user("42")
    assert exc.value.operation == "find_active_grants_for_user"


# ========== Audit sink ==========

@pytest.fixture
def sql_audit(seeded):
    return SqlAlchemyAuditSink(seeded)


def test_audit_log_round_trip(sql_audit):
    event = sql_audit.log("42", AuditAction.check, "/reports", False, {"method": "GET"})

    assert event.id is not None
    assert event.metadata == {"method": "GET"}
    assert event.created_at is not None


def test_audit_query_filters(sql_audit):
    sql_audit.record_check("42", "/reports", True, {"method": "GET"})
    sql_audit.record_check("42", "/admin", False)
    sql_audit.record_check("7", "/reports", True)
    sql_audit.record_grant_change("1", "reports.view", AuditAction.grant, "42")
    sql_audit.record_modification("1", "reports.view", {"field": "description"})

    assert len(sql_audit.query_logs()) == 5
    assert [e.target for e in sql_audit.query_logs(user_id="42")] == ["/admin", "/reports"]
    assert [e.user_id for e in sql_audit.query_logs(result=False)] == ["42"]
    assert [e.user_id for e in sql_audit.query_logs(target="/reports")] == ["7", "42"]

    [change] = sql_audit.query_logs(action=AuditAction.grant)
    assert change.metadata == {"target_user_id": "42"}

    assert len(sql_audit.query_logs(limit=2)) == 2
    assert len(sql_audit.query_logs(limit=2, offset=4)) == 1
    assert sql_audit.query_logs(end=datetime(2000, 1, 1)) == []


def test_audit_rejects_non_grant_action(sql_audit):
    with pytest.raises(ValueError):
        sql_audit.record_grant_change("1", "reports.view", AuditAction.check, "42")


def test_audit_failure_raises_audit_error(engine, sql_audit):
    Base.metadata.drop_all(bind=engine)
    with pytest.raises(AuditError):
        sql_audit.record_check("42", "/reports", True)


# ========== Gate over the SQL store ==========

@pytest.fixture
def sql_gate(seeded):
    config = make_config(PermissionStrategy.whitelist)
    gate = PermissionGate(
        config,
        SqlAlchemyPermissionStore(seeded),
        cache=build_cache(config),
        audit_sink=SqlAlchemyAuditSink(seeded),
    )
    gate.rebuild_hierarchy(DEFAULT_HIERARCHY)
    return gate


def test_default_hierarchy_inheritance(sql_gate):
    assert set(names(sql_gate.get_role_permissions("admin"))) == {
        "admin", "users.manage", "permissions.manage",
        "manager", "reports.view", "reports.export",
        "user", "profile.view",
    }
    assert set(names(sql_gate.get_role_permissions("user"))) == {"user", "profile.view"}


def test_end_to_end_grant_and_authorize(sql_gate):
    store = sql_gate.store
    view = store.find_permission_by_name("reports.view")
    store.bind_route("/reports", "GET", view.id)

    assert sql_gate.authorize("/reports", "GET", "42").allowed is False

    sql_gate.grants.grant("1", "42", "reports.view", datetime.now(timezone.utc) + timedelta(hours=1))
    assert sql_gate.authorize("/reports", "GET", "42").allowed is True

    sql_gate.grants.revoke("1", "42", "reports.view")
    assert sql_gate.authorize("/reports", "GET", "42").allowed is False

    actions = [e.action for e in sql_gate.audit_sink.query_logs(user_id="1")]
    assert actions == [AuditAction.revoke, AuditAction.grant]
    checks = sql_gate.audit_sink.query_logs(user_id="42", action=AuditAction.check)
    assert [e.result for e in checks] == [False, True, False]


def test_admin_grant_bypasses_bindings(sql_gate):
    sql_gate.grants.grant("1", "root", "admin")
    assert sql_gate.authorize("/anything", "DELETE", "root").admin_bypass is True
