"""Tests for the row-level security policy model (Python evaluation and rendered SQL)."""
import uuid
from types import SimpleNamespace

import pytest

from orgscope.core.config import settings
from orgscope.db.enums import Role
from orgscope.db.rls import (
    POLICIES,
    Action,
    PrincipalScope,
    Reach,
    TablePolicy,
    can_access,
    policy_predicate,
    render_function_sql,
    render_grant_sql,
    render_policy_sql,
    render_rls_sql,
    render_role_sql,
)

SITE_A = uuid.uuid4()
SITE_B = uuid.uuid4()
GROUP_A1 = uuid.uuid4()
GROUP_A2 = uuid.uuid4()
GROUP_B1 = uuid.uuid4()


def _scope(role: Role | None, site=None, group=None, principal_id="user_1", email=None):
    return PrincipalScope(
        principal_id=principal_id, role=role, site_id=site, small_group_id=group, email=email
    )


NATIONAL = _scope(Role.NATIONAL_COORDINATOR, principal_id="nc")
SITE_COORD_A = _scope(Role.SITE_COORDINATOR, site=SITE_A, principal_id="sc_a")
LEADER_A1 = _scope(Role.SMALL_GROUP_LEADER, site=SITE_A, group=GROUP_A1, principal_id="sgl_a1")
MEMBER_A1 = _scope(Role.MEMBER, site=SITE_A, group=GROUP_A1, principal_id="m_a1", email="m@example.org")


def _row(site=None, group=None, **extra):
    return {"site_id": site, "small_group_id": group, **extra}


# =============================================================================
# Python evaluation
# =============================================================================

def test_no_scope_denies_everything():
    for table in POLICIES:
        for action in Action:
            assert not can_access(None, table, action, _row(SITE_A, GROUP_A1))


def test_national_coordinator_is_unrestricted():
    for table in ("sites", "small_groups", "activities", "reports", "financial_transactions"):
        assert can_access(NATIONAL, table, Action.SELECT, _row(SITE_B, GROUP_B1, id=SITE_B))
        assert can_access(NATIONAL, table, Action.DELETE, _row(SITE_B, GROUP_B1, id=SITE_B))


def test_site_coordinator_stays_in_their_site():
    for table in ("activities", "reports", "financial_transactions"):
        for action in Action:
            assert can_access(SITE_COORD_A, table, action, _row(SITE_A, GROUP_A2))
            assert not can_access(SITE_COORD_A, table, action, _row(SITE_B, GROUP_B1))


def test_site_coordinator_sees_only_own_site_row():
    assert can_access(SITE_COORD_A, "sites", Action.SELECT, {"id": SITE_A})
    assert not can_access(SITE_COORD_A, "sites", Action.SELECT, {"id": SITE_B})
    assert not can_access(SITE_COORD_A, "sites", Action.INSERT, {"id": SITE_A})


def test_group_roles_are_restricted_to_their_group():
    assert can_access(LEADER_A1, "activities", Action.INSERT, _row(SITE_A, GROUP_A1))
    assert not can_access(LEADER_A1, "activities", Action.INSERT, _row(SITE_A, GROUP_A2))
    assert can_access(MEMBER_A1, "reports", Action.SELECT, _row(SITE_A, GROUP_A1))
    assert not can_access(MEMBER_A1, "reports", Action.SELECT, _row(SITE_A, GROUP_A2))
    assert not can_access(MEMBER_A1, "reports", Action.INSERT, _row(SITE_A, GROUP_A1))


def test_members_have_no_access_to_finances():
    assert not can_access(MEMBER_A1, "financial_transactions", Action.SELECT, _row(SITE_A, GROUP_A1))


def test_own_reach_uses_owner_column():
    mine = _row(SITE_A, GROUP_A1, submitted_by_id="sgl_a1")
    theirs = _row(SITE_A, GROUP_A1, submitted_by_id="someone_else")
    assert can_access(LEADER_A1, "reports", Action.UPDATE, mine)
    assert not can_access(LEADER_A1, "reports", Action.UPDATE, theirs)


def test_site_coordinator_cannot_touch_national_coordinator_rows():
    national_profile = {"id": "nc", "role": "NATIONAL_COORDINATOR", "site_id": SITE_A}
    assert can_access(SITE_COORD_A, "profiles", Action.SELECT, national_profile)
    assert not can_access(SITE_COORD_A, "profiles", Action.UPDATE, national_profile)
    assert not can_access(
        SITE_COORD_A,
        "user_invitations",
        Action.INSERT,
        {"role": "NATIONAL_COORDINATOR", "site_id": SITE_A},
    )
    assert can_access(
        SITE_COORD_A, "user_invitations", Action.INSERT, {"role": "MEMBER", "site_id": SITE_A}
    )


def test_member_sees_invitation_addressed_to_them():
    assert can_access(MEMBER_A1, "user_invitations", Action.SELECT, {"email": "M@example.org"})
    assert not can_access(MEMBER_A1, "user_invitations", Action.SELECT, {"email": "x@example.org"})


def test_inactive_principal_only_has_owner_actions():
    inactive = _scope(None, principal_id="new_user")
    assert can_access(inactive, "profiles", Action.SELECT, {"id": "new_user"})
    assert not can_access(inactive, "profiles", Action.SELECT, {"id": "other"})
    assert can_access(inactive, "idempotency_records", Action.INSERT, {"principal_id": "new_user"})
    assert can_access(inactive, "audit_logs", Action.INSERT, {"actor_id": "new_user"})
    assert not can_access(inactive, "audit_logs", Action.INSERT, {"actor_id": "other"})
    assert not can_access(inactive, "reports", Action.SELECT, _row(SITE_A, GROUP_A1))


def test_audit_logs_are_readable_by_national_coordinators_only():
    assert can_access(NATIONAL, "audit_logs", Action.SELECT, {"actor_id": "x"})
    assert not can_access(SITE_COORD_A, "audit_logs", Action.SELECT, {"actor_id": "sc_a"})
    for scope in (NATIONAL, SITE_COORD_A):
        assert not can_access(scope, "audit_logs", Action.UPDATE, {"actor_id": scope.principal_id})
        assert not can_access(scope, "audit_logs", Action.DELETE, {"actor_id": scope.principal_id})


def test_scope_from_inactive_profile_has_no_role():
    profile = SimpleNamespace(
        id="u1", role="SITE_COORDINATOR", status="inactive", site_id=SITE_A,
        small_group_id=None, email="u1@example.org",
    )
    scope = PrincipalScope.from_profile(profile)
    assert scope.role is None
    assert scope.site_id is None

    profile.status = "active"
    scope = PrincipalScope.from_profile(profile)
    assert scope.role == Role.SITE_COORDINATOR
    assert scope.site_id == SITE_A


def test_policy_declaration_is_validated():
    with pytest.raises(ValueError):
        TablePolicy(table="things", site_column=None, select={Role.SITE_COORDINATOR: Reach.SITE})
    with pytest.raises(ValueError):
        TablePolicy(table="things", select={Role.MEMBER: Reach.OWN})


# =============================================================================
# SQL rendering
# =============================================================================

def test_every_table_enables_row_level_security():
    statements = render_rls_sql()
    for table in POLICIES:
        assert f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY" in statements
        assert not any(f"ALTER TABLE {table} FORCE" in s for s in statements)


def test_session_functions_are_security_definer():
    functions = render_function_sql()
    assert len(functions) == 5
    for sql in functions:
        assert "SECURITY DEFINER" in sql
        assert "current_setting('app.current_user_id', true)" in sql
    # Only the id resolves for inactive profiles
    assert "p.status = 'active'" not in functions[0]
    assert all("p.status = 'active'" in sql for sql in functions[1:])


def test_predicate_shapes():
    reports_select = policy_predicate(POLICIES["reports"], Action.SELECT)
    assert "current_principal_role() = 'NATIONAL_COORDINATOR' AND (true)" in reports_select
    assert "site_id = current_principal_site_id()" in reports_select
    assert "small_group_id = current_principal_small_group_id()" in reports_select

    finances = policy_predicate(POLICIES["financial_transactions"], Action.SELECT)
    assert "'MEMBER'" not in finances

    assert policy_predicate(POLICIES["audit_logs"], Action.UPDATE) is None
    assert policy_predicate(POLICIES["audit_logs"], Action.INSERT) == "(actor_id = current_principal_id())"


def test_protected_roles_guard_writes():
    predicate = policy_predicate(POLICIES["profiles"], Action.UPDATE)
    assert "role NOT IN ('NATIONAL_COORDINATOR')" in predicate


def test_policies_target_application_role():
    statements = render_policy_sql(POLICIES["reports"])
    creates = [s for s in statements if s.startswith("CREATE POLICY")]
    assert len(creates) == 4
    assert all(" TO orgscope_app " in s for s in creates)
    assert any("FOR INSERT" in s and "WITH CHECK" in s for s in creates)


def test_append_only_grants():
    grants = render_grant_sql()
    assert "GRANT SELECT, INSERT ON audit_logs TO orgscope_app" in grants
    assert "REVOKE UPDATE, DELETE, TRUNCATE ON audit_logs FROM orgscope_app" in grants
    assert "GRANT SELECT, INSERT, UPDATE, DELETE ON reports TO orgscope_app" in grants


def test_role_is_created_before_anything_names_it(monkeypatch):
    monkeypatch.setattr(settings, "DB_APP_ROLE", "orgscope_fresh")
    statements = render_rls_sql()

    assert statements[0] == render_role_sql()[0]
    assert "CREATE ROLE orgscope_fresh NOLOGIN" in statements[0]
    naming = [i for i, s in enumerate(statements) if "orgscope_fresh" in s]
    assert naming[0] == 0
    assert not any("CREATE ROLE" in s for s in statements[1:])


def test_no_role_statements_without_application_role(monkeypatch):
    monkeypatch.setattr(settings, "DB_APP_ROLE", "")
    assert render_role_sql() == []
    assert render_grant_sql() == []
    assert all(" TO PUBLIC " in s for s in render_rls_sql() if s.startswith("CREATE POLICY"))
