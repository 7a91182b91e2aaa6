"""Row-level security policy model.

One declaration per protected table drives two things:

- the PostgreSQL DDL (session functions, ``CREATE POLICY`` statements and
  grants for the application role), rendered by ``render_rls_sql()``;
- ``can_access()``, the Python evaluation of the same predicates, used for the
  courtesy ``Forbidden`` check before a write is attempted.

The database is the primary enforcement point. Without a bound principal every
session function returns NULL, every predicate is NULL, and no row matches.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

from orgscope.core.config import settings
from orgscope.db.enums import ProfileStatus, Role


class Reach(str, Enum):
    """How far a role reaches into a table for one action."""

    NONE = "none"
    OWN = "own"  # rows the principal owns (or is addressed to by email)
    GROUP = "group"  # rows of the principal's small group
    SITE = "site"  # rows of the principal's site
    ALL = "all"


class Action(str, Enum):
    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


NC = Role.NATIONAL_COORDINATOR
SC = Role.SITE_COORDINATOR
SGL = Role.SMALL_GROUP_LEADER
MEMBER = Role.MEMBER


@dataclass(frozen=True)
class TablePolicy:
    """Per-role, per-action reach for one table."""

    table: str
    site_column: str | None = "site_id"
    group_column: str | None = "small_group_id"
    owner_column: str | None = None
    email_column: str | None = None
    # Rows whose role_column holds one of these are writable only with Reach.ALL.
    role_column: str | None = None
    protected_roles: frozenset[Role] = frozenset()
    # Actions any bound principal may take on rows it owns, whatever its role or status.
    owner_actions: frozenset[Action] = frozenset()
    select: Mapping[Role, Reach] = field(default_factory=dict)
    insert: Mapping[Role, Reach] = field(default_factory=dict)
    update: Mapping[Role, Reach] = field(default_factory=dict)
    delete: Mapping[Role, Reach] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for action in Action:
            for role, reach in self.reach_map(action).items():
                if reach == Reach.SITE and not self.site_column:
                    raise ValueError(f"{self.table}: SITE reach needs site_column ({role.value})")
                if reach == Reach.GROUP and not self.group_column:
                    raise ValueError(f"{self.table}: GROUP reach needs group_column ({role.value})")
                if reach == Reach.OWN and not (self.owner_column or self.email_column):
                    raise ValueError(f"{self.table}: OWN reach needs an owner or email column")
        if self.owner_actions and not self.owner_column:
            raise ValueError(f"{self.table}: owner_actions need owner_column")

    def reach_map(self, action: Action) -> Mapping[Role, Reach]:
        return getattr(self, action.value)

    def reach(self, role: Role, action: Action) -> Reach:
        return self.reach_map(action).get(role, Reach.NONE)


POLICIES: dict[str, TablePolicy] = {
    "sites": TablePolicy(
        table="sites",
        site_column="id",
        group_column=None,
        select={NC: Reach.ALL, SC: Reach.SITE, SGL: Reach.SITE, MEMBER: Reach.SITE},
        insert={NC: Reach.ALL},
        update={NC: Reach.ALL, SC: Reach.SITE},
        delete={NC: Reach.ALL},
    ),
    "small_groups": TablePolicy(
        table="small_groups",
        site_column="site_id",
        group_column="id",
        select={NC: Reach.ALL, SC: Reach.SITE, SGL: Reach.GROUP, MEMBER: Reach.GROUP},
        insert={NC: Reach.ALL, SC: Reach.SITE},
        update={NC: Reach.ALL, SC: Reach.SITE, SGL: Reach.GROUP},
        delete={NC: Reach.ALL, SC: Reach.SITE},
    ),
    "profiles": TablePolicy(
        table="profiles",
        owner_column="id",
        owner_actions=frozenset({Action.SELECT}),
        role_column="role",
        protected_roles=frozenset({NC}),
        select={NC: Reach.ALL, SC: Reach.SITE, SGL: Reach.GROUP, MEMBER: Reach.GROUP},
        insert={NC: Reach.ALL},
        update={NC: Reach.ALL, SC: Reach.SITE},
        delete={NC: Reach.ALL},
    ),
    "activities": TablePolicy(
        table="activities",
        owner_column="created_by_id",
        select={NC: Reach.ALL, SC: Reach.SITE, SGL: Reach.GROUP, MEMBER: Reach.GROUP},
        insert={NC: Reach.ALL, SC: Reach.SITE, SGL: Reach.GROUP},
        update={NC: Reach.ALL, SC: Reach.SITE, SGL: Reach.GROUP},
        delete={NC: Reach.ALL, SC: Reach.SITE, SGL: Reach.OWN},
    ),
    "reports": TablePolicy(
        table="reports",
        owner_column="submitted_by_id",
        select={NC: Reach.ALL, SC: Reach.SITE, SGL: Reach.GROUP, MEMBER: Reach.GROUP},
        insert={NC: Reach.ALL, SC: Reach.SITE, SGL: Reach.GROUP},
        update={NC: Reach.ALL, SC: Reach.SITE, SGL: Reach.OWN},
        delete={NC: Reach.ALL, SC: Reach.SITE, SGL: Reach.OWN},
    ),
    "financial_transactions": TablePolicy(
        table="financial_transactions",
        owner_column="recorded_by_id",
        select={NC: Reach.ALL, SC: Reach.SITE, SGL: Reach.GROUP},
        insert={NC: Reach.ALL, SC: Reach.SITE, SGL: Reach.GROUP},
        update={NC: Reach.ALL, SC: Reach.SITE, SGL: Reach.OWN},
        delete={NC: Reach.ALL, SC: Reach.SITE},
    ),
    "user_invitations": TablePolicy(
        table="user_invitations",
        owner_column="invited_by_id",
        email_column="email",
        role_column="role",
        protected_roles=frozenset({NC}),
        select={NC: Reach.ALL, SC: Reach.SITE, SGL: Reach.GROUP, MEMBER: Reach.OWN},
        insert={NC: Reach.ALL, SC: Reach.SITE},
        update={NC: Reach.ALL, SC: Reach.SITE},
        delete={NC: Reach.ALL, SC: Reach.SITE},
    ),
    "audit_logs": TablePolicy(
        table="audit_logs",
        site_column=None,
        group_column=None,
        owner_column="actor_id",
        owner_actions=frozenset({Action.INSERT}),
        select={NC: Reach.ALL},
    ),
    "idempotency_records": TablePolicy(
        table="idempotency_records",
        site_column=None,
        group_column=None,
        owner_column="principal_id",
        owner_actions=frozenset({Action.SELECT, Action.INSERT}),
    ),
}

# Tables the application role may read/insert but never rewrite.
APPEND_ONLY_TABLES = frozenset({"audit_logs", "idempotency_records"})


def get_policy(table: str) -> TablePolicy:
    """Fetch a table policy or raise KeyError."""
    return POLICIES[table]


# =============================================================================
# Python evaluation
# =============================================================================

@dataclass(frozen=True)
class PrincipalScope:
    """Identity plus role and organizational scope of a principal.

    ``role`` is None while the profile is not active: the principal can still
    act on rows it owns (``owner_actions``) but no role-based reach applies.
    """

    principal_id: str
    role: Role | None = None
    site_id: Any = None
    small_group_id: Any = None
    email: str | None = None

    @classmethod
    def from_profile(cls, profile) -> "PrincipalScope | None":
        if profile is None:
            return None
        active = profile.status == ProfileStatus.ACTIVE.value and Role.has_value(profile.role)
        if not active:
            return cls(principal_id=profile.id)
        return cls(
            principal_id=profile.id,
            role=Role(profile.role),
            site_id=profile.site_id,
            small_group_id=profile.small_group_id,
            email=profile.email,
        )


def _same(left: Any, right: Any) -> bool:
    """SQL equality: NULL never matches."""
    if left is None or right is None:
        return False
    return str(left) == str(right)


def _owns(policy: TablePolicy, scope: PrincipalScope, row: Mapping[str, Any]) -> bool:
    return bool(policy.owner_column) and _same(row.get(policy.owner_column), scope.principal_id)


def _within_reach(policy: TablePolicy, reach: Reach, scope: PrincipalScope, row: Mapping[str, Any]) -> bool:
    if reach == Reach.ALL:
        return True
    if reach == Reach.SITE:
        return _same(row.get(policy.site_column), scope.site_id)
    if reach == Reach.GROUP:
        return _same(row.get(policy.group_column), scope.small_group_id)
    if reach == Reach.OWN:
        addressed = bool(policy.email_column) and _same(
            (row.get(policy.email_column) or "").lower() or None,
            (scope.email or "").lower() or None,
        )
        return _owns(policy, scope, row) or addressed
    return False


def can_access(
    scope: PrincipalScope | None,
    table: str,
    action: Action | str,
    row: Mapping[str, Any],
) -> bool:
    """Evaluate ``table``'s policy for ``action`` on ``row`` the way PostgreSQL does.

    ``row`` maps column names to values; for INSERT/UPDATE pass the new values.
    """
    if scope is None:
        return False
    policy = get_policy(table)
    action = Action(action)
    if action in policy.owner_actions and _owns(policy, scope, row):
        return True
    if scope.role is None:
        return False
    reach = policy.reach(scope.role, action)
    if reach == Reach.NONE:
        return False
    if (
        reach != Reach.ALL
        and action != Action.SELECT
        and policy.role_column
        and row.get(policy.role_column) in {r.value for r in policy.protected_roles}
    ):
        return False
    return _within_reach(policy, reach, scope, row)


# =============================================================================
# SQL rendering
# =============================================================================

def _quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _reach_sql(policy: TablePolicy, reach: Reach) -> str:
    if reach == Reach.ALL:
        return "true"
    if reach == Reach.SITE:
        return f"{policy.site_column} = current_principal_site_id()"
    if reach == Reach.GROUP:
        return f"{policy.group_column} = current_principal_small_group_id()"
    parts = []
    if policy.owner_column:
        parts.append(f"{policy.owner_column} = current_principal_id()")
    if policy.email_column:
        parts.append(f"lower({policy.email_column}) = current_principal_email()")
    return " OR ".join(parts)


def policy_predicate(policy: TablePolicy, action: Action) -> str | None:
    """SQL predicate granting ``action`` on ``policy.table``, or None when nobody has it."""
    clauses = []
    if action in policy.owner_actions:
        clauses.append(f"({policy.owner_column} = current_principal_id())")
    for role in Role:
        reach = policy.reach(role, action)
        if reach == Reach.NONE:
            continue
        condition = f"({_reach_sql(policy, reach)})"
        if reach != Reach.ALL and action != Action.SELECT and policy.role_column and policy.protected_roles:
            protected = ", ".join(_quote_literal(r.value) for r in sorted(policy.protected_roles))
            condition = f"{condition} AND {policy.role_column} NOT IN ({protected})"
        clauses.append(f"(current_principal_role() = {_quote_literal(role.value)} AND {condition})")
    if not clauses:
        return None
    return "\n    OR ".join(clauses)


def render_policy_sql(policy: TablePolicy) -> list[str]:
    """ENABLE RLS plus one CREATE POLICY per action that any role may perform."""
    role = settings.DB_APP_ROLE
    statements = [f"ALTER TABLE {policy.table} ENABLE ROW LEVEL SECURITY"]
    for action in Action:
        name = f"{policy.table}_{action.value}"
        statements.append(f"DROP POLICY IF EXISTS {name} ON {policy.table}")
        predicate = policy_predicate(policy, action)
        if predicate is None:
            continue
        target = f"TO {role}" if role else "TO PUBLIC"
        if action == Action.INSERT:
            clause = f"WITH CHECK (\n    {predicate}\n)"
        elif action == Action.UPDATE:
            clause = f"USING (\n    {predicate}\n) WITH CHECK (\n    {predicate}\n)"
        else:
            clause = f"USING (\n    {predicate}\n)"
        statements.append(
            f"CREATE POLICY {name} ON {policy.table} FOR {action.value.upper()} {target} {clause}"
        )
    return statements


def _principal_function(name: str, expression: str, returns: str, active_only: bool = True) -> str:
    setting = _quote_literal(settings.RLS_SETTING_NAME)
    status_filter = "\n      AND p.status = 'active'" if active_only else ""
    return f"""
CREATE OR REPLACE FUNCTION {name}() RETURNS {returns}
LANGUAGE sql STABLE SECURITY DEFINER SET search_path = public AS $$
    SELECT {expression} FROM profiles p
    WHERE p.id = NULLIF(current_setting({setting}, true), ''){status_filter}
$$
""".strip()


def render_function_sql() -> list[str]:
    """Session functions resolving the bound principal.

    The id resolves for any existing profile; role, scope and email only for
    active ones.
    """
    return [
        _principal_function("current_principal_id", "p.id", "text", active_only=False),
        _principal_function("current_principal_role", "p.role", "text"),
        _principal_function("current_principal_site_id", "p.site_id", "uuid"),
        _principal_function("current_principal_small_group_id", "p.small_group_id", "uuid"),
        _principal_function("current_principal_email", "lower(p.email)", "text"),
    ]


def render_accept_invitation_sql() -> str:
    """Invitation acceptance as the table owner.

    Lets the bound principal take the invited role and scope without the
    application role ever holding write access to its own profile row.
    Returns a status word: accepted, unauthenticated, no_profile, not_found,
    email_mismatch, expired, revoked or already_accepted.
    """
    setting = _quote_literal(settings.RLS_SETTING_NAME)
    return f"""
CREATE OR REPLACE FUNCTION accept_invitation(p_token text) RETURNS text
LANGUAGE plpgsql VOLATILE SECURITY DEFINER SET search_path = public AS $$
DECLARE
    v_principal text := NULLIF(current_setting({setting}, true), '');
    v_email text;
    v_invitation user_invitations%ROWTYPE;
BEGIN
    IF v_principal IS NULL THEN
        RETURN 'unauthenticated';
    END IF;
    SELECT lower(email) INTO v_email FROM profiles WHERE id = v_principal;
    IF v_email IS NULL THEN
        RETURN 'no_profile';
    END IF;
    SELECT * INTO v_invitation FROM user_invitations WHERE token = p_token FOR UPDATE;
    IF NOT FOUND THEN
        RETURN 'not_found';
    END IF;
    IF lower(v_invitation.email) <> v_email THEN
        RETURN 'email_mismatch';
    END IF;
    IF v_invitation.status = 'accepted' THEN
        RETURN 'already_accepted';
    END IF;
    IF v_invitation.status <> 'pending' THEN
        RETURN v_invitation.status;
    END IF;
    IF v_invitation.expires_at < now() THEN
        RETURN 'expired';
    END IF;

    UPDATE profiles
       SET role = v_invitation.role,
           site_id = v_invitation.site_id,
           small_group_id = v_invitation.small_group_id,
           mandate_start_date = v_invitation.mandate_start_date,
           mandate_end_date = v_invitation.mandate_end_date,
           status = 'active',
           updated_at = now()
     WHERE id = v_principal;
    UPDATE user_invitations
       SET status = 'accepted', accepted_at = now()
     WHERE id = v_invitation.id;
    INSERT INTO audit_logs (actor_id, action, entity_type, entity_id, metadata)
    VALUES (v_principal, 'accept', 'UserInvitation', v_invitation.id::text,
            jsonb_build_object('role', v_invitation.role));
    RETURN 'accepted';
END
$$
""".strip()


def render_role_sql() -> list[str]:
    """Create the non-owner application role when it does not exist yet."""
    role = settings.DB_APP_ROLE
    if not role:
        return []
    return [
        f"""
DO $$
BEGIN
    IF NOT EXISTS (SELECT 1 FROM pg_roles WHERE rolname = {_quote_literal(role)}) THEN
        CREATE ROLE {role} NOLOGIN;
    END IF;
    EXECUTE format('GRANT %I TO %I', {_quote_literal(role)}, current_user);
END
$$
""".strip(),
    ]


def render_grant_sql() -> list[str]:
    """Grant the application role table and function access."""
    role = settings.DB_APP_ROLE
    if not role:
        return []
    statements = [f"GRANT USAGE ON SCHEMA public TO {role}"]
    for table in POLICIES:
        if table in APPEND_ONLY_TABLES:
            statements.append(f"GRANT SELECT, INSERT ON {table} TO {role}")
            statements.append(f"REVOKE UPDATE, DELETE, TRUNCATE ON {table} FROM {role}")
        else:
            statements.append(f"GRANT SELECT, INSERT, UPDATE, DELETE ON {table} TO {role}")
    statements.append(
        f"GRANT EXECUTE ON FUNCTION current_principal_id(), current_principal_role(), "
        f"current_principal_site_id(), current_principal_small_group_id(), "
        f"current_principal_email(), accept_invitation(text) TO {role}"
    )
    return statements


def render_rls_sql() -> list[str]:
    """Every statement needed to (re)apply row-level security, in order.

    The role comes first: policies and grants name it.
    """
    statements = render_role_sql()
    statements.extend(render_function_sql())
    statements.append(render_accept_invitation_sql())
    for policy in POLICIES.values():
        statements.extend(render_policy_sql(policy))
    statements.extend(render_grant_sql())
    return statements
