"""Row-level security - session functions, policies and application role

Revision ID: 0002_row_level_security
Revises: 0001_baseline
Create Date: 2026-09-28

Renders the DDL from orgscope.db.rls so the policies in the database and the
Python evaluator come from one declaration. Re-apply after changing POLICIES
with ``orgscope apply-policies``.
"""
from typing import Sequence, Union

from alembic import op

from orgscope.core.config import settings
from orgscope.db.rls import POLICIES, render_rls_sql


# revision identifiers, used by Alembic.
revision: str = '0002_row_level_security'
down_revision: Union[str, Sequence[str], None] = '0001_baseline'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

FUNCTIONS = (
    "accept_invitation(text)",
    "current_principal_email()",
    "current_principal_small_group_id()",
    "current_principal_site_id()",
    "current_principal_role()",
    "current_principal_id()",
)


def upgrade() -> None:
    for statement in render_rls_sql():
        op.execute(statement)


def downgrade() -> None:
    role = settings.DB_APP_ROLE
    for policy in POLICIES.values():
        for action in ("select", "insert", "update", "delete"):
            op.execute(f"DROP POLICY IF EXISTS {policy.table}_{action} ON {policy.table}")
        op.execute(f"ALTER TABLE {policy.table} DISABLE ROW LEVEL SECURITY")
        if role:
            op.execute(f"REVOKE ALL ON {policy.table} FROM {role}")
    for function in FUNCTIONS:
        op.execute(f"DROP FUNCTION IF EXISTS {function}")
