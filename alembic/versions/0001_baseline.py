"""Baseline migration - organizational hierarchy, records and ledgers

Revision ID: 0001_baseline
Revises:
Create Date: 2026-09-28

Creates sites, small groups, profiles, activities, reports, financial
transactions, invitations, the audit log and the idempotency ledger.
Row-level security is installed by 0002_row_level_security.
"""
from typing import Sequence, Union

from alembic import op


# revision identifiers, used by Alembic.
revision: str = '0001_baseline'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the schema."""

    op.execute('CREATE EXTENSION IF NOT EXISTS pgcrypto')  # For gen_random_uuid()

    # ==========================================================================
    # Organizational hierarchy
    # ==========================================================================
    op.execute('''
        CREATE TABLE sites (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            name VARCHAR(255) NOT NULL,
            city VARCHAR(255),
            country VARCHAR(100),
            coordinator_id VARCHAR(64),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')

    op.execute('''
        CREATE TABLE small_groups (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            site_id UUID NOT NULL REFERENCES sites(id) ON DELETE RESTRICT,
            name VARCHAR(255) NOT NULL,
            meeting_day VARCHAR(20),
            leader_id VARCHAR(64),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_small_groups_id_site UNIQUE (id, site_id)
        )
    ''')
    op.execute('CREATE INDEX idx_small_groups_site_id ON small_groups(site_id)')

    op.execute('''
        CREATE TABLE profiles (
            id VARCHAR(64) PRIMARY KEY,
            email VARCHAR(255) NOT NULL UNIQUE,
            name VARCHAR(255) NOT NULL,
            role VARCHAR(32) NOT NULL,
            status VARCHAR(16) NOT NULL DEFAULT 'inactive',
            site_id UUID REFERENCES sites(id) ON DELETE RESTRICT,
            small_group_id UUID,
            mandate_start_date DATE,
            mandate_end_date DATE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT fk_profiles_group_in_site
                FOREIGN KEY (small_group_id, site_id) REFERENCES small_groups(id, site_id),
            CONSTRAINT ck_profiles_role_scope CHECK (
                status <> 'active'
                OR (role = 'NATIONAL_COORDINATOR' AND site_id IS NULL AND small_group_id IS NULL)
                OR (role = 'SITE_COORDINATOR' AND site_id IS NOT NULL AND small_group_id IS NULL)
                OR (role IN ('SMALL_GROUP_LEADER', 'MEMBER')
                    AND site_id IS NOT NULL AND small_group_id IS NOT NULL)
            )
        )
    ''')
    op.execute('CREATE INDEX idx_profiles_site_id ON profiles(site_id)')
    op.execute('CREATE INDEX idx_profiles_small_group_id ON profiles(small_group_id)')

    # sites/small_groups <-> profiles reference each other
    op.execute('''
        ALTER TABLE sites ADD CONSTRAINT fk_sites_coordinator
            FOREIGN KEY (coordinator_id) REFERENCES profiles(id) ON DELETE SET NULL
    ''')
    op.execute('''
        ALTER TABLE small_groups ADD CONSTRAINT fk_small_groups_leader
            FOREIGN KEY (leader_id) REFERENCES profiles(id) ON DELETE SET NULL
    ''')

    # ==========================================================================
    # Activities, reports and finances
    # ==========================================================================
    op.execute('''
        CREATE TABLE activities (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            title VARCHAR(255) NOT NULL,
            thematic VARCHAR(255),
            date TIMESTAMPTZ NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'planned',
            level VARCHAR(20) NOT NULL,
            site_id UUID REFERENCES sites(id) ON DELETE RESTRICT,
            small_group_id UUID,
            created_by_id VARCHAR(64) NOT NULL REFERENCES profiles(id) ON DELETE RESTRICT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT fk_activities_group_in_site
                FOREIGN KEY (small_group_id, site_id) REFERENCES small_groups(id, site_id)
        )
    ''')
    op.execute('CREATE INDEX idx_activities_site_date ON activities(site_id, date)')
    op.execute('CREATE INDEX idx_activities_created_by ON activities(created_by_id)')

    op.execute('''
        CREATE TABLE reports (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            title VARCHAR(255) NOT NULL,
            content TEXT,
            status VARCHAR(20) NOT NULL DEFAULT 'pending',
            activity_id UUID REFERENCES activities(id) ON DELETE RESTRICT,
            site_id UUID REFERENCES sites(id) ON DELETE RESTRICT,
            small_group_id UUID,
            submitted_by_id VARCHAR(64) NOT NULL REFERENCES profiles(id) ON DELETE RESTRICT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT fk_reports_group_in_site
                FOREIGN KEY (small_group_id, site_id) REFERENCES small_groups(id, site_id)
        )
    ''')
    op.execute('CREATE INDEX idx_reports_submitted_by ON reports(submitted_by_id)')
    op.execute('CREATE INDEX idx_reports_activity_id ON reports(activity_id)')

    op.execute('''
        CREATE TABLE financial_transactions (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            type VARCHAR(16) NOT NULL,
            category VARCHAR(100) NOT NULL,
            amount NUMERIC(14, 2) NOT NULL,
            date DATE NOT NULL,
            description TEXT,
            status VARCHAR(16) NOT NULL DEFAULT 'approved',
            site_id UUID REFERENCES sites(id) ON DELETE RESTRICT,
            small_group_id UUID,
            recorded_by_id VARCHAR(64) NOT NULL REFERENCES profiles(id) ON DELETE RESTRICT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT ck_transactions_amount_positive CHECK (amount > 0),
            CONSTRAINT fk_transactions_group_in_site
                FOREIGN KEY (small_group_id, site_id) REFERENCES small_groups(id, site_id)
        )
    ''')
    op.execute('CREATE INDEX idx_transactions_site_date ON financial_transactions(site_id, date)')
    op.execute('CREATE INDEX idx_transactions_recorded_by ON financial_transactions(recorded_by_id)')

    # ==========================================================================
    # Invitations
    # ==========================================================================
    op.execute('''
        CREATE TABLE user_invitations (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            email VARCHAR(255) NOT NULL UNIQUE,
            token VARCHAR(64) NOT NULL UNIQUE,
            role VARCHAR(32) NOT NULL,
            site_id UUID REFERENCES sites(id) ON DELETE CASCADE,
            small_group_id UUID,
            status VARCHAR(16) NOT NULL DEFAULT 'pending',
            mandate_start_date DATE,
            mandate_end_date DATE,
            invited_by_id VARCHAR(64),
            expires_at TIMESTAMPTZ NOT NULL,
            accepted_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT fk_invitations_group_in_site
                FOREIGN KEY (small_group_id, site_id) REFERENCES small_groups(id, site_id)
        )
    ''')
    op.execute('CREATE INDEX idx_invitations_site_id ON user_invitations(site_id)')

    # ==========================================================================
    # Ledgers
    # ==========================================================================
    op.execute('''
        CREATE TABLE audit_logs (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            actor_id VARCHAR(64),
            action VARCHAR(32) NOT NULL,
            entity_type VARCHAR(50) NOT NULL,
            entity_id VARCHAR(64) NOT NULL,
            metadata JSONB,
            ip_address VARCHAR(45),
            user_agent VARCHAR(500),
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX idx_audit_entity ON audit_logs(entity_type, entity_id, created_at)')
    op.execute('CREATE INDEX idx_audit_actor_created ON audit_logs(actor_id, created_at)')

    op.execute('''
        CREATE TABLE idempotency_records (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            token VARCHAR(255) NOT NULL,
            operation VARCHAR(100) NOT NULL,
            principal_id VARCHAR(64) NOT NULL,
            response JSONB NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_idempotency_records_token UNIQUE (token)
        )
    ''')
    op.execute('CREATE INDEX idx_idempotency_created_at ON idempotency_records(created_at)')


def downgrade() -> None:
    """Drop all tables."""
    op.execute('DROP TABLE IF EXISTS idempotency_records')
    op.execute('DROP TABLE IF EXISTS audit_logs')
    op.execute('DROP TABLE IF EXISTS user_invitations')
    op.execute('DROP TABLE IF EXISTS financial_transactions')
    op.execute('DROP TABLE IF EXISTS reports')
    op.execute('DROP TABLE IF EXISTS activities')
    op.execute('ALTER TABLE IF EXISTS small_groups DROP CONSTRAINT IF EXISTS fk_small_groups_leader')
    op.execute('ALTER TABLE IF EXISTS sites DROP CONSTRAINT IF EXISTS fk_sites_coordinator')
    op.execute('DROP TABLE IF EXISTS profiles')
    op.execute('DROP TABLE IF EXISTS small_groups')
    op.execute('DROP TABLE IF EXISTS sites')
