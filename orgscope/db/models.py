"""SQLAlchemy ORM models for the organizational hierarchy and its ledgers."""

import datetime as dt
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    CheckConstraint, Date, ForeignKey, ForeignKeyConstraint, Index, Numeric,
    String, Text, UniqueConstraint, text
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from orgscope.db.base import Base
from orgscope.db.enums import (
    DEFAULT_ACTIVITY_STATUS, DEFAULT_INVITATION_STATUS, DEFAULT_PROFILE_STATUS,
    DEFAULT_REPORT_STATUS, DEFAULT_TRANSACTION_STATUS,
)


# Role ↔ scope invariant for active profiles, mirrored by
# profile_service.validate_role_scope.
PROFILE_ROLE_SCOPE_CHECK = (
    "status <> 'active' OR "
    "(role = 'NATIONAL_COORDINATOR' AND site_id IS NULL AND small_group_id IS NULL) OR "
    "(role = 'SITE_COORDINATOR' AND site_id IS NOT NULL AND small_group_id IS NULL) OR "
    "(role IN ('SMALL_GROUP_LEADER', 'MEMBER') AND site_id IS NOT NULL AND small_group_id IS NOT NULL)"
)


def _group_in_site(name: str) -> ForeignKeyConstraint:
    """A row's small group must belong to the row's site."""
    return ForeignKeyConstraint(
        ["small_group_id", "site_id"],
        ["small_groups.id", "small_groups.site_id"],
        name=name,
    )


# =============================================================================
# Organizational hierarchy
# =============================================================================

class Site(Base):
    """A local site of the national organization."""
    __tablename__ = "sites"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()")
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    city: Mapped[str | None] = mapped_column(String(255), nullable=True)
    country: Mapped[str | None] = mapped_column(String(100), nullable=True)
    coordinator_id: Mapped[str | None] = mapped_column(
        String(64),
        ForeignKey("profiles.id", ondelete="SET NULL", use_alter=True, name="fk_sites_coordinator"),
        nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        server_default=text("now()"),
        nullable=False
    )

    small_groups: Mapped[list["SmallGroup"]] = relationship(back_populates="site")


class SmallGroup(Base):
    """A small group inside a site."""
    __tablename__ = "small_groups"
    __table_args__ = (
        # Target of the composite (small_group_id, site_id) foreign keys.
        UniqueConstraint("id", "site_id", name="uq_small_groups_id_site"),
        Index("idx_small_groups_site_id", "site_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()")
    )
    site_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("sites.id", ondelete="RESTRICT"),
        nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    meeting_day: Mapped[str | None] = mapped_column(String(20), nullable=True)
    leader_id: Mapped[str | None] = mapped_column(
        String(64),
        ForeignKey("profiles.id", ondelete="SET NULL", use_alter=True, name="fk_small_groups_leader"),
        nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        server_default=text("now()"),
        nullable=False
    )

    site: Mapped["Site"] = relationship(back_populates="small_groups")


class Profile(Base):
    """
    The application's record for an identity-provider principal.

    id equals the provider's stable subject id. Role and scope drive every
    row-level policy; see PROFILE_ROLE_SCOPE_CHECK.
    """
    __tablename__ = "profiles"
    __table_args__ = (
        CheckConstraint(PROFILE_ROLE_SCOPE_CHECK, name="ck_profiles_role_scope"),
        _group_in_site("fk_profiles_group_in_site"),
        Index("idx_profiles_site_id", "site_id"),
        Index("idx_profiles_small_group_id", "small_group_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16),
        server_default=text(f"'{DEFAULT_PROFILE_STATUS}'"),
        nullable=False
    )
    site_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("sites.id", ondelete="RESTRICT"),
        nullable=True
    )
    small_group_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    mandate_start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    mandate_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        server_default=text("now()"),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        server_default=text("now()"),
        nullable=False
    )


# =============================================================================
# Activities, reports and finances
# =============================================================================

class Activity(Base):
    __tablename__ = "activities"
    __table_args__ = (
        _group_in_site("fk_activities_group_in_site"),
        Index("idx_activities_site_date", "site_id", "date"),
        Index("idx_activities_created_by", "created_by_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()")
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    thematic: Mapped[str | None] = mapped_column(String(255), nullable=True)
    date: Mapped[datetime] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        server_default=text(f"'{DEFAULT_ACTIVITY_STATUS}'"),
        nullable=False
    )
    level: Mapped[str] = mapped_column(String(20), nullable=False)
    site_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("sites.id", ondelete="RESTRICT"),
        nullable=True
    )
    small_group_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    created_by_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("profiles.id", ondelete="RESTRICT"),
        nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        server_default=text("now()"),
        nullable=False
    )


class Report(Base):
    __tablename__ = "reports"
    __table_args__ = (
        _group_in_site("fk_reports_group_in_site"),
        Index("idx_reports_submitted_by", "submitted_by_id"),
        Index("idx_reports_activity_id", "activity_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()")
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20),
        server_default=text(f"'{DEFAULT_REPORT_STATUS}'"),
        nullable=False
    )
    activity_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("activities.id", ondelete="RESTRICT"),
        nullable=True
    )
    site_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("sites.id", ondelete="RESTRICT"),
        nullable=True
    )
    small_group_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    submitted_by_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("profiles.id", ondelete="RESTRICT"),
        nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        server_default=text("now()"),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        server_default=text("now()"),
        nullable=False
    )


class FinancialTransaction(Base):
    __tablename__ = "financial_transactions"
    __table_args__ = (
        _group_in_site("fk_transactions_group_in_site"),
        CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
        Index("idx_transactions_site_date", "site_id", "date"),
        Index("idx_transactions_recorded_by", "recorded_by_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()")
    )
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    # Annotated via the module: the attribute name shadows datetime.date here.
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(16),
        server_default=text(f"'{DEFAULT_TRANSACTION_STATUS}'"),
        nullable=False
    )
    site_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("sites.id", ondelete="RESTRICT"),
        nullable=True
    )
    small_group_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    recorded_by_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("profiles.id", ondelete="RESTRICT"),
        nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        server_default=text("now()"),
        nullable=False
    )


# =============================================================================
# Invitations
# =============================================================================

class UserInvitation(Base):
    """
    Invitation to join with a given role and scope.

    One row per email; re-inviting refreshes token, role, scope and expiry.
    """
    __tablename__ = "user_invitations"
    __table_args__ = (
        _group_in_site("fk_invitations_group_in_site"),
        Index("idx_invitations_site_id", "site_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()")
    )
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    token: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    role: Mapped[str] = mapped_column(String(32), nullable=False)
    site_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("sites.id", ondelete="CASCADE"),
        nullable=True
    )
    small_group_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True), nullable=True)
    status: Mapped[str] = mapped_column(
        String(16),
        server_default=text(f"'{DEFAULT_INVITATION_STATUS}'"),
        nullable=False
    )
    mandate_start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    mandate_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    invited_by_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)
    accepted_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        server_default=text("now()"),
        nullable=False
    )


# =============================================================================
# Ledgers (append-only / insert-once)
# =============================================================================

class AuditLog(Base):
    """
    Append-only record of state-changing actions.

    actor_id is a plain string (no foreign key) so that profile removal never
    rewrites audit rows. The application role holds no UPDATE/DELETE grant.
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id", "created_at"),
        Index("idx_audit_actor_created", "actor_id", "created_at"),
        # Most principals may insert but not read audit rows, so no INSERT ... RETURNING.
        {"implicit_returning": False},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()")
    )
    actor_id: Mapped[str | None] = mapped_column(String(64), nullable=True)  # None for system
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)  # IPv6 max length
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        server_default=text("now()"),
        nullable=False
    )


class IdempotencyRecord(Base):
    """
    First successful response for a caller-supplied idempotency token.

    Inserted once under the unique constraint on token, never updated,
    purged after IDEMPOTENCY_RETENTION_HOURS.
    """
    __tablename__ = "idempotency_records"
    __table_args__ = (
        UniqueConstraint("token", name="uq_idempotency_records_token"),
        Index("idx_idempotency_created_at", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()")
    )
    token: Mapped[str] = mapped_column(String(255), nullable=False)
    operation: Mapped[str] = mapped_column(String(100), nullable=False)
    principal_id: Mapped[str] = mapped_column(String(64), nullable=False)
    response: Mapped[dict] = mapped_column(JSONB, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        server_default=text("now()"),
        nullable=False
    )
