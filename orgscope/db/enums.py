"""Enum definitions for application constants."""

from enum import Enum


class Role(str, Enum):
    """
    Organizational roles, from widest to narrowest scope.

    - NATIONAL_COORDINATOR: whole organization, no site/group scope
    - SITE_COORDINATOR: one site (site_id set)
    - SMALL_GROUP_LEADER: one small group (site_id and small_group_id set)
    - MEMBER: one small group (site_id and small_group_id set)
    """
    NATIONAL_COORDINATOR = "NATIONAL_COORDINATOR"
    SITE_COORDINATOR = "SITE_COORDINATOR"
    SMALL_GROUP_LEADER = "SMALL_GROUP_LEADER"
    MEMBER = "MEMBER"

    @classmethod
    def has_value(cls, value: str) -> bool:
        """Check if value is a valid role."""
        return value in cls._value2member_map_

    @property
    def is_group_scoped(self) -> bool:
        return self in (Role.SMALL_GROUP_LEADER, Role.MEMBER)


class ProfileStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    INVITED = "invited"


class InvitationStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    EXPIRED = "expired"
    REVOKED = "revoked"


class ActivityStatus(str, Enum):
    PLANNED = "planned"
    IN_PROGRESS = "in_progress"
    DELAYED = "delayed"
    EXECUTED = "executed"
    CANCELED = "canceled"


class ReportStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    APPROVED = "approved"
    REJECTED = "rejected"


class TransactionType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class AuditAction(str, Enum):
    """Actions recorded in the append-only audit log."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    ARCHIVE = "archive"
    ACCEPT = "accept"
    REVOKE = "revoke"


class EntityType(str, Enum):
    """Entity types referenced by audit entries."""
    PROFILE = "Profile"
    SITE = "Site"
    SMALL_GROUP = "SmallGroup"
    ACTIVITY = "Activity"
    REPORT = "Report"
    FINANCIAL_TRANSACTION = "FinancialTransaction"
    USER_INVITATION = "UserInvitation"


class ActivityLevel(str, Enum):
    """Organizational level an activity is planned at."""
    NATIONAL = "national"
    SITE = "site"
    SMALL_GROUP = "small_group"


DEFAULT_PROFILE_STATUS = ProfileStatus.INACTIVE.value
DEFAULT_INVITATION_STATUS = InvitationStatus.PENDING.value
DEFAULT_ACTIVITY_STATUS = ActivityStatus.PLANNED.value
DEFAULT_REPORT_STATUS = ReportStatus.PENDING.value
DEFAULT_TRANSACTION_STATUS = TransactionStatus.APPROVED.value
