"""Profile service - identity sync, role/scope rules and user administration."""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from fastapi import Request
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from orgscope.core.errors import ErrorKind, Forbidden, NotFound, ValidationError
from orgscope.core.identity import Principal
from orgscope.core.result import Err, Ok, ServiceResult
from orgscope.db.enums import AuditAction, EntityType, InvitationStatus, ProfileStatus, Role
from orgscope.db.models import (
    Activity, FinancialTransaction, Profile, Report, SmallGroup, UserInvitation
)
from orgscope.db.rls import Action, PrincipalScope, can_access
from orgscope.services import audit_service

logger = logging.getLogger(__name__)


# =============================================================================
# Role / scope invariant
# =============================================================================

def validate_role_scope(
    role: str,
    site_id: uuid.UUID | None,
    small_group_id: uuid.UUID | None,
) -> None:
    """
    Check that ``role`` allows exactly the given scope fields.

    - NATIONAL_COORDINATOR: no site, no group
    - SITE_COORDINATOR: site, no group
    - SMALL_GROUP_LEADER / MEMBER: site and group

    Raises:
        ValidationError: on an unknown role or a scope mismatch
    """
    if not Role.has_value(role):
        raise ValidationError(f"Unknown role: {role}")
    parsed = Role(role)
    if parsed == Role.NATIONAL_COORDINATOR:
        if site_id is not None or small_group_id is not None:
            raise ValidationError("National coordinators cannot be scoped to a site or group")
    elif parsed == Role.SITE_COORDINATOR:
        if site_id is None:
            raise ValidationError("Site coordinators require a site")
        if small_group_id is not None:
            raise ValidationError("Site coordinators cannot be scoped to a small group")
    else:
        if site_id is None or small_group_id is None:
            raise ValidationError("Group roles require both a site and a small group")


def normalize_scope(
    db: Session,
    role: str,
    site_id: uuid.UUID | None,
    small_group_id: uuid.UUID | None,
) -> tuple[uuid.UUID | None, uuid.UUID | None]:
    """
    Drop scope fields the role cannot carry and derive the site of a group.

    A group role given a group but no site takes the group's site. The result
    is validated with ``validate_role_scope``.
    """
    if not Role.has_value(role):
        raise ValidationError(f"Unknown role: {role}")
    parsed = Role(role)
    if parsed == Role.NATIONAL_COORDINATOR:
        site_id, small_group_id = None, None
    elif parsed == Role.SITE_COORDINATOR:
        small_group_id = None
    elif small_group_id is not None:
        group = db.get(SmallGroup, small_group_id)
        if group is None:
            raise ValidationError("Small group not found")
        if site_id is None:
            site_id = group.site_id
        elif group.site_id != site_id:
            raise ValidationError("Small group does not belong to the selected site")
    validate_role_scope(role, site_id, small_group_id)
    return site_id, small_group_id


def _row(profile: Profile) -> dict:
    return {
        "id": profile.id,
        "role": profile.role,
        "site_id": profile.site_id,
        "small_group_id": profile.small_group_id,
    }


# =============================================================================
# Identity sync (runs on the system session from GET /auth/me)
# =============================================================================

def _pending_invitation(db: Session, email: str) -> UserInvitation | None:
    return db.execute(
        select(UserInvitation)
        .where(func.lower(UserInvitation.email) == email)
        .where(UserInvitation.status == InvitationStatus.PENDING.value)
        .where(UserInvitation.expires_at > datetime.now(timezone.utc))
        .with_for_update()
    ).scalar_one_or_none()


def sync_profile(db: Session, principal: Principal) -> Profile:
    """
    Create or refresh the profile for an authenticated principal.

    Lookup order: by principal id, then by email for a pre-provisioned
    (``invited``) profile, which is re-keyed to the principal id. A new
    profile inherits role and scope from a pending invitation; without one it
    is an inactive MEMBER with no scope until an administrator assigns one.

    Raises:
        Forbidden: the email belongs to another active account
    """
    email = principal.email.strip().lower()
    profile = db.get(Profile, principal.id)

    if profile is None:
        by_email = db.execute(
            select(Profile).where(func.lower(Profile.email) == email)
        ).scalar_one_or_none()
        if by_email is not None:
            if by_email.status != ProfileStatus.INVITED.value:
                logger.warning(
                    "Profile email already bound to another principal",
                    extra={"principal_id": principal.id, "profile_id": by_email.id},
                )
                raise Forbidden("This email is already linked to another account")
            db.execute(update(Profile).where(Profile.id == by_email.id).values(id=principal.id))
            db.expire_all()
            profile = db.get(Profile, principal.id)

    if profile is None:
        invitation = _pending_invitation(db, email)
        profile = Profile(
            id=principal.id,
            email=email,
            name=principal.name or email.split("@")[0],
            role=Role.MEMBER.value,
            status=ProfileStatus.INACTIVE.value,
        )
        if invitation is not None:
            _apply_invitation(profile, invitation)
        db.add(profile)
        db.flush()
        if invitation is not None:
            audit_service.log_event(
                db,
                actor_id=principal.id,
                action=AuditAction.ACCEPT,
                entity_type=EntityType.USER_INVITATION,
                entity_id=invitation.id,
                metadata={"role": invitation.role},
            )
        audit_service.log_event(
            db,
            actor_id=principal.id,
            action=AuditAction.CREATE,
            entity_type=EntityType.PROFILE,
            entity_id=profile.id,
            metadata={"role": profile.role, "status": profile.status},
        )
        return profile

    if profile.status == ProfileStatus.INVITED.value:
        invitation = _pending_invitation(db, email)
        if invitation is not None:
            _apply_invitation(profile, invitation)
    if principal.name and profile.name != principal.name:
        profile.name = principal.name
    if profile.email != email:
        profile.email = email
    profile.updated_at = datetime.now(timezone.utc)
    db.flush()
    return profile


def _apply_invitation(profile: Profile, invitation: UserInvitation) -> None:
    profile.role = invitation.role
    profile.site_id = invitation.site_id
    profile.small_group_id = invitation.small_group_id
    profile.mandate_start_date = invitation.mandate_start_date
    profile.mandate_end_date = invitation.mandate_end_date
    profile.status = ProfileStatus.ACTIVE.value
    invitation.status = InvitationStatus.ACCEPTED.value
    invitation.accepted_at = datetime.now(timezone.utc)


# =============================================================================
# Queries
# =============================================================================

def get_profile(db: Session, profile_id: str) -> Profile:
    profile = db.get(Profile, profile_id)
    if profile is None:
        raise NotFound("User not found")
    return profile


def list_profiles(
    db: Session,
    site_id: uuid.UUID | None = None,
    small_group_id: uuid.UUID | None = None,
    role: Role | None = None,
    status: ProfileStatus | None = None,
) -> list[Profile]:
    """Profiles visible to the caller (row-level security filters by scope)."""
    query = select(Profile)
    if site_id is not None:
        query = query.where(Profile.site_id == site_id)
    if small_group_id is not None:
        query = query.where(Profile.small_group_id == small_group_id)
    if role is not None:
        query = query.where(Profile.role == role.value)
    if status is not None:
        query = query.where(Profile.status == status.value)
    return list(db.execute(query.order_by(Profile.name)).scalars())


# =============================================================================
# Administration
# =============================================================================

@dataclass
class ProfileChanges:
    name: str | None = None
    role: Role | None = None
    site_id: uuid.UUID | None = None
    small_group_id: uuid.UUID | None = None
    status: ProfileStatus | None = None
    mandate_start_date: date | None = None
    mandate_end_date: date | None = None
    # Fields explicitly present in the request (so None can clear a value)
    fields_set: set[str] = field(default_factory=set)


def update_profile(
    db: Session,
    scope: PrincipalScope,
    profile_id: str,
    changes: ProfileChanges,
    request: Request | None = None,
) -> Profile:
    """
    Apply role/scope/status changes to a profile.

    The new role and scope are normalized and validated; the caller must be
    allowed to update both the current and the resulting row.

    Raises:
        NotFound: profile not visible to the caller
        Forbidden: role/scope policy denies the change
        ValidationError: role/scope mismatch
    """
    profile = get_profile(db, profile_id)
    if not can_access(scope, "profiles", Action.UPDATE, _row(profile)):
        raise Forbidden("You cannot modify this user")

    before = {"role": profile.role, "status": profile.status}
    role = changes.role.value if changes.role is not None else profile.role
    site_id = changes.site_id if "site_id" in changes.fields_set else profile.site_id
    group_id = (
        changes.small_group_id if "small_group_id" in changes.fields_set else profile.small_group_id
    )
    status = changes.status.value if changes.status is not None else profile.status

    if status == ProfileStatus.ACTIVE.value or changes.role is not None:
        site_id, group_id = normalize_scope(db, role, site_id, group_id)

    new_row = {"id": profile.id, "role": role, "site_id": site_id, "small_group_id": group_id}
    if not can_access(scope, "profiles", Action.UPDATE, new_row):
        raise Forbidden("You cannot assign this role or scope")
    if profile.id == scope.principal_id and status != ProfileStatus.ACTIVE.value:
        raise Forbidden("You cannot deactivate your own account")

    if changes.name is not None:
        profile.name = changes.name.strip()
    if "mandate_start_date" in changes.fields_set:
        profile.mandate_start_date = changes.mandate_start_date
    if "mandate_end_date" in changes.fields_set:
        profile.mandate_end_date = changes.mandate_end_date
    profile.role = role
    profile.site_id = site_id
    profile.small_group_id = group_id
    profile.status = status
    profile.updated_at = datetime.now(timezone.utc)
    db.flush()

    audit_service.log_event(
        db,
        actor_id=scope.principal_id,
        action=AuditAction.UPDATE,
        entity_type=EntityType.PROFILE,
        entity_id=profile.id,
        metadata={"before": before, "after": {"role": role, "status": status}},
        request=request,
    )
    return profile


def archive_profile(
    db: Session,
    scope: PrincipalScope,
    profile_id: str,
    request: Request | None = None,
) -> Profile:
    """Soft delete: mark the profile inactive. Users cannot archive themselves."""
    if profile_id == scope.principal_id:
        raise Forbidden("You cannot archive your own account")
    profile = get_profile(db, profile_id)
    if not can_access(scope, "profiles", Action.UPDATE, _row(profile)):
        raise Forbidden("You cannot archive this user")

    profile.status = ProfileStatus.INACTIVE.value
    profile.updated_at = datetime.now(timezone.utc)
    db.flush()
    audit_service.log_event(
        db,
        actor_id=scope.principal_id,
        action=AuditAction.ARCHIVE,
        entity_type=EntityType.PROFILE,
        entity_id=profile.id,
        request=request,
    )
    return profile


# =============================================================================
# Deletion eligibility
# =============================================================================

@dataclass(frozen=True)
class DeletionEligibility:
    can_delete: bool
    reason: str | None = None
    blocking: tuple[str, ...] = ()


# Label -> (model, column referencing the profile)
DEPENDENTS = (
    ("Reports", Report, Report.submitted_by_id),
    ("Activities", Activity, Activity.created_by_id),
    ("Transactions", FinancialTransaction, FinancialTransaction.recorded_by_id),
)


def check_deletion_eligibility(db: Session, profile_id: str) -> DeletionEligibility:
    """
    Whether a profile can be hard-deleted.

    Read-only; repeated calls without intervening writes return the same
    result. Any report, activity or transaction referencing the profile
    blocks deletion, and the reason names each blocking entity type.

    ``db`` must see every dependent row: a national coordinator's session or
    the owner session. Row-level security hides rows from narrower scopes.
    """
    blocking = []
    for label, model, column in DEPENDENTS:
        found = db.execute(select(model.id).where(column == profile_id).limit(1)).first()
        if found is not None:
            blocking.append(label)

    if blocking:
        return DeletionEligibility(
            can_delete=False,
            reason=(
                f"Cannot delete user with existing data ({', '.join(blocking)}). "
                "Please deactivate them instead."
            ),
            blocking=tuple(blocking),
        )
    return DeletionEligibility(can_delete=True)


def delete_profile(
    db: Session,
    scope: PrincipalScope,
    profile_id: str,
    request: Request | None = None,
) -> ServiceResult[str]:
    """Hard delete, gated by deletion eligibility."""
    if profile_id == scope.principal_id:
        return Err(ErrorKind.FORBIDDEN, "You cannot delete your own account")
    profile = db.get(Profile, profile_id)
    if profile is None:
        return Err(ErrorKind.NOT_FOUND, "User not found")
    if not can_access(scope, "profiles", Action.DELETE, _row(profile)):
        return Err(ErrorKind.FORBIDDEN, "You cannot delete this user")

    eligibility = check_deletion_eligibility(db, profile_id)
    if not eligibility.can_delete:
        return Err(ErrorKind.CONFLICT, eligibility.reason or "User has dependent records")

    db.delete(profile)
    db.flush()
    audit_service.log_event(
        db,
        actor_id=scope.principal_id,
        action=AuditAction.DELETE,
        entity_type=EntityType.PROFILE,
        entity_id=profile_id,
        request=request,
    )
    return Ok(profile_id)
