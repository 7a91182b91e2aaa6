"""Invitation management service."""

import secrets
import uuid
from datetime import date, datetime, timedelta, timezone

from fastapi import Request
from sqlalchemy import func, select, text, update
from sqlalchemy.orm import Session

from orgscope.core.config import settings
from orgscope.core.errors import ErrorKind, Forbidden, NotFound, ValidationError
from orgscope.core.result import Err, Ok, ServiceResult
from orgscope.db.enums import AuditAction, EntityType, InvitationStatus, ProfileStatus, Role
from orgscope.db.models import Profile, UserInvitation
from orgscope.db.rls import Action, PrincipalScope, can_access
from orgscope.services import audit_service, profile_service

TOKEN_BYTES = 32

# accept_invitation() status word -> (error kind, public message)
ACCEPT_FAILURES: dict[str, tuple[ErrorKind, str]] = {
    "unauthenticated": (ErrorKind.UNAUTHENTICATED, "Authentication required"),
    "no_profile": (ErrorKind.FORBIDDEN, "Sign in again to complete your profile"),
    "not_found": (ErrorKind.NOT_FOUND, "Invitation not found"),
    "email_mismatch": (ErrorKind.FORBIDDEN, "Invitation email does not match the signed-in user"),
    "already_accepted": (ErrorKind.CONFLICT, "Invitation already accepted"),
    "expired": (ErrorKind.VALIDATION, "Invitation has expired"),
    "revoked": (ErrorKind.VALIDATION, "Invitation was revoked"),
}


def get_invitation_status(invitation: UserInvitation) -> str:
    """Effective status: a pending invitation past its expiry reads as expired."""
    if invitation.status == InvitationStatus.PENDING.value and invitation.expires_at < datetime.now(timezone.utc):
        return InvitationStatus.EXPIRED.value
    return invitation.status


def _row(invitation: UserInvitation) -> dict:
    return {
        "email": invitation.email,
        "role": invitation.role,
        "site_id": invitation.site_id,
        "small_group_id": invitation.small_group_id,
        "invited_by_id": invitation.invited_by_id,
    }


def list_invitations(db: Session, status: InvitationStatus | None = None) -> list[UserInvitation]:
    """Invitations visible to the caller, newest first."""
    query = select(UserInvitation)
    if status is not None:
        query = query.where(UserInvitation.status == status.value)
    return list(
        db.execute(query.order_by(UserInvitation.created_at.desc()).limit(200)).scalars()
    )


def create_invitation(
    db: Session,
    scope: PrincipalScope,
    email: str,
    role: Role,
    site_id: uuid.UUID | None = None,
    small_group_id: uuid.UUID | None = None,
    mandate_start_date: date | None = None,
    mandate_end_date: date | None = None,
    request: Request | None = None,
) -> UserInvitation:
    """
    Invite ``email`` with a role and scope.

    The scope is normalized for the role. Re-inviting an email that already
    has an invitation refreshes its token, role, scope and expiry.

    Raises:
        Forbidden: caller cannot invite into this role/scope
        ValidationError: role/scope mismatch
    """
    email = email.lower().strip()
    site_id, small_group_id = profile_service.normalize_scope(db, role.value, site_id, small_group_id)
    row = {
        "email": email,
        "role": role.value,
        "site_id": site_id,
        "small_group_id": small_group_id,
        "invited_by_id": scope.principal_id,
    }
    if not can_access(scope, "user_invitations", Action.INSERT, row):
        raise Forbidden("You cannot invite users with this role or scope")

    existing_member = db.execute(
        select(Profile.id)
        .where(func.lower(Profile.email) == email)
        .where(Profile.status == ProfileStatus.ACTIVE.value)
    ).first()
    if existing_member is not None:
        raise ValidationError("A user with this email is already active")

    token = secrets.token_urlsafe(TOKEN_BYTES)
    expires_at = datetime.now(timezone.utc) + timedelta(days=settings.INVITATION_EXPIRY_DAYS)

    invitation = db.execute(
        select(UserInvitation).where(func.lower(UserInvitation.email) == email)
    ).scalar_one_or_none()
    if invitation is not None:
        if not can_access(scope, "user_invitations", Action.UPDATE, _row(invitation)):
            raise Forbidden("You cannot modify this invitation")
        action = AuditAction.UPDATE
    else:
        invitation = UserInvitation(email=email)
        db.add(invitation)
        action = AuditAction.CREATE

    invitation.token = token
    invitation.role = role.value
    invitation.site_id = site_id
    invitation.small_group_id = small_group_id
    invitation.mandate_start_date = mandate_start_date
    invitation.mandate_end_date = mandate_end_date
    invitation.status = InvitationStatus.PENDING.value
    invitation.invited_by_id = scope.principal_id
    invitation.expires_at = expires_at
    invitation.accepted_at = None
    db.flush()

    audit_service.log_event(
        db,
        actor_id=scope.principal_id,
        action=action,
        entity_type=EntityType.USER_INVITATION,
        entity_id=invitation.id,
        metadata={"email": audit_service.hash_email(email), "role": role.value},
        request=request,
    )
    return invitation


def revoke_invitation(
    db: Session,
    scope: PrincipalScope,
    invitation_id: uuid.UUID,
    request: Request | None = None,
) -> UserInvitation:
    invitation = db.get(UserInvitation, invitation_id)
    if invitation is None:
        raise NotFound("Invitation not found")
    if invitation.status != InvitationStatus.PENDING.value:
        raise ValidationError("Only pending invitations can be revoked")
    if not can_access(scope, "user_invitations", Action.UPDATE, _row(invitation)):
        raise Forbidden("You cannot revoke this invitation")

    invitation.status = InvitationStatus.REVOKED.value
    db.flush()
    audit_service.log_event(
        db,
        actor_id=scope.principal_id,
        action=AuditAction.REVOKE,
        entity_type=EntityType.USER_INVITATION,
        entity_id=invitation.id,
        request=request,
    )
    return invitation


def accept_invitation(db: Session, principal_id: str, token: str) -> ServiceResult[dict]:
    """
    Accept an invitation as the bound principal.

    Runs the ``accept_invitation`` database function, which checks the email
    match, expiry and status and applies role and scope as the table owner.
    """
    if not token or len(token) > 64:
        return Err(ErrorKind.VALIDATION, "Invalid invitation token")

    status = db.execute(text("SELECT accept_invitation(:token)"), {"token": token}).scalar()
    if status != "accepted":
        kind, message = ACCEPT_FAILURES.get(status, (ErrorKind.INTERNAL, "Invitation could not be accepted"))
        return Err(kind, message)

    db.expire_all()
    profile = db.get(Profile, principal_id)
    if profile is None:
        return Err(ErrorKind.INTERNAL, "Invitation could not be accepted")
    return Ok({
        "status": "accepted",
        "role": profile.role,
        "site_id": profile.site_id,
        "small_group_id": profile.small_group_id,
    })


def mark_expired(db: Session) -> int:
    """Flip pending invitations past their expiry to expired. Returns rows updated."""
    result = db.execute(
        update(UserInvitation)
        .where(UserInvitation.status == InvitationStatus.PENDING.value)
        .where(UserInvitation.expires_at < datetime.now(timezone.utc))
        .values(status=InvitationStatus.EXPIRED.value)
    )
    return result.rowcount or 0


def bootstrap_national_invitation(db: Session, email: str) -> UserInvitation:
    """
    Create (or refresh) the invitation for the first national coordinator.

    Runs on the owner session from the CLI; the invitee takes the role on
    first sign-in.
    """
    email = email.lower().strip()
    invitation = db.execute(
        select(UserInvitation).where(func.lower(UserInvitation.email) == email)
    ).scalar_one_or_none()
    if invitation is None:
        invitation = UserInvitation(email=email)
        db.add(invitation)
    invitation.token = secrets.token_urlsafe(TOKEN_BYTES)
    invitation.role = Role.NATIONAL_COORDINATOR.value
    invitation.site_id = None
    invitation.small_group_id = None
    invitation.status = InvitationStatus.PENDING.value
    invitation.expires_at = datetime.now(timezone.utc) + timedelta(days=settings.INVITATION_EXPIRY_DAYS)
    invitation.accepted_at = None
    db.flush()
    audit_service.log_event(
        db,
        actor_id=None,
        action=AuditAction.CREATE,
        entity_type=EntityType.USER_INVITATION,
        entity_id=invitation.id,
        metadata={"email": audit_service.hash_email(email), "role": invitation.role, "source": "cli"},
    )
    return invitation
