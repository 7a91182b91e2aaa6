"""Invitation endpoints."""

import hashlib
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query, Request
from sqlalchemy.orm import Session

from orgscope.core.authorization import AuthorizedRoute
from orgscope.core.deps import get_principal, get_scoped_db, require_active_scope
from orgscope.core.identity import Principal
from orgscope.core.result import unwrap
from orgscope.db.enums import InvitationStatus
from orgscope.db.models import UserInvitation
from orgscope.db.rls import PrincipalScope
from orgscope.schemas.invitation import (
    InvitationAccept,
    InvitationAcceptResult,
    InvitationCreate,
    InvitationCreated,
    InvitationRead,
)
from orgscope.services import idempotency_service, invitation_service

router = APIRouter(prefix="/invitations", tags=["invitations"], route_class=AuthorizedRoute)

ACCEPT_OPERATION = "accept_invitation"


# =============================================================================
# Helpers
# =============================================================================

def _invitation_to_read(invitation: UserInvitation) -> InvitationRead:
    return InvitationRead(
        id=invitation.id,
        email=invitation.email,
        role=invitation.role,
        status=invitation_service.get_invitation_status(invitation),
        site_id=invitation.site_id,
        small_group_id=invitation.small_group_id,
        invited_by_id=invitation.invited_by_id,
        expires_at=invitation.expires_at,
        accepted_at=invitation.accepted_at,
        created_at=invitation.created_at,
    )


def _accept_key(idempotency_key: str | None, token: str) -> str:
    """Caller-supplied key, else one derived from the invitation token (never stored raw)."""
    if idempotency_key:
        return idempotency_key
    return "accept:" + hashlib.sha256(token.encode()).hexdigest()


# =============================================================================
# Endpoints
# =============================================================================

@router.get("", response_model=list[InvitationRead])
def list_invitations(
    status: InvitationStatus | None = Query(None),
    db: Session = Depends(get_scoped_db),
    scope: PrincipalScope = Depends(require_active_scope),
):
    """List invitations visible to the caller."""
    return [_invitation_to_read(inv) for inv in invitation_service.list_invitations(db, status)]


@router.post("", response_model=InvitationCreated, status_code=201)
def create_invitation(
    body: InvitationCreate,
    request: Request,
    db: Session = Depends(get_scoped_db),
    scope: PrincipalScope = Depends(require_active_scope),
):
    """Invite a user; the response carries the token for the invitation link."""
    invitation = invitation_service.create_invitation(
        db,
        scope,
        email=body.email,
        role=body.role,
        site_id=body.site_id,
        small_group_id=body.small_group_id,
        mandate_start_date=body.mandate_start_date,
        mandate_end_date=body.mandate_end_date,
        request=request,
    )
    return InvitationCreated(
        **_invitation_to_read(invitation).model_dump(),
        token=invitation.token,
    )


@router.post("/{invitation_id}/revoke", response_model=InvitationRead)
def revoke_invitation(
    invitation_id: UUID,
    request: Request,
    db: Session = Depends(get_scoped_db),
    scope: PrincipalScope = Depends(require_active_scope),
):
    invitation = invitation_service.revoke_invitation(db, scope, invitation_id, request=request)
    return _invitation_to_read(invitation)


@router.post("/accept", response_model=InvitationAcceptResult)
def accept_invitation(
    body: InvitationAccept,
    db: Session = Depends(get_scoped_db),
    principal: Principal = Depends(get_principal),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    """
    Accept an invitation as the signed-in user.

    Retries with the same Idempotency-Key (or the same token) replay the first
    successful response instead of failing as already accepted.
    """
    outcome = idempotency_service.guard(
        db,
        _accept_key(idempotency_key, body.token),
        lambda: unwrap(invitation_service.accept_invitation(db, principal.id, body.token)),
        operation=ACCEPT_OPERATION,
        principal_id=principal.id,
    )
    return outcome.response
