"""
Internal endpoints for scheduled/cron operations.

Protected by ``Authorization: Bearer <CRON_SECRET>``. No principal is
claimed; jobs run on the system session and commit explicitly.
"""

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from orgscope.core.deps import get_system_db, require_cron_secret
from orgscope.services import idempotency_service, invitation_service

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/internal/cron",
    tags=["internal"],
    dependencies=[Depends(require_cron_secret)],
)


class PurgeResponse(BaseModel):
    deleted: int


class ExpireInvitationsResponse(BaseModel):
    expired: int


@router.post("/purge-idempotency", response_model=PurgeResponse)
def purge_idempotency(db: Session = Depends(get_system_db)):
    """Delete idempotency records older than the retention window."""
    try:
        deleted = idempotency_service.purge_expired(db)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Purged idempotency records", extra={"deleted": deleted})
    return PurgeResponse(deleted=deleted)


@router.post("/mark-expired-invitations", response_model=ExpireInvitationsResponse)
def mark_expired_invitations(db: Session = Depends(get_system_db)):
    """Flip pending invitations past their expiry to expired."""
    try:
        expired = invitation_service.mark_expired(db)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Marked expired invitations", extra={"expired": expired})
    return ExpireInvitationsResponse(expired=expired)
