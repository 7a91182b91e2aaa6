"""Identity bootstrap endpoint.

``GET /auth/me`` is the one API route that runs without a principal-bound
session: it creates the caller's profile on first sign-in, which no
principal-scoped policy could allow.
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from orgscope.core.deps import get_system_db
from orgscope.core.identity import resolve_principal
from orgscope.core.rate_limit import limiter
from orgscope.db.enums import ProfileStatus
from orgscope.schemas.profile import MeResponse, ProfileRead
from orgscope.services import profile_service

router = APIRouter(prefix="/auth", tags=["auth"])


@router.get("/me", response_model=MeResponse)
@limiter.limit("30/minute")
def get_me(request: Request, db: Session = Depends(get_system_db)):
    """
    Return the current principal's profile, creating it on first sign-in.

    A pending invitation for the principal's email is applied during
    creation; without one the profile stays inactive until an administrator
    assigns a role.
    """
    principal = resolve_principal(request, request.app.state.identity_provider)
    try:
        profile = profile_service.sync_profile(db, principal)
        response = MeResponse(
            profile=ProfileRead.model_validate(profile),
            is_active=profile.status == ProfileStatus.ACTIVE.value,
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    return response
