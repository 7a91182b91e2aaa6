"""User administration endpoints."""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy.orm import Session

from orgscope.core.authorization import AuthorizedRoute
from orgscope.core.deps import get_principal_scope, get_scoped_db, require_active_scope, require_roles
from orgscope.core.result import unwrap
from orgscope.db.enums import ProfileStatus, Role
from orgscope.db.rls import PrincipalScope
from orgscope.schemas.profile import DeletionEligibilityRead, ProfileRead, ProfileUpdate
from orgscope.services import profile_service

router = APIRouter(prefix="/users", tags=["users"], route_class=AuthorizedRoute)


@router.get("", response_model=list[ProfileRead])
def list_users(
    site_id: UUID | None = Query(None),
    small_group_id: UUID | None = Query(None),
    role: Role | None = Query(None),
    status: ProfileStatus | None = Query(None),
    db: Session = Depends(get_scoped_db),
    scope: PrincipalScope = Depends(require_active_scope),
):
    """List users visible to the caller's role and scope."""
    return profile_service.list_profiles(
        db, site_id=site_id, small_group_id=small_group_id, role=role, status=status
    )


@router.get("/{user_id}", response_model=ProfileRead)
def get_user(
    user_id: str,
    db: Session = Depends(get_scoped_db),
    scope: PrincipalScope = Depends(get_principal_scope),
):
    return profile_service.get_profile(db, user_id)


@router.patch("/{user_id}", response_model=ProfileRead)
def update_user(
    user_id: str,
    body: ProfileUpdate,
    request: Request,
    db: Session = Depends(get_scoped_db),
    scope: PrincipalScope = Depends(require_active_scope),
):
    """Change a user's name, role, scope, status or mandate dates."""
    changes = profile_service.ProfileChanges(
        **body.model_dump(),
        fields_set=set(body.model_fields_set),
    )
    return profile_service.update_profile(db, scope, user_id, changes, request=request)


@router.post("/{user_id}/archive", response_model=ProfileRead)
def archive_user(
    user_id: str,
    request: Request,
    db: Session = Depends(get_scoped_db),
    scope: PrincipalScope = Depends(require_active_scope),
):
    """Soft delete: the user is marked inactive and keeps their data."""
    return profile_service.archive_profile(db, scope, user_id, request=request)


@router.get("/{user_id}/deletion-eligibility", response_model=DeletionEligibilityRead)
def get_deletion_eligibility(
    user_id: str,
    db: Session = Depends(get_scoped_db),
    scope: PrincipalScope = Depends(require_roles([Role.NATIONAL_COORDINATOR])),
):
    """National coordinators only: other roles cannot see every dependent row."""
    profile_service.get_profile(db, user_id)
    eligibility = profile_service.check_deletion_eligibility(db, user_id)
    return DeletionEligibilityRead(
        can_delete=eligibility.can_delete,
        reason=eligibility.reason,
        blocking=list(eligibility.blocking),
    )


@router.delete("/{user_id}", status_code=204)
def delete_user(
    user_id: str,
    request: Request,
    db: Session = Depends(get_scoped_db),
    scope: PrincipalScope = Depends(require_active_scope),
):
    """Hard delete; refused with 409 while the user owns reports, activities or transactions."""
    unwrap(profile_service.delete_profile(db, scope, user_id, request=request))
    return Response(status_code=204)
