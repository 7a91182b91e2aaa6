"""Site and small group endpoints."""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from orgscope.core.authorization import AuthorizedRoute
from orgscope.core.deps import get_scoped_db, require_active_scope
from orgscope.db.rls import PrincipalScope
from orgscope.schemas.organization import (
    SiteCreate,
    SiteRead,
    SiteUpdate,
    SmallGroupCreate,
    SmallGroupRead,
    SmallGroupUpdate,
)
from orgscope.services import organization_service

router = APIRouter(tags=["organization"], route_class=AuthorizedRoute)


# =============================================================================
# Sites
# =============================================================================

@router.get("/sites", response_model=list[SiteRead])
def list_sites(
    db: Session = Depends(get_scoped_db),
    scope: PrincipalScope = Depends(require_active_scope),
):
    return organization_service.list_sites(db)


@router.post("/sites", response_model=SiteRead, status_code=201)
def create_site(
    body: SiteCreate,
    request: Request,
    db: Session = Depends(get_scoped_db),
    scope: PrincipalScope = Depends(require_active_scope),
):
    return organization_service.create_site(db, scope, request=request, **body.model_dump())


@router.get("/sites/{site_id}", response_model=SiteRead)
def get_site(
    site_id: UUID,
    db: Session = Depends(get_scoped_db),
    scope: PrincipalScope = Depends(require_active_scope),
):
    return organization_service.get_site(db, site_id)


@router.patch("/sites/{site_id}", response_model=SiteRead)
def update_site(
    site_id: UUID,
    body: SiteUpdate,
    request: Request,
    db: Session = Depends(get_scoped_db),
    scope: PrincipalScope = Depends(require_active_scope),
):
    changes = body.model_dump(include=body.model_fields_set)
    return organization_service.update_site(db, scope, site_id, changes, request=request)


# =============================================================================
# Small groups
# =============================================================================

@router.get("/small-groups", response_model=list[SmallGroupRead])
def list_small_groups(
    site_id: UUID | None = Query(None),
    db: Session = Depends(get_scoped_db),
    scope: PrincipalScope = Depends(require_active_scope),
):
    return organization_service.list_small_groups(db, site_id=site_id)


@router.post("/small-groups", response_model=SmallGroupRead, status_code=201)
def create_small_group(
    body: SmallGroupCreate,
    request: Request,
    db: Session = Depends(get_scoped_db),
    scope: PrincipalScope = Depends(require_active_scope),
):
    return organization_service.create_small_group(db, scope, request=request, **body.model_dump())


@router.get("/small-groups/{group_id}", response_model=SmallGroupRead)
def get_small_group(
    group_id: UUID,
    db: Session = Depends(get_scoped_db),
    scope: PrincipalScope = Depends(require_active_scope),
):
    return organization_service.get_small_group(db, group_id)


@router.patch("/small-groups/{group_id}", response_model=SmallGroupRead)
def update_small_group(
    group_id: UUID,
    body: SmallGroupUpdate,
    request: Request,
    db: Session = Depends(get_scoped_db),
    scope: PrincipalScope = Depends(require_active_scope),
):
    changes = body.model_dump(include=body.model_fields_set)
    return organization_service.update_small_group(db, scope, group_id, changes, request=request)
