"""Activity and report endpoints."""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from orgscope.core.authorization import AuthorizedRoute
from orgscope.core.deps import get_scoped_db, require_active_scope
from orgscope.db.enums import ActivityStatus, ReportStatus
from orgscope.db.rls import PrincipalScope
from orgscope.schemas.records import (
    ActivityCreate,
    ActivityRead,
    ActivityStatusUpdate,
    ReportCreate,
    ReportRead,
)
from orgscope.services import activity_service, report_service

router = APIRouter(tags=["activities"], route_class=AuthorizedRoute)


# =============================================================================
# Activities
# =============================================================================

@router.get("/activities", response_model=list[ActivityRead])
def list_activities(
    site_id: UUID | None = Query(None),
    small_group_id: UUID | None = Query(None),
    status: ActivityStatus | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_scoped_db),
    scope: PrincipalScope = Depends(require_active_scope),
):
    return activity_service.list_activities(
        db, site_id=site_id, small_group_id=small_group_id, status=status, limit=limit
    )


@router.post("/activities", response_model=ActivityRead, status_code=201)
def create_activity(
    body: ActivityCreate,
    request: Request,
    db: Session = Depends(get_scoped_db),
    scope: PrincipalScope = Depends(require_active_scope),
):
    return activity_service.create_activity(db, scope, request=request, **body.model_dump())


@router.get("/activities/{activity_id}", response_model=ActivityRead)
def get_activity(
    activity_id: UUID,
    db: Session = Depends(get_scoped_db),
    scope: PrincipalScope = Depends(require_active_scope),
):
    return activity_service.get_activity(db, activity_id)


@router.patch("/activities/{activity_id}/status", response_model=ActivityRead)
def update_activity_status(
    activity_id: UUID,
    body: ActivityStatusUpdate,
    request: Request,
    db: Session = Depends(get_scoped_db),
    scope: PrincipalScope = Depends(require_active_scope),
):
    return activity_service.update_activity_status(
        db, scope, activity_id, body.status, request=request
    )


# =============================================================================
# Reports
# =============================================================================

@router.get("/reports", response_model=list[ReportRead])
def list_reports(
    site_id: UUID | None = Query(None),
    status: ReportStatus | None = Query(None),
    activity_id: UUID | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_scoped_db),
    scope: PrincipalScope = Depends(require_active_scope),
):
    return report_service.list_reports(
        db, site_id=site_id, status=status, activity_id=activity_id, limit=limit
    )


@router.post("/reports", response_model=ReportRead, status_code=201)
def create_report(
    body: ReportCreate,
    request: Request,
    db: Session = Depends(get_scoped_db),
    scope: PrincipalScope = Depends(require_active_scope),
):
    return report_service.create_report(db, scope, request=request, **body.model_dump())


@router.get("/reports/{report_id}", response_model=ReportRead)
def get_report(
    report_id: UUID,
    db: Session = Depends(get_scoped_db),
    scope: PrincipalScope = Depends(require_active_scope),
):
    return report_service.get_report(db, report_id)
