"""Audit router - read-only views of the audit log (national coordinators)."""

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from orgscope.core.authorization import AuthorizedRoute
from orgscope.core.deps import get_scoped_db, require_roles
from orgscope.db.enums import AuditAction, EntityType, Role
from orgscope.schemas.audit import AuditLogListResponse, AuditLogRead
from orgscope.services import audit_service

router = APIRouter(
    prefix="/audit-logs",
    tags=["audit"],
    route_class=AuthorizedRoute,
    dependencies=[Depends(require_roles([Role.NATIONAL_COORDINATOR]))],
)


def _list_response(entries) -> AuditLogListResponse:
    items = [AuditLogRead.model_validate(entry) for entry in entries]
    return AuditLogListResponse(items=items, total=len(items))


@router.get("", response_model=AuditLogListResponse)
def list_recent(
    limit: int = Query(50, ge=1, le=audit_service.MAX_PAGE_SIZE),
    since: datetime | None = Query(None, description="Only entries at or after this time"),
    action: AuditAction | None = Query(None),
    db: Session = Depends(get_scoped_db),
):
    return _list_response(audit_service.list_recent(db, limit=limit, since=since, action=action))


@router.get("/entity/{entity_type}/{entity_id}", response_model=AuditLogListResponse)
def list_for_entity(
    entity_type: EntityType,
    entity_id: str,
    limit: int = Query(50, ge=1, le=audit_service.MAX_PAGE_SIZE),
    db: Session = Depends(get_scoped_db),
):
    return _list_response(audit_service.list_for_entity(db, entity_type, entity_id, limit=limit))


@router.get("/actor/{actor_id}", response_model=AuditLogListResponse)
def list_for_actor(
    actor_id: str,
    limit: int = Query(50, ge=1, le=audit_service.MAX_PAGE_SIZE),
    db: Session = Depends(get_scoped_db),
):
    return _list_response(audit_service.list_for_actor(db, actor_id, limit=limit))
