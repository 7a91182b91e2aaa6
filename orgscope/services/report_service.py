"""Report service."""

import uuid

from fastapi import Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from orgscope.core.errors import Forbidden, NotFound, ValidationError
from orgscope.db.enums import AuditAction, EntityType, ReportStatus
from orgscope.db.models import Report
from orgscope.db.rls import Action, PrincipalScope, can_access
from orgscope.services import audit_service
from orgscope.services.activity_service import get_activity
from orgscope.services.transaction_service import resolve_scope


def _row(report: Report) -> dict:
    return {
        "site_id": report.site_id,
        "small_group_id": report.small_group_id,
        "submitted_by_id": report.submitted_by_id,
    }


def create_report(
    db: Session,
    scope: PrincipalScope,
    title: str,
    content: str | None = None,
    activity_id: uuid.UUID | None = None,
    site_id: uuid.UUID | None = None,
    small_group_id: uuid.UUID | None = None,
    request: Request | None = None,
) -> Report:
    """
    Submit a report.

    A report on an activity inherits the activity's scope; otherwise the
    scope defaults to the caller's own.
    """
    title = title.strip()
    if not title:
        raise ValidationError("Title is required")
    if activity_id is not None:
        activity = get_activity(db, activity_id)
        site_id, small_group_id = activity.site_id, activity.small_group_id
    else:
        site_id, small_group_id = resolve_scope(db, scope, site_id, small_group_id)

    report = Report(
        title=title,
        content=content,
        status=ReportStatus.SUBMITTED.value,
        activity_id=activity_id,
        site_id=site_id,
        small_group_id=small_group_id,
        submitted_by_id=scope.principal_id,
    )
    if not can_access(scope, "reports", Action.INSERT, _row(report)):
        raise Forbidden("You cannot submit reports for this scope")

    db.add(report)
    db.flush()
    audit_service.log_event(
        db,
        actor_id=scope.principal_id,
        action=AuditAction.CREATE,
        entity_type=EntityType.REPORT,
        entity_id=report.id,
        metadata={"activity_id": str(activity_id) if activity_id else None},
        request=request,
    )
    return report


def get_report(db: Session, report_id: uuid.UUID) -> Report:
    report = db.get(Report, report_id)
    if report is None:
        raise NotFound("Report not found")
    return report


def list_reports(
    db: Session,
    site_id: uuid.UUID | None = None,
    status: ReportStatus | None = None,
    activity_id: uuid.UUID | None = None,
    limit: int = 100,
) -> list[Report]:
    query = select(Report)
    if site_id is not None:
        query = query.where(Report.site_id == site_id)
    if status is not None:
        query = query.where(Report.status == status.value)
    if activity_id is not None:
        query = query.where(Report.activity_id == activity_id)
    query = query.order_by(Report.created_at.desc()).limit(max(1, min(limit, 500)))
    return list(db.execute(query).scalars())
