"""Activity service.

Lifecycle rules (reportability windows, status transitions) live with the
clients; this module only records activities within the caller's scope.
"""

import uuid
from datetime import datetime

from fastapi import Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from orgscope.core.errors import Forbidden, NotFound, ValidationError
from orgscope.db.enums import ActivityLevel, ActivityStatus, AuditAction, EntityType
from orgscope.db.models import Activity
from orgscope.db.rls import Action, PrincipalScope, can_access
from orgscope.services import audit_service
from orgscope.services.transaction_service import resolve_scope


def _row(activity: Activity) -> dict:
    return {
        "site_id": activity.site_id,
        "small_group_id": activity.small_group_id,
        "created_by_id": activity.created_by_id,
    }


def _level_for(site_id: uuid.UUID | None, small_group_id: uuid.UUID | None) -> ActivityLevel:
    if small_group_id is not None:
        return ActivityLevel.SMALL_GROUP
    if site_id is not None:
        return ActivityLevel.SITE
    return ActivityLevel.NATIONAL


def create_activity(
    db: Session,
    scope: PrincipalScope,
    title: str,
    date: datetime,
    thematic: str | None = None,
    site_id: uuid.UUID | None = None,
    small_group_id: uuid.UUID | None = None,
    request: Request | None = None,
) -> Activity:
    """Plan an activity; the level follows from the scope it is attached to."""
    title = title.strip()
    if not title:
        raise ValidationError("Title is required")
    site_id, small_group_id = resolve_scope(db, scope, site_id, small_group_id)

    activity = Activity(
        title=title,
        thematic=thematic,
        date=date,
        status=ActivityStatus.PLANNED.value,
        level=_level_for(site_id, small_group_id).value,
        site_id=site_id,
        small_group_id=small_group_id,
        created_by_id=scope.principal_id,
    )
    if not can_access(scope, "activities", Action.INSERT, _row(activity)):
        raise Forbidden("You cannot create activities for this scope")

    db.add(activity)
    db.flush()
    audit_service.log_event(
        db,
        actor_id=scope.principal_id,
        action=AuditAction.CREATE,
        entity_type=EntityType.ACTIVITY,
        entity_id=activity.id,
        metadata={"level": activity.level},
        request=request,
    )
    return activity


def get_activity(db: Session, activity_id: uuid.UUID) -> Activity:
    activity = db.get(Activity, activity_id)
    if activity is None:
        raise NotFound("Activity not found")
    return activity


def list_activities(
    db: Session,
    site_id: uuid.UUID | None = None,
    small_group_id: uuid.UUID | None = None,
    status: ActivityStatus | None = None,
    limit: int = 100,
) -> list[Activity]:
    query = select(Activity)
    if site_id is not None:
        query = query.where(Activity.site_id == site_id)
    if small_group_id is not None:
        query = query.where(Activity.small_group_id == small_group_id)
    if status is not None:
        query = query.where(Activity.status == status.value)
    query = query.order_by(Activity.date.desc()).limit(max(1, min(limit, 500)))
    return list(db.execute(query).scalars())


def update_activity_status(
    db: Session,
    scope: PrincipalScope,
    activity_id: uuid.UUID,
    status: ActivityStatus,
    request: Request | None = None,
) -> Activity:
    activity = get_activity(db, activity_id)
    if not can_access(scope, "activities", Action.UPDATE, _row(activity)):
        raise Forbidden("You cannot modify this activity")
    before = activity.status
    activity.status = status.value
    db.flush()
    audit_service.log_event(
        db,
        actor_id=scope.principal_id,
        action=AuditAction.UPDATE,
        entity_type=EntityType.ACTIVITY,
        entity_id=activity.id,
        metadata={"before": before, "after": activity.status},
        request=request,
    )
    return activity
