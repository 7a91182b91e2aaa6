"""Sites and small groups."""

import uuid

from fastapi import Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from orgscope.core.errors import Forbidden, NotFound, ValidationError
from orgscope.db.enums import AuditAction, EntityType
from orgscope.db.models import Profile, Site, SmallGroup
from orgscope.db.rls import Action, PrincipalScope, can_access
from orgscope.services import audit_service


def _site_row(site: Site) -> dict:
    return {"id": site.id}


def _group_row(group: SmallGroup) -> dict:
    return {"id": group.id, "site_id": group.site_id}


def _check_profile(db: Session, profile_id: str | None, label: str) -> None:
    if profile_id is not None and db.get(Profile, profile_id) is None:
        raise ValidationError(f"{label} not found")


# =============================================================================
# Sites
# =============================================================================

def list_sites(db: Session) -> list[Site]:
    return list(db.execute(select(Site).order_by(Site.name)).scalars())


def get_site(db: Session, site_id: uuid.UUID) -> Site:
    site = db.get(Site, site_id)
    if site is None:
        raise NotFound("Site not found")
    return site


def create_site(
    db: Session,
    scope: PrincipalScope,
    name: str,
    city: str | None = None,
    country: str | None = None,
    coordinator_id: str | None = None,
    request: Request | None = None,
) -> Site:
    if not can_access(scope, "sites", Action.INSERT, {}):
        raise Forbidden("Only national coordinators can create sites")
    name = name.strip()
    if not name:
        raise ValidationError("Site name is required")
    _check_profile(db, coordinator_id, "Coordinator")

    site = Site(name=name, city=city, country=country, coordinator_id=coordinator_id)
    db.add(site)
    db.flush()
    audit_service.log_event(
        db,
        actor_id=scope.principal_id,
        action=AuditAction.CREATE,
        entity_type=EntityType.SITE,
        entity_id=site.id,
        request=request,
    )
    return site


def update_site(
    db: Session,
    scope: PrincipalScope,
    site_id: uuid.UUID,
    changes: dict,
    request: Request | None = None,
) -> Site:
    """Apply ``changes`` (name, city, country, coordinator_id) to a site."""
    site = get_site(db, site_id)
    if not can_access(scope, "sites", Action.UPDATE, _site_row(site)):
        raise Forbidden("You cannot modify this site")
    if "name" in changes:
        name = (changes["name"] or "").strip()
        if not name:
            raise ValidationError("Site name is required")
        site.name = name
    if "city" in changes:
        site.city = changes["city"]
    if "country" in changes:
        site.country = changes["country"]
    if "coordinator_id" in changes:
        _check_profile(db, changes["coordinator_id"], "Coordinator")
        site.coordinator_id = changes["coordinator_id"]
    db.flush()
    audit_service.log_event(
        db,
        actor_id=scope.principal_id,
        action=AuditAction.UPDATE,
        entity_type=EntityType.SITE,
        entity_id=site.id,
        metadata={"fields": sorted(changes)},
        request=request,
    )
    return site


# =============================================================================
# Small groups
# =============================================================================

def list_small_groups(db: Session, site_id: uuid.UUID | None = None) -> list[SmallGroup]:
    query = select(SmallGroup)
    if site_id is not None:
        query = query.where(SmallGroup.site_id == site_id)
    return list(db.execute(query.order_by(SmallGroup.name)).scalars())


def get_small_group(db: Session, group_id: uuid.UUID) -> SmallGroup:
    group = db.get(SmallGroup, group_id)
    if group is None:
        raise NotFound("Small group not found")
    return group


def create_small_group(
    db: Session,
    scope: PrincipalScope,
    name: str,
    site_id: uuid.UUID | None = None,
    meeting_day: str | None = None,
    leader_id: str | None = None,
    request: Request | None = None,
) -> SmallGroup:
    """Create a small group; site coordinators default to their own site."""
    site_id = site_id or scope.site_id
    if site_id is None:
        raise ValidationError("Site is required")
    if not can_access(scope, "small_groups", Action.INSERT, {"site_id": site_id}):
        raise Forbidden("You cannot create groups in this site")
    name = name.strip()
    if not name:
        raise ValidationError("Group name is required")
    get_site(db, site_id)
    _check_profile(db, leader_id, "Leader")

    group = SmallGroup(site_id=site_id, name=name, meeting_day=meeting_day, leader_id=leader_id)
    db.add(group)
    db.flush()
    audit_service.log_event(
        db,
        actor_id=scope.principal_id,
        action=AuditAction.CREATE,
        entity_type=EntityType.SMALL_GROUP,
        entity_id=group.id,
        metadata={"site_id": str(site_id)},
        request=request,
    )
    return group


def update_small_group(
    db: Session,
    scope: PrincipalScope,
    group_id: uuid.UUID,
    changes: dict,
    request: Request | None = None,
) -> SmallGroup:
    """Apply ``changes`` (name, meeting_day, leader_id) to a small group."""
    group = get_small_group(db, group_id)
    if not can_access(scope, "small_groups", Action.UPDATE, _group_row(group)):
        raise Forbidden("You cannot modify this group")
    if "name" in changes:
        name = (changes["name"] or "").strip()
        if not name:
            raise ValidationError("Group name is required")
        group.name = name
    if "meeting_day" in changes:
        group.meeting_day = changes["meeting_day"]
    if "leader_id" in changes:
        _check_profile(db, changes["leader_id"], "Leader")
        group.leader_id = changes["leader_id"]
    db.flush()
    audit_service.log_event(
        db,
        actor_id=scope.principal_id,
        action=AuditAction.UPDATE,
        entity_type=EntityType.SMALL_GROUP,
        entity_id=group.id,
        metadata={"fields": sorted(changes)},
        request=request,
    )
    return group
