"""Audit logging service - append-only record of state-changing actions.

Security guidelines:
- NEVER log secrets (tokens, idempotency keys, session cookies)
- Hash emails in metadata (use hash_email)
- Use IDs instead of raw data where possible
- IP: Trust X-Forwarded-For only behind a configured proxy

Entries are written in the same transaction as the change they describe, so a
rolled-back change leaves no audit trail and a committed one always does.
"""

import hashlib
from datetime import datetime
from typing import Any

from fastapi import Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from orgscope.core.config import settings
from orgscope.db.enums import AuditAction, EntityType
from orgscope.db.models import AuditLog

MAX_PAGE_SIZE = 200


def hash_email(email: str) -> str:
    """Hash email for audit metadata (prefix + SHA256 suffix for debugging)."""
    if not email:
        return ""
    prefix = email.split("@")[0][:3] if "@" in email else email[:3]
    suffix = hashlib.sha256(email.lower().encode()).hexdigest()[:12]
    return f"{prefix}...@[hash:{suffix}]"


def get_client_ip(request: Request | None) -> str | None:
    """
    Extract client IP from request.

    Only trusts X-Forwarded-For when TRUST_PROXY_HEADERS=True (behind reverse proxy).
    """
    if not request:
        return None

    if settings.TRUST_PROXY_HEADERS:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            # X-Forwarded-For: client, proxy1, proxy2 - take first
            return forwarded.split(",")[0].strip()[:45]

    if request.client:
        return request.client.host
    return None


def get_user_agent(request: Request | None) -> str | None:
    if not request:
        return None
    ua = request.headers.get("user-agent", "")
    return ua[:500] if ua else None


def log_event(
    db: Session,
    actor_id: str | None,
    action: AuditAction,
    entity_type: EntityType,
    entity_id: Any,
    metadata: dict[str, Any] | None = None,
    request: Request | None = None,
) -> AuditLog:
    """
    Append an audit entry in the caller's transaction.

    Args:
        db: Database session (principal-bound sessions may only log as themselves)
        actor_id: Principal who performed the action (None for system jobs)
        action: What happened
        entity_type: Type of entity affected
        entity_id: ID of the affected entity
        metadata: Additional context (must be redacted - no secrets/raw PII)
        request: FastAPI request for IP/user-agent extraction
    """
    entry = AuditLog(
        actor_id=actor_id,
        action=action.value,
        entity_type=entity_type.value,
        entity_id=str(entity_id),
        metadata_=metadata or None,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    db.add(entry)
    db.flush()
    return entry


def _page(limit: int) -> int:
    return max(1, min(limit, MAX_PAGE_SIZE))


def list_for_entity(
    db: Session,
    entity_type: EntityType,
    entity_id: Any,
    limit: int = 50,
) -> list[AuditLog]:
    return list(
        db.execute(
            select(AuditLog)
            .where(AuditLog.entity_type == entity_type.value)
            .where(AuditLog.entity_id == str(entity_id))
            .order_by(AuditLog.created_at.desc())
            .limit(_page(limit))
        ).scalars()
    )


def list_for_actor(db: Session, actor_id: str, limit: int = 50) -> list[AuditLog]:
    return list(
        db.execute(
            select(AuditLog)
            .where(AuditLog.actor_id == actor_id)
            .order_by(AuditLog.created_at.desc())
            .limit(_page(limit))
        ).scalars()
    )


def list_recent(
    db: Session,
    limit: int = 50,
    since: datetime | None = None,
    action: AuditAction | None = None,
) -> list[AuditLog]:
    """Most recent entries first, optionally filtered by time and action."""
    query = select(AuditLog)
    if since is not None:
        query = query.where(AuditLog.created_at >= since)
    if action is not None:
        query = query.where(AuditLog.action == action.value)
    return list(
        db.execute(query.order_by(AuditLog.created_at.desc()).limit(_page(limit))).scalars()
    )
