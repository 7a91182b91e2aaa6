"""Idempotency guard for retryable state-changing operations.

For one token, any number of concurrent callers observe exactly one durable
execution of the guarded operation; everyone else gets the stored response.
The unique constraint on ``idempotency_records.token`` arbitrates races.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from fastapi.encoders import jsonable_encoder
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from orgscope.core.config import settings
from orgscope.core.errors import ConflictHandled, IdempotencyConflict, ValidationError
from orgscope.core.structured_logging import fingerprint
from orgscope.db.models import IdempotencyRecord

logger = logging.getLogger(__name__)

TOKEN_CONSTRAINT = "uq_idempotency_records_token"
MAX_TOKEN_LENGTH = 255


@dataclass(frozen=True)
class GuardOutcome:
    response: Any
    replayed: bool


def _is_token_conflict(error: IntegrityError) -> bool:
    constraint_name = getattr(getattr(error.orig, "diag", None), "constraint_name", None)
    if constraint_name == TOKEN_CONSTRAINT:
        return True
    message = str(error.orig) if error.orig else str(error)
    return TOKEN_CONSTRAINT in message


def validate_token(token: str | None) -> str:
    if not token or not token.strip():
        raise ValidationError("Idempotency key is required")
    token = token.strip()
    if len(token) > MAX_TOKEN_LENGTH:
        raise ValidationError("Idempotency key is too long")
    return token


def get_record(db: Session, token: str) -> IdempotencyRecord | None:
    return db.execute(
        select(IdempotencyRecord).where(IdempotencyRecord.token == token)
    ).scalar_one_or_none()


def _replay(record: IdempotencyRecord, operation: str, principal_id: str) -> GuardOutcome:
    if record.operation != operation or record.principal_id != principal_id:
        raise IdempotencyConflict("Idempotency key was already used for a different request")
    return GuardOutcome(response=record.response, replayed=True)


def _execute_once(db: Session, token: str, fn: Callable[[], Any], operation: str, principal_id: str) -> Any:
    """Run ``fn`` and record its response in one SAVEPOINT.

    Raises ConflictHandled when a concurrent transaction inserted the token
    first; the savepoint, and everything ``fn`` did, is rolled back.
    """
    try:
        with db.begin_nested():
            response = jsonable_encoder(fn())
            db.add(
                IdempotencyRecord(
                    token=token,
                    operation=operation,
                    principal_id=principal_id,
                    response=response,
                )
            )
            db.flush()
    except IntegrityError as exc:
        if not _is_token_conflict(exc):
            raise
        raise ConflictHandled(internal="idempotency token inserted concurrently") from exc
    return response


def guard(
    db: Session,
    token: str,
    fn: Callable[[], Any],
    *,
    operation: str,
    principal_id: str,
) -> GuardOutcome:
    """
    Run ``fn`` at most once per ``token``.

    1. An existing record for the token is replayed; ``fn`` is not called.
    2. Otherwise ``fn`` runs inside a SAVEPOINT and the record is inserted
       with its JSON-encoded result.
    3. If a concurrent transaction inserted the token first, the savepoint
       (and everything ``fn`` did) is rolled back and the winner's record is
       replayed.

    Raises:
        IdempotencyConflict: token used for another operation, or owned by
            another principal (invisible to this one under row-level security)
    """
    token = validate_token(token)
    existing = get_record(db, token)
    if existing is not None:
        return _replay(existing, operation, principal_id)

    try:
        response = _execute_once(db, token, fn, operation, principal_id)
    except ConflictHandled as exc:
        winner = get_record(db, token)
        if winner is None:
            raise IdempotencyConflict("Idempotency key was already used for a different request") from exc
        logger.info(
            "Idempotency race resolved",
            extra={"operation": operation, "token_fp": fingerprint(token)},
        )
        return _replay(winner, operation, principal_id)

    return GuardOutcome(response=response, replayed=False)


def purge_expired(db: Session, retention_hours: int | None = None) -> int:
    """Delete records older than the retention window. Returns rows deleted."""
    hours = settings.IDEMPOTENCY_RETENTION_HOURS if retention_hours is None else retention_hours
    cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)
    result = db.execute(
        delete(IdempotencyRecord).where(IdempotencyRecord.created_at < cutoff)
    )
    return result.rowcount or 0
