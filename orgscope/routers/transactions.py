"""Financial transaction endpoints."""

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query, Request, Response
from sqlalchemy.orm import Session

from orgscope.core.authorization import AuthorizedRoute
from orgscope.core.deps import get_scoped_db, require_active_scope
from orgscope.db.enums import TransactionType
from orgscope.db.rls import PrincipalScope
from orgscope.schemas.records import TransactionCreate, TransactionRead
from orgscope.services import idempotency_service, transaction_service

router = APIRouter(prefix="/transactions", tags=["transactions"], route_class=AuthorizedRoute)

REPLAY_HEADER = "Idempotent-Replayed"


@router.get("", response_model=list[TransactionRead])
def list_transactions(
    site_id: UUID | None = Query(None),
    small_group_id: UUID | None = Query(None),
    type: TransactionType | None = Query(None),
    date_from: date | None = Query(None),
    date_to: date | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_scoped_db),
    scope: PrincipalScope = Depends(require_active_scope),
):
    return transaction_service.list_transactions(
        db,
        site_id=site_id,
        small_group_id=small_group_id,
        type=type,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
    )


@router.post("", response_model=TransactionRead, status_code=201)
def create_transaction(
    body: TransactionCreate,
    request: Request,
    response: Response,
    db: Session = Depends(get_scoped_db),
    scope: PrincipalScope = Depends(require_active_scope),
    idempotency_key: str | None = Header(None, alias="Idempotency-Key"),
):
    """
    Record an income or expense.

    With an Idempotency-Key header, retries (including concurrent ones)
    create a single transaction and all receive the same payload.
    """
    def create():
        transaction = transaction_service.create_transaction(
            db, scope, request=request, **body.model_dump()
        )
        return TransactionRead.model_validate(transaction)

    if idempotency_key is None:
        return create()

    outcome = idempotency_service.guard(
        db,
        idempotency_key,
        create,
        operation=transaction_service.CREATE_OPERATION,
        principal_id=scope.principal_id,
    )
    if outcome.replayed:
        response.headers[REPLAY_HEADER] = "true"
    return outcome.response


@router.get("/{transaction_id}", response_model=TransactionRead)
def get_transaction(
    transaction_id: UUID,
    db: Session = Depends(get_scoped_db),
    scope: PrincipalScope = Depends(require_active_scope),
):
    return transaction_service.get_transaction(db, transaction_id)
