"""Financial transaction service."""

import uuid
from datetime import date
from decimal import Decimal

from fastapi import Request
from sqlalchemy import select
from sqlalchemy.orm import Session

from orgscope.core.errors import Forbidden, NotFound, ValidationError
from orgscope.db.enums import AuditAction, EntityType, TransactionStatus, TransactionType
from orgscope.db.models import FinancialTransaction, SmallGroup
from orgscope.db.rls import Action, PrincipalScope, can_access
from orgscope.services import audit_service

CREATE_OPERATION = "create_transaction"


def _row(transaction: FinancialTransaction) -> dict:
    return {
        "site_id": transaction.site_id,
        "small_group_id": transaction.small_group_id,
        "recorded_by_id": transaction.recorded_by_id,
    }


def resolve_scope(
    db: Session,
    scope: PrincipalScope,
    site_id: uuid.UUID | None,
    small_group_id: uuid.UUID | None,
) -> tuple[uuid.UUID | None, uuid.UUID | None]:
    """
    Default the organizational scope of a new row to the caller's own.

    A small group given without a site takes the group's site; a group from
    another site is rejected.
    """
    if site_id is None and small_group_id is None:
        return scope.site_id, scope.small_group_id
    if small_group_id is not None:
        group = db.get(SmallGroup, small_group_id)
        if group is None:
            raise ValidationError("Small group not found")
        if site_id is None:
            site_id = group.site_id
        elif group.site_id != site_id:
            raise ValidationError("Small group does not belong to the selected site")
    return site_id, small_group_id


def create_transaction(
    db: Session,
    scope: PrincipalScope,
    type: TransactionType,
    category: str,
    amount: Decimal,
    date: date,
    description: str | None = None,
    site_id: uuid.UUID | None = None,
    small_group_id: uuid.UUID | None = None,
    request: Request | None = None,
) -> FinancialTransaction:
    """
    Record an income or expense.

    Raises:
        ValidationError: non-positive amount or inconsistent scope
        Forbidden: caller cannot record transactions in this scope
    """
    if amount <= 0:
        raise ValidationError("Amount must be positive")
    category = category.strip()
    if not category:
        raise ValidationError("Category is required")

    site_id, small_group_id = resolve_scope(db, scope, site_id, small_group_id)
    transaction = FinancialTransaction(
        type=type.value,
        category=category,
        amount=amount,
        date=date,
        description=description,
        status=TransactionStatus.APPROVED.value,
        site_id=site_id,
        small_group_id=small_group_id,
        recorded_by_id=scope.principal_id,
    )
    if not can_access(scope, "financial_transactions", Action.INSERT, _row(transaction)):
        raise Forbidden("You cannot record transactions for this scope")

    db.add(transaction)
    db.flush()
    audit_service.log_event(
        db,
        actor_id=scope.principal_id,
        action=AuditAction.CREATE,
        entity_type=EntityType.FINANCIAL_TRANSACTION,
        entity_id=transaction.id,
        metadata={"type": transaction.type, "amount": str(transaction.amount)},
        request=request,
    )
    return transaction


def get_transaction(db: Session, transaction_id: uuid.UUID) -> FinancialTransaction:
    transaction = db.get(FinancialTransaction, transaction_id)
    if transaction is None:
        raise NotFound("Transaction not found")
    return transaction


def list_transactions(
    db: Session,
    site_id: uuid.UUID | None = None,
    small_group_id: uuid.UUID | None = None,
    type: TransactionType | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    limit: int = 100,
) -> list[FinancialTransaction]:
    """Transactions visible to the caller, most recent first."""
    query = select(FinancialTransaction)
    if site_id is not None:
        query = query.where(FinancialTransaction.site_id == site_id)
    if small_group_id is not None:
        query = query.where(FinancialTransaction.small_group_id == small_group_id)
    if type is not None:
        query = query.where(FinancialTransaction.type == type.value)
    if date_from is not None:
        query = query.where(FinancialTransaction.date >= date_from)
    if date_to is not None:
        query = query.where(FinancialTransaction.date <= date_to)
    query = query.order_by(FinancialTransaction.date.desc(), FinancialTransaction.created_at.desc())
    return list(db.execute(query.limit(max(1, min(limit, 500)))).scalars())
