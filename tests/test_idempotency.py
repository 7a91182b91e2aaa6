"""
Unit tests for the idempotency guard.

The database is mocked; the concurrent end-to-end behaviour is covered in
test_rls_postgres.py.
"""
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError

from orgscope.core.errors import ConflictHandled, IdempotencyConflict, ValidationError
from orgscope.services import idempotency_service
from orgscope.services.idempotency_service import guard, validate_token


class _Created(BaseModel):
    id: str
    amount: Decimal


def _db(*records):
    """Mock session whose successive record lookups return ``records``."""
    db = MagicMock()
    db.execute.return_value.scalar_one_or_none.side_effect = list(records)
    return db


def _record(operation="create_transaction", principal_id="user_a", response=None):
    return SimpleNamespace(operation=operation, principal_id=principal_id, response=response or {"id": "t1"})


def _token_conflict(constraint="uq_idempotency_records_token"):
    orig = Exception("duplicate key value violates unique constraint")
    orig.diag = SimpleNamespace(constraint_name=constraint)
    return IntegrityError("INSERT INTO idempotency_records ...", {}, orig)


def test_first_call_runs_and_stores_response():
    db = _db(None)
    fn = MagicMock(return_value=_Created(id="t1", amount=Decimal("10.50")))

    outcome = guard(db, "key-1", fn, operation="create_transaction", principal_id="user_a")

    assert outcome.replayed is False
    assert outcome.response == {"id": "t1", "amount": "10.50"}
    fn.assert_called_once()
    stored = db.add.call_args[0][0]
    assert stored.token == "key-1"
    assert stored.operation == "create_transaction"
    assert stored.principal_id == "user_a"
    assert stored.response == outcome.response
    db.begin_nested.assert_called_once()


def test_existing_record_is_replayed_without_running():
    db = _db(_record(response={"id": "t1"}))
    fn = MagicMock()

    outcome = guard(db, "key-1", fn, operation="create_transaction", principal_id="user_a")

    assert outcome.replayed is True
    assert outcome.response == {"id": "t1"}
    fn.assert_not_called()
    db.add.assert_not_called()


@pytest.mark.parametrize(
    "record",
    [_record(operation="accept_invitation"), _record(principal_id="user_b")],
    ids=["other-operation", "other-principal"],
)
def test_mismatched_record_is_a_conflict(record):
    db = _db(record)
    with pytest.raises(IdempotencyConflict):
        guard(db, "key-1", MagicMock(), operation="create_transaction", principal_id="user_a")


def test_lost_race_replays_winner():
    db = _db(None, _record(response={"id": "winner"}))
    db.flush.side_effect = _token_conflict()
    fn = MagicMock(return_value={"id": "loser"})

    outcome = guard(db, "key-1", fn, operation="create_transaction", principal_id="user_a")

    assert outcome.replayed is True
    assert outcome.response == {"id": "winner"}
    fn.assert_called_once()


def test_lost_race_against_invisible_winner_is_a_conflict():
    # Another principal's record is hidden by row-level security
    db = _db(None, None)
    db.flush.side_effect = _token_conflict()

    with pytest.raises(IdempotencyConflict) as exc_info:
        guard(db, "key-1", MagicMock(return_value={}), operation="create_transaction", principal_id="user_a")
    assert isinstance(exc_info.value.__cause__, ConflictHandled)


def test_token_conflict_is_raised_as_conflict_handled():
    db = _db()
    db.flush.side_effect = _token_conflict()

    with pytest.raises(ConflictHandled):
        idempotency_service._execute_once(db, "key-1", MagicMock(return_value={}), "create_transaction", "user_a")


def test_other_integrity_errors_propagate():
    db = _db(None)
    db.flush.side_effect = _token_conflict(constraint="ck_transactions_amount_positive")

    with pytest.raises(IntegrityError):
        guard(db, "key-1", MagicMock(return_value={}), operation="create_transaction", principal_id="user_a")


def test_errors_from_operation_propagate_and_store_nothing():
    db = _db(None)
    fn = MagicMock(side_effect=ValidationError("Amount must be positive"))

    with pytest.raises(ValidationError):
        guard(db, "key-1", fn, operation="create_transaction", principal_id="user_a")
    db.add.assert_not_called()


@pytest.mark.parametrize("token", [None, "", "   ", "x" * 256])
def test_invalid_tokens(token):
    with pytest.raises(ValidationError):
        validate_token(token)


def test_token_is_stripped():
    assert validate_token("  key-1 ") == "key-1"


def test_purge_expired_returns_rowcount():
    db = MagicMock()
    db.execute.return_value.rowcount = 3
    assert idempotency_service.purge_expired(db, retention_hours=1) == 3
    db.execute.assert_called_once()
