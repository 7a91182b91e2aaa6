"""Tests for recording financial transactions within the caller's scope."""
import uuid
from datetime import date
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from orgscope.core.errors import Forbidden, ValidationError
from orgscope.db.enums import Role, TransactionType
from orgscope.db.rls import PrincipalScope
from orgscope.services import audit_service, transaction_service

SITE = uuid.uuid4()
GROUP = uuid.uuid4()
OTHER_GROUP = uuid.uuid4()

LEADER = PrincipalScope(principal_id="sgl", role=Role.SMALL_GROUP_LEADER, site_id=SITE, small_group_id=GROUP)
MEMBER = PrincipalScope(principal_id="m", role=Role.MEMBER, site_id=SITE, small_group_id=GROUP)


@pytest.fixture(autouse=True)
def audit_calls(monkeypatch):
    calls = MagicMock()
    monkeypatch.setattr(audit_service, "log_event", calls)
    return calls


def _db(group_site=SITE):
    db = MagicMock()
    db.get.return_value = SimpleNamespace(site_id=group_site)
    return db


def _create(db, scope, amount="25.00", **kwargs):
    return transaction_service.create_transaction(
        db,
        scope,
        type=TransactionType.INCOME,
        category="Offering",
        amount=Decimal(amount),
        date=date(2026, 9, 1),
        **kwargs,
    )


def test_leader_records_in_own_group(audit_calls):
    db = _db()

    transaction = _create(db, LEADER)

    assert transaction.site_id == SITE
    assert transaction.small_group_id == GROUP
    assert transaction.recorded_by_id == "sgl"
    assert transaction.status == "approved"
    db.add.assert_called_once_with(transaction)
    assert audit_calls.call_args.kwargs["metadata"] == {"type": "income", "amount": "25.00"}


def test_leader_cannot_record_for_another_group():
    with pytest.raises(Forbidden):
        _create(_db(), LEADER, small_group_id=OTHER_GROUP)


def test_member_cannot_record():
    with pytest.raises(Forbidden):
        _create(_db(), MEMBER)


@pytest.mark.parametrize("amount", ["0", "-5.00"])
def test_non_positive_amount_is_rejected(amount):
    db = _db()
    with pytest.raises(ValidationError):
        _create(db, LEADER, amount=amount)
    db.add.assert_not_called()


def test_blank_category_is_rejected():
    with pytest.raises(ValidationError):
        transaction_service.create_transaction(
            _db(), LEADER, type=TransactionType.EXPENSE, category="  ",
            amount=Decimal("1"), date=date(2026, 9, 1),
        )


def test_resolve_scope_defaults_to_caller():
    db = MagicMock()
    assert transaction_service.resolve_scope(db, LEADER, None, None) == (SITE, GROUP)
    db.get.assert_not_called()


def test_resolve_scope_derives_site_from_group():
    assert transaction_service.resolve_scope(_db(), LEADER, None, OTHER_GROUP) == (SITE, OTHER_GROUP)


def test_resolve_scope_rejects_group_of_other_site():
    with pytest.raises(ValidationError):
        transaction_service.resolve_scope(_db(group_site=uuid.uuid4()), LEADER, SITE, GROUP)


def test_resolve_scope_rejects_unknown_group():
    db = MagicMock()
    db.get.return_value = None
    with pytest.raises(ValidationError):
        transaction_service.resolve_scope(db, LEADER, None, GROUP)
