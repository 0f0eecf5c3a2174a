"""
Unit tests for balance_service.get_balance_response.

These tests avoid Flask and real DB access. LedgerRepository is patched so the
response builder sees a fixed ledger snapshot.
"""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from tripledger.app.errors import AppError, ErrorCode, LedgerInconsistency
from tripledger.app.money import Money
from tripledger.app.repository import BalanceInputs
from tripledger.app.services import balance_service


_REPO = "tripledger.app.services.balance_service.LedgerRepository"


def _inputs(split_amounts=("33.34", "33.33", "33.33")) -> BalanceInputs:
    return BalanceInputs(
        group_id=5,
        currency="USD",
        member_ids=[1, 2, 3, 4],
        expenses=[SimpleNamespace(id=10, paid_by_user_id=1, amount=Money.of("100.00", "USD"))],
        splits=[
            SimpleNamespace(expense_id=10, user_id=uid, amount=Money.of(a, "USD"), settled=(uid == 1))
            for uid, a in zip((1, 2, 3), split_amounts)
        ],
        settlements=[],
    )


@patch(_REPO)
def test_balance_response_shape(mock_repo_cls):
    mock_repo_cls.return_value.load_balance_inputs.return_value = _inputs()

    response = balance_service.get_balance_response(group_id=5, session=MagicMock())

    assert response == {
        "group_id": 5,
        "currency": "USD",
        "balances": [
            {"user_id": 1, "balance": "66.66"},
            {"user_id": 2, "balance": "-33.33"},
            {"user_id": 3, "balance": "-33.33"},
            {"user_id": 4, "balance": "0.00"},
        ],
        "settlement_plan": [
            {"from_user_id": 2, "to_user_id": 1, "amount": "33.33"},
            {"from_user_id": 3, "to_user_id": 1, "amount": "33.33"},
        ],
        "balance_sum": "0.00",
    }


def test_balance_response_group_not_found():
    session = MagicMock()
    session.get.return_value = None

    with pytest.raises(AppError) as exc_info:
        balance_service.get_balance_response(group_id=999, session=session)

    assert exc_info.value.code == ErrorCode.GROUP_NOT_FOUND
    assert exc_info.value.http_status == 404


@patch(_REPO)
def test_corrupt_split_totals_surface_as_inconsistency(mock_repo_cls):
    mock_repo_cls.return_value.load_balance_inputs.return_value = _inputs(("33.33", "33.33", "33.33"))

    with pytest.raises(LedgerInconsistency):
        balance_service.get_balance_response(group_id=5, session=MagicMock())
