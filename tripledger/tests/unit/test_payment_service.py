"""
tests/unit/test_payment_service.py — Unit tests for payment_service.pay.

What this file proves:
  - A sender with enough MUSD pays without borrowing
  - A shortfall is borrowed first: $50 with 10 MUSD on hand borrows exactly
    40 MUSD against 0.00092308 BTC, then transfers 50 MUSD
  - A failed borrow, or one that lends less than the shortfall, never
    reaches the transfer step
  - A transfer that fails after a committed borrow raises
    PaymentFailedAfterBorrow, keeps the loan and records the payment
  - Self-payment, unknown users and non-positive amounts are refused up front
  - Converting at a fallback rate adds a FALLBACK_RATE warning

Unit test constraints:
  - No database. The session is a MagicMock; the settlement network is the
    in-memory stub and the oracle a static table.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from tripledger.app.clients.rate_oracle import StaticRateOracle
from tripledger.app.clients.settlement_network import InMemorySettlementNetwork
from tripledger.app.errors import (
    AppError,
    BorrowFailed,
    ConfirmationTimeout,
    ErrorCode,
    InvalidAmount,
    NetworkError,
    PaymentFailedAfterBorrow,
    TransferFailed,
    WarningCode,
)
from tripledger.app.models.loan import Loan, LoanStatus
from tripledger.app.models.payment import Payment, PaymentStatus
from tripledger.app.money import Money
from tripledger.app.services.loan_service import LoanTerms
from tripledger.app.services.payment_service import PaymentState, pay
from tripledger.app.services.pricing_service import PricingService, RateCache


ALICE, BOB = 1, 2


# ── Fixtures ───────────────────────────────────────────────────────────────

def _user(user_id: int, name: str, collateral: bool = True) -> SimpleNamespace:
    return SimpleNamespace(
        id=user_id,
        username=name,
        wallet_address=f"0xMOCK_WALLET_{name}",
        collateral_btc_address=f"btc_collateral_mock_{name}" if collateral else None,
    )


@pytest.fixture
def users():
    return {ALICE: _user(ALICE, "alice"), BOB: _user(BOB, "bob")}


@pytest.fixture
def session(users):
    session = MagicMock()
    session.get.side_effect = lambda model, pk: users.get(pk)
    # No active loans yet.
    session.execute.return_value.scalars.return_value.all.return_value = []
    return session


@pytest.fixture
def network():
    return InMemorySettlementNetwork(btc_rate=Decimal("65000"))


@pytest.fixture
def pricing():
    return PricingService(RateCache(StaticRateOracle({"USD": "1", "INR": "83.50"})))


@pytest.fixture
def terms():
    return LoanTerms(confirmation_timeout=1)


def _added(session: MagicMock, model) -> list:
    return [c.args[0] for c in session.add.call_args_list if isinstance(c.args[0], model)]


def _pay(session, network, pricing, terms, amount="50.00", currency="USD", sender=ALICE, recipient=BOB):
    return pay(sender, recipient, Money.of(amount, currency), network, pricing, terms, session)


# ── Happy paths ────────────────────────────────────────────────────────────

def test_sufficient_balance_pays_without_borrowing(session, network, pricing, terms):
    network.fund("0xMOCK_WALLET_alice", Money.of("100", "MUSD"))

    result = _pay(session, network, pricing, terms)

    assert result.loan is None
    assert result.states == [
        PaymentState.CONVERTED,
        PaymentState.BALANCE_CHECKED,
        PaymentState.TRANSFERRED,
        PaymentState.CONFIRMED,
    ]
    assert result.payment.status == PaymentStatus.CONFIRMED
    assert result.payment.borrow_used is False
    assert network.get_stable_balance("0xMOCK_WALLET_bob") == Money.of("50", "MUSD")
    assert [tx["kind"] for tx in network.transactions.values()] == ["transfer"]
    assert _added(session, Loan) == []


def test_shortfall_is_borrowed_then_transferred(session, network, pricing, terms):
    network.fund("0xMOCK_WALLET_alice", Money.of("10", "MUSD"))

    result = _pay(session, network, pricing, terms)

    assert result.states == [
        PaymentState.CONVERTED,
        PaymentState.BALANCE_CHECKED,
        PaymentState.BORROWED,
        PaymentState.TRANSFERRED,
        PaymentState.CONFIRMED,
    ]
    loan = result.loan
    assert loan.principal == Money.of("40", "MUSD")
    assert loan.collateral == Money.of("0.00092308", "BTC")
    assert loan.status == LoanStatus.ACTIVE
    assert loan.borrow_tx_id.startswith("0xborrow")

    payment = result.payment
    assert payment.borrow_used is True
    assert payment.borrow_amount == Money.of("40", "MUSD")
    assert payment.amount_stable == Money.of("50", "MUSD")

    assert network.get_stable_balance("0xMOCK_WALLET_alice").is_zero()
    assert network.get_stable_balance("0xMOCK_WALLET_bob") == Money.of("50", "MUSD")
    assert _added(session, Loan) == [loan]


def test_foreign_currency_converted_before_balance_check(session, network, pricing, terms):
    network.fund("0xMOCK_WALLET_alice", Money.of("5", "MUSD"))

    result = _pay(session, network, pricing, terms, amount="835.00", currency="INR")

    assert result.conversion.amount == Money.of("10", "MUSD")
    assert result.loan.principal == Money.of("5", "MUSD")
    assert result.payment.amount_fiat == Money.of("835.00", "INR")


def test_fallback_rate_adds_warning(session, network, terms):
    cache = RateCache(StaticRateOracle({}), fallback_rates={"USD": Decimal("1")})
    network.fund("0xMOCK_WALLET_alice", Money.of("50", "MUSD"))

    result = _pay(session, network, PricingService(cache), terms)

    assert [w["code"] for w in result.warnings] == [WarningCode.FALLBACK_RATE]


# ── Borrow failures ────────────────────────────────────────────────────────

@pytest.mark.parametrize("injection", ["fail_on", "reject_on"])
def test_failed_borrow_never_transfers(session, network, pricing, terms, injection):
    network.fund("0xMOCK_WALLET_alice", Money.of("10", "MUSD"))
    getattr(network, injection).add("borrow")

    with pytest.raises(BorrowFailed) as exc_info:
        _pay(session, network, pricing, terms)

    assert exc_info.value.http_status == 502
    assert all(tx["kind"] == "borrow" for tx in network.transactions.values())
    assert network.get_stable_balance("0xMOCK_WALLET_bob").is_zero()
    session.add.assert_not_called()


def test_short_lend_stops_before_transfer(session, network, pricing, terms, caplog):
    network.fund("0xMOCK_WALLET_alice", Money.of("10", "MUSD"))
    network.lend_short_by = Money.of("1", "MUSD")

    with caplog.at_level(logging.ERROR, logger="tripledger.app.services.payment_service"):
        with pytest.raises(BorrowFailed) as exc_info:
            _pay(session, network, pricing, terms)

    assert exc_info.value.http_status == 502
    assert "39.000000" in exc_info.value.message
    assert "Loan stays ACTIVE" in caplog.text
    [loan] = _added(session, Loan)
    assert loan.principal == Money.of("39", "MUSD")
    assert _added(session, Payment) == []
    assert [tx["kind"] for tx in network.transactions.values()] == ["borrow"]
    assert network.get_stable_balance("0xMOCK_WALLET_bob").is_zero()


def test_borrow_confirmation_timeout(session, network, pricing, terms):
    network.stall_on.add("borrow")

    with pytest.raises(ConfirmationTimeout):
        _pay(session, network, pricing, terms)

    session.add.assert_not_called()


def test_missing_collateral_address_refuses_auto_borrow(session, users, network, pricing, terms):
    users[ALICE].collateral_btc_address = None

    with pytest.raises(BorrowFailed) as exc_info:
        _pay(session, network, pricing, terms)

    assert exc_info.value.__cause__.code == ErrorCode.NO_COLLATERAL_ADDRESS
    assert network.transactions == {}


def test_loan_cap_refuses_auto_borrow(session, network, pricing, terms):
    session.execute.return_value.scalars.return_value.all.return_value = [1, 2, 3, 4, 5]

    with pytest.raises(BorrowFailed) as exc_info:
        _pay(session, network, pricing, terms)

    assert exc_info.value.__cause__.code == ErrorCode.TOO_MANY_ACTIVE_LOANS


# ── Transfer failures ──────────────────────────────────────────────────────

@pytest.mark.parametrize("injection", ["reject_on", "stall_on"])
def test_transfer_failure_after_borrow_keeps_loan(session, network, pricing, terms, injection, caplog):
    network.fund("0xMOCK_WALLET_alice", Money.of("10", "MUSD"))
    getattr(network, injection).add("transfer")

    with caplog.at_level(logging.ERROR, logger="tripledger.app.services.payment_service"):
        with pytest.raises(PaymentFailedAfterBorrow) as exc_info:
            _pay(session, network, pricing, terms)

    err = exc_info.value
    assert err.code == ErrorCode.PAYMENT_FAILED_AFTER_BORROW
    assert err.http_status == 502
    assert "reconciliation" in caplog.text

    [loan] = _added(session, Loan)
    assert loan.status == LoanStatus.ACTIVE
    [payment] = _added(session, Payment)
    assert payment.status == PaymentStatus.FAILED_AFTER_BORROW
    assert payment.borrow_used is True

    # The borrowed MUSD stays with the sender.
    assert network.get_stable_balance("0xMOCK_WALLET_alice") == Money.of("50", "MUSD")


def test_transfer_rejected_without_borrow(session, network, pricing, terms):
    network.fund("0xMOCK_WALLET_alice", Money.of("100", "MUSD"))
    network.reject_on.add("transfer")

    with pytest.raises(TransferFailed) as exc_info:
        _pay(session, network, pricing, terms)

    assert exc_info.value.code == ErrorCode.TRANSFER_FAILED
    session.add.assert_not_called()


def test_transfer_timeout_without_borrow(session, network, pricing, terms):
    network.fund("0xMOCK_WALLET_alice", Money.of("100", "MUSD"))
    network.stall_on.add("transfer")

    with pytest.raises(ConfirmationTimeout):
        _pay(session, network, pricing, terms)


def test_balance_check_failure_stops_everything(session, network, pricing, terms):
    network.fail_on.add("balance")

    with pytest.raises(NetworkError):
        _pay(session, network, pricing, terms)

    assert network.transactions == {}


# ── Input checks ───────────────────────────────────────────────────────────

def test_self_payment_refused(session, network, pricing, terms):
    with pytest.raises(AppError) as exc_info:
        _pay(session, network, pricing, terms, recipient=ALICE)

    assert exc_info.value.code == ErrorCode.SELF_PAYMENT
    assert exc_info.value.http_status == 422


def test_unknown_recipient(session, network, pricing, terms):
    with pytest.raises(AppError) as exc_info:
        _pay(session, network, pricing, terms, recipient=99)

    assert exc_info.value.code == ErrorCode.USER_NOT_FOUND
    assert exc_info.value.http_status == 404


def test_zero_amount_refused(session, network, pricing, terms):
    with pytest.raises(InvalidAmount):
        _pay(session, network, pricing, terms, amount="0.00")
