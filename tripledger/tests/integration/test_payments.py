"""
tests/integration/test_payments.py — Fiat payments settled in MUSD.

Endpoints covered:
  POST /payments        → 201 / 400 / 404 / 422 / 502
  POST /payments/quote  → 200

Properties verified:
  - A funded sender pays without borrowing
  - A short sender borrows exactly the shortfall against BTC collateral
  - A transfer failure after a committed borrow leaves the loan and a
    FAILED_AFTER_BORROW payment in the database
  - A failed borrow leaves nothing behind; a short lend keeps only its loan
  - An oracle outage converts at the fallback rate and says so
"""

from __future__ import annotations

import pytest
from sqlalchemy import select

from tripledger.app.extensions import db
from tripledger.app.models.loan import Loan
from tripledger.app.models.payment import Payment
from tripledger.app.money import Money

from .conftest import register_user


@pytest.fixture
def pair(client):
    return register_user(client, "alice"), register_user(client, "bob")


def _pay(client, sender: dict, recipient: dict, amount: str, currency: str = "USD"):
    return client.post(
        "/api/v1/payments/",
        json={
            "from_user_id": sender["id"],
            "to_user_id": recipient["id"],
            "amount": amount,
            "currency": currency,
        },
    )


def _rows(app, model) -> list:
    with app.app_context():
        rows = list(db.session.execute(select(model)).scalars().all())
        db.session.expunge_all()
        return rows


# ═══════════════════════════════════════════════════════════════════════════
# Successful payments
# ═══════════════════════════════════════════════════════════════════════════

class TestPay:

    def test_funded_sender_does_not_borrow(self, client, network, pair):
        alice, bob = pair
        network.fund(alice["wallet_address"], Money.of("100", "MUSD"))

        resp = _pay(client, alice, bob, "25.00")

        assert resp.status_code == 201
        data = resp.get_json()["data"]
        assert data["borrow_used"] is False
        assert data["borrow_amount"] is None
        assert data["amount_stable"] == "25.000000"
        assert data["status"] == "CONFIRMED"
        assert data["states"] == ["CONVERTED", "BALANCE_CHECKED", "TRANSFERRED", "CONFIRMED"]
        assert network.get_stable_balance(bob["wallet_address"]) == Money.of("25", "MUSD")

    def test_shortfall_is_borrowed(self, app, client, network, pair):
        alice, bob = pair
        network.fund(alice["wallet_address"], Money.of("10", "MUSD"))

        resp = _pay(client, alice, bob, "50.00")

        assert resp.status_code == 201
        data = resp.get_json()["data"]
        assert data["borrow_used"] is True
        assert data["borrow_amount"] == "40.000000"
        assert data["states"] == ["CONVERTED", "BALANCE_CHECKED", "BORROWED", "TRANSFERRED", "CONFIRMED"]

        loan = client.get(f"/api/v1/loans/{data['loan_id']}").get_json()["data"]
        assert loan["principal"] == "40.000000"
        assert loan["collateral"] == "0.00092308"
        assert loan["status"] == "ACTIVE"
        assert network.get_stable_balance(alice["wallet_address"]).is_zero()
        assert network.get_stable_balance(bob["wallet_address"]) == Money.of("50", "MUSD")

    def test_inr_payment_converted_at_oracle_rate(self, client, network, pair):
        alice, bob = pair
        network.fund(alice["wallet_address"], Money.of("10", "MUSD"))

        resp = _pay(client, alice, bob, "100.00", currency="INR")

        data = resp.get_json()["data"]
        assert data["fiat_currency"] == "INR"
        assert data["amount_stable"] == "1.197605"
        assert data["conversion"]["rate"] == "83.50"
        assert data["conversion"]["rate_source"] == "ORACLE"
        assert resp.get_json()["warnings"] == []

    def test_oracle_outage_uses_fallback_with_warning(self, client, network, oracle, pair):
        alice, bob = pair
        network.fund(alice["wallet_address"], Money.of("10", "MUSD"))
        del oracle.rates["GBP"]

        resp = _pay(client, alice, bob, "7.90", currency="GBP")

        assert resp.status_code == 201
        body = resp.get_json()
        assert body["data"]["amount_stable"] == "10.000000"
        assert body["data"]["conversion"]["rate_source"] == "FALLBACK"
        assert [w["code"] for w in body["warnings"]] == ["FALLBACK_RATE"]


# ═══════════════════════════════════════════════════════════════════════════
# Failures
# ═══════════════════════════════════════════════════════════════════════════

class TestPayFailures:

    def test_transfer_failure_after_borrow_keeps_loan(self, app, client, network, pair):
        alice, bob = pair
        network.fund(alice["wallet_address"], Money.of("10", "MUSD"))
        network.reject_on.add("transfer")

        resp = _pay(client, alice, bob, "50.00")

        assert resp.status_code == 502
        error = resp.get_json()["error"]
        assert error["code"] == "PAYMENT_FAILED_AFTER_BORROW"

        loans = _rows(app, Loan)
        payments = _rows(app, Payment)
        assert [loan.id for loan in loans] == [error["loan_id"]]
        assert loans[0].status.value == "ACTIVE"
        assert [p.status.value for p in payments] == ["FAILED_AFTER_BORROW"]
        assert payments[0].loan_id == error["loan_id"]
        # The borrowed MUSD stays with the sender.
        assert network.get_stable_balance(alice["wallet_address"]) == Money.of("50", "MUSD")

    def test_failed_borrow_leaves_nothing(self, app, client, network, pair):
        alice, bob = pair
        network.reject_on.add("borrow")

        resp = _pay(client, alice, bob, "50.00")

        assert resp.status_code == 502
        assert resp.get_json()["error"]["code"] == "BORROW_FAILED"
        assert _rows(app, Loan) == []
        assert _rows(app, Payment) == []

    def test_short_lend_keeps_loan_and_sends_nothing(self, app, client, network, pair):
        alice, bob = pair
        network.fund(alice["wallet_address"], Money.of("10", "MUSD"))
        network.lend_short_by = Money.of("1", "MUSD")

        resp = _pay(client, alice, bob, "50.00")

        assert resp.status_code == 502
        error = resp.get_json()["error"]
        assert error["code"] == "BORROW_FAILED"
        loans = _rows(app, Loan)
        assert [loan.id for loan in loans] == [error["loan_id"]]
        assert loans[0].principal == Money.of("39", "MUSD")
        assert _rows(app, Payment) == []
        assert network.get_stable_balance(bob["wallet_address"]).is_zero()

    def test_sender_without_collateral_cannot_borrow(self, client, pair):
        _, bob = pair
        dave = register_user(client, "dave", collateral_btc_address=None)

        resp = _pay(client, dave, bob, "5.00")

        assert resp.status_code == 502
        assert resp.get_json()["error"]["code"] == "BORROW_FAILED"

    def test_transfer_failure_without_borrow(self, app, client, network, pair):
        alice, bob = pair
        network.fund(alice["wallet_address"], Money.of("100", "MUSD"))
        network.fail_on.add("transfer")

        resp = _pay(client, alice, bob, "5.00")

        assert resp.status_code == 502
        assert resp.get_json()["error"]["code"] == "TRANSFER_FAILED"
        assert _rows(app, Payment) == []

    def test_self_payment(self, client, pair):
        alice, _ = pair

        resp = _pay(client, alice, alice, "5.00")

        assert resp.status_code == 422
        assert resp.get_json()["error"]["code"] == "SELF_PAYMENT"

    def test_unknown_recipient(self, client, pair):
        alice, _ = pair

        resp = _pay(client, alice, {"id": 999}, "5.00")

        assert resp.status_code == 404
        assert resp.get_json()["error"]["code"] == "USER_NOT_FOUND"

    def test_stablecoin_is_not_a_payment_currency(self, client, pair):
        alice, bob = pair

        resp = _pay(client, alice, bob, "5.00", currency="MUSD")

        assert resp.status_code == 400
        assert resp.get_json()["error"]["code"] == "UNSUPPORTED_CURRENCY"


# ═══════════════════════════════════════════════════════════════════════════
# Quote
# ═══════════════════════════════════════════════════════════════════════════

class TestQuote:

    def test_quote_moves_no_funds(self, client, network):
        resp = client.post("/api/v1/payments/quote", json={"amount": "100.00", "currency": "INR"})

        assert resp.status_code == 200
        data = resp.get_json()["data"]
        assert data["source_amount"] == "100.00"
        assert data["source_currency"] == "INR"
        assert data["amount"] == "1.197605"
        assert data["asset"] == "MUSD"
        assert network.transactions == {}

    def test_quote_defaults_to_usd(self, client):
        resp = client.post("/api/v1/payments/quote", json={"amount": "12.34"})

        assert resp.get_json()["data"]["amount"] == "12.340000"
