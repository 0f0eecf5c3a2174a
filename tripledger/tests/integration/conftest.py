"""
tests/integration/conftest.py — Fixtures and helpers for all integration tests.

Design:
  - Each test gets its own app built with create_app("testing"). The testing
    config uses in-memory SQLite unless TEST_DATABASE_URL points at a real
    PostgreSQL database.
  - Tables are created with db.create_all() and dropped at teardown, so
    tests never see each other's rows.
  - The settlement network is the in-memory stub and the rate oracle a static
    table. Both are fixtures, so a test can fund wallets or inject failures
    before it makes requests.

Helper functions (not fixtures) are provided for common operations:
  - register_user(client, ...) → user dict
  - make_group(client, ...)    → group dict
  - add_member(...)            → HTTP response
  - make_expense(...)          → HTTP response
  - get_balances(...)          → {user_id: "balance"} plus the full payload

These are plain functions (not pytest fixtures) so they can be called with
arbitrary arguments in any test.
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from tripledger.app import create_app
from tripledger.app.clients.rate_oracle import StaticRateOracle
from tripledger.app.clients.settlement_network import InMemorySettlementNetwork
from tripledger.app.extensions import db as _db


# ═══════════════════════════════════════════════════════════════════════════
# App, network and oracle fixtures
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def network():
    """In-memory settlement network; BTC at $65,000."""
    return InMemorySettlementNetwork(btc_rate=Decimal("65000"))


@pytest.fixture
def oracle():
    """Fiat units per MUSD."""
    return StaticRateOracle({"USD": "1", "INR": "83.50", "EUR": "0.92", "GBP": "0.79"})


@pytest.fixture
def app(network, oracle):
    """
    Creates the Flask application in 'testing' mode with a fresh schema.

    Steps:
      1. Create app with TestingConfig and the injected collaborators.
      2. Run db.create_all() to create all tables.
      3. Yield the app to the test.
      4. Drop all tables at teardown.
    """
    flask_app = create_app("testing", network=network, oracle=oracle)

    with flask_app.app_context():
        _db.create_all()

    yield flask_app

    with flask_app.app_context():
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


# ═══════════════════════════════════════════════════════════════════════════
# Shared helper functions (not fixtures)
# ═══════════════════════════════════════════════════════════════════════════

def register_user(client, username: str = "alice", **extra) -> dict:
    """Registers a user and returns the user dict from the response."""
    payload = {"username": username, "email": f"{username}@test.com"}
    payload.update(extra)
    resp = client.post("/api/v1/users/", json=payload)
    assert resp.status_code == 201, f"register_user failed: {resp.get_json()}"
    return resp.get_json()["data"]


def make_group(
    client,
    owner: dict,
    name: str = "Test Group",
    members: list[dict] = (),
    currency: str = "USD",
) -> dict:
    """
    Creates a group owned by `owner` with `members` added at creation time.
    Returns the group data dict, members included.
    """
    resp = client.post(
        "/api/v1/groups/",
        json={
            "name": name,
            "owner_user_id": owner["id"],
            "currency": currency,
            "member_ids": [m["id"] for m in members],
        },
    )
    assert resp.status_code == 201, f"make_group failed: {resp.get_json()}"
    return resp.get_json()["data"]


def add_member(client, group_id: int, user_id: int):
    """Adds a user to a group. Returns the HTTP response."""
    return client.post(f"/api/v1/groups/{group_id}/members", json={"user_id": user_id})


def make_expense(
    client,
    group_id: int,
    paid_by: dict,
    amount: str,
    split_kind: str = "EQUAL",
    splits: list[dict] | None = None,
    description: str = "Test Expense",
):
    """
    Creates an expense and returns the HTTP response.
    For EQUAL without splits every current member shares the cost.
    """
    payload: dict = {
        "paid_by_user_id": paid_by["id"],
        "description": description,
        "amount": amount,
        "split_kind": split_kind,
    }
    if splits is not None:
        payload["splits"] = splits
    return client.post(f"/api/v1/groups/{group_id}/expenses", json=payload)


def get_balances(client, group_id: int) -> tuple[dict[int, str], dict]:
    """Returns ({user_id: balance}, full response data)."""
    resp = client.get(f"/api/v1/groups/{group_id}/balances")
    assert resp.status_code == 200, f"get_balances failed: {resp.get_json()}"
    data = resp.get_json()["data"]
    return {b["user_id"]: b["balance"] for b in data["balances"]}, data
