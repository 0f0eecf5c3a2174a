"""
tests/integration/test_expenses.py — Expense lifecycle through the HTTP API.

Endpoints covered:
  POST   /groups/:id/expenses          → 201 / 400 / 404 / 422
  GET    /groups/:id/expenses          → 200
  GET    /expenses/:id                 → 200 / 404
  POST   /expenses/:id/recompute       → 200 / 422
  POST   /expenses/:id/splits/settle   → 200 / 404
  DELETE /expenses/:id                 → 200

Properties verified:
  - Splits always sum exactly to the expense amount
  - The payer's own split is settled from the start
  - Recomputing without changes leaves the same splits and settled flags
  - Soft-deleted expenses keep their rows but leave the expense list
"""

from __future__ import annotations

from decimal import Decimal

import pytest

from .conftest import make_expense, make_group, register_user


@pytest.fixture
def trio(client):
    """alice, bob and carol in one USD group owned by alice."""
    alice = register_user(client, "alice")
    bob = register_user(client, "bob")
    carol = register_user(client, "carol")
    group = make_group(client, alice, members=[bob, carol])
    return alice, bob, carol, group


def _split_view(expense: dict) -> list[tuple[int, str, bool]]:
    return sorted((s["user_id"], s["amount"], s["settled"]) for s in expense["splits"])


def _split_rows(expense: dict) -> list[tuple[int, str, bool, str | None]]:
    return sorted(
        (s["user_id"], s["amount"], s["settled"], s["settled_at"]) for s in expense["splits"]
    )


# ═══════════════════════════════════════════════════════════════════════════
# Creation
# ═══════════════════════════════════════════════════════════════════════════

class TestCreateExpense:

    def test_equal_split_among_all_members(self, client, trio):
        alice, bob, carol, group = trio

        resp = make_expense(client, group["id"], alice, "100.00", description="Dinner")

        assert resp.status_code == 201
        expense = resp.get_json()["data"]
        assert expense["amount"] == "100.00"
        assert expense["currency"] == "USD"
        assert expense["split_kind"] == "EQUAL"
        assert _split_view(expense) == [
            (alice["id"], "33.34", True),
            (bob["id"], "33.33", False),
            (carol["id"], "33.33", False),
        ]

    def test_equal_split_among_subset(self, client, trio):
        alice, bob, _, group = trio

        resp = make_expense(
            client, group["id"], alice, "10.01",
            splits=[{"user_id": alice["id"]}, {"user_id": bob["id"]}],
        )

        assert resp.status_code == 201
        amounts = [s["amount"] for s in resp.get_json()["data"]["splits"]]
        assert sorted(amounts) == ["5.00", "5.01"]

    def test_percentage_split(self, client, trio):
        alice, bob, carol, group = trio

        resp = make_expense(
            client, group["id"], bob, "200.00",
            split_kind="PERCENTAGE",
            splits=[
                {"user_id": alice["id"], "percent": "50"},
                {"user_id": bob["id"], "percent": "30"},
                {"user_id": carol["id"], "percent": "20"},
            ],
        )

        assert resp.status_code == 201
        assert _split_view(resp.get_json()["data"]) == [
            (alice["id"], "100.00", False),
            (bob["id"], "60.00", True),
            (carol["id"], "40.00", False),
        ]

    def test_exact_split(self, client, trio):
        alice, bob, carol, group = trio

        resp = make_expense(
            client, group["id"], carol, "75.50",
            split_kind="EXACT",
            splits=[
                {"user_id": alice["id"], "amount": "25.50"},
                {"user_id": bob["id"], "amount": "50.00"},
                {"user_id": carol["id"], "amount": "0"},
            ],
        )

        assert resp.status_code == 201
        total = sum(Decimal(s["amount"]) for s in resp.get_json()["data"]["splits"])
        assert total == Decimal("75.50")

    def test_percentages_off_100_are_invalid_split(self, client, trio):
        alice, bob, _, group = trio

        resp = make_expense(
            client, group["id"], alice, "100.00",
            split_kind="PERCENTAGE",
            splits=[
                {"user_id": alice["id"], "percent": "50"},
                {"user_id": bob["id"], "percent": "40"},
            ],
        )

        assert resp.status_code == 422
        assert resp.get_json()["error"]["code"] == "INVALID_SPLIT"

    def test_exact_split_one_cent_short_is_invalid(self, client, trio):
        alice, bob, _, group = trio

        resp = make_expense(
            client, group["id"], alice, "100.00",
            split_kind="EXACT",
            splits=[
                {"user_id": alice["id"], "amount": "50.00"},
                {"user_id": bob["id"], "amount": "49.99"},
            ],
        )

        assert resp.status_code == 422
        assert resp.get_json()["error"]["code"] == "INVALID_SPLIT"

    def test_nothing_written_after_invalid_split(self, client, trio):
        alice, bob, _, group = trio
        make_expense(
            client, group["id"], alice, "100.00",
            split_kind="EXACT",
            splits=[{"user_id": alice["id"], "amount": "1.00"}, {"user_id": bob["id"], "amount": "1.00"}],
        )

        resp = client.get(f"/api/v1/groups/{group['id']}/expenses")

        assert resp.get_json()["data"] == []

    def test_payer_must_be_member(self, client, trio):
        _, _, _, group = trio
        outsider = register_user(client, "mallory")

        resp = make_expense(client, group["id"], outsider, "10.00")

        assert resp.status_code == 422
        assert resp.get_json()["error"]["code"] == "PAYER_NOT_MEMBER"

    def test_split_users_must_be_members(self, client, trio):
        alice, _, _, group = trio
        outsider = register_user(client, "mallory")

        resp = make_expense(
            client, group["id"], alice, "10.00",
            splits=[{"user_id": alice["id"]}, {"user_id": outsider["id"]}],
        )

        assert resp.status_code == 422
        assert resp.get_json()["error"]["code"] == "SPLIT_USER_NOT_MEMBER"

    def test_precision_error_code(self, client, trio):
        alice, _, _, group = trio

        resp = make_expense(client, group["id"], alice, "10.001")

        assert resp.status_code == 400
        error = resp.get_json()["error"]
        assert error["code"] == "INVALID_AMOUNT_PRECISION"
        assert error["field"] == "amount"

    def test_duplicate_split_user(self, client, trio):
        alice, _, _, group = trio

        resp = make_expense(
            client, group["id"], alice, "10.00",
            splits=[{"user_id": alice["id"]}, {"user_id": alice["id"]}],
        )

        assert resp.status_code == 400
        assert resp.get_json()["error"]["code"] == "DUPLICATE_SPLIT_USER"

    def test_currency_must_match_group(self, client, trio):
        alice, _, _, group = trio

        resp = client.post(
            f"/api/v1/groups/{group['id']}/expenses",
            json={
                "paid_by_user_id": alice["id"],
                "description": "Taxi",
                "amount": "10.00",
                "currency": "EUR",
            },
        )

        assert resp.status_code == 400
        assert resp.get_json()["error"]["field"] == "currency"

    def test_unknown_group(self, client):
        alice = register_user(client, "alice")

        resp = make_expense(client, 999, alice, "10.00")

        assert resp.status_code == 404
        assert resp.get_json()["error"]["code"] == "GROUP_NOT_FOUND"


# ═══════════════════════════════════════════════════════════════════════════
# Reads
# ═══════════════════════════════════════════════════════════════════════════

class TestReadExpenses:

    def test_list_newest_first(self, client, trio):
        alice, _, _, group = trio
        first = make_expense(client, group["id"], alice, "10.00", description="first").get_json()["data"]
        second = make_expense(client, group["id"], alice, "20.00", description="second").get_json()["data"]

        resp = client.get(f"/api/v1/groups/{group['id']}/expenses")

        assert [e["id"] for e in resp.get_json()["data"]] == [second["id"], first["id"]]

    def test_get_expense(self, client, trio):
        alice, _, _, group = trio
        created = make_expense(client, group["id"], alice, "10.00").get_json()["data"]

        resp = client.get(f"/api/v1/expenses/{created['id']}")

        assert resp.status_code == 200
        assert resp.get_json()["data"]["paid_by_username"] == "alice"

    def test_get_unknown_expense(self, client):
        resp = client.get("/api/v1/expenses/999")

        assert resp.status_code == 404
        assert resp.get_json()["error"]["code"] == "EXPENSE_NOT_FOUND"


# ═══════════════════════════════════════════════════════════════════════════
# Recompute and settle
# ═══════════════════════════════════════════════════════════════════════════

class TestRecompute:

    def test_recompute_without_changes_is_idempotent(self, client, trio):
        alice, bob, _, group = trio
        created = make_expense(client, group["id"], alice, "100.00").get_json()["data"]
        client.post(f"/api/v1/expenses/{created['id']}/splits/settle", json={"user_id": bob["id"]})
        before = client.get(f"/api/v1/expenses/{created['id']}").get_json()["data"]

        first = client.post(f"/api/v1/expenses/{created['id']}/recompute", json={})
        second = client.post(f"/api/v1/expenses/{created['id']}/recompute")

        assert first.status_code == 200
        assert second.status_code == 200
        assert _split_rows(first.get_json()["data"]) == _split_rows(before)
        assert _split_rows(second.get_json()["data"]) == _split_rows(before)
        assert all(s["settled_at"] is not None for s in before["splits"] if s["settled"])

    def test_changed_amount_resets_changed_shares(self, client, trio):
        alice, bob, carol, group = trio
        created = make_expense(client, group["id"], alice, "100.00").get_json()["data"]
        client.post(f"/api/v1/expenses/{created['id']}/splits/settle", json={"user_id": bob["id"]})

        resp = client.post(f"/api/v1/expenses/{created['id']}/recompute", json={"amount": "90.00"})

        expense = resp.get_json()["data"]
        assert expense["amount"] == "90.00"
        assert expense["updated_at"] is not None
        assert _split_view(expense) == [
            (alice["id"], "30.00", True),
            (bob["id"], "30.00", False),
            (carol["id"], "30.00", False),
        ]

    def test_switch_to_exact(self, client, trio):
        alice, bob, _, group = trio
        created = make_expense(client, group["id"], alice, "30.00").get_json()["data"]

        resp = client.post(
            f"/api/v1/expenses/{created['id']}/recompute",
            json={
                "split_kind": "EXACT",
                "splits": [
                    {"user_id": alice["id"], "amount": "10.00"},
                    {"user_id": bob["id"], "amount": "20.00"},
                ],
            },
        )

        assert resp.status_code == 200
        expense = resp.get_json()["data"]
        assert expense["split_kind"] == "EXACT"
        assert _split_view(expense) == [
            (alice["id"], "10.00", True),
            (bob["id"], "20.00", False),
        ]

    def test_new_payer_settles_own_share(self, client, trio):
        alice, bob, carol, group = trio
        created = make_expense(client, group["id"], alice, "90.00").get_json()["data"]

        resp = client.post(
            f"/api/v1/expenses/{created['id']}/recompute",
            json={"paid_by_user_id": bob["id"]},
        )

        assert _split_view(resp.get_json()["data"]) == [
            (alice["id"], "30.00", False),
            (bob["id"], "30.00", True),
            (carol["id"], "30.00", False),
        ]

    def test_settle_split(self, client, trio):
        alice, bob, _, group = trio
        created = make_expense(client, group["id"], alice, "100.00").get_json()["data"]

        resp = client.post(f"/api/v1/expenses/{created['id']}/splits/settle", json={"user_id": bob["id"]})

        assert resp.status_code == 200
        split = resp.get_json()["data"]
        assert split["user_id"] == bob["id"]
        assert split["settled"] is True
        assert split["settled_at"] is not None

    def test_settle_split_for_non_participant(self, client, trio):
        alice, bob, _, group = trio
        created = make_expense(
            client, group["id"], alice, "10.00", splits=[{"user_id": alice["id"]}],
        ).get_json()["data"]

        resp = client.post(f"/api/v1/expenses/{created['id']}/splits/settle", json={"user_id": bob["id"]})

        assert resp.status_code == 404
        assert resp.get_json()["error"]["code"] == "SPLIT_NOT_FOUND"


# ═══════════════════════════════════════════════════════════════════════════
# Soft delete
# ═══════════════════════════════════════════════════════════════════════════

class TestDeleteExpense:

    def test_soft_delete_keeps_row(self, client, trio):
        alice, _, _, group = trio
        created = make_expense(client, group["id"], alice, "100.00").get_json()["data"]

        resp = client.delete(f"/api/v1/expenses/{created['id']}")
        detail = client.get(f"/api/v1/expenses/{created['id']}").get_json()["data"]
        listing = client.get(f"/api/v1/groups/{group['id']}/expenses").get_json()["data"]

        assert resp.status_code == 200
        assert resp.get_json()["data"] == {"deleted": True, "expense_id": created["id"]}
        assert detail["deleted_at"] is not None
        assert len(detail["splits"]) == 3
        assert listing == []

    def test_delete_twice_is_not_an_error(self, client, trio):
        alice, _, _, group = trio
        created = make_expense(client, group["id"], alice, "100.00").get_json()["data"]

        client.delete(f"/api/v1/expenses/{created['id']}")
        resp = client.delete(f"/api/v1/expenses/{created['id']}")

        assert resp.status_code == 200

    def test_deleted_expense_cannot_be_recomputed(self, client, trio):
        alice, _, _, group = trio
        created = make_expense(client, group["id"], alice, "100.00").get_json()["data"]
        client.delete(f"/api/v1/expenses/{created['id']}")

        resp = client.post(f"/api/v1/expenses/{created['id']}/recompute", json={})

        assert resp.status_code == 422
        assert resp.get_json()["error"]["code"] == "EXPENSE_DELETED"

    def test_delete_unknown_expense(self, client):
        resp = client.delete("/api/v1/expenses/999")

        assert resp.status_code == 404
