"""
routes/expenses.py — Expense route handlers.

Registered at url_prefix=/api/v1 (not /api/v1/expenses) because this blueprint
owns BOTH the group-scoped paths (/groups/:id/expenses) and the
expense-ID paths (/expenses/:id).

Layer rules:
  - Parse, validate, call ONE service, commit, return envelope.
  - No business logic. No DB queries. No bare SQL.
  - _serialize_expense() is a pure data-shape helper.

Endpoints:
  POST   /groups/:id/expenses         → 201  create expense
  GET    /groups/:id/expenses         → 200  list active expenses
  GET    /expenses/:id                → 200  get expense + splits
  POST   /expenses/:id/recompute      → 200  regenerate splits, optionally edited
  POST   /expenses/:id/splits/settle  → 200  mark one member's split settled
  DELETE /expenses/:id                → 200  soft-delete
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request

from tripledger.app.extensions import db
from tripledger.app.models.expense import Expense
from tripledger.app.models.split import Split
from tripledger.app.schemas.expense_schema import (
    CreateExpenseSchema,
    RecomputeSplitsSchema,
    SettleSplitSchema,
)
from tripledger.app.services import expense_service

expenses_bp = Blueprint("expenses", __name__)


# ── Serialization helpers ──────────────────────────────────────────────────
# Pure data-shaping. Amounts as strings.

def _serialize_split(s: Split) -> dict:
    return {
        "id": s.id,
        "user_id": s.user_id,
        "username": s.user.username,
        "amount": str(s.amount),
        "settled": s.settled,
        "settled_at": s.settled_at.isoformat() if s.settled_at else None,
    }


def _serialize_expense(expense: Expense) -> dict:
    """Converts an Expense ORM object to a plain dict for JSON output."""
    return {
        "id": expense.id,
        "group_id": expense.group_id,
        "paid_by_user_id": expense.paid_by_user_id,
        "paid_by_username": expense.payer.username,
        "description": expense.description,
        "amount": str(expense.amount),
        "currency": expense.currency,
        "split_kind": expense.split_kind.value,
        "split_spec": expense.split_spec,
        "created_at": expense.created_at.isoformat() if expense.created_at else None,
        "updated_at": expense.updated_at.isoformat() if expense.updated_at else None,
        "deleted_at": expense.deleted_at.isoformat() if expense.deleted_at else None,
        "splits": [_serialize_split(s) for s in expense.splits],
    }


# ── Group-scoped expense routes ────────────────────────────────────────────

@expenses_bp.route("/groups/<int:group_id>/expenses", methods=["POST"])
def create_expense(group_id: int):
    """POST /groups/:id/expenses — Record a new expense and compute its splits."""
    data = CreateExpenseSchema().load(request.get_json(force=True) or {})
    expense = expense_service.create_expense(
        group_id=group_id,
        data=data,
        session=db.session,
    )
    db.session.commit()
    return jsonify({"data": _serialize_expense(expense), "warnings": []}), 201


@expenses_bp.route("/groups/<int:group_id>/expenses", methods=["GET"])
def list_expenses(group_id: int):
    """GET /groups/:id/expenses — List active (non-deleted) expenses for a group."""
    expenses = expense_service.list_expenses(group_id=group_id, session=db.session)
    return jsonify({
        "data": [_serialize_expense(e) for e in expenses],
        "warnings": [],
    }), 200


# ── Expense-ID routes ──────────────────────────────────────────────────────

@expenses_bp.route("/expenses/<int:expense_id>", methods=["GET"])
def get_expense(expense_id: int):
    """GET /expenses/:id — Get expense detail including splits."""
    expense = expense_service.get_expense(expense_id=expense_id, session=db.session)
    return jsonify({"data": _serialize_expense(expense), "warnings": []}), 200


@expenses_bp.route("/expenses/<int:expense_id>/recompute", methods=["POST"])
def recompute_splits(expense_id: int):
    """
    POST /expenses/:id/recompute — Regenerate splits.

    An empty body recomputes from the stored specification. Any of
    description, paid_by_user_id, amount, split_kind and splits may be given
    to edit the expense at the same time.
    """
    data = RecomputeSplitsSchema().load(request.get_json(silent=True) or {})
    expense = expense_service.recompute_splits(
        expense_id=expense_id,
        session=db.session,
        data=data,
    )
    db.session.commit()
    return jsonify({"data": _serialize_expense(expense), "warnings": []}), 200


@expenses_bp.route("/expenses/<int:expense_id>/splits/settle", methods=["POST"])
def settle_split(expense_id: int):
    """POST /expenses/:id/splits/settle — Mark one member's share as settled."""
    data = SettleSplitSchema().load(request.get_json(force=True) or {})
    split = expense_service.settle_split(
        expense_id=expense_id,
        user_id=data["user_id"],
        session=db.session,
    )
    db.session.commit()
    return jsonify({"data": _serialize_split(split), "warnings": []}), 200


@expenses_bp.route("/expenses/<int:expense_id>", methods=["DELETE"])
def delete_expense(expense_id: int):
    """
    DELETE /expenses/:id — Soft-delete (sets deleted_at = NOW()).
    Row stays in DB. Splits remain for audit. Balances exclude it.
    """
    expense_service.delete_expense(expense_id=expense_id, session=db.session)
    db.session.commit()
    return jsonify({
        "data": {
            "deleted": True,
            "expense_id": expense_id,
        },
        "warnings": [],
    }), 200
