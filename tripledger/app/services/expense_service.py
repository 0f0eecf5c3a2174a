"""
services/expense_service.py — Expense business logic.

Rules enforced here:
  PAYER_NOT_MEMBER (422)        — paid_by_user_id must be a group member
  SPLIT_USER_NOT_MEMBER (422)   — every split user must be a group member
  INVALID_SPLIT (422)           — split arithmetic rejected by the calculator
  EXPENSE_DELETED (422)         — cannot recompute a soft-deleted expense
  SPLIT_NOT_FOUND (404)         — settle_split on a member with no split

Splits:
  - Always produced by split_calculator.compute_splits(); Σ splits == amount.
  - The payer's own split is created already settled (a debt to oneself).
  - recompute_splits() deletes and reinserts. A member whose amount did not
    change keeps their settled flag, so running it twice is a no-op.

Layer rules:
  - No Flask imports. No current_app, request, g, or HTTP knowledge.
  - Receives plain ints and dicts; returns ORM objects or raises AppError.
  - Commits are the route's responsibility; services only flush.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from tripledger.app.errors import AppError, ErrorCode, InvalidAmount
from tripledger.app.models.expense import Expense
from tripledger.app.models.group import Group
from tripledger.app.models.split import Split
from tripledger.app.money import Money
from tripledger.app.repository import LedgerRepository, SplitRecord
from tripledger.app.services.split_calculator import SplitKind, compute_splits


# ── Private helpers ────────────────────────────────────────────────────────

def _get_group_or_404(group_id: int, session: Session) -> Group:
    """Returns the Group or raises GROUP_NOT_FOUND (404)."""
    group = session.get(Group, group_id)
    if group is None:
        raise AppError(
            ErrorCode.GROUP_NOT_FOUND,
            f"Group {group_id} does not exist.",
            404,
        )
    return group


def _get_expense_or_404(expense_id: int, session: Session) -> Expense:
    """Returns the Expense (active or deleted) or raises EXPENSE_NOT_FOUND (404)."""
    expense = session.get(Expense, expense_id)
    if expense is None:
        raise AppError(
            ErrorCode.EXPENSE_NOT_FOUND,
            f"Expense {expense_id} does not exist.",
            404,
        )
    return expense


def _validate_payer_is_member(
        paid_by_user_id: int,
        group_id: int,
        member_ids: list[int],
) -> None:
    if paid_by_user_id not in member_ids:
        raise AppError(
            ErrorCode.PAYER_NOT_MEMBER,
            f"User {paid_by_user_id} is not a member of group {group_id}.",
            422,
            field="paid_by_user_id",
        )


def _validate_split_users_are_members(
        split_spec: list[dict],
        group_id: int,
        member_ids: list[int],
) -> None:
    member_set = set(member_ids)
    for entry in split_spec:
        if entry["user_id"] not in member_set:
            raise AppError(
                ErrorCode.SPLIT_USER_NOT_MEMBER,
                f"User {entry['user_id']} is not a member of group {group_id}.",
                422,
                field="splits",
            )


def _normalise_spec(kind: SplitKind, entries: list[dict] | None, member_ids: list[int]) -> list[dict]:
    """
    Turns request split entries into the JSON-safe form stored on the expense.

    EQUAL with no entries means every current member of the group.
    """
    if kind == SplitKind.EQUAL:
        ids = [entry["user_id"] for entry in entries] if entries else list(member_ids)
        return [{"user_id": uid} for uid in ids]

    key = "percent" if kind == SplitKind.PERCENTAGE else "amount"
    normalised = []
    for entry in entries or []:
        if entry.get(key) is None:
            raise AppError(
                ErrorCode.MISSING_FIELD,
                f"Each {kind.value} split entry needs '{key}'.",
                400,
                field="splits",
            )
        normalised.append({"user_id": entry["user_id"], key: str(entry[key])})
    return normalised


def _build_split_records(
        expense: Expense,
        previous: dict[int, Split] | None = None,
        previous_payer_id: int | None = None,
) -> list[SplitRecord]:
    """
    Runs the split calculator and decides each member's settled flag.

    A former payer's split was only settled because they paid; it does not
    carry over once someone else is the payer. A carried-over settled flag
    keeps its original `settled_at`.
    """
    previous = previous or {}
    now = datetime.now(timezone.utc)
    records = []
    for user_id, amount in compute_splits(expense.split_kind, expense.amount, expense.split_spec):
        old = previous.get(user_id)
        kept = old is not None and old.settled and old.amount == amount
        if user_id == expense.paid_by_user_id:
            settled = True
            settled_at = (old.settled_at or now) if kept else now
        elif kept and user_id != previous_payer_id:
            settled = True
            settled_at = old.settled_at or now
        else:
            settled = False
            settled_at = None
        records.append(
            SplitRecord(user_id=user_id, amount=amount, settled=settled, settled_at=settled_at)
        )
    return records


# ── Public service functions ───────────────────────────────────────────────

def create_expense(
        group_id: int,
        data: dict,
        session: Session,
) -> Expense:
    """
    Records a new expense and its splits.

    Args:
        data: Validated dict from CreateExpenseSchema:
              paid_by_user_id, description, amount (Decimal),
              split_kind, splits (optional for EQUAL), currency (optional).

    The expense is always in the group's currency.
    """
    group = _get_group_or_404(group_id, session)
    repo = LedgerRepository(session)

    currency = data.get("currency") or group.currency
    if currency != group.currency:
        raise InvalidAmount(
            f"Expenses in group {group_id} must be in {group.currency}, not {currency}.",
            field="currency",
        )
    amount = Money.of(data["amount"], group.currency)
    if not amount.is_positive():
        raise InvalidAmount("Expense amount must be positive.", field="amount")

    paid_by_user_id: int = data["paid_by_user_id"]
    kind = SplitKind(data.get("split_kind", SplitKind.EQUAL))

    member_ids = repo.load_member_ids(group_id)
    _validate_payer_is_member(paid_by_user_id, group_id, member_ids)

    split_spec = _normalise_spec(kind, data.get("splits"), member_ids)
    _validate_split_users_are_members(split_spec, group_id, member_ids)

    expense = Expense(
        group_id=group_id,
        paid_by_user_id=paid_by_user_id,
        description=data["description"],
        amount_minor=amount.minor,
        currency=amount.asset,
        split_kind=kind,
        split_spec=split_spec,
    )

    # Compute before writing anything so a bad split leaves no rows behind.
    records = _build_split_records(expense)

    session.add(expense)
    session.flush()  # populate expense.id before creating splits
    repo.save_splits(expense.id, records)
    return expense


def list_expenses(group_id: int, session: Session) -> list[Expense]:
    """Active (non-deleted) expenses of a group, newest first."""
    _get_group_or_404(group_id, session)
    expenses = LedgerRepository(session).load_expenses(group_id)
    return list(reversed(expenses))


def get_expense(expense_id: int, session: Session) -> Expense:
    """
    Returns a single expense including its splits.

    Soft-deleted expenses are still returned; `deleted_at` tells them apart.
    """
    return _get_expense_or_404(expense_id, session)


def recompute_splits(
        expense_id: int,
        session: Session,
        data: dict | None = None,
) -> Expense:
    """
    Regenerates an expense's splits, optionally with a new amount, split kind,
    split entries or payer.

    Idempotent: recomputing without changes leaves identical splits, settled
    flags included.
    """
    expense = _get_expense_or_404(expense_id, session)
    if expense.is_deleted:
        raise AppError(
            ErrorCode.EXPENSE_DELETED,
            f"Expense {expense_id} has been deleted and cannot be changed.",
            422,
        )
    data = data or {}
    repo = LedgerRepository(session)
    previous_payer_id = expense.paid_by_user_id
    member_ids = repo.load_member_ids(expense.group_id)

    if "description" in data:
        expense.description = data["description"]

    if "paid_by_user_id" in data:
        _validate_payer_is_member(data["paid_by_user_id"], expense.group_id, member_ids)
        expense.paid_by_user_id = data["paid_by_user_id"]

    if "amount" in data:
        amount = Money.of(data["amount"], expense.currency)
        if not amount.is_positive():
            raise InvalidAmount("Expense amount must be positive.", field="amount")
        expense.amount_minor = amount.minor

    if "split_kind" in data or "splits" in data:
        kind = SplitKind(data.get("split_kind", expense.split_kind))
        entries = data.get("splits")
        if entries is None and kind == expense.split_kind:
            entries = expense.split_spec
        split_spec = _normalise_spec(kind, entries, member_ids)
        _validate_split_users_are_members(split_spec, expense.group_id, member_ids)
        expense.split_kind = kind
        expense.split_spec = split_spec

    previous = {split.user_id: split for split in repo.load_splits(expense.id)}
    records = _build_split_records(expense, previous, previous_payer_id)

    repo.save_splits(expense.id, records)
    expense.updated_at = datetime.now(timezone.utc)
    session.flush()
    return expense


def settle_split(
        expense_id: int,
        user_id: int,
        session: Session,
) -> Split:
    """
    Marks one member's split of an expense as settled. Settling an already
    settled split changes nothing.
    """
    expense = _get_expense_or_404(expense_id, session)
    if expense.is_deleted:
        raise AppError(
            ErrorCode.EXPENSE_DELETED,
            f"Expense {expense_id} has been deleted.",
            422,
        )
    split = session.execute(
        select(Split).where(
            Split.expense_id == expense_id,
            Split.user_id == user_id,
        )
    ).scalar_one_or_none()
    if split is None:
        raise AppError(
            ErrorCode.SPLIT_NOT_FOUND,
            f"User {user_id} has no split on expense {expense_id}.",
            404,
        )
    if not split.settled:
        split.settled = True
        split.settled_at = datetime.now(timezone.utc)
        session.flush()
    return split


def delete_expense(expense_id: int, session: Session) -> None:
    """
    Soft-deletes an expense by setting deleted_at = NOW().

    The row stays in the database and its splits are kept for audit. The
    ledger no longer sees either. Deleting twice is not an error.
    """
    expense = _get_expense_or_404(expense_id, session)
    if not expense.is_deleted:
        expense.deleted_at = datetime.now(timezone.utc)
        session.flush()
