"""
repository.py — Persistence interface for the ledger and loans.

The ONLY sanctioned way to read expense/split data for balance purposes.
Every expense query here filters `deleted_at IS NULL`; soft-deleted expenses
and their splits never reach the ledger.

Layer rules:
  - No Flask imports. Receives a SQLAlchemy Session.
  - Writes only flush. Committing is the route's job.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from tripledger.app.errors import AppError, ErrorCode
from tripledger.app.models.expense import Expense
from tripledger.app.models.group import Group
from tripledger.app.models.loan import Loan, LoanStatus
from tripledger.app.models.membership import Membership
from tripledger.app.models.settlement import Settlement
from tripledger.app.models.split import Split
from tripledger.app.money import Money


@dataclass
class BalanceInputs:
    """A consistent snapshot of everything the ledger needs for one group."""
    group_id:    int
    currency:    str
    member_ids:  list[int]
    expenses:    list[Expense] = field(default_factory=list)
    splits:      list[Split] = field(default_factory=list)
    settlements: list[Settlement] = field(default_factory=list)


@dataclass
class SplitRecord:
    """A split to persist. `settled` and `settled_at` carry over across recomputation."""
    user_id:    int
    amount:     Money
    settled:    bool = False
    settled_at: datetime | None = None


class LedgerRepository:

    def __init__(self, session: Session) -> None:
        self.session = session

    # ── Reads ──────────────────────────────────────────────────────────────

    def load_expenses(self, group_id: int) -> list[Expense]:
        """Active expenses of a group, oldest first."""
        stmt = (
            select(Expense)
            .where(
                Expense.group_id == group_id,
                Expense.deleted_at.is_(None),
            )
            .order_by(Expense.id)
        )
        return list(self.session.execute(stmt).scalars().all())

    def load_splits(self, expense_id: int) -> list[Split]:
        stmt = select(Split).where(Split.expense_id == expense_id).order_by(Split.id)
        return list(self.session.execute(stmt).scalars().all())

    def load_group_splits(self, group_id: int) -> list[Split]:
        """Splits of a group's active expenses. Joins through Expense for the filter."""
        stmt = (
            select(Split)
            .join(Expense, Split.expense_id == Expense.id)
            .where(
                Expense.group_id == group_id,
                Expense.deleted_at.is_(None),
            )
            .order_by(Split.id)
        )
        return list(self.session.execute(stmt).scalars().all())

    def load_settlements(self, group_id: int) -> list[Settlement]:
        """Settlements have no soft-delete."""
        stmt = (
            select(Settlement)
            .where(Settlement.group_id == group_id)
            .order_by(Settlement.id)
        )
        return list(self.session.execute(stmt).scalars().all())

    def load_member_ids(self, group_id: int) -> list[int]:
        stmt = (
            select(Membership.user_id)
            .where(Membership.group_id == group_id)
            .order_by(Membership.user_id)
        )
        return list(self.session.execute(stmt).scalars().all())

    def load_balance_inputs(self, group_id: int) -> BalanceInputs:
        """
        Loads the full ledger snapshot for a group.

        Raises:
            AppError(GROUP_NOT_FOUND, 404)
        """
        group = self.session.get(Group, group_id)
        if group is None:
            raise AppError(
                ErrorCode.GROUP_NOT_FOUND,
                f"Group {group_id} does not exist.",
                404,
            )
        return BalanceInputs(
            group_id=group_id,
            currency=group.currency,
            member_ids=self.load_member_ids(group_id),
            expenses=self.load_expenses(group_id),
            splits=self.load_group_splits(group_id),
            settlements=self.load_settlements(group_id),
        )

    # ── Writes ─────────────────────────────────────────────────────────────

    def save_splits(self, expense_id: int, splits: list[SplitRecord]) -> list[Split]:
        """
        Replaces every split of an expense (delete-and-reinsert).

        Running it twice with the same input leaves the same rows behind.
        """
        for split in self.load_splits(expense_id):
            self.session.delete(split)
        self.session.flush()

        rows = [
            Split(
                expense_id=expense_id,
                user_id=record.user_id,
                amount_minor=record.amount.minor,
                asset=record.amount.asset,
                settled=record.settled,
                settled_at=record.settled_at,
            )
            for record in splits
        ]
        self.session.add_all(rows)
        self.session.flush()
        expense = self.session.get(Expense, expense_id)
        if expense is not None:
            self.session.expire(expense, ["splits"])
        return rows

    def save_loan(self, loan: Loan) -> Loan:
        self.session.add(loan)
        self.session.flush()
        return loan

    def update_loan_status(self, loan_id: int, status: LoanStatus) -> Loan:
        """
        Raises:
            AppError(LOAN_NOT_FOUND, 404)
        """
        loan = self.session.get(Loan, loan_id)
        if loan is None:
            raise AppError(
                ErrorCode.LOAN_NOT_FOUND,
                f"Loan {loan_id} does not exist.",
                404,
            )
        loan.status = status
        self.session.flush()
        return loan

    def count_active_loans(self, user_id: int) -> int:
        stmt = select(Loan.id).where(
            Loan.user_id == user_id,
            Loan.status == LoanStatus.ACTIVE,
        )
        return len(self.session.execute(stmt).scalars().all())
