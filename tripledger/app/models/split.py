"""
models/split.py — Split table definition.

No business logic. No imports from services or routes.

Key design points:
  - Amount stored as integer minor units plus asset code.
  - expense_id is ON DELETE CASCADE — splits are owned by their expense and
    are regenerated by delete-and-reinsert.
  - UNIQUE(expense_id, user_id): one split per member per expense.
  - A zero split is allowed (a 0.01 expense split three ways leaves two
    members owing nothing).

sum(splits) == expense amount is enforced by the split calculator and checked
again by the ledger, not here.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tripledger.app.extensions import db
from tripledger.app.money import Money


class Split(db.Model):
    __tablename__ = "splits"

    __table_args__ = (
        UniqueConstraint("expense_id", "user_id", name="uq_splits_expense_user"),
        CheckConstraint("amount_minor >= 0", name="ck_splits_amount_nonnegative"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    expense_id: Mapped[int] = mapped_column(
        ForeignKey("expenses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # ON DELETE RESTRICT: cannot delete a user who has split assignments.
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )

    amount_minor: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )

    asset: Mapped[str] = mapped_column(
        String(4),
        nullable=False,
    )

    settled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    settled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # ── Relationships ──────────────────────────────────────────────────────

    expense: Mapped["Expense"] = relationship(  # noqa: F821
        "Expense",
        back_populates="splits",
    )

    user: Mapped["User"] = relationship(  # noqa: F821
        "User",
        back_populates="splits",
    )

    @property
    def amount(self) -> Money:
        return Money.from_minor(self.amount_minor, self.asset)

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<Split id={self.id} "
            f"expense_id={self.expense_id} "
            f"user_id={self.user_id} "
            f"amount={self.amount_minor} {self.asset} "
            f"settled={self.settled}>"
        )
