"""
models/expense.py — Expense table definition.

No business logic. No imports from services or routes.

Key design points:
  - Money is stored as integer minor units (`amount_minor`) plus the currency
    code. Never Float, never Numeric. `amount` rebuilds the Money value.
  - `split_kind` + `split_spec` are the inputs the split calculator needs to
    regenerate the splits; "recompute splits" reads them back.
  - `deleted_at` is NULL for active expenses. Soft-deleted expenses are
    invisible to the ledger and are never hard-deleted via the API.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    String,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tripledger.app.extensions import db
from tripledger.app.money import Money
from tripledger.app.services.split_calculator import SplitKind


class Expense(db.Model):
    __tablename__ = "expenses"

    __table_args__ = (
        CheckConstraint("amount_minor > 0", name="ck_expenses_amount_positive"),
        CheckConstraint(
            "LENGTH(TRIM(description)) > 0",
            name="ck_expenses_description_nonempty",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    # ON DELETE RESTRICT: cannot delete a group that has expenses.
    group_id: Mapped[int] = mapped_column(
        ForeignKey("groups.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    # ON DELETE RESTRICT: cannot delete a user who has paid expenses.
    paid_by_user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )

    description: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    amount_minor: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )

    currency: Mapped[str] = mapped_column(
        String(4),
        nullable=False,
    )

    split_kind: Mapped[SplitKind] = mapped_column(
        Enum(SplitKind, name="split_kind_enum"),
        nullable=False,
        default=SplitKind.EQUAL,
    )

    # List of {"user_id": ..., "percent"|"amount": ...} entries, amounts and
    # percents kept as decimal strings.
    split_spec: Mapped[list] = mapped_column(
        JSON,
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # Set whenever the splits are regenerated.
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # ── Relationships ──────────────────────────────────────────────────────

    group: Mapped["Group"] = relationship(  # noqa: F821
        "Group",
        back_populates="expenses",
    )

    payer: Mapped["User"] = relationship(  # noqa: F821
        "User",
        back_populates="expenses_paid",
        foreign_keys=[paid_by_user_id],
    )

    # ON DELETE CASCADE: splits are owned by their expense.
    splits: Mapped[list["Split"]] = relationship(  # noqa: F821
        "Split",
        back_populates="expense",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Split.id",
    )

    # ── Convenience properties ─────────────────────────────────────────────

    @property
    def amount(self) -> Money:
        return Money.from_minor(self.amount_minor, self.currency)

    @property
    def is_deleted(self) -> bool:
        """True if this expense has been soft-deleted."""
        return self.deleted_at is not None

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<Expense id={self.id} "
            f"group_id={self.group_id} "
            f"amount={self.amount_minor} {self.currency} "
            f"deleted={self.is_deleted}>"
        )
