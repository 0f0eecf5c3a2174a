"""
models/settlement.py — Settlement table definition.

No business logic. No imports from services or routes.

Key design points:
  - Amount stored as integer minor units in the group's currency.
  - CHECK(paid_by_user_id <> paid_to_user_id) backs up the SELF_SETTLEMENT
    check in settlement_service.py.
  - All three FK columns are ON DELETE RESTRICT.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, CheckConstraint, DateTime, ForeignKey, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tripledger.app.extensions import db
from tripledger.app.money import Money


class Settlement(db.Model):
    __tablename__ = "settlements"

    __table_args__ = (
        CheckConstraint("amount_minor > 0", name="ck_settlements_amount_positive"),
        CheckConstraint(
            "paid_by_user_id <> paid_to_user_id",
            name="ck_settlements_no_self_settlement",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    group_id: Mapped[int] = mapped_column(
        ForeignKey("groups.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    paid_by_user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )

    paid_to_user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
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

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # ── Relationships ──────────────────────────────────────────────────────

    group: Mapped["Group"] = relationship(  # noqa: F821
        "Group",
        back_populates="settlements",
    )

    payer: Mapped["User"] = relationship(  # noqa: F821
        "User",
        foreign_keys=[paid_by_user_id],
    )

    recipient: Mapped["User"] = relationship(  # noqa: F821
        "User",
        foreign_keys=[paid_to_user_id],
    )

    @property
    def amount(self) -> Money:
        return Money.from_minor(self.amount_minor, self.currency)

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<Settlement id={self.id} "
            f"group_id={self.group_id} "
            f"from={self.paid_by_user_id} "
            f"to={self.paid_to_user_id} "
            f"amount={self.amount_minor} {self.currency}>"
        )
