"""
models/stake.py — Stake table definition.

A member's MUSD deposit into a group pool. Rewards accrue daily at
`reward_rate` (annual) between start_date and end_date and are derived,
not stored. `claimed_minor` records what has already been paid out.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Numeric,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tripledger.app.extensions import db
from tripledger.app.money import STABLE_ASSET, Money


class Stake(db.Model):
    __tablename__ = "stakes"

    __table_args__ = (
        CheckConstraint("amount_minor > 0", name="ck_stakes_amount_positive"),
        CheckConstraint("reward_rate >= 0", name="ck_stakes_reward_rate_nonnegative"),
        CheckConstraint("end_date > start_date", name="ck_stakes_end_after_start"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    group_id: Mapped[int] = mapped_column(
        ForeignKey("groups.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )

    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)

    reward_rate: Mapped[Decimal] = mapped_column(Numeric(8, 6), nullable=False)

    claimed_minor: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # ── Relationships ──────────────────────────────────────────────────────

    group: Mapped["Group"] = relationship(  # noqa: F821
        "Group",
        back_populates="stakes",
    )

    @property
    def amount(self) -> Money:
        return Money.from_minor(self.amount_minor, STABLE_ASSET)

    @property
    def claimed(self) -> Money:
        return Money.from_minor(self.claimed_minor, STABLE_ASSET)

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<Stake id={self.id} "
            f"group_id={self.group_id} "
            f"user_id={self.user_id} "
            f"amount={self.amount_minor} "
            f"active={self.active}>"
        )
