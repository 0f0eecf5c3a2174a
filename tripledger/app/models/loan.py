"""
models/loan.py — Loan table definition.

No business logic. No imports from services or routes.

Key design points:
  - principal is MUSD minor units, collateral is BTC minor units (satoshis).
  - Interest is derived from principal, rate and elapsed days
    (collateral_service.accrued_interest). It is never stored.
  - Status moves ACTIVE → REPAID or ACTIVE → DEFAULTED, nothing else.
"""

from __future__ import annotations

import enum
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tripledger.app.extensions import db
from tripledger.app.money import COLLATERAL_ASSET, STABLE_ASSET, Money


class LoanStatus(str, enum.Enum):
    ACTIVE    = "ACTIVE"
    REPAID    = "REPAID"
    DEFAULTED = "DEFAULTED"


class Loan(db.Model):
    __tablename__ = "loans"

    __table_args__ = (
        CheckConstraint("principal_minor > 0", name="ck_loans_principal_positive"),
        CheckConstraint("collateral_minor > 0", name="ck_loans_collateral_positive"),
        CheckConstraint("duration_days > 0", name="ck_loans_duration_positive"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    principal_minor: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )

    collateral_minor: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
    )

    # Annual rate as a fraction: 0.05 == 5% APR.
    interest_rate_annual: Mapped[Decimal] = mapped_column(
        Numeric(8, 6),
        nullable=False,
    )

    start_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    duration_days: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    status: Mapped[LoanStatus] = mapped_column(
        Enum(LoanStatus, name="loan_status_enum"),
        nullable=False,
        default=LoanStatus.ACTIVE,
    )

    # Confirmed borrow transaction on the settlement network.
    borrow_tx_id: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
    )

    closed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # ── Relationships ──────────────────────────────────────────────────────

    user: Mapped["User"] = relationship(  # noqa: F821
        "User",
        back_populates="loans",
    )

    # ── Convenience properties ─────────────────────────────────────────────

    @property
    def principal(self) -> Money:
        return Money.from_minor(self.principal_minor, STABLE_ASSET)

    @property
    def collateral(self) -> Money:
        return Money.from_minor(self.collateral_minor, COLLATERAL_ASSET)

    @property
    def end_date(self) -> datetime:
        return self.start_date + timedelta(days=self.duration_days)

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<Loan id={self.id} "
            f"user_id={self.user_id} "
            f"principal={self.principal_minor} "
            f"status={self.status}>"
        )
