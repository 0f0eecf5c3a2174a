"""
models/payment.py — Payment table definition.

One row per fiat → MUSD payment that reached the settlement network.
No business logic. No imports from services or routes.

A FAILED_AFTER_BORROW row points at the loan that committed before the
transfer failed; that loan stays ACTIVE until someone reconciles it.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    String,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tripledger.app.extensions import db
from tripledger.app.money import STABLE_ASSET, Money


class PaymentStatus(str, enum.Enum):
    CONFIRMED           = "CONFIRMED"
    FAILED_AFTER_BORROW = "FAILED_AFTER_BORROW"


class Payment(db.Model):
    __tablename__ = "payments"

    __table_args__ = (
        CheckConstraint("amount_fiat_minor > 0", name="ck_payments_fiat_positive"),
        CheckConstraint(
            "from_user_id <> to_user_id",
            name="ck_payments_no_self_payment",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    from_user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    to_user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )

    amount_fiat_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)

    fiat_currency: Mapped[str] = mapped_column(String(4), nullable=False)

    amount_stable_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)

    borrow_used: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    borrow_amount_minor: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=0,
    )

    loan_id: Mapped[int | None] = mapped_column(
        ForeignKey("loans.id", ondelete="RESTRICT"),
        nullable=True,
    )

    tx_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, name="payment_status_enum"),
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # ── Relationships ──────────────────────────────────────────────────────

    loan: Mapped["Loan"] = relationship("Loan")  # noqa: F821

    @property
    def amount_fiat(self) -> Money:
        return Money.from_minor(self.amount_fiat_minor, self.fiat_currency)

    @property
    def amount_stable(self) -> Money:
        return Money.from_minor(self.amount_stable_minor, STABLE_ASSET)

    @property
    def borrow_amount(self) -> Money:
        return Money.from_minor(self.borrow_amount_minor, STABLE_ASSET)

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<Payment id={self.id} "
            f"from={self.from_user_id} "
            f"to={self.to_user_id} "
            f"status={self.status}>"
        )
