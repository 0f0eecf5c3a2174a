"""
models/user.py — User table definition.

No business logic. No imports from services or routes.

Each user carries the two network addresses the payment flow needs:
  - wallet_address          holds MUSD; source of transfers and borrows
  - collateral_btc_address  BTC collateral backing auto-borrows (nullable —
                            a user without one cannot auto-borrow)
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tripledger.app.extensions import db


class User(db.Model):
    __tablename__ = "users"

    __table_args__ = (
        CheckConstraint(
            "LENGTH(TRIM(username)) > 0",
            name="ck_users_username_nonempty",
        ),
        CheckConstraint(
            "email LIKE '%@%'",
            name="ck_users_email_format",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    username: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        unique=True,
    )

    email: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
    )

    wallet_address: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        unique=True,
    )

    collateral_btc_address: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
    )

    # ISO 4217 code the user thinks in; payment amounts default to it.
    fiat_currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        default="USD",
        server_default="USD",
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # ── Relationships ──────────────────────────────────────────────────────
    # Read-only navigation: no logic here.

    memberships: Mapped[list["Membership"]] = relationship(  # noqa: F821
        "Membership",
        back_populates="user",
    )

    expenses_paid: Mapped[list["Expense"]] = relationship(  # noqa: F821
        "Expense",
        back_populates="payer",
        foreign_keys="[Expense.paid_by_user_id]",
    )

    splits: Mapped[list["Split"]] = relationship(  # noqa: F821
        "Split",
        back_populates="user",
    )

    loans: Mapped[list["Loan"]] = relationship(  # noqa: F821
        "Loan",
        back_populates="user",
    )

    def __repr__(self) -> str:  # pragma: no cover
        return f"<User id={self.id} username={self.username!r}>"
