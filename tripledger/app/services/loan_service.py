"""
services/loan_service.py — Borrowing MUSD against BTC collateral.

Business rules enforced here:
  NO_COLLATERAL_ADDRESS   (422)  — user has no BTC collateral address
  TOO_MANY_ACTIVE_LOANS   (422)  — user already holds the configured maximum
  INSUFFICIENT_COLLATERAL (422)  — supplied collateral below the minimum ratio
  INVALID_LOAN_STATE      (409)  — repay/default on a loan that is not ACTIVE
  BORROW_FAILED           (502)  — the network refused or failed the borrow
  CONFIRMATION_TIMEOUT    (504)  — the borrow did not confirm in time

Layer rules:
  - No Flask imports. Settings arrive as a LoanTerms value.
  - Commits are the route's responsibility; services only flush.
  - A Loan row is written only after the network confirms the borrow.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from tripledger.app.clients.settlement_network import SettlementNetwork
from tripledger.app.errors import (
    AppError,
    BorrowFailed,
    ErrorCode,
    InvalidAmount,
    NetworkError,
)
from tripledger.app.models.loan import Loan, LoanStatus
from tripledger.app.models.user import User
from tripledger.app.money import STABLE_ASSET, Money
from tripledger.app.repository import LedgerRepository
from tripledger.app.services import collateral_service


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LoanTerms:
    default_collateral_ratio: Decimal = collateral_service.DEFAULT_COLLATERAL_RATIO
    min_collateral_ratio:     Decimal = collateral_service.MIN_COLLATERAL_RATIO
    duration_days:            int = 30
    interest_rate_annual:     Decimal = Decimal("0.05")
    max_active_loans:         int = 5
    confirmation_timeout:     float = 60

    @classmethod
    def from_config(cls, config) -> LoanTerms:
        """Builds terms from a Flask config mapping."""
        return cls(
            default_collateral_ratio=Decimal(config["DEFAULT_COLLATERAL_RATIO"]),
            min_collateral_ratio=Decimal(config["MIN_COLLATERAL_RATIO"]),
            duration_days=int(config["DEFAULT_LOAN_DURATION_DAYS"]),
            interest_rate_annual=Decimal(config["DEFAULT_LOAN_INTEREST_RATE"]),
            max_active_loans=int(config["MAX_ACTIVE_LOANS"]),
            confirmation_timeout=float(config["CONFIRMATION_TIMEOUT_SECONDS"]),
        )


# ── Private helpers ────────────────────────────────────────────────────────

def _get_user_or_404(user_id: int, session: Session) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise AppError(
            ErrorCode.USER_NOT_FOUND,
            f"User {user_id} does not exist.",
            404,
        )
    return user


def _get_loan_or_404(loan_id: int, session: Session) -> Loan:
    loan = session.get(Loan, loan_id)
    if loan is None:
        raise AppError(
            ErrorCode.LOAN_NOT_FOUND,
            f"Loan {loan_id} does not exist.",
            404,
        )
    return loan


def _require_active(loan: Loan, action: str) -> None:
    if loan.status != LoanStatus.ACTIVE:
        raise AppError(
            ErrorCode.INVALID_LOAN_STATE,
            f"Loan {loan.id} is {loan.status.value} and cannot be {action}.",
            409,
        )


# ── Public service functions ───────────────────────────────────────────────

def open_loan(
        user: User,
        amount: Money,
        network: SettlementNetwork,
        repo: LedgerRepository,
        terms: LoanTerms,
        collateral: Money | None = None,
        duration_days: int | None = None,
        now: datetime | None = None,
) -> Loan:
    """
    Sizes collateral, borrows on the network, waits for confirmation and
    records the Loan at the amount and rate the network actually lent.

    Raises:
        AppError(NO_COLLATERAL_ADDRESS, 422)
        AppError(TOO_MANY_ACTIVE_LOANS, 422)
        InvalidAmount           -- amount is not a positive MUSD value
        InsufficientCollateral  -- supplied collateral below the floor
        BorrowFailed            -- network error or rejected borrow
        ConfirmationTimeout     -- borrow not confirmed within the timeout
    """
    if amount.asset != STABLE_ASSET or not amount.is_positive():
        raise InvalidAmount(f"Borrow amount must be a positive {STABLE_ASSET} value.", field="amount")

    if not user.collateral_btc_address:
        raise AppError(
            ErrorCode.NO_COLLATERAL_ADDRESS,
            f"User {user.id} has no BTC collateral address registered.",
            422,
            field="user_id",
        )

    if repo.count_active_loans(user.id) >= terms.max_active_loans:
        raise AppError(
            ErrorCode.TOO_MANY_ACTIVE_LOANS,
            f"User {user.id} already has {terms.max_active_loans} active loans.",
            422,
        )

    duration = duration_days or terms.duration_days

    try:
        btc_rate = network.get_btc_rate()
    except NetworkError as exc:
        raise BorrowFailed(f"Could not price collateral: {exc.message}") from exc

    posted = collateral_service.size_collateral(
        amount,
        btc_rate,
        supplied=collateral,
        default_ratio=terms.default_collateral_ratio,
        min_ratio=terms.min_collateral_ratio,
    )

    logger.info(
        "Borrowing %s MUSD for user %s against %s BTC (rate %s)",
        amount, user.id, posted, btc_rate,
    )
    try:
        receipt = network.borrow(user.wallet_address, amount, posted, duration)
        confirmed = network.wait_for_confirmation(receipt.tx_id, terms.confirmation_timeout)
    except NetworkError as exc:
        logger.warning("Borrow for user %s failed: %s", user.id, exc.message)
        raise BorrowFailed(f"Borrow failed: {exc.message}") from exc

    tx_id = receipt.tx_id
    if not confirmed:
        logger.warning("Borrow %s for user %s was rejected by the network", tx_id, user.id)
        raise BorrowFailed(f"Borrow transaction {tx_id} failed on the network.")

    lent = receipt.amount_borrowed
    if lent.asset != STABLE_ASSET or not lent.is_positive():
        logger.error("Borrow %s for user %s confirmed with unusable amount %r", tx_id, user.id, lent)
        raise BorrowFailed(f"Borrow transaction {tx_id} lent {lent} {lent.asset}.")
    if lent != amount:
        logger.warning(
            "Borrow %s for user %s: asked for %s MUSD, network lent %s MUSD",
            tx_id, user.id, amount, lent,
        )

    rate = receipt.interest_rate
    if rate is None:
        rate = terms.interest_rate_annual

    loan = Loan(
        user_id=user.id,
        principal_minor=lent.minor,
        collateral_minor=posted.minor,
        interest_rate_annual=rate,
        start_date=now or datetime.now(timezone.utc),
        duration_days=duration,
        status=LoanStatus.ACTIVE,
        borrow_tx_id=tx_id,
    )
    repo.save_loan(loan)
    logger.info("Borrow %s confirmed; recorded loan %s", tx_id, loan.id)
    return loan


def borrow(
        user_id: int,
        data: dict,
        network: SettlementNetwork,
        terms: LoanTerms,
        session: Session,
) -> Loan:
    """
    Standalone borrow.

    `data` is the validated BorrowSchema payload:
      amount (Money, MUSD), collateral (Money, BTC, optional),
      duration_days (int, optional).
    """
    user = _get_user_or_404(user_id, session)
    return open_loan(
        user,
        data["amount"],
        network,
        LedgerRepository(session),
        terms,
        collateral=data.get("collateral"),
        duration_days=data.get("duration_days"),
    )


def repay(loan_id: int, session: Session, now: datetime | None = None) -> Loan:
    """ACTIVE → REPAID."""
    loan = _get_loan_or_404(loan_id, session)
    _require_active(loan, "repaid")
    loan = LedgerRepository(session).update_loan_status(loan_id, LoanStatus.REPAID)
    loan.closed_at = now or datetime.now(timezone.utc)
    session.flush()
    return loan


def mark_defaulted(loan_id: int, session: Session, now: datetime | None = None) -> Loan:
    """ACTIVE → DEFAULTED. Called when the network liquidates the collateral."""
    loan = _get_loan_or_404(loan_id, session)
    _require_active(loan, "marked defaulted")
    loan = LedgerRepository(session).update_loan_status(loan_id, LoanStatus.DEFAULTED)
    loan.closed_at = now or datetime.now(timezone.utc)
    session.flush()
    logger.warning("Loan %s for user %s marked DEFAULTED", loan.id, loan.user_id)
    return loan


def get_loan(loan_id: int, session: Session) -> Loan:
    return _get_loan_or_404(loan_id, session)


def list_loans(
        session: Session,
        user_id: int | None = None,
        status: LoanStatus | None = None,
) -> list[Loan]:
    """Loans, newest first, optionally filtered by user and status."""
    stmt = select(Loan).order_by(Loan.start_date.desc(), Loan.id.desc())
    if user_id is not None:
        stmt = stmt.where(Loan.user_id == user_id)
    if status is not None:
        stmt = stmt.where(Loan.status == status)
    return list(session.execute(stmt).scalars().all())
