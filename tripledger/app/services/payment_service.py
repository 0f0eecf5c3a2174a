"""
services/payment_service.py — Fiat payment settled in MUSD, borrowing on demand.

State machine (strictly sequential, one request):

  CONVERTED ──► BALANCE_CHECKED ──┬─────────────────► TRANSFERRED ──► CONFIRMED
                                  └─► BORROWED ──────┘

  1. CONVERTED        fiat amount → MUSD needed (with slippage buffer)
  2. BALANCE_CHECKED  sender's MUSD balance read from the network
  3. BORROWED         only if the balance falls short: borrow the shortfall
                      at the default collateral ratio, wait for confirmation,
                      record the Loan. Any failure, or a network that lends
                      less than the shortfall, → BorrowFailed and no
                      transfer is attempted.
  4. TRANSFERRED      MUSD sent to the recipient
  5. CONFIRMED        transfer confirmed; Payment recorded

A transfer that fails after a borrow committed raises PaymentFailedAfterBorrow.
The loan is NOT reversed: it stays ACTIVE, a FAILED_AFTER_BORROW Payment row
points at it, and the condition is logged at ERROR for reconciliation.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from tripledger.app.clients.settlement_network import SettlementNetwork
from tripledger.app.errors import (
    AppError,
    BorrowFailed,
    ConfirmationTimeout,
    ErrorCode,
    InvalidAmount,
    NetworkError,
    PaymentFailedAfterBorrow,
    TransferFailed,
    WarningCode,
)
from tripledger.app.models.loan import Loan
from tripledger.app.models.payment import Payment, PaymentStatus
from tripledger.app.models.user import User
from tripledger.app.money import STABLE_ASSET, Money
from tripledger.app.repository import LedgerRepository
from tripledger.app.services import loan_service
from tripledger.app.services.loan_service import LoanTerms
from tripledger.app.services.pricing_service import Conversion, PricingService


logger = logging.getLogger(__name__)


class PaymentState(str, enum.Enum):
    CONVERTED       = "CONVERTED"
    BALANCE_CHECKED = "BALANCE_CHECKED"
    BORROWED        = "BORROWED"
    TRANSFERRED     = "TRANSFERRED"
    CONFIRMED       = "CONFIRMED"


@dataclass
class PaymentResult:
    payment:    Payment
    conversion: Conversion
    loan:       Loan | None = None
    states:     list[PaymentState] = field(default_factory=list)
    warnings:   list[dict] = field(default_factory=list)


def _get_user_or_404(user_id: int, session: Session) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise AppError(
            ErrorCode.USER_NOT_FOUND,
            f"User {user_id} does not exist.",
            404,
        )
    return user


def _record_payment(
        session: Session,
        sender: User,
        recipient: User,
        conversion: Conversion,
        status: PaymentStatus,
        loan: Loan | None,
        tx_id: str | None,
) -> Payment:
    payment = Payment(
        from_user_id=sender.id,
        to_user_id=recipient.id,
        amount_fiat_minor=conversion.source_amount.minor,
        fiat_currency=conversion.source_amount.asset,
        amount_stable_minor=conversion.amount.minor,
        borrow_used=loan is not None,
        borrow_amount_minor=loan.principal_minor if loan is not None else 0,
        loan_id=loan.id if loan is not None else None,
        tx_id=tx_id,
        status=status,
    )
    session.add(payment)
    session.flush()
    return payment


def pay(
        from_user_id: int,
        to_user_id: int,
        amount: Money,
        network: SettlementNetwork,
        pricing: PricingService,
        terms: LoanTerms,
        session: Session,
) -> PaymentResult:
    """
    Pays `amount` (fiat) from one user to another in MUSD.

    Raises:
        AppError(USER_NOT_FOUND, 404)
        AppError(SELF_PAYMENT, 422)
        UnsupportedCurrency / InvalidAmount
        NetworkError             -- balance check failed; nothing happened
        BorrowFailed             -- borrow needed but failed or lent short; nothing
                                    transferred. `loan_id` is set when a short loan exists.
        ConfirmationTimeout      -- borrow or transfer (without a borrow) timed out
        TransferFailed           -- transfer failed, no borrow involved
        PaymentFailedAfterBorrow -- transfer failed after a committed borrow
    """
    if from_user_id == to_user_id:
        raise AppError(
            ErrorCode.SELF_PAYMENT,
            "You cannot pay yourself.",
            422,
            field="to_user_id",
        )
    sender = _get_user_or_404(from_user_id, session)
    recipient = _get_user_or_404(to_user_id, session)

    if not amount.is_positive():
        raise InvalidAmount("Payment amount must be positive.", field="amount")

    states: list[PaymentState] = []
    warnings: list[dict] = []

    # ── 1. CONVERTED ───────────────────────────────────────────────────────
    conversion = pricing.convert_fiat_to_stable(amount)
    needed = conversion.amount
    states.append(PaymentState.CONVERTED)
    if conversion.used_fallback:
        warnings.append({
            "code": WarningCode.FALLBACK_RATE,
            "message": (
                f"Rate oracle unavailable; converted at fallback rate "
                f"{conversion.rate.rate} {amount.asset}/{STABLE_ASSET}."
            ),
        })

    # ── 2. BALANCE_CHECKED ─────────────────────────────────────────────────
    balance = network.get_stable_balance(sender.wallet_address)
    states.append(PaymentState.BALANCE_CHECKED)
    logger.info(
        "Payment %s → %s: need %s MUSD, sender holds %s MUSD",
        sender.id, recipient.id, needed, balance,
    )

    # ── 3. BORROWED (only on shortfall) ────────────────────────────────────
    loan = None
    if balance < needed:
        shortfall = needed - balance
        try:
            loan = loan_service.open_loan(
                sender,
                shortfall,
                network,
                LedgerRepository(session),
                terms,
            )
        except (BorrowFailed, ConfirmationTimeout):
            raise
        except AppError as exc:
            raise BorrowFailed(f"Auto-borrow of {shortfall} MUSD refused: {exc.message}") from exc
        if loan.principal < shortfall:
            logger.error(
                "Borrow committed (loan %s) but the network lent %s MUSD of the %s MUSD "
                "shortfall of user %s; nothing transferred. Loan stays ACTIVE.",
                loan.id, loan.principal, shortfall, sender.id,
            )
            raise BorrowFailed(
                f"Network lent {loan.principal} MUSD but the payment needs {shortfall} MUSD more.",
                loan_id=loan.id,
            )
        states.append(PaymentState.BORROWED)

    # ── 4/5. TRANSFERRED → CONFIRMED ───────────────────────────────────────
    tx_id = None
    failure: AppError | None = None
    try:
        tx_id = network.transfer(sender.wallet_address, recipient.wallet_address, needed)
        states.append(PaymentState.TRANSFERRED)
        logger.info("Transfer %s submitted: %s MUSD %s → %s", tx_id, needed, sender.id, recipient.id)
        if not network.wait_for_confirmation(tx_id, terms.confirmation_timeout):
            failure = TransferFailed(f"Transfer {tx_id} failed on the network.")
    except (NetworkError, ConfirmationTimeout) as exc:
        failure = exc

    if failure is not None:
        if loan is not None:
            logger.error(
                "Borrow committed (loan %s, %s MUSD) but transfer from user %s failed: %s. "
                "Loan stays ACTIVE and needs manual reconciliation.",
                loan.id, loan.principal, sender.id, failure.message,
            )
            payment = _record_payment(
                session, sender, recipient, conversion,
                PaymentStatus.FAILED_AFTER_BORROW, loan, tx_id,
            )
            raise PaymentFailedAfterBorrow(
                f"Borrowed {loan.principal} MUSD but the transfer failed: {failure.message}",
                loan_id=loan.id,
                payment_id=payment.id,
            ) from failure
        if isinstance(failure, (ConfirmationTimeout, TransferFailed)):
            raise failure
        raise TransferFailed(f"Transfer failed: {failure.message}") from failure

    states.append(PaymentState.CONFIRMED)
    payment = _record_payment(
        session, sender, recipient, conversion,
        PaymentStatus.CONFIRMED, loan, tx_id,
    )
    logger.info("Payment %s confirmed (tx %s)", payment.id, tx_id)

    return PaymentResult(
        payment=payment,
        conversion=conversion,
        loan=loan,
        states=states,
        warnings=warnings,
    )
