"""
errors.py — AppError base class, error code registry and domain exceptions.

Every error returned by the TripLedger API uses a code defined here.
Do not raise strings or generic exceptions from service or route code.

Rules:
  - Error codes are a versioned contract. They do not change once published.
  - Error messages are human-readable prose. They may be improved at any time.
  - Caller-input errors (INVALID_AMOUNT, INVALID_SPLIT, UNSUPPORTED_CURRENCY)
    are returned immediately and never retried.
  - NETWORK_ERROR and CONFIRMATION_TIMEOUT are retryable by the caller; the
    services never retry internally.
  - LEDGER_INCONSISTENCY means stored data is corrupt. It is never retried.
"""

from __future__ import annotations


class AppError(Exception):

    def __init__(
            self,
            code: str,
            message: str,
            http_status: int,
            field: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code        = code
        self.message     = message
        self.http_status = http_status
        self.field       = field  # which request field caused the error

    def to_dict(self) -> dict:
        payload = {
            "code":    self.code,
            "message": self.message,
        }
        if self.field is not None:
            payload["field"] = self.field
        return {"error": payload}

    def __repr__(self) -> str:
        return (
            f"AppError(code={self.code!r}, "
            f"http_status={self.http_status}, "
            f"message={self.message!r})"
        )


# ── Error Code Registry ────────────────────────────────────────────────────
#
# Organised by category. HTTP status is indicated in the comment.
# These are the string values sent in the API response.
# ──────────────────────────────────────────────────────────────────────────

class ErrorCode:

    # ── Schema / Input Errors (400) ────────────────────────────────────────
    MISSING_FIELD              = "MISSING_FIELD"
    INVALID_FIELD              = "INVALID_FIELD"
    INVALID_AMOUNT             = "INVALID_AMOUNT"
    INVALID_AMOUNT_PRECISION   = "INVALID_AMOUNT_PRECISION"
    INVALID_SPLIT_KIND         = "INVALID_SPLIT_KIND"
    DUPLICATE_SPLIT_USER       = "DUPLICATE_SPLIT_USER"
    UNSUPPORTED_CURRENCY       = "UNSUPPORTED_CURRENCY"

    # ── Conflict Errors (409) ──────────────────────────────────────────────
    DUPLICATE_EMAIL            = "DUPLICATE_EMAIL"
    DUPLICATE_USERNAME         = "DUPLICATE_USERNAME"
    ALREADY_MEMBER             = "ALREADY_MEMBER"
    INVALID_LOAN_STATE         = "INVALID_LOAN_STATE"
    STAKE_INACTIVE             = "STAKE_INACTIVE"

    # ── Not Found Errors (404) ─────────────────────────────────────────────
    USER_NOT_FOUND             = "USER_NOT_FOUND"
    GROUP_NOT_FOUND            = "GROUP_NOT_FOUND"
    EXPENSE_NOT_FOUND          = "EXPENSE_NOT_FOUND"
    SPLIT_NOT_FOUND            = "SPLIT_NOT_FOUND"
    LOAN_NOT_FOUND             = "LOAN_NOT_FOUND"
    STAKE_NOT_FOUND            = "STAKE_NOT_FOUND"

    # ── Business Rule Violations (422) ────────────────────────────────────
    INVALID_SPLIT              = "INVALID_SPLIT"
    PAYER_NOT_MEMBER           = "PAYER_NOT_MEMBER"
    SPLIT_USER_NOT_MEMBER      = "SPLIT_USER_NOT_MEMBER"
    RECIPIENT_NOT_MEMBER       = "RECIPIENT_NOT_MEMBER"
    SELF_SETTLEMENT            = "SELF_SETTLEMENT"
    SELF_PAYMENT               = "SELF_PAYMENT"
    NOT_A_MEMBER               = "NOT_A_MEMBER"
    EXPENSE_DELETED            = "EXPENSE_DELETED"
    INSUFFICIENT_COLLATERAL    = "INSUFFICIENT_COLLATERAL"
    NO_COLLATERAL_ADDRESS      = "NO_COLLATERAL_ADDRESS"
    TOO_MANY_ACTIVE_LOANS      = "TOO_MANY_ACTIVE_LOANS"
    FORBIDDEN                  = "FORBIDDEN"

    # ── External Network Errors (502 / 504) ────────────────────────────────
    NETWORK_ERROR              = "NETWORK_ERROR"
    BORROW_FAILED              = "BORROW_FAILED"
    TRANSFER_FAILED            = "TRANSFER_FAILED"
    PAYMENT_FAILED_AFTER_BORROW = "PAYMENT_FAILED_AFTER_BORROW"
    CONFIRMATION_TIMEOUT       = "CONFIRMATION_TIMEOUT"

    # ── System Errors (500) ────────────────────────────────────────────────
    LEDGER_INCONSISTENCY       = "LEDGER_INCONSISTENCY"
    INTERNAL_ERROR             = "INTERNAL_ERROR"


# ── Warning Code Registry ──────────────────────────────────────────────────
#
# Warnings are returned alongside a 2xx response in the `warnings` array.
# They do not block the request.
# ──────────────────────────────────────────────────────────────────────────

class WarningCode:

    # Settlement amount exceeds current outstanding debt between the parties.
    # Still recorded: pre-payment is valid.
    OVERPAYMENT = "OVERPAYMENT"

    # A conversion used the fixed fallback table or a stale cached rate.
    FALLBACK_RATE = "FALLBACK_RATE"


# ── Domain exceptions ──────────────────────────────────────────────────────
#
# Raised by the pure core (money, split calculator, ledger, pricing) and by
# the payment orchestration. Each one is an AppError with a fixed code and
# status so the global handler can render it without special cases.
# ──────────────────────────────────────────────────────────────────────────

class InvalidAmount(AppError):
    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(ErrorCode.INVALID_AMOUNT, message, 400, field=field)


class InvalidSplit(AppError):
    def __init__(self, message: str, field: str | None = "splits") -> None:
        super().__init__(ErrorCode.INVALID_SPLIT, message, 422, field=field)


class UnsupportedCurrency(AppError):
    def __init__(self, currency: str) -> None:
        super().__init__(
            ErrorCode.UNSUPPORTED_CURRENCY,
            f"Currency {currency!r} is not supported.",
            400,
            field="currency",
        )
        self.currency = currency


class InsufficientCollateral(AppError):
    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.INSUFFICIENT_COLLATERAL, message, 422, field="collateral")


class LedgerInconsistency(AppError):
    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.LEDGER_INCONSISTENCY, message, 500)


class NetworkError(AppError):
    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.NETWORK_ERROR, message, 502)


class BorrowFailed(AppError):
    """
    `loan_id` is set when the network did lend, just not enough; that loan
    exists and must be kept for reconciliation.
    """

    def __init__(self, message: str, loan_id: int | None = None) -> None:
        super().__init__(ErrorCode.BORROW_FAILED, message, 502)
        self.loan_id = loan_id

    def to_dict(self) -> dict:
        payload = super().to_dict()
        if self.loan_id is not None:
            payload["error"]["loan_id"] = self.loan_id
        return payload


class TransferFailed(AppError):
    def __init__(self, message: str, code: str = ErrorCode.TRANSFER_FAILED) -> None:
        super().__init__(code, message, 502)


class PaymentFailedAfterBorrow(TransferFailed):
    """
    The borrow committed but the transfer did not. The loan stays ACTIVE and
    must be reconciled manually; nothing here reverses it.
    """

    def __init__(self, message: str, loan_id: int, payment_id: int | None = None) -> None:
        super().__init__(message, code=ErrorCode.PAYMENT_FAILED_AFTER_BORROW)
        self.loan_id = loan_id
        self.payment_id = payment_id

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["error"]["loan_id"] = self.loan_id
        if self.payment_id is not None:
            payload["error"]["payment_id"] = self.payment_id
        return payload


class ConfirmationTimeout(AppError):
    def __init__(self, tx_id: str, timeout: float) -> None:
        super().__init__(
            ErrorCode.CONFIRMATION_TIMEOUT,
            f"Transaction {tx_id} was not confirmed within {timeout} seconds. "
            f"It may still confirm later.",
            504,
        )
        self.tx_id = tx_id
        self.timeout = timeout
