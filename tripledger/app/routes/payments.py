"""
routes/payments.py — Fiat payments settled in MUSD.

Endpoints (base url_prefix=/api/v1/payments):
  POST /payments/        → 201  pay another user, auto-borrowing on shortfall
  POST /payments/quote   → 200  fiat → MUSD conversion only; nothing is sent

Errors that leave a loan on the network must not roll back. For
PaymentFailedAfterBorrow the Loan and the FAILED_AFTER_BORROW Payment are
committed, and for a short-lent BorrowFailed (loan_id set) the Loan is, before
the error propagates to the global handler.
"""

from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request

from tripledger.app.errors import BorrowFailed, PaymentFailedAfterBorrow, WarningCode
from tripledger.app.extensions import PRICING_SERVICE_KEY, SETTLEMENT_NETWORK_KEY, db
from tripledger.app.models.payment import Payment
from tripledger.app.schemas.payment_schema import PaySchema
from tripledger.app.services import payment_service
from tripledger.app.services.loan_service import LoanTerms
from tripledger.app.services.pricing_service import Conversion

payments_bp = Blueprint("payments", __name__)


def _serialize_payment(p: Payment) -> dict:
    return {
        "id": p.id,
        "from_user_id": p.from_user_id,
        "to_user_id": p.to_user_id,
        "amount_fiat": str(p.amount_fiat),
        "fiat_currency": p.fiat_currency,
        "amount_stable": str(p.amount_stable),
        "borrow_used": p.borrow_used,
        "borrow_amount": str(p.borrow_amount) if p.borrow_used else None,
        "loan_id": p.loan_id,
        "tx_id": p.tx_id,
        "status": p.status.value,
        "created_at": p.created_at.isoformat() if p.created_at else None,
    }


def _serialize_conversion(c: Conversion) -> dict:
    return {
        "source_amount": str(c.source_amount),
        "source_currency": c.source_amount.asset,
        "amount": str(c.amount),
        "asset": c.amount.asset,
        "rate": str(c.rate.rate),
        "rate_source": c.rate.source.value,
        "rate_fetched_at": c.rate.fetched_at.isoformat(),
    }


@payments_bp.route("/", methods=["POST"])
def pay():
    """POST /payments — Pay in fiat; the sender borrows MUSD if short."""
    data = PaySchema().load(request.get_json(force=True) or {})
    try:
        result = payment_service.pay(
            from_user_id=data["from_user_id"],
            to_user_id=data["to_user_id"],
            amount=data["amount"],
            network=current_app.extensions[SETTLEMENT_NETWORK_KEY],
            pricing=current_app.extensions[PRICING_SERVICE_KEY],
            terms=LoanTerms.from_config(current_app.config),
            session=db.session,
        )
    except PaymentFailedAfterBorrow:
        db.session.commit()
        raise
    except BorrowFailed as exc:
        if exc.loan_id is not None:
            db.session.commit()
        raise
    db.session.commit()

    body = _serialize_payment(result.payment)
    body["conversion"] = _serialize_conversion(result.conversion)
    body["states"] = [state.value for state in result.states]
    return jsonify({"data": body, "warnings": result.warnings}), 201


@payments_bp.route("/quote", methods=["POST"])
def quote():
    """POST /payments/quote — How much MUSD a fiat payment would need."""
    data = PaySchema(only=("amount", "currency")).load(request.get_json(force=True) or {})
    conversion = current_app.extensions[PRICING_SERVICE_KEY].convert_fiat_to_stable(data["amount"])
    warnings = []
    if conversion.used_fallback:
        warnings.append({
            "code": WarningCode.FALLBACK_RATE,
            "message": "Rate oracle unavailable; quote uses a fallback rate.",
        })
    return jsonify({"data": _serialize_conversion(conversion), "warnings": warnings}), 200
