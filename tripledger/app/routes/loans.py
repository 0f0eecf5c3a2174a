"""
routes/loans.py — MUSD loans against BTC collateral.

Endpoints (base url_prefix=/api/v1/loans):
  POST /loans/                 → 201  borrow
  GET  /loans/?user_id=&status → 200  list loans
  GET  /loans/:id              → 200  loan detail with accrued interest
  POST /loans/:id/repay        → 200  ACTIVE → REPAID
  POST /loans/:id/default      → 200  ACTIVE → DEFAULTED (liquidation hook)
"""

from __future__ import annotations

from datetime import datetime, timezone

from flask import Blueprint, current_app, jsonify, request

from tripledger.app.extensions import SETTLEMENT_NETWORK_KEY, db
from tripledger.app.models.loan import Loan
from tripledger.app.schemas.loan_schema import BorrowSchema, LoanQuerySchema
from tripledger.app.services import collateral_service, loan_service
from tripledger.app.services.loan_service import LoanTerms

loans_bp = Blueprint("loans", __name__)


def _serialize_loan(loan: Loan, as_of: datetime) -> dict:
    """Interest is derived at `as_of`; closed loans stop accruing at closed_at."""
    cutoff = loan.closed_at or as_of
    return {
        "id": loan.id,
        "user_id": loan.user_id,
        "principal": str(loan.principal),
        "collateral": str(loan.collateral),
        "interest_rate_annual": str(loan.interest_rate_annual),
        "start_date": loan.start_date.isoformat(),
        "end_date": loan.end_date.isoformat(),
        "duration_days": loan.duration_days,
        "status": loan.status.value,
        "borrow_tx_id": loan.borrow_tx_id,
        "closed_at": loan.closed_at.isoformat() if loan.closed_at else None,
        "accrued_interest": str(collateral_service.accrued_interest(loan, cutoff)),
        "outstanding": str(collateral_service.outstanding_balance(loan, cutoff)),
    }


def _now() -> datetime:
    return datetime.now(timezone.utc)


@loans_bp.route("/", methods=["POST"])
def borrow():
    """POST /loans — Borrow MUSD, sizing collateral at the default ratio if not given."""
    data = BorrowSchema().load(request.get_json(force=True) or {})
    loan = loan_service.borrow(
        user_id=data["user_id"],
        data=data,
        network=current_app.extensions[SETTLEMENT_NETWORK_KEY],
        terms=LoanTerms.from_config(current_app.config),
        session=db.session,
    )
    db.session.commit()
    return jsonify({"data": _serialize_loan(loan, _now()), "warnings": []}), 201


@loans_bp.route("/", methods=["GET"])
def list_loans():
    """GET /loans — Optionally filtered by ?user_id= and ?status=."""
    query = LoanQuerySchema().load(request.args)
    loans = loan_service.list_loans(
        session=db.session,
        user_id=query["user_id"],
        status=query["status"],
    )
    now = _now()
    return jsonify({"data": [_serialize_loan(l, now) for l in loans], "warnings": []}), 200


@loans_bp.route("/<int:loan_id>", methods=["GET"])
def get_loan(loan_id: int):
    loan = loan_service.get_loan(loan_id=loan_id, session=db.session)
    return jsonify({"data": _serialize_loan(loan, _now()), "warnings": []}), 200


@loans_bp.route("/<int:loan_id>/repay", methods=["POST"])
def repay(loan_id: int):
    loan = loan_service.repay(loan_id=loan_id, session=db.session)
    db.session.commit()
    return jsonify({"data": _serialize_loan(loan, _now()), "warnings": []}), 200


@loans_bp.route("/<int:loan_id>/default", methods=["POST"])
def mark_defaulted(loan_id: int):
    loan = loan_service.mark_defaulted(loan_id=loan_id, session=db.session)
    db.session.commit()
    return jsonify({"data": _serialize_loan(loan, _now()), "warnings": []}), 200
