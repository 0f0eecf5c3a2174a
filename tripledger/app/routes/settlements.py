"""
routes/settlements.py — Settlement route handlers.

Layer rules:
  - Parse, validate, call ONE service, commit, return envelope.
  - No business logic. No DB queries. No bare SQL.

Special: create_settlement returns (Settlement, warnings[]).
  If warnings is non-empty (e.g. OVERPAYMENT), the route includes them in the
  response envelope. The HTTP status is still 201.

Endpoints (base url_prefix=/api/v1/groups):
  POST   /groups/:id/settlements               → 201  record a debt payment
  GET    /groups/:id/settlements               → 200  list all settlements
  POST   /groups/:id/settlements/execute-plan  → 201  record the whole netting plan
"""

from __future__ import annotations

from flask import Blueprint, jsonify, request

from tripledger.app.extensions import db
from tripledger.app.models.settlement import Settlement
from tripledger.app.schemas.settlement_schema import CreateSettlementSchema
from tripledger.app.services import settlement_service

settlements_bp = Blueprint("settlements", __name__)


def _serialize_settlement(s: Settlement) -> dict:
    """Converts a Settlement ORM object to a plain dict for JSON output."""
    return {
        "id": s.id,
        "group_id": s.group_id,
        "paid_by_user_id": s.paid_by_user_id,
        "paid_to_user_id": s.paid_to_user_id,
        "amount": str(s.amount),
        "currency": s.currency,
        "created_at": s.created_at.isoformat() if s.created_at else None,
    }


@settlements_bp.route("/<int:group_id>/settlements", methods=["POST"])
def create_settlement(group_id: int):
    """
    POST /groups/:id/settlements — Record a debt payment.

    Overpayment is still recorded; a warning is included in the response.
    """
    data = CreateSettlementSchema().load(request.get_json(force=True) or {})
    settlement, warnings = settlement_service.create_settlement(
        group_id=group_id,
        data=data,
        session=db.session,
    )
    db.session.commit()
    return jsonify({"data": _serialize_settlement(settlement), "warnings": warnings}), 201


@settlements_bp.route("/<int:group_id>/settlements", methods=["GET"])
def list_settlements(group_id: int):
    """GET /groups/:id/settlements — List all settlements for a group."""
    settlements = settlement_service.list_settlements(group_id=group_id, session=db.session)
    return jsonify({
        "data": [_serialize_settlement(s) for s in settlements],
        "warnings": [],
    }), 200


@settlements_bp.route("/<int:group_id>/settlements/execute-plan", methods=["POST"])
def execute_plan(group_id: int):
    """POST /groups/:id/settlements/execute-plan — Settle the group in full."""
    settlements = settlement_service.execute_plan(group_id=group_id, session=db.session)
    db.session.commit()
    return jsonify({
        "data": [_serialize_settlement(s) for s in settlements],
        "warnings": [],
    }), 201
