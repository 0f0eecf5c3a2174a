"""
routes/balances.py — Balance route handlers.

Layer rules:
  - Call ONE service, return envelope.
  - No business logic. No DB queries. No bare SQL.

Endpoints (base url_prefix=/api/v1/groups):
  GET /groups/:id/balances  → 200  net balances + settlement plan
"""

from __future__ import annotations

from flask import Blueprint, jsonify

from tripledger.app.extensions import db
from tripledger.app.services import balance_service

balances_bp = Blueprint("balances", __name__)


@balances_bp.route("/<int:group_id>/balances", methods=["GET"])
def get_balances(group_id: int):
    """
    GET /groups/:id/balances

    The service checks that balances sum to zero and raises
    LEDGER_INCONSISTENCY (500) if the stored data does not add up.
    """
    result = balance_service.get_balance_response(group_id=group_id, session=db.session)
    return jsonify({"data": result, "warnings": []}), 200
