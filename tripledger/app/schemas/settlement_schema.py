"""
schemas/settlement_schema.py — Marshmallow schema for settlement endpoints.

Validation responsibility:
  - This file: field types, decimal precision, positive amount.
  - services/settlement_service.py:
      - SELF_SETTLEMENT (422)       — paid_by == paid_to
      - OVERPAYMENT warning (201)   — requires current balance lookup
      - PAYER_NOT_MEMBER (422)      — requires DB membership lookup
      - RECIPIENT_NOT_MEMBER (422)  — requires DB membership lookup
      - GROUP_NOT_FOUND (404)       — requires DB lookup
"""

from __future__ import annotations

from decimal import Decimal

from marshmallow import Schema, ValidationError, fields, validate

from tripledger.app.errors import ErrorCode


# Same rule as in expense_schema.py. Each schema file stays self-contained.
def _validate_monetary_amount(value: Decimal) -> None:
    """Strictly positive, at most 2 decimal places; never rounded."""
    if value <= Decimal("0"):
        raise ValidationError("Amount must be greater than zero.")
    if value.as_tuple().exponent < -2:
        raise ValidationError(ErrorCode.INVALID_AMOUNT_PRECISION)


class CreateSettlementSchema(Schema):
    """
    POST /groups/:id/settlements

    Records a direct debt payment from paid_by_user_id to paid_to_user_id in
    the group's currency. Overpayment is allowed: the service adds a warning
    but does not block the request.
    """

    paid_by_user_id = fields.Int(
        required=True,
        strict=True,   # reject floats like 1.0
        validate=validate.Range(
            min=1,
            error="paid_by_user_id must be a positive integer.",
        ),
    )

    paid_to_user_id = fields.Int(
        required=True,
        strict=True,
        validate=validate.Range(
            min=1,
            error="paid_to_user_id must be a positive integer.",
        ),
    )

    amount = fields.Decimal(
        required=True,
        validate=_validate_monetary_amount,
    )
