"""
schemas/stake_schema.py — Marshmallow schema for group pool stakes.

Validation responsibility:
  - This file: field types, MUSD precision, positive amount, reward rate range.
  - services/stake_service.py:
      - NOT_A_MEMBER (422)      — requires DB membership lookup
      - end_date after start_date (400), since start_date defaults to now
"""

from __future__ import annotations

from decimal import Decimal

from marshmallow import Schema, ValidationError, fields, validate

from tripledger.app.errors import ErrorCode


def _validate_stake_amount(value: Decimal) -> None:
    """Strictly positive MUSD with at most 6 decimal places."""
    if value <= Decimal("0"):
        raise ValidationError("Amount must be greater than zero.")
    if value.as_tuple().exponent < -6:
        raise ValidationError(ErrorCode.INVALID_AMOUNT_PRECISION)


class CreateStakeSchema(Schema):
    """
    POST /groups/:id/stakes

    Dates are ISO 8601; naive values are taken as UTC. reward_rate is an
    annual fraction (0.05 = 5%) and defaults to the configured rate.
    """

    user_id = fields.Int(
        required=True,
        strict=True,
        validate=validate.Range(min=1, error="user_id must be a positive integer."),
    )

    amount = fields.Decimal(required=True, validate=_validate_stake_amount)

    start_date = fields.DateTime(load_default=None)

    end_date = fields.DateTime(required=True)

    reward_rate = fields.Decimal(
        load_default=None,
        validate=validate.Range(
            min=Decimal("0"),
            max=Decimal("1"),
            error="reward_rate must be between 0 and 1.",
        ),
    )
