"""
schemas/loan_schema.py — Marshmallow schemas for loan endpoints.

Validation responsibility:
  - This file: field types, MUSD and BTC precision, positive amounts,
    duration range, status filter values.
  - services/loan_service.py and collateral_service.py:
      - NO_COLLATERAL_ADDRESS, TOO_MANY_ACTIVE_LOANS (422)
      - INSUFFICIENT_COLLATERAL (422) — needs the live BTC price
      - INVALID_LOAN_STATE (409)      — needs the stored loan
"""

from __future__ import annotations

from decimal import Decimal

from marshmallow import Schema, ValidationError, fields, post_load, validate

from tripledger.app.errors import ErrorCode
from tripledger.app.models.loan import LoanStatus
from tripledger.app.money import COLLATERAL_ASSET, STABLE_ASSET, Money, precision_of


def _amount_validator(asset: str):
    """Positive, with no more places than `asset` carries."""
    places = precision_of(asset)

    def _validate(value: Decimal) -> None:
        if value <= Decimal("0"):
            raise ValidationError("Amount must be greater than zero.")
        if value.as_tuple().exponent < -places:
            raise ValidationError(ErrorCode.INVALID_AMOUNT_PRECISION)

    return _validate


class BorrowSchema(Schema):
    """
    POST /loans

    amount      MUSD to borrow.
    collateral  BTC to post. Omitted means sized at the default ratio;
                given, it must cover at least the minimum ratio.
    """

    user_id = fields.Int(
        required=True,
        strict=True,
        validate=validate.Range(min=1, error="user_id must be a positive integer."),
    )

    amount = fields.Decimal(required=True, validate=_amount_validator(STABLE_ASSET))

    collateral = fields.Decimal(load_default=None, validate=_amount_validator(COLLATERAL_ASSET))

    duration_days = fields.Int(
        load_default=None,
        strict=True,
        validate=validate.Range(min=1, max=3650, error="duration_days must be between 1 and 3650."),
    )

    @post_load
    def to_money(self, data: dict, **kwargs) -> dict:
        data["amount"] = Money.of(data["amount"], STABLE_ASSET)
        if data.get("collateral") is not None:
            data["collateral"] = Money.of(data["collateral"], COLLATERAL_ASSET)
        return data


class LoanQuerySchema(Schema):
    """GET /loans?user_id=&status="""

    user_id = fields.Int(load_default=None, validate=validate.Range(min=1))

    status = fields.Enum(LoanStatus, load_default=None, by_value=True)
