"""
schemas/payment_schema.py — Marshmallow schema for the payment endpoint.

Validation responsibility:
  - This file: field types, supported currency, decimal precision,
    positive amount. The loaded amount is a Money in the given currency.
  - services/payment_service.py: SELF_PAYMENT, USER_NOT_FOUND and the whole
    convert → borrow → transfer sequence.
"""

from __future__ import annotations

from decimal import Decimal

from marshmallow import Schema, ValidationError, fields, post_load, validate

from tripledger.app.errors import ErrorCode
from tripledger.app.money import FIAT_CURRENCIES, Money


def _validate_monetary_amount(value: Decimal) -> None:
    """Strictly positive, at most 2 decimal places; never rounded."""
    if value <= Decimal("0"):
        raise ValidationError("Amount must be greater than zero.")
    if value.as_tuple().exponent < -2:
        raise ValidationError(ErrorCode.INVALID_AMOUNT_PRECISION)


class PaySchema(Schema):
    """
    POST /payments

    `amount` is in fiat. It is converted to MUSD at the cached oracle rate;
    the sender borrows against BTC collateral if their MUSD balance is short.
    """

    from_user_id = fields.Int(
        required=True,
        strict=True,
        validate=validate.Range(min=1, error="from_user_id must be a positive integer."),
    )

    to_user_id = fields.Int(
        required=True,
        strict=True,
        validate=validate.Range(min=1, error="to_user_id must be a positive integer."),
    )

    amount = fields.Decimal(
        required=True,
        validate=_validate_monetary_amount,
    )

    currency = fields.Str(
        load_default="USD",
        validate=validate.OneOf(
            sorted(FIAT_CURRENCIES),
            error=ErrorCode.UNSUPPORTED_CURRENCY,
        ),
    )

    @post_load
    def to_money(self, data: dict, **kwargs) -> dict:
        data["amount"] = Money.of(data["amount"], data.pop("currency"))
        return data
