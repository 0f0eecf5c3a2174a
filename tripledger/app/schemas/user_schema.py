"""
schemas/user_schema.py — Marshmallow schema for user registration.

Validation responsibility:
  - This file: field types, lengths, formats, regex patterns, currency codes.
  - services/user_service.py: DUPLICATE_EMAIL / DUPLICATE_USERNAME checks
    (require a DB lookup, not a schema concern).
"""

from __future__ import annotations

from marshmallow import Schema, fields, validate

from tripledger.app.errors import ErrorCode
from tripledger.app.money import FIAT_CURRENCIES


class RegisterUserSchema(Schema):
    """
    POST /users

    Field rules:
      username               : 3–50 chars, alphanumeric + underscore only
      email                  : valid email format
      fiat_currency          : one of the supported fiat codes, default USD
      wallet_address         : optional; a mock address is assigned otherwise
      collateral_btc_address : optional; omitted gets a mock address,
                               explicit null registers a user who cannot borrow
    """

    # VARCHAR(50) NOT NULL UNIQUE, alphanumeric + underscore, 3–50 chars.
    username = fields.Str(
        required=True,
        validate=[
            validate.Length(
                min=3,
                max=50,
                error="Username must be between 3 and 50 characters.",
            ),
            validate.Regexp(
                r"^[a-zA-Z0-9_]+$",
                error="Username may only contain letters, numbers, and underscores.",
            ),
        ],
    )

    email = fields.Email(
        required=True,
        validate=validate.Length(max=255),
    )

    fiat_currency = fields.Str(
        load_default="USD",
        validate=validate.OneOf(
            sorted(FIAT_CURRENCIES),
            error=ErrorCode.UNSUPPORTED_CURRENCY,
        ),
    )

    wallet_address = fields.Str(validate=validate.Length(min=1, max=128))

    # No load_default: the service tells "absent" and "null" apart.
    collateral_btc_address = fields.Str(
        allow_none=True,
        validate=validate.Length(min=1, max=128),
    )
