"""
schemas/group_schema.py — Marshmallow schemas for group and membership endpoints.

Validation responsibility:
  - This file: field types, string lengths, non-empty checks (including trim),
    supported currency codes.
  - services/group_service.py:
      - USER_NOT_FOUND  (user_id existence check requires DB lookup)
      - ALREADY_MEMBER  (membership existence check requires DB lookup)
      - GROUP_NOT_FOUND (requires DB lookup)
"""

from __future__ import annotations

from marshmallow import Schema, ValidationError, fields, validate

from tripledger.app.errors import ErrorCode
from tripledger.app.money import FIAT_CURRENCIES


def _validate_non_empty_after_trim(value: str) -> None:
    """
    Raises ValidationError if the string is blank or contains only whitespace.
    Mirrors the DB CHECK(LENGTH(TRIM(...)) > 0) constraint at the API layer.
    """
    if not value.strip():
        raise ValidationError("This field must not be blank or contain only whitespace.")


_positive_id = validate.Range(min=1, error="user ids must be positive integers.")


class CreateGroupSchema(Schema):
    """
    POST /groups

    The owner becomes the first member. member_ids adds more members at
    creation time.
    """

    # VARCHAR(100) NOT NULL CHECK(LENGTH(TRIM(name)) > 0)
    name = fields.Str(
        required=True,
        validate=[
            validate.Length(
                min=1,
                max=100,
                error="Group name must be between 1 and 100 characters.",
            ),
            _validate_non_empty_after_trim,
        ],
    )

    owner_user_id = fields.Int(required=True, strict=True, validate=_positive_id)

    currency = fields.Str(
        load_default="USD",
        validate=validate.OneOf(
            sorted(FIAT_CURRENCIES),
            error=ErrorCode.UNSUPPORTED_CURRENCY,
        ),
    )

    member_ids = fields.List(
        fields.Int(strict=True, validate=_positive_id),
        load_default=list,
    )


class AddMemberSchema(Schema):
    """
    POST /groups/:id/members

    Whether the user exists is a DB concern (USER_NOT_FOUND, 404), checked
    in group_service.py.
    """

    user_id = fields.Int(
        required=True,
        strict=True,  # reject floats like 1.0
        validate=validate.Range(
            min=1,
            error="user_id must be a positive integer.",
        ),
    )
