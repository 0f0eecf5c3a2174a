"""
schemas/expense_schema.py — Marshmallow schemas for expense endpoints.

Validation responsibility:
  - This file:
      - Field types, lengths, enum values, decimal precision
      - DUPLICATE_SPLIT_USER (400) — request shape rule
      - splits required for PERCENTAGE and EXACT, optional for EQUAL
      - the right per-entry key: `percent` for PERCENTAGE, `amount` for EXACT
      - Non-empty-after-trim enforcement for description
  - services/expense_service.py and split_calculator.py:
      - INVALID_SPLIT (422)          — percentages off 100, exact sum mismatch
      - PAYER_NOT_MEMBER (422)       — requires DB membership lookup
      - SPLIT_USER_NOT_MEMBER (422)  — requires DB membership lookup
      - EXPENSE_DELETED (422)        — requires DB record lookup

Schemas inherit from marshmallow.Schema directly.
"""

from __future__ import annotations

from decimal import Decimal

from marshmallow import (
    Schema,
    ValidationError,
    fields,
    validate,
    validates_schema,
)

from tripledger.app.errors import ErrorCode
from tripledger.app.money import FIAT_CURRENCIES
from tripledger.app.services.split_calculator import SplitKind


# ── Shared validators ─────────────────────────────────────────────────────
#
# Fiat amounts have at most 2 decimal places. More precision is REJECTED
# with INVALID_AMOUNT_PRECISION, never rounded.
# ──────────────────────────────────────────────────────────────────────────

def _validate_monetary_amount(value: Decimal) -> None:
    """Strictly positive, at most 2 decimal places."""
    if value <= Decimal("0"):
        raise ValidationError("Amount must be greater than zero.")
    if value.as_tuple().exponent < -2:
        raise ValidationError(ErrorCode.INVALID_AMOUNT_PRECISION)


def _validate_percent(value: Decimal) -> None:
    if value < Decimal("0") or value > Decimal("100"):
        raise ValidationError("percent must be between 0 and 100.")


def _validate_non_empty_after_trim(value: str) -> None:
    """
    Raises ValidationError if the string is blank or contains only whitespace.
    validate.Length(min=1) alone lets "   " through.
    """
    if not value.strip():
        raise ValidationError("This field must not be blank or contain only whitespace.")


# ── Sub-schema: one entry in the `splits` array ───────────────────────────

class SplitEntrySchema(Schema):
    """
    One member's share. Which of percent / amount is required depends on
    the parent's split_kind and is checked there.
    """

    user_id = fields.Int(
        required=True,
        strict=True,   # reject floats like 1.0
        validate=validate.Range(min=1, error="user_id must be a positive integer."),
    )

    percent = fields.Decimal(load_default=None, validate=_validate_percent)

    # Zero is a valid exact share; only negatives are rejected.
    amount = fields.Decimal(
        load_default=None,
        validate=validate.Range(min=Decimal("0"), error="Split amount must not be negative."),
    )


def _check_split_entries(kind: SplitKind, splits: list[dict] | None) -> None:
    """Request-shape rules shared by create and recompute."""
    if splits is None:
        if kind != SplitKind.EQUAL:
            raise ValidationError(
                {"splits": [f"splits is required when split_kind is '{kind.value}'."]}
            )
        return

    if not splits:
        raise ValidationError({"splits": ["splits must not be empty."]})

    user_ids = [s["user_id"] for s in splits]
    if len(user_ids) != len(set(user_ids)):
        raise ValidationError({"splits": [ErrorCode.DUPLICATE_SPLIT_USER]})

    if kind == SplitKind.PERCENTAGE:
        if any(s.get("percent") is None for s in splits):
            raise ValidationError({"splits": ["Every PERCENTAGE split needs 'percent'."]})
    elif kind == SplitKind.EXACT:
        if any(s.get("amount") is None for s in splits):
            raise ValidationError({"splits": ["Every EXACT split needs 'amount'."]})
        if any(s["amount"].as_tuple().exponent < -2 for s in splits):
            raise ValidationError({"splits": [ErrorCode.INVALID_AMOUNT_PRECISION]})


# ── Create expense ─────────────────────────────────────────────────────────

class CreateExpenseSchema(Schema):
    """
    POST /groups/:id/expenses

    split_kind:
      EQUAL       → splits optional; omitted means every current member.
      PERCENTAGE  → splits required, each with `percent`.
      EXACT       → splits required, each with `amount`.
    """

    paid_by_user_id = fields.Int(
        required=True,
        strict=True,
        validate=validate.Range(min=1, error="paid_by_user_id must be a positive integer."),
    )

    description = fields.Str(
        required=True,
        validate=[
            validate.Length(
                min=1,
                max=255,
                error="Description must be between 1 and 255 characters.",
            ),
            _validate_non_empty_after_trim,
        ],
    )

    amount = fields.Decimal(
        required=True,
        validate=_validate_monetary_amount,
    )

    # Optional; when given it must match the group's currency (service check).
    currency = fields.Str(
        load_default=None,
        validate=validate.OneOf(
            sorted(FIAT_CURRENCIES),
            error=ErrorCode.UNSUPPORTED_CURRENCY,
        ),
    )

    split_kind = fields.Enum(
        SplitKind,
        load_default=SplitKind.EQUAL,
        by_value=True,
        error_messages={"unknown": ErrorCode.INVALID_SPLIT_KIND},
    )

    splits = fields.List(
        fields.Nested(SplitEntrySchema),
        load_default=None,
    )

    @validates_schema
    def validate_splits_coherence(self, data: dict, **kwargs) -> None:
        _check_split_entries(data.get("split_kind", SplitKind.EQUAL), data.get("splits"))


# ── Recompute splits ───────────────────────────────────────────────────────

class RecomputeSplitsSchema(Schema):
    """
    POST /expenses/:id/recompute

    Every field is optional. An empty body regenerates the splits from the
    stored amount and split specification, which changes nothing.
    """

    paid_by_user_id = fields.Int(
        strict=True,
        validate=validate.Range(min=1, error="paid_by_user_id must be a positive integer."),
    )

    description = fields.Str(
        validate=[
            validate.Length(
                min=1,
                max=255,
                error="Description must be between 1 and 255 characters.",
            ),
            _validate_non_empty_after_trim,
        ],
    )

    amount = fields.Decimal(validate=_validate_monetary_amount)

    split_kind = fields.Enum(
        SplitKind,
        by_value=True,
        error_messages={"unknown": ErrorCode.INVALID_SPLIT_KIND},
    )

    splits = fields.List(fields.Nested(SplitEntrySchema))

    @validates_schema
    def validate_recompute_coherence(self, data: dict, **kwargs) -> None:
        """
        A new PERCENTAGE or EXACT kind needs its entries. Entries without a
        kind are checked against the stored kind by the service.
        """
        kind = data.get("split_kind")
        if kind is not None:
            _check_split_entries(kind, data.get("splits"))
        elif data.get("splits") is not None:
            user_ids = [s["user_id"] for s in data["splits"]]
            if len(user_ids) != len(set(user_ids)):
                raise ValidationError({"splits": [ErrorCode.DUPLICATE_SPLIT_USER]})


# ── Settle split ───────────────────────────────────────────────────────────

class SettleSplitSchema(Schema):
    """POST /expenses/:id/splits/settle"""

    user_id = fields.Int(
        required=True,
        strict=True,
        validate=validate.Range(min=1, error="user_id must be a positive integer."),
    )
