"""
services/split_calculator.py — Equal, percentage and exact split arithmetic.

Pure functions. No database, no Flask. Persisting the resulting splits is the
caller's job (expense_service.py).

Guarantee for every function here: sum(result amounts) == total exactly.
  - EQUAL       remainder handed out by Money.divide_evenly (first shares first).
  - PERCENTAGE  rounding drift applied to the largest percentage share;
                ties go to the lowest member id.
  - EXACT       no correction at all. The caller's figures must already balance.
"""

from __future__ import annotations

import enum
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from tripledger.app.errors import InvalidAmount, InvalidSplit
from tripledger.app.money import Money, sum_money


# Percentages must sum to 100 within this tolerance.
PERCENT_EPSILON = Decimal("0.01")
HUNDRED = Decimal("100")


class SplitKind(str, enum.Enum):
    EQUAL      = "EQUAL"
    PERCENTAGE = "PERCENTAGE"
    EXACT      = "EXACT"


def _require_members(member_ids: list[int]) -> None:
    if not member_ids:
        raise InvalidSplit("A split needs at least one member.")
    if len(member_ids) != len(set(member_ids)):
        raise InvalidSplit("The same member appears more than once in the split.")


def split_equal(total: Money, member_ids: list[int]) -> list[tuple[int, Money]]:
    """
    Divides `total` evenly among `member_ids`, in the order given.

    $100.00 among [A, B, C] → A 33.34, B 33.33, C 33.33.
    """
    _require_members(member_ids)
    if total.is_negative():
        raise InvalidAmount("An expense total must not be negative.")
    shares = total.divide_evenly(len(member_ids))
    return list(zip(member_ids, shares))


def split_by_percentage(
        total: Money,
        shares: list[tuple[int, Decimal]],
) -> list[tuple[int, Money]]:
    """
    Splits `total` by percentage.

    Each raw share is rounded half-up to whole minor units; whatever is left
    over (total − Σrounded, positive or negative) is added to the member with
    the largest percentage, lowest member id on ties.

    Raises InvalidSplit if any percent is ≤ 0 or Σpercent is not 100 ± 0.01.
    """
    member_ids = [member_id for member_id, _ in shares]
    _require_members(member_ids)

    percents: list[Decimal] = []
    for member_id, percent in shares:
        try:
            value = Decimal(str(percent)) if not isinstance(percent, Decimal) else percent
        except InvalidOperation:
            raise InvalidSplit(f"Percentage for member {member_id} is not a number.") from None
        if not value.is_finite() or value <= 0:
            raise InvalidSplit(f"Percentage for member {member_id} must be positive.")
        percents.append(value)

    percent_sum = sum(percents, Decimal("0"))
    if abs(percent_sum - HUNDRED) > PERCENT_EPSILON:
        raise InvalidSplit(f"Split percentages sum to {percent_sum}, expected 100.")

    amounts = [
        total.multiply_by_rational(percent, HUNDRED, rounding=ROUND_HALF_UP)
        for percent in percents
    ]

    drift = total - sum_money(amounts, total.asset)
    if not drift.is_zero():
        # Largest percentage first, then lowest member id.
        target = min(
            range(len(shares)),
            key=lambda i: (-percents[i], member_ids[i]),
        )
        amounts[target] = amounts[target] + drift
        if amounts[target].is_negative():
            raise InvalidSplit("Percentages are too uneven to split this amount.")

    return list(zip(member_ids, amounts))


def split_by_exact(
        total: Money,
        shares: list[tuple[int, Money]],
) -> list[tuple[int, Money]]:
    """
    Validates caller-supplied exact amounts and returns them unchanged.

    Amounts are integer minor units, so "within epsilon" means exactly equal:
    any shortfall or excess of even one minor unit raises InvalidSplit.
    """
    member_ids = [member_id for member_id, _ in shares]
    _require_members(member_ids)

    for member_id, amount in shares:
        if amount.asset != total.asset:
            raise InvalidSplit(
                f"Split for member {member_id} is in {amount.asset}, expense is in {total.asset}."
            )
        if amount.is_negative():
            raise InvalidSplit(f"Split for member {member_id} must not be negative.")

    supplied = sum_money((amount for _, amount in shares), total.asset)
    if supplied != total:
        raise InvalidSplit(
            f"Split amounts ({supplied}) do not equal expense amount ({total})."
        )
    return list(shares)


def compute_splits(
        kind: SplitKind,
        total: Money,
        entries: list[dict],
) -> list[tuple[int, Money]]:
    """
    Dispatches on `kind`. `entries` is the stored per-member split definition:

      EQUAL       [{"user_id": 1}, {"user_id": 2}, ...]
      PERCENTAGE  [{"user_id": 1, "percent": "60"}, ...]
      EXACT       [{"user_id": 1, "amount": "12.50"}, ...]
    """
    kind = SplitKind(kind)
    try:
        if kind == SplitKind.EQUAL:
            return split_equal(total, [entry["user_id"] for entry in entries])

        if kind == SplitKind.PERCENTAGE:
            return split_by_percentage(
                total,
                [(entry["user_id"], Decimal(str(entry["percent"]))) for entry in entries],
            )

        return split_by_exact(
            total,
            [(entry["user_id"], Money.of(entry["amount"], total.asset)) for entry in entries],
        )
    except KeyError as exc:
        raise InvalidSplit(f"Split entry is missing {exc.args[0]!r}.") from None
    except InvalidOperation:
        raise InvalidSplit("Split entry contains a value that is not a number.") from None
