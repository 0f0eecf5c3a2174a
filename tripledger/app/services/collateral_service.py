"""
services/collateral_service.py — Collateral sizing, loan health and interest.

Pure functions. No database, no Flask, no network. The BTC price is passed
in by the caller (from SettlementNetwork.get_btc_rate()).

Rounding direction always favours the lender:
  - required collateral rounds UP to whole satoshis
  - max borrowable rounds DOWN to whole MUSD minor units
  - interest rounds half-up
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_DOWN, ROUND_HALF_UP, ROUND_UP, Decimal

from tripledger.app.errors import InsufficientCollateral, InvalidAmount
from tripledger.app.money import COLLATERAL_ASSET, STABLE_ASSET, Money


DEFAULT_COLLATERAL_RATIO = Decimal("1.50")
MIN_COLLATERAL_RATIO = Decimal("1.10")
MAX_LTV = Decimal("0.75")
DAYS_PER_YEAR = 365


def _require_rate(btc_rate: Decimal) -> Decimal:
    rate = Decimal(btc_rate)
    if not rate.is_finite() or rate <= 0:
        raise InvalidAmount(f"BTC rate {btc_rate} must be positive.")
    return rate


def _require_asset(amount: Money, asset: str) -> None:
    if amount.asset != asset:
        raise InvalidAmount(f"Expected an amount in {asset}, got {amount.asset}.")


def as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Sizing ─────────────────────────────────────────────────────────────────

def required_collateral(borrow: Money, btc_rate: Decimal, ratio: Decimal) -> Money:
    """
    BTC needed to back `borrow` MUSD at `ratio`: borrow × ratio / btc_rate,
    rounded up to BTC precision.

    40 MUSD at 150% and 65000 MUSD/BTC → 0.00092308 BTC.
    """
    _require_asset(borrow, STABLE_ASSET)
    rate = _require_rate(btc_rate)
    value = borrow.to_decimal() * Decimal(ratio) / rate
    return Money.quantize(value, COLLATERAL_ASSET, rounding=ROUND_UP)


def size_collateral(
        borrow: Money,
        btc_rate: Decimal,
        supplied: Money | None = None,
        default_ratio: Decimal = DEFAULT_COLLATERAL_RATIO,
        min_ratio: Decimal = MIN_COLLATERAL_RATIO,
) -> Money:
    """
    Returns the collateral to post for `borrow`.

    Without `supplied`, sizes at the conservative default ratio. With it,
    checks the supplied amount covers at least `min_ratio` and returns it.

    Raises:
        InsufficientCollateral -- supplied collateral is below the floor.
    """
    if supplied is None:
        return required_collateral(borrow, btc_rate, default_ratio)

    _require_asset(supplied, COLLATERAL_ASSET)
    floor = required_collateral(borrow, btc_rate, min_ratio)
    if supplied < floor:
        raise InsufficientCollateral(
            f"Collateral {supplied} BTC is below the {min_ratio * 100:.0f}% minimum "
            f"of {floor} BTC for a {borrow} MUSD loan."
        )
    return supplied


# ── Loan health ────────────────────────────────────────────────────────────

def collateral_value(collateral: Money, btc_rate: Decimal) -> Decimal:
    """MUSD value of a BTC amount, unrounded."""
    _require_asset(collateral, COLLATERAL_ASSET)
    return collateral.to_decimal() * _require_rate(btc_rate)


def collateral_ratio(collateral: Money, principal: Money, btc_rate: Decimal) -> Decimal:
    """collateral value / principal. 1.5 means 150%."""
    _require_asset(principal, STABLE_ASSET)
    if not principal.is_positive():
        raise InvalidAmount("Principal must be positive.")
    return collateral_value(collateral, btc_rate) / principal.to_decimal()


def loan_to_value(principal: Money, collateral: Money, btc_rate: Decimal) -> Decimal:
    """principal / collateral value. 0.75 means 75%."""
    _require_asset(principal, STABLE_ASSET)
    value = collateral_value(collateral, btc_rate)
    if value <= 0:
        raise InvalidAmount("Collateral must be positive.")
    return principal.to_decimal() / value


def max_borrowable(collateral: Money, btc_rate: Decimal, max_ltv: Decimal = MAX_LTV) -> Money:
    """The most MUSD `collateral` can back at `max_ltv`, rounded down."""
    value = collateral_value(collateral, btc_rate) * Decimal(max_ltv)
    return Money.quantize(value, STABLE_ASSET, rounding=ROUND_DOWN)


# ── Interest ───────────────────────────────────────────────────────────────

def elapsed_days(start: datetime, as_of: datetime) -> int:
    """Whole days between `start` and `as_of`; never negative."""
    delta = as_utc(as_of) - as_utc(start)
    return max(delta.days, 0)


def accrued_interest(loan, as_of: datetime) -> Money:
    """
    principal × (annual rate / 365) × whole days elapsed.

    `loan` needs `principal`, `interest_rate_annual` and `start_date`.
    """
    days = elapsed_days(loan.start_date, as_of)
    rate = Decimal(loan.interest_rate_annual)
    return loan.principal.multiply_by_rational(
        rate * days,
        DAYS_PER_YEAR,
        rounding=ROUND_HALF_UP,
    )


def outstanding_balance(loan, as_of: datetime) -> Money:
    """Principal plus accrued interest."""
    return loan.principal + accrued_interest(loan, as_of)
