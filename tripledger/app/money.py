"""
money.py — Integer minor-unit money type and rounding utilities.

Every ledger-critical amount in TripLedger is a Money: an integer count of the
asset's smallest unit plus an asset code. Floats never enter these paths.

Rules:
  - Arithmetic between two Money values requires the same asset.
  - Conversions between assets are explicit and produce a new Money.
  - divide_evenly() is the only sanctioned way to split an amount N ways;
    the remainder goes one unit at a time to the first shares, in order.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from tripledger.app.errors import InvalidAmount


# Number of decimal places per asset. Fiat uses cents, MUSD six places,
# BTC satoshis.
ASSET_PRECISION: dict[str, int] = {
    "USD":  2,
    "INR":  2,
    "EUR":  2,
    "GBP":  2,
    "MUSD": 6,
    "BTC":  8,
}

STABLE_ASSET = "MUSD"
COLLATERAL_ASSET = "BTC"

FIAT_CURRENCIES = frozenset({"USD", "INR", "EUR", "GBP"})


def precision_of(asset: str) -> int:
    """Returns the number of decimal places for `asset` or raises InvalidAmount."""
    try:
        return ASSET_PRECISION[asset]
    except KeyError:
        raise InvalidAmount(f"Unknown asset {asset!r}.", field="asset") from None


def _to_decimal(value) -> Decimal:
    if isinstance(value, float):
        # Floats are rejected outright: repr() rounding would hide precision loss.
        raise InvalidAmount("Amounts must be given as strings, integers or Decimal, not float.")
    try:
        result = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmount(f"{value!r} is not a valid amount.") from None
    if not result.is_finite():
        raise InvalidAmount(f"{value!r} is not a finite amount.")
    return result


@dataclass(frozen=True, order=False)
class Money:
    minor: int
    asset: str

    def __post_init__(self) -> None:
        if isinstance(self.minor, bool) or not isinstance(self.minor, int):
            raise InvalidAmount(f"Minor units must be an integer, got {self.minor!r}.")
        precision_of(self.asset)

    # ── Construction ───────────────────────────────────────────────────────

    @classmethod
    def of(cls, value, asset: str, allow_negative: bool = False) -> Money:
        """
        Builds a Money from a decimal string, int or Decimal in major units.

        Input with more decimal places than the asset supports is rejected,
        never rounded.
        """
        places = precision_of(asset)
        amount = _to_decimal(value)
        if amount < 0 and not allow_negative:
            raise InvalidAmount(f"Amount {value!r} must not be negative.")
        scaled = amount.scaleb(places)
        if scaled != scaled.to_integral_value():
            raise InvalidAmount(
                f"Amount {value!r} has more than {places} decimal places for {asset}."
            )
        return cls(int(scaled), asset)

    @classmethod
    def from_minor(cls, minor: int, asset: str) -> Money:
        return cls(minor, asset)

    @classmethod
    def zero(cls, asset: str) -> Money:
        return cls(0, asset)

    @classmethod
    def quantize(cls, value: Decimal, asset: str, rounding: str = ROUND_HALF_UP) -> Money:
        """Rounds an arbitrary Decimal (major units) onto the asset's grid."""
        places = precision_of(asset)
        scaled = _to_decimal(value).scaleb(places).to_integral_value(rounding=rounding)
        return cls(int(scaled), asset)

    # ── Views ──────────────────────────────────────────────────────────────

    @property
    def precision(self) -> int:
        return ASSET_PRECISION[self.asset]

    def to_decimal(self) -> Decimal:
        return Decimal(self.minor).scaleb(-self.precision)

    def __str__(self) -> str:
        places = self.precision
        return format(self.to_decimal().quantize(Decimal(1).scaleb(-places)), "f")

    def is_zero(self) -> bool:
        return self.minor == 0

    def is_positive(self) -> bool:
        return self.minor > 0

    def is_negative(self) -> bool:
        return self.minor < 0

    # ── Arithmetic ─────────────────────────────────────────────────────────

    def _require_same_asset(self, other: Money) -> None:
        if not isinstance(other, Money):
            raise InvalidAmount(f"Cannot combine Money with {type(other).__name__}.")
        if other.asset != self.asset:
            raise InvalidAmount(
                f"Cannot combine {self.asset} with {other.asset} without an explicit conversion."
            )

    def add(self, other: Money) -> Money:
        self._require_same_asset(other)
        return Money(self.minor + other.minor, self.asset)

    def subtract(self, other: Money) -> Money:
        self._require_same_asset(other)
        return Money(self.minor - other.minor, self.asset)

    __add__ = add
    __sub__ = subtract

    def __neg__(self) -> Money:
        return Money(-self.minor, self.asset)

    def __abs__(self) -> Money:
        return Money(abs(self.minor), self.asset)

    def __lt__(self, other: Money) -> bool:
        self._require_same_asset(other)
        return self.minor < other.minor

    def __le__(self, other: Money) -> bool:
        self._require_same_asset(other)
        return self.minor <= other.minor

    def __gt__(self, other: Money) -> bool:
        self._require_same_asset(other)
        return self.minor > other.minor

    def __ge__(self, other: Money) -> bool:
        self._require_same_asset(other)
        return self.minor >= other.minor

    def multiply_by_rational(
            self,
            numerator,
            denominator=1,
            rounding: str = ROUND_HALF_UP,
    ) -> Money:
        """
        Returns self × numerator / denominator, rounded to whole minor units.

        numerator and denominator may be int, Decimal or decimal strings.
        """
        num = _to_decimal(numerator)
        den = _to_decimal(denominator)
        if den == 0:
            raise InvalidAmount("Cannot divide an amount by zero.")
        raw = Decimal(self.minor) * num / den
        return Money(int(raw.to_integral_value(rounding=rounding)), self.asset)

    def divide_evenly(self, n: int) -> list[Money]:
        """
        Splits self into `n` parts whose sum is exactly self.

        The remainder (minor mod n) is handed out one unit at a time to the
        first `remainder` parts, so earlier parts are never smaller than later
        ones.
        """
        if isinstance(n, bool) or not isinstance(n, int) or n <= 0:
            raise InvalidAmount(f"Cannot divide an amount into {n!r} parts.")
        if self.minor < 0:
            raise InvalidAmount("Cannot divide a negative amount.")
        base, remainder = divmod(self.minor, n)
        return [
            Money(base + 1 if i < remainder else base, self.asset)
            for i in range(n)
        ]


def sum_money(amounts, asset: str) -> Money:
    """Sums an iterable of Money in `asset`; an empty iterable gives zero."""
    total = Money.zero(asset)
    for amount in amounts:
        total = total + amount
    return total


def convert(amount: Money, rate: Decimal, target_asset: str, invert: bool = False,
            rounding: str = ROUND_HALF_UP) -> Money:
    """
    Converts `amount` into `target_asset` using `rate`.

    With invert=False the result is amount × rate, otherwise amount / rate.
    Rounds onto the target asset's grid with `rounding`.
    """
    rate = _to_decimal(rate)
    if rate <= 0:
        raise InvalidAmount(f"Exchange rate {rate} must be positive.")
    value = amount.to_decimal()
    converted = value / rate if invert else value * rate
    return Money.quantize(converted, target_asset, rounding=rounding)
