"""
services/pricing_service.py — Exchange rate cache and fiat ↔ MUSD conversion.

Rate lookup for a currency moves through these states:

  CACHED_VALID            cached rate younger than the TTL → returned as-is
  REFRESHING              cache empty or expired → ask the oracle
    ├─ oracle answers     → cache it, back to CACHED_VALID
    └─ oracle fails       → CACHED_STALE_FALLBACK: the last good rate if
                            there is one, else the configured fallback rate,
                            tagged source=FALLBACK and NOT cached as fresh,
                            so the next call asks the oracle again.

The cache is process-wide and guarded only by its TTL. Two threads refreshing
at once may both hit the oracle; the last writer wins.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable

from tripledger.app.clients.rate_oracle import RateOracle
from tripledger.app.errors import InvalidAmount, NetworkError, UnsupportedCurrency
from tripledger.app.money import FIAT_CURRENCIES, STABLE_ASSET, Money, convert


logger = logging.getLogger(__name__)


class RateSource(str, enum.Enum):
    ORACLE   = "ORACLE"
    FALLBACK = "FALLBACK"


@dataclass(frozen=True)
class ExchangeRate:
    from_currency: str
    to_currency:   str
    rate:          Decimal       # from_currency units per 1 to_currency
    fetched_at:    datetime
    source:        RateSource


@dataclass(frozen=True)
class Conversion:
    source_amount: Money
    amount:        Money
    rate:          ExchangeRate

    @property
    def used_fallback(self) -> bool:
        return self.rate.source == RateSource.FALLBACK


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def require_fiat(currency: str) -> str:
    """Normalises a currency code, raising UnsupportedCurrency if unknown."""
    code = (currency or "").upper()
    if code not in FIAT_CURRENCIES:
        raise UnsupportedCurrency(currency)
    return code


# ── Rate cache ─────────────────────────────────────────────────────────────

class RateCache:

    def __init__(
            self,
            oracle: RateOracle,
            ttl_seconds: int = 300,
            fallback_rates: dict[str, Decimal] | None = None,
            clock: Callable[[], datetime] = _utcnow,
    ):
        self.oracle = oracle
        self.ttl = timedelta(seconds=ttl_seconds)
        self.fallback_rates = dict(fallback_rates or {})
        self.clock = clock
        self._entries: dict[str, ExchangeRate] = {}

    def is_fresh(self, entry: ExchangeRate) -> bool:
        return self.clock() - entry.fetched_at < self.ttl

    def get(self, currency: str) -> ExchangeRate:
        """Returns the rate for `currency` per MUSD, refreshing when expired."""
        currency = require_fiat(currency)
        entry = self._entries.get(currency)
        if entry is not None and self.is_fresh(entry):
            return entry
        return self.refresh(currency)

    def refresh(self, currency: str) -> ExchangeRate:
        """Forces an oracle fetch, falling back on failure."""
        currency = require_fiat(currency)
        try:
            rate = self.oracle.fetch_rate(currency, STABLE_ASSET)
        except NetworkError as exc:
            return self._fallback(currency, exc)

        entry = ExchangeRate(
            from_currency=currency,
            to_currency=STABLE_ASSET,
            rate=rate,
            fetched_at=self.clock(),
            source=RateSource.ORACLE,
        )
        self._entries[currency] = entry
        return entry

    def _fallback(self, currency: str, exc: NetworkError) -> ExchangeRate:
        stale = self._entries.get(currency)
        if stale is not None:
            logger.warning(
                "Rate oracle failed for %s (%s); using last known rate %s from %s",
                currency, exc.message, stale.rate, stale.fetched_at.isoformat(),
            )
            return replace(stale, source=RateSource.FALLBACK)

        fixed = self.fallback_rates.get(currency)
        if fixed is None:
            logger.error("Rate oracle failed for %s and no fallback rate is configured", currency)
            raise exc
        logger.warning(
            "Rate oracle failed for %s (%s); using configured fallback rate %s",
            currency, exc.message, fixed,
        )
        return ExchangeRate(
            from_currency=currency,
            to_currency=STABLE_ASSET,
            rate=Decimal(fixed),
            fetched_at=self.clock(),
            source=RateSource.FALLBACK,
        )

    def clear(self) -> None:
        self._entries.clear()


# ── Conversion ─────────────────────────────────────────────────────────────

class PricingService:

    def __init__(self, rate_cache: RateCache, slippage_buffer_percent: Decimal = Decimal("0")):
        if slippage_buffer_percent < 0:
            raise InvalidAmount("Slippage buffer must not be negative.")
        self.rate_cache = rate_cache
        self.slippage_buffer_percent = Decimal(slippage_buffer_percent)

    def convert_fiat_to_stable(self, amount: Money, apply_slippage: bool = True) -> Conversion:
        """
        fiat / rate, rounded half-up to MUSD precision.

        With a configured slippage buffer, the result is raised by that
        percentage (also half-up) so the payer never comes up short.
        """
        rate = self.rate_cache.get(amount.asset)
        stable = convert(amount, rate.rate, STABLE_ASSET, invert=True, rounding=ROUND_HALF_UP)
        if apply_slippage and self.slippage_buffer_percent:
            stable = stable.multiply_by_rational(
                Decimal(100) + self.slippage_buffer_percent,
                Decimal(100),
                rounding=ROUND_HALF_UP,
            )
        return Conversion(source_amount=amount, amount=stable, rate=rate)

    def convert_stable_to_fiat(self, amount: Money, currency: str) -> Conversion:
        """MUSD × rate, rounded half-up to the fiat currency's precision."""
        if amount.asset != STABLE_ASSET:
            raise InvalidAmount(f"Expected an {STABLE_ASSET} amount, got {amount.asset}.")
        rate = self.rate_cache.get(currency)
        fiat = convert(amount, rate.rate, rate.from_currency, rounding=ROUND_HALF_UP)
        return Conversion(source_amount=amount, amount=fiat, rate=rate)
