"""
tests/unit/test_pricing_service.py — Unit tests for RateCache and PricingService.

What this file proves:
  - A fresh cached rate is served without asking the oracle again
  - An expired entry triggers a refresh
  - Oracle failure falls back to the last good rate, tagged FALLBACK
  - With nothing cached, the configured fallback table is used and NOT cached
  - With no fallback at all, the NetworkError reaches the caller
  - Unknown currencies raise UnsupportedCurrency
  - fiat → MUSD → fiat lands within one minor unit of the start
  - The slippage buffer rounds the MUSD amount up by the configured percent

Unit test constraints:
  - No network. StaticRateOracle plays the oracle; a fake clock drives TTLs.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from tripledger.app.clients.rate_oracle import StaticRateOracle
from tripledger.app.errors import InvalidAmount, NetworkError, UnsupportedCurrency
from tripledger.app.money import Money
from tripledger.app.services.pricing_service import (
    PricingService,
    RateCache,
    RateSource,
    require_fiat,
)


class FakeClock:

    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def oracle():
    return StaticRateOracle({"USD": "1", "INR": "83.50", "EUR": "0.92"})


@pytest.fixture
def cache(oracle, clock):
    return RateCache(oracle, ttl_seconds=300, clock=clock)


# ── RateCache ──────────────────────────────────────────────────────────────

class TestRateCache:

    def test_fresh_rate_served_from_cache(self, cache, oracle, clock):
        first = cache.get("INR")
        clock.advance(299)
        second = cache.get("INR")

        assert first is second
        assert first.rate == Decimal("83.50")
        assert first.source == RateSource.ORACLE
        assert oracle.calls == 1

    def test_expired_rate_refreshed(self, cache, oracle, clock):
        cache.get("INR")
        oracle.rates["INR"] = Decimal("84.00")
        clock.advance(300)

        refreshed = cache.get("INR")

        assert refreshed.rate == Decimal("84.00")
        assert refreshed.fetched_at == clock.now
        assert oracle.calls == 2

    def test_currencies_cached_independently(self, cache, oracle):
        cache.get("INR")
        cache.get("EUR")
        cache.get("INR")

        assert oracle.calls == 2

    def test_stale_rate_used_when_oracle_fails(self, cache, oracle, clock, caplog):
        cache.get("INR")
        del oracle.rates["INR"]
        clock.advance(600)

        with caplog.at_level(logging.WARNING, logger="tripledger.app.services.pricing_service"):
            rate = cache.get("INR")

        assert rate.rate == Decimal("83.50")
        assert rate.source == RateSource.FALLBACK
        assert "last known rate" in caplog.text

    def test_fallback_is_not_cached_as_fresh(self, cache, oracle, clock):
        cache.get("INR")
        del oracle.rates["INR"]
        clock.advance(600)
        cache.get("INR")
        cache.get("INR")

        # Every call after expiry asks the oracle again.
        assert oracle.calls == 3

    def test_configured_fallback_when_nothing_cached(self, clock, caplog):
        oracle = StaticRateOracle({})
        cache = RateCache(oracle, fallback_rates={"INR": Decimal("83.00")}, clock=clock)

        with caplog.at_level(logging.WARNING, logger="tripledger.app.services.pricing_service"):
            rate = cache.get("INR")

        assert rate.rate == Decimal("83.00")
        assert rate.source == RateSource.FALLBACK
        assert "configured fallback rate" in caplog.text

        cache.get("INR")
        assert oracle.calls == 2

    def test_no_fallback_reraises_network_error(self, clock):
        cache = RateCache(StaticRateOracle({}), clock=clock)

        with pytest.raises(NetworkError):
            cache.get("GBP")

    def test_recovery_after_outage(self, cache, oracle, clock):
        cache.get("INR")
        saved = oracle.rates.pop("INR")
        clock.advance(600)
        assert cache.get("INR").source == RateSource.FALLBACK

        oracle.rates["INR"] = saved
        assert cache.get("INR").source == RateSource.ORACLE

    def test_unsupported_currency(self, cache, oracle):
        with pytest.raises(UnsupportedCurrency) as exc_info:
            cache.get("JPY")

        assert exc_info.value.http_status == 400
        assert oracle.calls == 0

    def test_clear_forgets_entries(self, cache, oracle):
        cache.get("USD")
        cache.clear()
        cache.get("USD")

        assert oracle.calls == 2


def test_require_fiat_normalises_case():
    assert require_fiat("inr") == "INR"


@pytest.mark.parametrize("code", ["MUSD", "BTC", "", None])
def test_require_fiat_rejects_non_fiat(code):
    with pytest.raises(UnsupportedCurrency):
        require_fiat(code)


# ── PricingService ─────────────────────────────────────────────────────────

class TestPricingService:

    def test_fiat_to_stable_rounds_half_up(self, cache):
        pricing = PricingService(cache)

        conversion = pricing.convert_fiat_to_stable(Money.of("100.00", "INR"))

        # 100 / 83.50 = 1.19760479...
        assert str(conversion.amount) == "1.197605"
        assert conversion.source_amount == Money.of("100.00", "INR")
        assert not conversion.used_fallback

    def test_slippage_buffer_added(self, cache):
        pricing = PricingService(cache, slippage_buffer_percent=Decimal("1"))

        conversion = pricing.convert_fiat_to_stable(Money.of("100.00", "INR"))

        # 1.197605 × 1.01 = 1.20958105
        assert str(conversion.amount) == "1.209581"

    def test_slippage_can_be_skipped(self, cache):
        pricing = PricingService(cache, slippage_buffer_percent=Decimal("1"))

        conversion = pricing.convert_fiat_to_stable(Money.of("50.00", "USD"), apply_slippage=False)

        assert str(conversion.amount) == "50.000000"

    def test_stable_to_fiat(self, cache):
        pricing = PricingService(cache)

        conversion = pricing.convert_stable_to_fiat(Money.of("2", "MUSD"), "INR")

        assert conversion.amount == Money.of("167.00", "INR")

    def test_stable_to_fiat_requires_musd(self, cache):
        with pytest.raises(InvalidAmount):
            PricingService(cache).convert_stable_to_fiat(Money.of("2", "USD"), "INR")

    @pytest.mark.parametrize("currency,value", [
        ("INR", "100.00"),
        ("INR", "0.01"),
        ("EUR", "12.34"),
        ("USD", "9999.99"),
    ])
    def test_round_trip_within_one_minor_unit(self, cache, currency, value):
        pricing = PricingService(cache)
        start = Money.of(value, currency)

        stable = pricing.convert_fiat_to_stable(start).amount
        back = pricing.convert_stable_to_fiat(stable, currency).amount

        assert abs((back - start).minor) <= 1

    def test_fallback_flag_propagates(self, clock):
        cache = RateCache(StaticRateOracle({}), fallback_rates={"INR": Decimal("83.00")}, clock=clock)

        conversion = PricingService(cache).convert_fiat_to_stable(Money.of("83.00", "INR"))

        assert conversion.used_fallback
        assert str(conversion.amount) == "1.000000"

    def test_negative_slippage_rejected(self, cache):
        with pytest.raises(InvalidAmount):
            PricingService(cache, slippage_buffer_percent=Decimal("-1"))
