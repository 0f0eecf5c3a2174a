"""
clients/rate_oracle.py — Fiat ↔ MUSD exchange rate sources.

A rate is always "fiat units per 1 MUSD" (INR → 83.50 means 1 MUSD buys
83.50 INR). Caching and fallback live in pricing_service.RateCache; the
oracles here only fetch and raise NetworkError on any failure.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from decimal import Decimal

import httpx

from tripledger.app.errors import NetworkError


logger = logging.getLogger(__name__)


class RateOracle(ABC):

    @abstractmethod
    def fetch_rate(self, from_currency: str, to_currency: str) -> Decimal:
        """Returns units of `from_currency` per one unit of `to_currency`."""


class HttpRateOracle(RateOracle):
    """
    CoinGecko-style price API client.

    GET {base_url}/simple/price?ids=<coin id>&vs_currencies=<fiat>
      → {"<coin id>": {"<fiat>": 83.5}}
    """

    COIN_IDS = {"MUSD": "mezo-usd"}

    def __init__(self, base_url: str, timeout: float = 10.0):
        self.client = httpx.Client(
            base_url=base_url,
            headers={"Accept": "application/json"},
            timeout=timeout,
        )

    def close(self):
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def fetch_rate(self, from_currency: str, to_currency: str) -> Decimal:
        coin_id = self.COIN_IDS.get(to_currency)
        if coin_id is None:
            raise NetworkError(f"No price feed for {to_currency}.")
        vs_currency = from_currency.lower()

        try:
            response = self.client.get(
                "/simple/price",
                params={"ids": coin_id, "vs_currencies": vs_currency},
            )
            response.raise_for_status()
            # parse_float keeps the quoted price exact.
            data = response.json(parse_float=Decimal)
        except httpx.HTTPError as exc:
            logger.warning("Rate oracle request for %s/%s failed: %s", from_currency, to_currency, exc)
            raise NetworkError(f"Rate oracle request failed: {exc}") from exc
        except ValueError as exc:
            raise NetworkError("Rate oracle returned malformed JSON.") from exc

        try:
            rate = Decimal(data[coin_id][vs_currency])
        except (KeyError, TypeError, ArithmeticError):
            raise NetworkError(
                f"Rate oracle response has no {vs_currency} price for {coin_id}."
            ) from None

        if not rate.is_finite() or rate <= 0:
            raise NetworkError(f"Rate oracle returned an unusable rate: {rate}.")
        return rate


class StaticRateOracle(RateOracle):
    """
    Serves rates from a fixed table. Used in tests and offline development.

    `calls` counts fetches so cache behaviour can be observed.
    """

    def __init__(self, rates: dict[str, Decimal]):
        self.rates = {code: Decimal(rate) for code, rate in rates.items()}
        self.calls = 0

    def fetch_rate(self, from_currency: str, to_currency: str) -> Decimal:
        self.calls += 1
        try:
            return self.rates[from_currency]
        except KeyError:
            raise NetworkError(f"No static rate for {from_currency}/{to_currency}.") from None
