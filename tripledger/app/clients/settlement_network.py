"""
clients/settlement_network.py — The external settlement network contract.

Every call may raise NetworkError. Amounts cross the boundary as Money:
MUSD for balances, borrows and transfers; BTC for collateral.

borrow() answers with a BorrowReceipt: what the network actually lent and
at which annual rate, which need not match what was asked for.

wait_for_confirmation(tx_id, timeout) returns True when the transaction
confirmed, False when the network reports it failed, and raises
ConfirmationTimeout when neither happened within `timeout` seconds.
"""

from __future__ import annotations

import itertools
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal

import httpx

from tripledger.app.errors import ConfirmationTimeout, NetworkError
from tripledger.app.money import COLLATERAL_ASSET, STABLE_ASSET, Money


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BorrowReceipt:
    """
    The network's answer to a borrow request.

    `interest_rate` is None when the network does not quote one; the
    configured loan rate applies then.
    """
    tx_id:           str
    amount_borrowed: Money
    interest_rate:   Decimal | None = None


class SettlementNetwork(ABC):

    @abstractmethod
    def get_stable_balance(self, address: str) -> Money:
        """MUSD held at `address`."""

    @abstractmethod
    def borrow(
            self,
            address: str,
            stable_amount: Money,
            collateral_amount: Money,
            duration_days: int,
    ) -> BorrowReceipt:
        """Opens a loan against BTC collateral."""

    @abstractmethod
    def transfer(self, from_address: str, to_address: str, amount: Money) -> str:
        """Moves MUSD. Returns the transaction id."""

    @abstractmethod
    def wait_for_confirmation(self, tx_id: str, timeout: float) -> bool:
        """Blocks until `tx_id` settles or `timeout` seconds pass."""

    @abstractmethod
    def get_btc_rate(self) -> Decimal:
        """MUSD per one BTC."""


# ── In-process stub ────────────────────────────────────────────────────────

class InMemorySettlementNetwork(SettlementNetwork):
    """
    Deterministic in-process network for tests and local development.

    Failures are injected per operation ("borrow" or "transfer"):
      fail_on       the call itself raises NetworkError
      reject_on     the transaction is submitted but confirms as failed
      stall_on      confirmation never arrives (ConfirmationTimeout)

    Funds move when a transaction confirms, never before.

    Lending terms:
      interest_rate  annual rate quoted on every borrow (None: no quote)
      lend_short_by  MUSD withheld from every borrow
    """

    def __init__(
            self,
            btc_rate: Decimal = Decimal("65000"),
            balances: dict[str, Money] | None = None,
            interest_rate: Decimal | None = None,
    ):
        self.btc_rate = Decimal(btc_rate)
        self.balances: dict[str, Money] = dict(balances or {})
        self.interest_rate = Decimal(interest_rate) if interest_rate is not None else None
        self.lend_short_by = Money.zero(STABLE_ASSET)
        self.fail_on: set[str] = set()
        self.reject_on: set[str] = set()
        self.stall_on: set[str] = set()
        self.transactions: dict[str, dict] = {}
        self._ids = itertools.count(1)

    def fund(self, address: str, amount: Money) -> None:
        self.balances[address] = self.get_stable_balance(address) + amount

    def get_stable_balance(self, address: str) -> Money:
        if "balance" in self.fail_on:
            raise NetworkError("Settlement network unavailable.")
        return self.balances.get(address, Money.zero(STABLE_ASSET))

    def _submit(self, kind: str, **details) -> str:
        if kind in self.fail_on:
            raise NetworkError(f"Settlement network rejected the {kind} request.")
        tx_id = f"0x{kind}{next(self._ids):04d}"
        self.transactions[tx_id] = {"kind": kind, "status": "PENDING", **details}
        return tx_id

    def borrow(self, address, stable_amount, collateral_amount, duration_days) -> BorrowReceipt:
        if collateral_amount.asset != COLLATERAL_ASSET:
            raise NetworkError(f"Collateral must be {COLLATERAL_ASSET}.")
        lent = stable_amount - self.lend_short_by
        tx_id = self._submit(
            "borrow",
            address=address,
            amount=lent,
            collateral=collateral_amount,
            duration_days=duration_days,
        )
        return BorrowReceipt(tx_id=tx_id, amount_borrowed=lent, interest_rate=self.interest_rate)

    def transfer(self, from_address, to_address, amount) -> str:
        if self.get_stable_balance(from_address) < amount:
            raise NetworkError(f"Insufficient MUSD at {from_address}.")
        return self._submit("transfer", from_address=from_address, to_address=to_address, amount=amount)

    def wait_for_confirmation(self, tx_id: str, timeout: float) -> bool:
        tx = self.transactions.get(tx_id)
        if tx is None:
            raise NetworkError(f"Unknown transaction {tx_id}.")
        if tx["status"] != "PENDING":
            return tx["status"] == "CONFIRMED"

        kind = tx["kind"]
        if kind in self.stall_on:
            raise ConfirmationTimeout(tx_id, timeout)
        if kind in self.reject_on:
            tx["status"] = "FAILED"
            return False

        if kind == "borrow":
            self.fund(tx["address"], tx["amount"])
        else:
            self.balances[tx["from_address"]] = self.balances[tx["from_address"]] - tx["amount"]
            self.fund(tx["to_address"], tx["amount"])
        tx["status"] = "CONFIRMED"
        return True

    def get_btc_rate(self) -> Decimal:
        if "rate" in self.fail_on:
            raise NetworkError("BTC price feed unavailable.")
        return self.btc_rate


# ── JSON-RPC client ────────────────────────────────────────────────────────

class JsonRpcSettlementNetwork(SettlementNetwork):
    """
    JSON-RPC 2.0 client for a settlement network node.

    Amounts are sent and received as integer minor-unit strings so no float
    ever crosses the wire.
    """

    def __init__(self, url: str, timeout: float = 30.0, poll_interval: float = 1.0):
        self.client = httpx.Client(
            base_url=url,
            headers={"Content-Type": "application/json"},
            timeout=timeout,
        )
        self.poll_interval = poll_interval
        self._ids = itertools.count(1)

    def close(self):
        self.client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _call(self, method: str, *params):
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": list(params),
        }
        try:
            response = self.client.post("", json=payload)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as exc:
            raise NetworkError(f"{method} failed: {exc}") from exc
        except ValueError as exc:
            raise NetworkError(f"{method} returned malformed JSON.") from exc

        if body.get("error"):
            error = body["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise NetworkError(f"{method} failed: {message}")
        if "result" not in body:
            raise NetworkError(f"{method} returned no result.")
        return body["result"]

    @staticmethod
    def _minor_units(method: str, value) -> int:
        """Accepts an integer or a string of digits; anything else is malformed."""
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str) and value.isascii() and value.isdigit():
            return int(value)
        raise NetworkError(f"{method} returned {value!r} where minor units were expected.")

    def get_stable_balance(self, address: str) -> Money:
        result = self._call("musd_getBalance", address)
        return Money.from_minor(self._minor_units("musd_getBalance", result), STABLE_ASSET)

    def borrow(self, address, stable_amount, collateral_amount, duration_days) -> BorrowReceipt:
        result = self._call(
            "musd_borrow",
            {
                "address": address,
                "amount": str(stable_amount.minor),
                "collateral": str(collateral_amount.minor),
                "duration_days": duration_days,
            },
        )
        if not isinstance(result, dict) or not result.get("tx_id"):
            raise NetworkError(f"musd_borrow returned {result!r}.")

        rate = result.get("interest_rate")
        if rate is not None:
            try:
                rate = Decimal(str(rate))
            except ArithmeticError:
                raise NetworkError(f"musd_borrow returned interest rate {rate!r}.") from None
            if not rate.is_finite() or rate < 0:
                raise NetworkError(f"musd_borrow returned interest rate {rate!r}.")

        return BorrowReceipt(
            tx_id=str(result["tx_id"]),
            amount_borrowed=Money.from_minor(
                self._minor_units("musd_borrow", result.get("amount")), STABLE_ASSET
            ),
            interest_rate=rate,
        )

    def transfer(self, from_address, to_address, amount) -> str:
        return str(self._call(
            "musd_transfer",
            {"from": from_address, "to": to_address, "amount": str(amount.minor)},
        ))

    def wait_for_confirmation(self, tx_id: str, timeout: float) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            status = self._call("tx_getStatus", tx_id)
            if status == "CONFIRMED":
                return True
            if status == "FAILED":
                return False
            if time.monotonic() >= deadline:
                raise ConfirmationTimeout(tx_id, timeout)
            logger.debug("Transaction %s is %s; polling again", tx_id, status)
            time.sleep(self.poll_interval)

    def get_btc_rate(self) -> Decimal:
        result = self._call("price_getBtcMusd")
        try:
            rate = Decimal(str(result))
        except ArithmeticError:
            raise NetworkError(f"price_getBtcMusd returned {result!r}.") from None
        if not rate.is_finite() or rate <= 0:
            raise NetworkError(f"price_getBtcMusd returned {result!r}.")
        return rate
