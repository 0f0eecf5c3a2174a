"""
services/balance_service.py — Ledger aggregation and debt-netting planner.

This file is the SINGLE SOURCE OF TRUTH for how balances are computed.
The canonical formula must not be reimplemented elsewhere in the codebase.

Layer rules:
  - No Flask imports. No current_app, request, g, or HTTP knowledge.
  - compute_balances() and plan_settlements() are pure: they take plain
    objects (ORM rows or anything with the same attributes) and return
    Money values. get_balance_response() is the only function that touches
    the session, and only through LedgerRepository.

Sign convention: positive = the group owes this member, negative = this
member owes the group.

Integrity:
  - Σ balances == 0 for a group.
  - Σ splits of an expense == the expense amount.
  Either failing raises LedgerInconsistency and is logged at CRITICAL. The
  data is never corrected here.
"""

from __future__ import annotations

import heapq
import logging
from collections import defaultdict
from dataclasses import dataclass

from sqlalchemy.orm import Session

from tripledger.app.errors import LedgerInconsistency
from tripledger.app.money import Money, sum_money
from tripledger.app.repository import LedgerRepository


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Transfer:
    """One planned payment: `from_member_id` pays `to_member_id`."""
    from_member_id: int
    to_member_id:   int
    amount:         Money


def _inconsistent(message: str) -> LedgerInconsistency:
    logger.critical("Ledger inconsistency: %s", message)
    return LedgerInconsistency(message)


# ── Core algorithms ────────────────────────────────────────────────────────

def compute_balances(
        expenses,
        splits,
        settlements,
        member_ids,
        currency: str,
) -> dict[int, Money]:
    """
    Canonical balance computation for one group.

    Returns {member_id: net balance} for every member in `member_ids`, plus
    anyone else who appears in the ledger rows.

    Algorithm:
      1. For every unsettled split of an active expense owed by someone other
         than the payer: credit the payer, debit the split's member.
      2. For every direct settlement: credit the sender, debit the receiver.
      3. Every member appears, even at exactly zero.

    `expenses` must already exclude soft-deleted rows.

    Raises:
        LedgerInconsistency -- a split points at an unknown expense, a split,
                               expense or settlement is not in `currency`, an
                               expense's splits do not add up to its amount,
                               or the balances do not sum to zero.
    """
    expenses_by_id = {expense.id: expense for expense in expenses}
    split_totals: dict[int, Money] = {
        expense_id: Money.zero(expense.amount.asset)
        for expense_id, expense in expenses_by_id.items()
    }

    balances: dict[int, Money] = defaultdict(lambda: Money.zero(currency))

    # Step 1: splits.
    for split in splits:
        expense = expenses_by_id.get(split.expense_id)
        if expense is None:
            raise _inconsistent(
                f"Split for member {split.user_id} references expense "
                f"{split.expense_id}, which is not an active expense of this group."
            )
        if split.amount.asset != currency or expense.amount.asset != currency:
            raise _inconsistent(
                f"Split for member {split.user_id} on expense {split.expense_id} is in "
                f"{split.amount.asset} (expense {expense.amount.asset}), not the group's {currency}."
            )
        split_totals[split.expense_id] = split_totals[split.expense_id] + split.amount

        if split.settled or split.user_id == expense.paid_by_user_id:
            continue
        balances[expense.paid_by_user_id] = balances[expense.paid_by_user_id] + split.amount
        balances[split.user_id] = balances[split.user_id] - split.amount

    for expense_id, total in split_totals.items():
        expected = expenses_by_id[expense_id].amount
        if total != expected:
            raise _inconsistent(
                f"Splits of expense {expense_id} sum to {total}, expected {expected}."
            )

    # Step 2: direct settlements.
    for settlement in settlements:
        if settlement.amount.asset != currency:
            raise _inconsistent(
                f"Settlement from member {settlement.paid_by_user_id} to "
                f"{settlement.paid_to_user_id} is in {settlement.amount.asset}, "
                f"not the group's {currency}."
            )
        balances[settlement.paid_by_user_id] = (
            balances[settlement.paid_by_user_id] + settlement.amount
        )
        balances[settlement.paid_to_user_id] = (
            balances[settlement.paid_to_user_id] - settlement.amount
        )

    # Step 3: every member appears.
    for member_id in member_ids:
        balances[member_id] = balances[member_id]

    result = dict(balances)
    balance_sum = sum_money(result.values(), currency)
    if not balance_sum.is_zero():
        raise _inconsistent(f"Balances sum to {balance_sum}, expected 0.")
    return result


def plan_settlements(balances: dict[int, Money]) -> list[Transfer]:
    """
    Greedy debt netting: repeatedly pairs the largest debtor with the largest
    creditor and moves min(|debt|, credit) between them.

    Ties on size go to the lowest member id. For N members with non-zero
    balances, produces at most N-1 transfers. This is not guaranteed to be
    the minimum possible number of transfers.

    Raises:
        LedgerInconsistency -- balances do not sum to zero.
    """
    if not balances:
        return []

    asset = next(iter(balances.values())).asset
    balance_sum = sum_money(balances.values(), asset)
    if not balance_sum.is_zero():
        raise _inconsistent(f"Cannot plan settlements: balances sum to {balance_sum}.")

    # Heap entries are (-size, member_id) so the largest amount pops first.
    creditors = [(-b.minor, member_id) for member_id, b in balances.items() if b.is_positive()]
    debtors = [(b.minor, member_id) for member_id, b in balances.items() if b.is_negative()]
    heapq.heapify(creditors)
    heapq.heapify(debtors)

    transfers: list[Transfer] = []
    while creditors and debtors:
        neg_credit, creditor_id = heapq.heappop(creditors)
        neg_debt, debtor_id = heapq.heappop(debtors)
        credit, debt = -neg_credit, -neg_debt

        moved = min(credit, debt)
        transfers.append(Transfer(
            from_member_id=debtor_id,
            to_member_id=creditor_id,
            amount=Money.from_minor(moved, asset),
        ))

        if credit > moved:
            heapq.heappush(creditors, (-(credit - moved), creditor_id))
        if debt > moved:
            heapq.heappush(debtors, (-(debt - moved), debtor_id))

    return transfers


# ── Response builder ───────────────────────────────────────────────────────

def get_balance_response(group_id: int, session: Session) -> dict:
    """
    Builds the payload for GET /groups/:id/balances: every member's balance
    plus the settlement plan that would clear them.

    Raises:
        AppError(GROUP_NOT_FOUND, 404)
        LedgerInconsistency (500)
    """
    inputs = LedgerRepository(session).load_balance_inputs(group_id)

    balances = compute_balances(
        inputs.expenses,
        inputs.splits,
        inputs.settlements,
        inputs.member_ids,
        inputs.currency,
    )
    plan = plan_settlements(balances)

    return {
        "group_id": group_id,
        "currency": inputs.currency,
        "balances": [
            {"user_id": member_id, "balance": str(balance)}
            for member_id, balance in sorted(balances.items())
        ],
        "settlement_plan": [
            {
                "from_user_id": t.from_member_id,
                "to_user_id": t.to_member_id,
                "amount": str(t.amount),
            }
            for t in plan
        ],
        "balance_sum": str(sum_money(balances.values(), inputs.currency)),
    }
