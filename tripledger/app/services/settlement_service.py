"""
services/settlement_service.py — Direct settlements between group members.

Rules enforced here:
  SELF_SETTLEMENT (422)       — paid_by_user_id must not equal paid_to_user_id
  PAYER_NOT_MEMBER (422)      — paid_by must be a group member
  RECIPIENT_NOT_MEMBER (422)  — paid_to must be a group member
  OVERPAYMENT warning         — paying more than the pair's outstanding debt
                                is recorded anyway and returns a warning

execute_plan() turns the debt-netting plan into Settlement rows; afterwards
every balance in the group is zero.

Layer rules:
  - No Flask imports. Pure Python with a SQLAlchemy session parameter.
  - Commits are the route's responsibility; services only flush.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from tripledger.app.errors import AppError, ErrorCode, InvalidAmount, WarningCode
from tripledger.app.models.group import Group
from tripledger.app.models.settlement import Settlement
from tripledger.app.money import Money
from tripledger.app.repository import BalanceInputs, LedgerRepository
from tripledger.app.services.balance_service import compute_balances, plan_settlements


# ── Private helpers ────────────────────────────────────────────────────────

def _get_group_or_404(group_id: int, session: Session) -> Group:
    group = session.get(Group, group_id)
    if group is None:
        raise AppError(
            ErrorCode.GROUP_NOT_FOUND,
            f"Group {group_id} does not exist.",
            404,
        )
    return group


def _compute_bilateral_debt(
        inputs: BalanceInputs,
        debtor_id: int,
        creditor_id: int,
) -> Money:
    """
    Outstanding debt from debtor_id to creditor_id only.

      debt = unsettled splits the debtor owes on the creditor's expenses
           - unsettled splits the creditor owes on the debtor's expenses
           - settlements already paid debtor → creditor
           + settlements already paid creditor → debtor

    Returns zero when the debtor owes nothing.
    """
    payer_of = {expense.id: expense.paid_by_user_id for expense in inputs.expenses}
    debt = Money.zero(inputs.currency)

    for split in inputs.splits:
        if split.settled:
            continue
        payer = payer_of.get(split.expense_id)
        if split.user_id == debtor_id and payer == creditor_id:
            debt = debt + split.amount
        elif split.user_id == creditor_id and payer == debtor_id:
            debt = debt - split.amount

    for settlement in inputs.settlements:
        if settlement.paid_by_user_id == debtor_id and settlement.paid_to_user_id == creditor_id:
            debt = debt - settlement.amount
        elif settlement.paid_by_user_id == creditor_id and settlement.paid_to_user_id == debtor_id:
            debt = debt + settlement.amount

    if debt.is_negative():
        return Money.zero(inputs.currency)
    return debt


# ── Public service functions ───────────────────────────────────────────────

def create_settlement(
        group_id: int,
        data: dict,
        session: Session,
) -> tuple[Settlement, list[dict]]:
    """
    Records a settlement payment from paid_by_user_id to paid_to_user_id.

    Args:
        data: Validated dict from CreateSettlementSchema.
              Keys: paid_by_user_id (int), paid_to_user_id (int), amount (Decimal).

    Returns:
        (Settlement, warnings) where warnings is a list of warning dicts.
        Example warning: {"code": "OVERPAYMENT", "message": "..."}
    """
    group = _get_group_or_404(group_id, session)
    repo = LedgerRepository(session)

    paid_by_id: int = data["paid_by_user_id"]
    paid_to_id: int = data["paid_to_user_id"]

    if paid_by_id == paid_to_id:
        raise AppError(
            ErrorCode.SELF_SETTLEMENT,
            "A settlement cannot be made to yourself.",
            422,
            field="paid_to_user_id",
        )

    amount = Money.of(data["amount"], group.currency)
    if not amount.is_positive():
        raise InvalidAmount("Settlement amount must be positive.", field="amount")

    member_ids = repo.load_member_ids(group_id)
    if paid_by_id not in member_ids:
        raise AppError(
            ErrorCode.PAYER_NOT_MEMBER,
            f"User {paid_by_id} is not a member of group {group_id}.",
            422,
            field="paid_by_user_id",
        )
    if paid_to_id not in member_ids:
        raise AppError(
            ErrorCode.RECIPIENT_NOT_MEMBER,
            f"User {paid_to_id} is not a member of group {group_id}.",
            422,
            field="paid_to_user_id",
        )

    warnings: list[dict] = []
    current_debt = _compute_bilateral_debt(
        repo.load_balance_inputs(group_id), paid_by_id, paid_to_id,
    )
    if amount > current_debt:
        warnings.append({
            "code": WarningCode.OVERPAYMENT,
            "message": (
                f"Settlement of {amount} exceeds current outstanding debt of "
                f"{current_debt} from user {paid_by_id} to user {paid_to_id}. "
                f"Recording anyway; pre-payment is valid."
            ),
        })

    settlement = Settlement(
        group_id=group_id,
        paid_by_user_id=paid_by_id,
        paid_to_user_id=paid_to_id,
        amount_minor=amount.minor,
        currency=amount.asset,
    )
    session.add(settlement)
    session.flush()

    return settlement, warnings


def list_settlements(group_id: int, session: Session) -> list[Settlement]:
    """All settlements of a group, newest first."""
    _get_group_or_404(group_id, session)
    stmt = (
        select(Settlement)
        .where(Settlement.group_id == group_id)
        .order_by(Settlement.created_at.desc(), Settlement.id.desc())
    )
    return list(session.execute(stmt).scalars().all())


def execute_plan(group_id: int, session: Session) -> list[Settlement]:
    """
    Computes the group's settlement plan and records each transfer as a
    Settlement. Returns the new rows; an already-settled group gives [].
    """
    inputs = LedgerRepository(session).load_balance_inputs(group_id)
    balances = compute_balances(
        inputs.expenses,
        inputs.splits,
        inputs.settlements,
        inputs.member_ids,
        inputs.currency,
    )

    settlements = [
        Settlement(
            group_id=group_id,
            paid_by_user_id=transfer.from_member_id,
            paid_to_user_id=transfer.to_member_id,
            amount_minor=transfer.amount.minor,
            currency=transfer.amount.asset,
        )
        for transfer in plan_settlements(balances)
    ]
    session.add_all(settlements)
    session.flush()
    return settlements
