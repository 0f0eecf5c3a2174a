"""
services/stake_service.py — Group pool staking.

Members deposit MUSD into their group's pool. Rewards accrue like loan
interest: amount × (annual rate / 365) × whole days, counted from
start_date and capped at end_date. Rewards are derived, never stored;
withdraw_stake() records what was paid out in claimed_minor.

Layer rules:
  - No Flask imports. Pure Python with a SQLAlchemy session parameter.
  - Commits are the route's responsibility; services only flush.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from tripledger.app.errors import AppError, ErrorCode, InvalidAmount
from tripledger.app.models.group import Group
from tripledger.app.models.stake import Stake
from tripledger.app.money import STABLE_ASSET, Money, sum_money
from tripledger.app.repository import LedgerRepository
from tripledger.app.services.collateral_service import DAYS_PER_YEAR, as_utc, elapsed_days


def _get_stake_or_404(stake_id: int, session: Session) -> Stake:
    stake = session.get(Stake, stake_id)
    if stake is None:
        raise AppError(
            ErrorCode.STAKE_NOT_FOUND,
            f"Stake {stake_id} does not exist.",
            404,
        )
    return stake


def accrued_rewards(stake, as_of: datetime) -> Money:
    """Rewards earned by `as_of`, never counting days past end_date."""
    cutoff = min(as_utc(as_of), as_utc(stake.end_date))
    days = elapsed_days(stake.start_date, cutoff)
    return stake.amount.multiply_by_rational(
        Decimal(stake.reward_rate) * days,
        DAYS_PER_YEAR,
        rounding=ROUND_HALF_UP,
    )


def create_stake(
        group_id: int,
        data: dict,
        session: Session,
        default_reward_rate: Decimal = Decimal("0.05"),
        now: datetime | None = None,
) -> Stake:
    """
    Deposits MUSD into a group pool.

    Args:
        data: Validated dict from CreateStakeSchema:
              user_id, amount (Decimal), end_date, start_date (optional),
              reward_rate (optional).
    """
    group = session.get(Group, group_id)
    if group is None:
        raise AppError(
            ErrorCode.GROUP_NOT_FOUND,
            f"Group {group_id} does not exist.",
            404,
        )

    user_id: int = data["user_id"]
    if user_id not in LedgerRepository(session).load_member_ids(group_id):
        raise AppError(
            ErrorCode.NOT_A_MEMBER,
            f"User {user_id} is not a member of group {group_id}.",
            422,
            field="user_id",
        )

    amount = Money.of(data["amount"], STABLE_ASSET)
    if not amount.is_positive():
        raise InvalidAmount("Stake amount must be positive.", field="amount")

    start_date = as_utc(data.get("start_date") or now or datetime.now(timezone.utc))
    end_date = as_utc(data["end_date"])
    if end_date <= start_date:
        raise AppError(
            ErrorCode.INVALID_FIELD,
            "end_date must be after start_date.",
            400,
            field="end_date",
        )

    reward_rate = data.get("reward_rate")
    stake = Stake(
        group_id=group_id,
        user_id=user_id,
        amount_minor=amount.minor,
        reward_rate=default_reward_rate if reward_rate is None else reward_rate,
        claimed_minor=0,
        start_date=start_date,
        end_date=end_date,
        active=True,
    )
    session.add(stake)
    session.flush()
    return stake


def list_stakes(group_id: int, session: Session, active_only: bool = False) -> list[Stake]:
    stmt = select(Stake).where(Stake.group_id == group_id).order_by(Stake.id)
    if active_only:
        stmt = stmt.where(Stake.active.is_(True))
    return list(session.execute(stmt).scalars().all())


def pool_summary(group_id: int, session: Session, as_of: datetime | None = None) -> dict:
    """Totals for a group's pool across its active stakes."""
    as_of = as_of or datetime.now(timezone.utc)
    stakes = list_stakes(group_id, session, active_only=True)
    return {
        "group_id": group_id,
        "asset": STABLE_ASSET,
        "active_stakes": len(stakes),
        "total_staked": str(sum_money((s.amount for s in stakes), STABLE_ASSET)),
        "accrued_rewards": str(sum_money((accrued_rewards(s, as_of) for s in stakes), STABLE_ASSET)),
    }


def withdraw_stake(stake_id: int, session: Session, as_of: datetime | None = None) -> Stake:
    """Closes a stake and records the rewards paid out."""
    stake = _get_stake_or_404(stake_id, session)
    if not stake.active:
        raise AppError(
            ErrorCode.STAKE_INACTIVE,
            f"Stake {stake_id} has already been withdrawn.",
            409,
        )
    rewards = accrued_rewards(stake, as_of or datetime.now(timezone.utc))
    stake.claimed_minor = rewards.minor
    stake.active = False
    session.flush()
    return stake
