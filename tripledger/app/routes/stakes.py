"""
routes/stakes.py — Group pool staking.

Endpoints:
  POST /groups/:id/stakes        → 201  deposit MUSD into the group pool
  GET  /groups/:id/stakes        → 200  list stakes (?active=true for open ones)
  GET  /groups/:id/pool          → 200  pool totals and accrued rewards
  POST /stakes/:id/withdraw      → 200  close a stake and pay out rewards
"""

from __future__ import annotations

from datetime import datetime, timezone

from flask import Blueprint, current_app, jsonify, request

from tripledger.app.extensions import db
from tripledger.app.models.stake import Stake
from tripledger.app.schemas.stake_schema import CreateStakeSchema
from tripledger.app.services import stake_service

stakes_bp = Blueprint("stakes", __name__)


def _serialize_stake(stake: Stake, as_of: datetime) -> dict:
    return {
        "id": stake.id,
        "group_id": stake.group_id,
        "user_id": stake.user_id,
        "amount": str(stake.amount),
        "reward_rate": str(stake.reward_rate),
        "start_date": stake.start_date.isoformat(),
        "end_date": stake.end_date.isoformat(),
        "active": stake.active,
        "accrued_rewards": (
            str(stake_service.accrued_rewards(stake, as_of)) if stake.active
            else str(stake.claimed)
        ),
        "claimed": str(stake.claimed),
    }


@stakes_bp.route("/groups/<int:group_id>/stakes", methods=["POST"])
def create_stake(group_id: int):
    data = CreateStakeSchema().load(request.get_json(force=True) or {})
    stake = stake_service.create_stake(
        group_id=group_id,
        data=data,
        session=db.session,
        default_reward_rate=current_app.config["DEFAULT_STAKE_REWARD_RATE"],
    )
    db.session.commit()
    return jsonify({
        "data": _serialize_stake(stake, datetime.now(timezone.utc)),
        "warnings": [],
    }), 201


@stakes_bp.route("/groups/<int:group_id>/stakes", methods=["GET"])
def list_stakes(group_id: int):
    active_only = request.args.get("active", "").lower() == "true"
    stakes = stake_service.list_stakes(group_id, db.session, active_only=active_only)
    now = datetime.now(timezone.utc)
    return jsonify({"data": [_serialize_stake(s, now) for s in stakes], "warnings": []}), 200


@stakes_bp.route("/groups/<int:group_id>/pool", methods=["GET"])
def pool_summary(group_id: int):
    result = stake_service.pool_summary(group_id, db.session)
    return jsonify({"data": result, "warnings": []}), 200


@stakes_bp.route("/stakes/<int:stake_id>/withdraw", methods=["POST"])
def withdraw_stake(stake_id: int):
    now = datetime.now(timezone.utc)
    stake = stake_service.withdraw_stake(stake_id, db.session, as_of=now)
    db.session.commit()
    return jsonify({"data": _serialize_stake(stake, now), "warnings": []}), 200
