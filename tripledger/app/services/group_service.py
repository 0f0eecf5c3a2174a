"""
services/group_service.py — Group ("trip") and membership business logic.

Rules:
  - The creator becomes the first member with the OWNER role; everyone else
    joins as MEMBER.
  - Every group has one currency; all its expenses and settlements use it.
  - The owner cannot be removed while they own the group.

Layer rules:
  - No Flask imports. Pure Python with a SQLAlchemy session parameter.
  - Commits are the route's responsibility; services only flush.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from tripledger.app.errors import AppError, ErrorCode
from tripledger.app.models.group import Group
from tripledger.app.models.membership import Membership, MembershipRole
from tripledger.app.models.user import User
from tripledger.app.services.pricing_service import require_fiat


# ── Private helpers ────────────────────────────────────────────────────────

def _get_group_or_404(group_id: int, session: Session) -> Group:
    """Returns the Group or raises GROUP_NOT_FOUND (404)."""
    group = session.get(Group, group_id)
    if group is None:
        raise AppError(
            ErrorCode.GROUP_NOT_FOUND,
            f"Group {group_id} does not exist.",
            404,
        )
    return group


def _get_user_or_404(user_id: int, session: Session) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise AppError(
            ErrorCode.USER_NOT_FOUND,
            f"User {user_id} does not exist.",
            404,
        )
    return user


def _get_membership(group_id: int, user_id: int, session: Session) -> Membership | None:
    return session.execute(
        select(Membership).where(
            Membership.group_id == group_id,
            Membership.user_id == user_id,
        )
    ).scalar_one_or_none()


def _get_members(group_id: int, session: Session) -> list[tuple[User, MembershipRole]]:
    stmt = (
        select(User, Membership.role)
        .join(Membership, User.id == Membership.user_id)
        .where(Membership.group_id == group_id)
        .order_by(Membership.joined_at.asc(), User.id.asc())
    )
    return [(user, role) for user, role in session.execute(stmt).all()]


def _build_group_dict(group: Group, members: list[tuple[User, MembershipRole]]) -> dict:
    """Serialises a Group with its member list to a plain dict."""
    return {
        "id": group.id,
        "name": group.name,
        "owner_user_id": group.owner_user_id,
        "currency": group.currency,
        "created_at": group.created_at.isoformat() if group.created_at else None,
        "members": [
            {
                "id": m.id,
                "username": m.username,
                "wallet_address": m.wallet_address,
                "role": role.value,
            }
            for m, role in members
        ],
    }


# ── Public service functions ───────────────────────────────────────────────

def create_group(data: dict, session: Session) -> dict:
    """
    Creates a group. The owner becomes the first member; any `member_ids`
    given are added too (duplicates of the owner are ignored).

    Args:
        data: Validated dict from CreateGroupSchema:
              name, owner_user_id, currency (optional), member_ids (optional).
    """
    owner_id: int = data["owner_user_id"]
    _get_user_or_404(owner_id, session)
    currency = require_fiat(data.get("currency") or "USD")

    group = Group(name=data["name"], owner_user_id=owner_id, currency=currency)
    session.add(group)
    session.flush()  # populate group.id before creating memberships

    member_ids = [owner_id]
    for user_id in data.get("member_ids") or []:
        if user_id not in member_ids:
            _get_user_or_404(user_id, session)
            member_ids.append(user_id)

    session.add_all(
        Membership(
            user_id=uid,
            group_id=group.id,
            role=MembershipRole.OWNER if uid == owner_id else MembershipRole.MEMBER,
        )
        for uid in member_ids
    )
    session.flush()

    return _build_group_dict(group, _get_members(group.id, session))


def list_groups(user_id: int, session: Session) -> list[dict]:
    """Groups the user belongs to, oldest first, without member lists."""
    stmt = (
        select(Group)
        .join(Membership, Group.id == Membership.group_id)
        .where(Membership.user_id == user_id)
        .order_by(Group.created_at.asc(), Group.id.asc())
    )
    return [
        {
            "id": g.id,
            "name": g.name,
            "owner_user_id": g.owner_user_id,
            "currency": g.currency,
            "created_at": g.created_at.isoformat() if g.created_at else None,
        }
        for g in session.execute(stmt).scalars().all()
    ]


def get_group(group_id: int, session: Session) -> dict:
    """Full group details including the current member list."""
    group = _get_group_or_404(group_id, session)
    return _build_group_dict(group, _get_members(group_id, session))


def add_member(group_id: int, target_user_id: int, session: Session) -> dict:
    """
    Adds a user to a group.

    Raises:
      AppError(GROUP_NOT_FOUND, 404)
      AppError(USER_NOT_FOUND, 404)
      AppError(ALREADY_MEMBER, 409)
    """
    _get_group_or_404(group_id, session)
    target_user = _get_user_or_404(target_user_id, session)

    if _get_membership(group_id, target_user_id, session) is not None:
        raise AppError(
            ErrorCode.ALREADY_MEMBER,
            f"User {target_user_id} is already a member of group {group_id}.",
            409,
        )

    membership = Membership(user_id=target_user_id, group_id=group_id, role=MembershipRole.MEMBER)
    session.add(membership)
    session.flush()

    return {
        "group_id": group_id,
        "user_id": target_user_id,
        "username": target_user.username,
        "role": membership.role.value,
        "joined_at": membership.joined_at.isoformat() if membership.joined_at else None,
    }


def remove_member(group_id: int, target_user_id: int, session: Session) -> None:
    """
    Removes a user from a group.

    Raises:
      AppError(GROUP_NOT_FOUND, 404)
      AppError(FORBIDDEN, 403)       — target is the group owner
      AppError(USER_NOT_FOUND, 404)  — target is not a member of the group
    """
    group = _get_group_or_404(group_id, session)

    if target_user_id == group.owner_user_id:
        raise AppError(
            ErrorCode.FORBIDDEN,
            "The group owner cannot be removed from the group.",
            403,
        )

    membership = _get_membership(group_id, target_user_id, session)
    if membership is None:
        raise AppError(
            ErrorCode.USER_NOT_FOUND,
            f"User {target_user_id} is not a member of group {group_id}.",
            404,
        )

    session.delete(membership)
    session.flush()
