"""
services/user_service.py — User registration and lookup.

Registration provisions the two network addresses a user needs. Until a
custodial wallet provider is wired in, both are deterministic mock
addresses derived from the username:
  wallet_address          0xMOCK_WALLET_<username>
  collateral_btc_address  btc_collateral_mock_<username>
Callers may supply real addresses instead, or null for the collateral
address to register a user who cannot auto-borrow.

Layer rules:
  - No Flask imports. Pure Python with a SQLAlchemy session parameter.
  - Commits are the route's responsibility; services only flush.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from tripledger.app.errors import AppError, ErrorCode
from tripledger.app.models.user import User
from tripledger.app.services.pricing_service import require_fiat


def build_user_dict(user: User) -> dict:
    """Serialises a User to a plain dict. No business logic."""
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "wallet_address": user.wallet_address,
        "collateral_btc_address": user.collateral_btc_address,
        "fiat_currency": user.fiat_currency,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


def register_user(data: dict, session: Session) -> User:
    """
    Creates a user.

    Args:
        data: Validated dict from RegisterUserSchema.

    Raises:
      AppError(DUPLICATE_EMAIL, 409)    — email already registered
      AppError(DUPLICATE_USERNAME, 409) — username already taken
      UnsupportedCurrency (400)         — fiat_currency not supported
    """
    username: str = data["username"]
    email: str = data["email"]

    existing_email = session.execute(
        select(User).where(User.email == email)
    ).scalar_one_or_none()
    if existing_email is not None:
        raise AppError(
            ErrorCode.DUPLICATE_EMAIL,
            f"The email address '{email}' is already registered.",
            409,
            field="email",
        )

    existing_username = session.execute(
        select(User).where(User.username == username)
    ).scalar_one_or_none()
    if existing_username is not None:
        raise AppError(
            ErrorCode.DUPLICATE_USERNAME,
            f"The username '{username}' is already taken.",
            409,
            field="username",
        )

    collateral_address = data.get("collateral_btc_address", f"btc_collateral_mock_{username}")

    user = User(
        username=username,
        email=email,
        wallet_address=data.get("wallet_address") or f"0xMOCK_WALLET_{username}",
        collateral_btc_address=collateral_address,
        fiat_currency=require_fiat(data.get("fiat_currency") or "USD"),
    )
    session.add(user)
    session.flush()
    return user


def get_user(user_id: int, session: Session) -> User:
    user = session.get(User, user_id)
    if user is None:
        raise AppError(
            ErrorCode.USER_NOT_FOUND,
            f"User {user_id} does not exist.",
            404,
        )
    return user


def get_user_by_username(username: str, session: Session) -> User:
    user = session.execute(
        select(User).where(User.username == username)
    ).scalar_one_or_none()
    if user is None:
        raise AppError(
            ErrorCode.USER_NOT_FOUND,
            f"User '{username}' not found.",
            404,
        )
    return user
