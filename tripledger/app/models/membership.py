"""
models/membership.py — Trip membership: who travels in which group, and as what.

Each trip has exactly one OWNER membership (the creator) and any number of
MEMBER memberships. Only members may pay for, owe on, settle within or stake
into a trip.

Memberships are history: user_id and group_id are ON DELETE RESTRICT.
"""

from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tripledger.app.extensions import db


class MembershipRole(str, enum.Enum):
    OWNER  = "OWNER"
    MEMBER = "MEMBER"


class Membership(db.Model):
    __tablename__ = "memberships"

    __table_args__ = (
        UniqueConstraint("user_id", "group_id", name="uq_memberships_user_group"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    group_id: Mapped[int] = mapped_column(
        ForeignKey("groups.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    role: Mapped[MembershipRole] = mapped_column(
        Enum(MembershipRole, name="membership_role_enum"),
        nullable=False,
        default=MembershipRole.MEMBER,
    )

    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # ── Relationships ──────────────────────────────────────────────────────

    user: Mapped["User"] = relationship(  # noqa: F821
        "User",
        back_populates="memberships",
    )

    group: Mapped["Group"] = relationship(  # noqa: F821
        "Group",
        back_populates="memberships",
    )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<Membership user_id={self.user_id} "
            f"group_id={self.group_id} role={self.role}>"
        )
