"""Initial schema — all tables, enums, constraints, and indexes.

Revision: 001_initial_schema
Created:  2026-10-19

Append-only: this file must NEVER be edited after it has been applied to any
database. Schema changes go in a NEW migration file.

Money columns are BIGINT minor units next to an asset / currency code:
  USD, INR, EUR, GBP  → cents (2 places)
  MUSD                → 6 places
  BTC                 → satoshis (8 places)

Creation order:
  1. Tables in FK dependency order (users → groups → memberships → expenses
     → splits → settlements → loans → payments → stakes). Enum types are
     created with the tables that use them.
  2. Indexes

ON DELETE policies:
  splits.expense_id   → CASCADE   (splits owned by expense)
  everything else     → RESTRICT  (history is never deleted from under a row)
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# ── Alembic revision identifiers ──────────────────────────────────────────
revision: str = "001_initial_schema"
down_revision: str | None = None      # first migration: no parent
branch_labels: tuple | None = None
depends_on: tuple | None = None


split_kind_enum = sa.Enum("EQUAL", "PERCENTAGE", "EXACT", name="split_kind_enum")
loan_status_enum = sa.Enum("ACTIVE", "REPAID", "DEFAULTED", name="loan_status_enum")
payment_status_enum = sa.Enum("CONFIRMED", "FAILED_AFTER_BORROW", name="payment_status_enum")
membership_role_enum = sa.Enum("OWNER", "MEMBER", name="membership_role_enum")


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
    )


def upgrade() -> None:

    # ── users ──────────────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("username", sa.String(50), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("wallet_address", sa.String(128), nullable=False),
        sa.Column("collateral_btc_address", sa.String(128), nullable=True),
        sa.Column("fiat_currency", sa.String(3), nullable=False, server_default="USD"),
        _created_at(),
        sa.PrimaryKeyConstraint("id", name="pk_users"),
        sa.UniqueConstraint("username", name="uq_users_username"),
        sa.UniqueConstraint("email", name="uq_users_email"),
        sa.UniqueConstraint("wallet_address", name="uq_users_wallet_address"),
        sa.CheckConstraint(
            "LENGTH(TRIM(username)) > 0",
            name="ck_users_username_nonempty",
        ),
        sa.CheckConstraint(
            "email LIKE '%@%'",
            name="ck_users_email_format",
        ),
    )

    # ── groups ─────────────────────────────────────────────────────────────
    op.create_table(
        "groups",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column(
            "owner_user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="RESTRICT", name="fk_groups_owner"),
            nullable=False,
        ),
        sa.Column("currency", sa.String(3), nullable=False, server_default="USD"),
        _created_at(),
        sa.PrimaryKeyConstraint("id", name="pk_groups"),
        sa.CheckConstraint(
            "LENGTH(TRIM(name)) > 0",
            name="ck_groups_name_nonempty",
        ),
    )

    # ── memberships ────────────────────────────────────────────────────────
    op.create_table(
        "memberships",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="RESTRICT", name="fk_memberships_user"),
            nullable=False,
        ),
        sa.Column(
            "group_id",
            sa.Integer(),
            sa.ForeignKey("groups.id", ondelete="RESTRICT", name="fk_memberships_group"),
            nullable=False,
        ),
        sa.Column("role", membership_role_enum, nullable=False, server_default="MEMBER"),
        sa.Column(
            "joined_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.PrimaryKeyConstraint("id", name="pk_memberships"),
        sa.UniqueConstraint("user_id", "group_id", name="uq_memberships_user_group"),
    )

    # ── expenses ───────────────────────────────────────────────────────────
    # deleted_at IS NULL = active; non-null = superseded (invisible to the ledger).
    op.create_table(
        "expenses",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column(
            "group_id",
            sa.Integer(),
            sa.ForeignKey("groups.id", ondelete="RESTRICT", name="fk_expenses_group"),
            nullable=False,
        ),
        sa.Column(
            "paid_by_user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="RESTRICT", name="fk_expenses_payer"),
            nullable=False,
        ),
        sa.Column("description", sa.String(255), nullable=False),
        sa.Column("amount_minor", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(4), nullable=False),
        sa.Column("split_kind", split_kind_enum, nullable=False),
        sa.Column("split_spec", sa.JSON(), nullable=False),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_expenses"),
        sa.CheckConstraint("amount_minor > 0", name="ck_expenses_amount_positive"),
        sa.CheckConstraint(
            "LENGTH(TRIM(description)) > 0",
            name="ck_expenses_description_nonempty",
        ),
    )

    # ── splits ─────────────────────────────────────────────────────────────
    # A zero share is legal for EXACT and PERCENTAGE splits.
    op.create_table(
        "splits",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column(
            "expense_id",
            sa.Integer(),
            sa.ForeignKey("expenses.id", ondelete="CASCADE", name="fk_splits_expense"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="RESTRICT", name="fk_splits_user"),
            nullable=False,
        ),
        sa.Column("amount_minor", sa.BigInteger(), nullable=False),
        sa.Column("asset", sa.String(4), nullable=False),
        sa.Column("settled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_splits"),
        sa.UniqueConstraint("expense_id", "user_id", name="uq_splits_expense_user"),
        sa.CheckConstraint("amount_minor >= 0", name="ck_splits_amount_nonnegative"),
    )

    # ── settlements ────────────────────────────────────────────────────────
    op.create_table(
        "settlements",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column(
            "group_id",
            sa.Integer(),
            sa.ForeignKey("groups.id", ondelete="RESTRICT", name="fk_settlements_group"),
            nullable=False,
        ),
        sa.Column(
            "paid_by_user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="RESTRICT", name="fk_settlements_payer"),
            nullable=False,
        ),
        sa.Column(
            "paid_to_user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="RESTRICT", name="fk_settlements_recipient"),
            nullable=False,
        ),
        sa.Column("amount_minor", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.String(4), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id", name="pk_settlements"),
        sa.CheckConstraint("amount_minor > 0", name="ck_settlements_amount_positive"),
        sa.CheckConstraint(
            "paid_by_user_id <> paid_to_user_id",
            name="ck_settlements_no_self_settlement",
        ),
    )

    # ── loans ──────────────────────────────────────────────────────────────
    # principal in MUSD minor units, collateral in satoshis.
    op.create_table(
        "loans",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="RESTRICT", name="fk_loans_user"),
            nullable=False,
        ),
        sa.Column("principal_minor", sa.BigInteger(), nullable=False),
        sa.Column("collateral_minor", sa.BigInteger(), nullable=False),
        sa.Column("interest_rate_annual", sa.Numeric(8, 6), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_days", sa.Integer(), nullable=False),
        sa.Column("status", loan_status_enum, nullable=False),
        sa.Column("borrow_tx_id", sa.String(128), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_loans"),
        sa.CheckConstraint("principal_minor > 0", name="ck_loans_principal_positive"),
        sa.CheckConstraint("collateral_minor > 0", name="ck_loans_collateral_positive"),
        sa.CheckConstraint("duration_days > 0", name="ck_loans_duration_positive"),
    )

    # ── payments ───────────────────────────────────────────────────────────
    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column(
            "from_user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="RESTRICT", name="fk_payments_sender"),
            nullable=False,
        ),
        sa.Column(
            "to_user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="RESTRICT", name="fk_payments_recipient"),
            nullable=False,
        ),
        sa.Column("amount_fiat_minor", sa.BigInteger(), nullable=False),
        sa.Column("fiat_currency", sa.String(4), nullable=False),
        sa.Column("amount_stable_minor", sa.BigInteger(), nullable=False),
        sa.Column("borrow_used", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("borrow_amount_minor", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column(
            "loan_id",
            sa.Integer(),
            sa.ForeignKey("loans.id", ondelete="RESTRICT", name="fk_payments_loan"),
            nullable=True,
        ),
        sa.Column("tx_id", sa.String(128), nullable=True),
        sa.Column("status", payment_status_enum, nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id", name="pk_payments"),
        sa.CheckConstraint("amount_fiat_minor > 0", name="ck_payments_fiat_positive"),
        sa.CheckConstraint(
            "from_user_id <> to_user_id",
            name="ck_payments_no_self_payment",
        ),
    )

    # ── stakes ─────────────────────────────────────────────────────────────
    op.create_table(
        "stakes",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column(
            "group_id",
            sa.Integer(),
            sa.ForeignKey("groups.id", ondelete="RESTRICT", name="fk_stakes_group"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="RESTRICT", name="fk_stakes_user"),
            nullable=False,
        ),
        sa.Column("amount_minor", sa.BigInteger(), nullable=False),
        sa.Column("reward_rate", sa.Numeric(8, 6), nullable=False),
        sa.Column("claimed_minor", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _created_at(),
        sa.PrimaryKeyConstraint("id", name="pk_stakes"),
        sa.CheckConstraint("amount_minor > 0", name="ck_stakes_amount_positive"),
        sa.CheckConstraint("reward_rate >= 0", name="ck_stakes_reward_rate_nonnegative"),
        sa.CheckConstraint("end_date > start_date", name="ck_stakes_end_after_start"),
    )

    # ── Indexes ────────────────────────────────────────────────────────────
    # Names follow SQLAlchemy's ix_<table>_<column> so autogenerate sees no drift.
    op.create_index("ix_memberships_group_id", "memberships", ["group_id"])
    op.create_index("ix_memberships_user_id", "memberships", ["user_id"])
    op.create_index("ix_expenses_group_id", "expenses", ["group_id"])
    op.create_index("ix_splits_expense_id", "splits", ["expense_id"])
    op.create_index("ix_settlements_group_id", "settlements", ["group_id"])
    op.create_index("ix_loans_user_id", "loans", ["user_id"])
    op.create_index("ix_payments_from_user_id", "payments", ["from_user_id"])
    op.create_index("ix_stakes_group_id", "stakes", ["group_id"])

    # Only active (non-deleted) expenses are ever read by the ledger.
    op.create_index(
        "idx_expenses_active",
        "expenses",
        ["group_id"],
        postgresql_where=sa.text("deleted_at IS NULL"),
    )


def downgrade() -> None:
    """
    Drop everything created in upgrade(), in reverse dependency order.
    For local development resets only; production uses corrective migrations.
    """
    op.drop_index("idx_expenses_active",      table_name="expenses")
    op.drop_index("ix_stakes_group_id",       table_name="stakes")
    op.drop_index("ix_payments_from_user_id", table_name="payments")
    op.drop_index("ix_loans_user_id",         table_name="loans")
    op.drop_index("ix_settlements_group_id",  table_name="settlements")
    op.drop_index("ix_splits_expense_id",     table_name="splits")
    op.drop_index("ix_expenses_group_id",     table_name="expenses")
    op.drop_index("ix_memberships_user_id",   table_name="memberships")
    op.drop_index("ix_memberships_group_id",  table_name="memberships")

    op.drop_table("stakes")
    op.drop_table("payments")
    op.drop_table("loans")
    op.drop_table("settlements")
    op.drop_table("splits")
    op.drop_table("expenses")
    op.drop_table("memberships")
    op.drop_table("groups")
    op.drop_table("users")

    bind = op.get_bind()
    payment_status_enum.drop(bind, checkfirst=True)
    membership_role_enum.drop(bind, checkfirst=True)
    loan_status_enum.drop(bind, checkfirst=True)
    split_kind_enum.drop(bind, checkfirst=True)
