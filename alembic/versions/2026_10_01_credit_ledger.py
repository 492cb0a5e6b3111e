"""Credit ledger — accounts, credit_grants, usage_charges.

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01

Changes:
  accounts        — billable identity, plan, credit balance, Stripe references
  credit_grants   — one row per balance increase, unique per provider event id
                    and per (account, grant_type, period_key)
  usage_charges   — one row per balance decrease, unique per (account, turn, kind)
"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


revision: str = '202610010001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _table_exists(conn, table: str) -> bool:
    try:
        insp = inspect(conn)
        return table in insp.get_table_names()
    except Exception:
        return False


def upgrade() -> None:
    conn = op.get_bind()

    # ── 1. accounts ──────────────────────────────────────────────────────
    if not _table_exists(conn, "accounts"):
        op.create_table(
            "accounts",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("user_id", sa.String(), nullable=True, unique=True),
            sa.Column("anonymous_id", sa.String(), nullable=True, unique=True),
            sa.Column("email", sa.String(), nullable=True),
            sa.Column("plan", sa.String(), nullable=False, server_default="none"),
            sa.Column("credit_balance", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("stripe_customer_id", sa.String(), nullable=True, unique=True),
            sa.Column("stripe_subscription_id", sa.String(), nullable=True),
            sa.Column("subscription_status", sa.String(), nullable=True),
            sa.Column("price_id", sa.String(), nullable=True),
            sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=True),
            sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=True),
            sa.Column("pending_downgrade_plan", sa.String(), nullable=True),
            sa.Column("last_grant_period_key", sa.String(), nullable=True),
            sa.Column("last_free_grant_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("merged_into_account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.CheckConstraint("credit_balance >= 0", name="ck_accounts_credit_balance_non_negative"),
        )
        op.create_index("ix_accounts_id", "accounts", ["id"])

    # ── 2. credit_grants ─────────────────────────────────────────────────
    if not _table_exists(conn, "credit_grants"):
        op.create_table(
            "credit_grants",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False),
            sa.Column("grant_type", sa.String(), nullable=False),
            sa.Column("external_event_id", sa.String(), nullable=False, unique=True),
            sa.Column("period_key", sa.String(), nullable=True),
            sa.Column("plan", sa.String(), nullable=True),
            sa.Column("amount", sa.Integer(), nullable=False),
            sa.Column("balance_after", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.UniqueConstraint("account_id", "grant_type", "period_key",
                                name="uq_credit_grants_account_type_period"),
        )
        op.create_index("ix_credit_grants_id", "credit_grants", ["id"])
        op.create_index("ix_credit_grants_account_id", "credit_grants", ["account_id"])

    # ── 3. usage_charges ─────────────────────────────────────────────────
    if not _table_exists(conn, "usage_charges"):
        op.create_table(
            "usage_charges",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False),
            sa.Column("actor", sa.String(), nullable=False),
            sa.Column("turn_id", sa.String(), nullable=False),
            sa.Column("charge_kind", sa.String(), nullable=False),
            sa.Column("amount", sa.Integer(), nullable=False),
            sa.Column("balance_after", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.UniqueConstraint("account_id", "turn_id", "charge_kind",
                                name="uq_usage_charges_account_turn_kind"),
        )
        op.create_index("ix_usage_charges_id", "usage_charges", ["id"])
        op.create_index("ix_usage_charges_account_created", "usage_charges", ["account_id", "created_at"])


def downgrade() -> None:
    conn = op.get_bind()
    for table in ("usage_charges", "credit_grants", "accounts"):
        if _table_exists(conn, table):
            op.drop_table(table)
