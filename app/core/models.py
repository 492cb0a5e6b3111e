from datetime import datetime, timezone
from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from app.core.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─── Accounts ────────────────────────────────────────────────────────────────

class Account(Base):
    """Billable identity: one signed-in user or one anonymous session."""

    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, unique=True, nullable=True)       # Identity-provider subject
    anonymous_id = Column(String, unique=True, nullable=True)  # Browser session id for guests
    email = Column(String, nullable=True)

    plan = Column(String, nullable=False, default="none")      # none | starter | plus | pro
    credit_balance = Column(Integer, nullable=False, default=0)

    # Stripe references (opaque)
    stripe_customer_id = Column(String, unique=True, nullable=True)
    stripe_subscription_id = Column(String, nullable=True)
    subscription_status = Column(String, nullable=True)  # active | trialing | past_due | canceled | ...
    price_id = Column(String, nullable=True)

    current_period_start = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)

    pending_downgrade_plan = Column(String, nullable=True)  # Takes effect at the next renewal
    last_grant_period_key = Column(String, nullable=True)
    last_free_grant_at = Column(DateTime(timezone=True), nullable=True)
    merged_into_account_id = Column(Integer, ForeignKey("accounts.id"), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        CheckConstraint("credit_balance >= 0", name="ck_accounts_credit_balance_non_negative"),
    )

    @property
    def actor_key(self) -> str:
        if self.user_id:
            return f"user:{self.user_id}"
        return f"anon:{self.anonymous_id}"


# ─── Ledgers ─────────────────────────────────────────────────────────────────

class CreditGrant(Base):
    """Immutable audit row for one successful balance increase."""

    __tablename__ = "credit_grants"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)
    # plan_start | plan_upgrade_add | plan_renewal_reset | topup | free_allowance | welcome | anonymous_merge
    grant_type = Column(String, nullable=False)
    external_event_id = Column(String, nullable=False, unique=True)
    period_key = Column(String, nullable=True)
    plan = Column(String, nullable=True)
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        # NULL period keys never collide, so only keyed grants are bound.
        UniqueConstraint("account_id", "grant_type", "period_key", name="uq_credit_grants_account_type_period"),
    )


class UsageChargeEntry(Base):
    """Immutable audit row for one balance decrease tied to a chat turn."""

    __tablename__ = "usage_charges"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False)
    actor = Column(String, nullable=False)  # "user:<id>" or "anon:<id>"
    turn_id = Column(String, nullable=False)
    # user_send | assistant_reply | image_surcharge | out_of_credits_block
    charge_kind = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)
    balance_after = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("account_id", "turn_id", "charge_kind", name="uq_usage_charges_account_turn_kind"),
        Index("ix_usage_charges_account_created", "account_id", "created_at"),
    )
