"""Plan State Machine.

Derives the account's effective plan, and any plan change scheduled for the
next renewal, from provider subscription events.

Transitions (all run inside the caller's transaction on a locked account):

    start    plan := P, clear pending downgrade, plan_start grant (once per subscription)
    change   upgrade   -> immediate, plan_upgrade_add grant
             downgrade -> pending_downgrade_plan := P, nothing else until renew
             same rank -> clears a pending downgrade (the downgrade was reverted)
    renew    apply pending downgrade (or the invoiced plan), plan_renewal_reset grant per period
    cancel   plan := none, clear pending downgrade, balance untouched

Downgrades never claw back credits mid-period; they only change which
allotment the next renewal grants.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

import structlog
from sqlalchemy.orm import Session

from app.billing.grants import GrantType, apply_grant
from app.billing.plans import Plan, coerce_plan, monthly_credits, plan_rank, upgrade_grant_amount
from app.core.models import Account, CreditGrant

logger = structlog.get_logger()

PAID_STATUSES = {"active", "trialing"}


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Provider-side subscription fields carried by an event. ``None`` = not provided."""

    customer_id: str | None = None
    subscription_id: str | None = None
    status: str | None = None
    price_id: str | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None


@dataclass(frozen=True)
class TransitionResult:
    transition: str  # start | upgrade | downgrade_scheduled | unchanged | renew | cancel | status_only | stale
    plan: str
    granted: bool = False
    duplicate: bool = False
    balance: int = 0
    pending_downgrade_plan: str | None = None


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _result(account: Account, transition: str, granted: bool = False, duplicate: bool = False) -> TransitionResult:
    return TransitionResult(
        transition=transition,
        plan=account.plan,
        granted=granted,
        duplicate=duplicate,
        balance=account.credit_balance,
        pending_downgrade_plan=account.pending_downgrade_plan,
    )


def _grant_recorded(db: Session, account_id: int, grant_type: GrantType, event_id: str,
                    period_key: str | None = None) -> bool:
    if db.query(CreditGrant.id).filter(CreditGrant.external_event_id == event_id).first():
        return True
    if period_key:
        return db.query(CreditGrant.id).filter(
            CreditGrant.account_id == account_id,
            CreditGrant.grant_type == grant_type.value,
            CreditGrant.period_key == period_key,
        ).first() is not None
    return False


def patch_subscription(account: Account, snap: SubscriptionSnapshot) -> None:
    """Copy the provided provider fields onto the account; absent fields are kept."""
    if snap.customer_id:
        account.stripe_customer_id = snap.customer_id
    if snap.subscription_id:
        account.stripe_subscription_id = snap.subscription_id
    if snap.status:
        account.subscription_status = snap.status
    if snap.price_id:
        account.price_id = snap.price_id
    if snap.period_start:
        account.current_period_start = snap.period_start
    if snap.period_end:
        account.current_period_end = snap.period_end


def status_only(db: Session, account: Account, snap: SubscriptionSnapshot) -> TransitionResult:
    patch_subscription(account, snap)
    logger.info("billing.plan.status_only", account_id=account.id, status=snap.status)
    return _result(account, "status_only")


def start_key(snap: SubscriptionSnapshot) -> str | None:
    return f"sub:{snap.subscription_id}" if snap.subscription_id else None


def start(db: Session, account: Account, plan: Plan | str, snap: SubscriptionSnapshot,
          event_id: str) -> TransitionResult:
    """New subscription: set the plan and grant its allotment once per subscription.

    Checkout, ``subscription.created`` and the first invoice all announce the
    same subscription; the ``sub:<id>`` period key makes them credit it once.
    """
    plan = coerce_plan(plan)
    if plan is Plan.NONE:
        return status_only(db, account, snap)

    period_key = start_key(snap)
    if _grant_recorded(db, account.id, GrantType.PLAN_START, event_id, period_key):
        patch_subscription(account, snap)
        logger.info("billing.plan.start_duplicate", account_id=account.id, event_id=event_id, period_key=period_key)
        return _result(account, "start", duplicate=True)

    account.plan = plan.value
    account.pending_downgrade_plan = None
    patch_subscription(account, snap)
    result = apply_grant(db, account.id, GrantType.PLAN_START, event_id, monthly_credits(plan),
                         period_key=period_key, plan=plan.value)
    logger.info("billing.plan.started", account_id=account.id, plan=plan.value, granted=result.granted)
    return _result(account, "start", granted=result.granted, duplicate=not result.granted)


def change(db: Session, account: Account, new_plan: Plan | str, snap: SubscriptionSnapshot,
           event_id: str) -> TransitionResult:
    """Subscription price changed: classify by rank against the current plan."""
    new_plan = coerce_plan(new_plan)
    current = coerce_plan(account.plan)

    known_start = _aware(account.current_period_start)
    if snap.period_end and known_start and _aware(snap.period_end) <= known_start:
        # Belongs to a period that a later renewal already superseded; the
        # previous period ends exactly where the current one starts.
        logger.warning("billing.plan.stale_change_ignored", account_id=account.id, event_id=event_id,
                       event_period_end=snap.period_end.isoformat(), current_period_start=known_start.isoformat())
        return _result(account, "stale")

    if current is Plan.NONE and new_plan is not Plan.NONE:
        # No active plan yet: this update announces a (re)started subscription.
        if (snap.status or "") in PAID_STATUSES:
            return start(db, account, new_plan, snap, event_id)
        return status_only(db, account, snap)

    if plan_rank(new_plan) > plan_rank(current):
        if _grant_recorded(db, account.id, GrantType.PLAN_UPGRADE, event_id):
            patch_subscription(account, snap)
            return _result(account, "upgrade", duplicate=True)
        amount = upgrade_grant_amount(current, new_plan)
        account.plan = new_plan.value
        account.pending_downgrade_plan = None
        patch_subscription(account, snap)
        granted = False
        if amount > 0:
            granted = apply_grant(db, account.id, GrantType.PLAN_UPGRADE, event_id, amount,
                                  plan=new_plan.value).granted
        logger.info("billing.plan.upgraded", account_id=account.id, old_plan=current.value,
                    new_plan=new_plan.value, amount=amount)
        return _result(account, "upgrade", granted=granted)

    if plan_rank(new_plan) < plan_rank(current):
        account.pending_downgrade_plan = new_plan.value
        patch_subscription(account, snap)
        logger.info("billing.plan.downgrade_scheduled", account_id=account.id, plan=current.value,
                    pending_plan=new_plan.value)
        return _result(account, "downgrade_scheduled")

    if account.pending_downgrade_plan:
        logger.info("billing.plan.downgrade_reverted", account_id=account.id,
                    pending_plan=account.pending_downgrade_plan)
        account.pending_downgrade_plan = None
    patch_subscription(account, snap)
    return _result(account, "unchanged")


def renew(db: Session, account: Account, invoiced_plan: Plan | str, snap: SubscriptionSnapshot,
          event_id: str, period_key: str | None) -> TransitionResult:
    """Periodic invoice paid: apply a pending downgrade, then grant the period's allotment."""
    if period_key and account.last_grant_period_key == period_key:
        logger.info("billing.plan.renew_duplicate", account_id=account.id, period_key=period_key)
        return _result(account, "renew", duplicate=True)
    if _grant_recorded(db, account.id, GrantType.PLAN_RENEWAL, event_id, period_key):
        logger.info("billing.plan.renew_duplicate", account_id=account.id, event_id=event_id)
        return _result(account, "renew", duplicate=True)

    if account.pending_downgrade_plan:
        target = coerce_plan(account.pending_downgrade_plan)
        logger.info("billing.plan.downgrade_applied", account_id=account.id,
                    old_plan=account.plan, new_plan=target.value)
    else:
        target = coerce_plan(invoiced_plan)
    account.plan = target.value
    account.pending_downgrade_plan = None
    patch_subscription(account, snap)

    amount = monthly_credits(target)
    granted = False
    if amount > 0:
        granted = apply_grant(db, account.id, GrantType.PLAN_RENEWAL, event_id, amount,
                              period_key=period_key, plan=target.value).granted
    elif period_key:
        account.last_grant_period_key = period_key
    logger.info("billing.plan.renewed", account_id=account.id, plan=target.value,
                period_key=period_key, amount=amount, granted=granted)
    return _result(account, "renew", granted=granted)


def cancel(db: Session, account: Account, snap: SubscriptionSnapshot) -> TransitionResult:
    """Subscription ended: drop to ``none`` immediately; remaining credits stay spendable."""
    account.plan = Plan.NONE.value
    account.pending_downgrade_plan = None
    patch_subscription(account, SubscriptionSnapshot(
        customer_id=snap.customer_id,
        subscription_id=snap.subscription_id,
        status=snap.status or "canceled",
    ))
    logger.info("billing.plan.canceled", account_id=account.id, balance=account.credit_balance)
    return _result(account, "cancel")
