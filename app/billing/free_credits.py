"""Recurring free allowance for signed-in accounts without a paid plan."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.billing.grants import GrantType, apply_grant, lock_account
from app.billing.plans import Plan
from app.core.db import SessionLocal, run_in_transaction
from app.core.models import Account
from config.settings import get_settings

logger = structlog.get_logger()

LOOP_INTERVAL_SECONDS = 3600


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _eligible_account_ids(cutoff: datetime) -> list[int]:
    db = SessionLocal()
    try:
        rows = (
            db.query(Account.id)
            .filter(
                Account.user_id.isnot(None),
                Account.plan == Plan.NONE.value,
                Account.merged_into_account_id.is_(None),
                or_(Account.last_free_grant_at.is_(None), Account.last_free_grant_at <= cutoff),
            )
            .order_by(Account.id)
            .all()
        )
        return [int(r.id) for r in rows]
    finally:
        db.close()


def _grant_one(db: Session, account_id: int, now: datetime, cutoff: datetime, window: int, amount: int) -> bool:
    account = lock_account(db, account_id)
    # Re-check under the lock: a plan may have started since the scan.
    if account.plan != Plan.NONE.value:
        return False
    last = _aware(account.last_free_grant_at)
    if last is not None and last > cutoff:
        return False
    result = apply_grant(db, account_id, GrantType.FREE_ALLOWANCE, f"free:{account_id}:{window}", amount)
    if result.granted:
        account.last_free_grant_at = now
    return result.granted


def grant_free_allowance(now: datetime | None = None) -> int:
    """Credit every due account once per interval window. Returns the number credited."""
    settings = get_settings()
    amount = settings.free_credits_amount
    if amount <= 0:
        return 0
    now = now or datetime.now(timezone.utc)
    interval = timedelta(hours=max(1, settings.free_credits_interval_hours))
    cutoff = now - interval
    window = int(now.timestamp() // interval.total_seconds())

    granted = 0
    for account_id in _eligible_account_ids(cutoff):
        try:
            if run_in_transaction(lambda db: _grant_one(db, account_id, now, cutoff, window, amount)):
                granted += 1
        except Exception as e:
            logger.error("billing.free_allowance.grant_failed", account_id=account_id, error=str(e))
    logger.info("billing.free_allowance.completed", granted=granted, window=window)
    return granted


async def free_allowance_loop() -> None:
    logger.info("billing.free_allowance.scheduler_started")
    while True:
        try:
            await asyncio.to_thread(grant_free_allowance)
        except Exception as e:
            logger.error("billing.free_allowance.loop_failed", error=str(e))
        await asyncio.sleep(LOOP_INTERVAL_SECONDS)
