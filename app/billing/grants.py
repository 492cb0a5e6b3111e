"""Credit Grant Ledger.

Every balance increase goes through :func:`apply_grant`. It is idempotent on
the provider event id and, for period-scoped grants, on
``(account, grant_type, period_key)``. Both checks and the mutation happen in
the caller's transaction with the account row locked, so two concurrent
deliveries of the same event race safely: at most one wins, and a loser that
slips past the checks is stopped by the unique constraints.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.billing.errors import AccountNotFound, LedgerValidationError
from app.core.db import run_in_transaction
from app.core.instrumentation import CREDIT_GRANTS
from app.core.models import Account, CreditGrant

logger = structlog.get_logger()


class GrantType(str, Enum):
    PLAN_START = "plan_start"
    PLAN_UPGRADE = "plan_upgrade_add"
    PLAN_RENEWAL = "plan_renewal_reset"
    TOPUP = "topup"
    FREE_ALLOWANCE = "free_allowance"
    WELCOME = "welcome"
    ANONYMOUS_MERGE = "anonymous_merge"


@dataclass(frozen=True)
class GrantResult:
    granted: bool
    balance: int
    reason: str | None = None  # "duplicate_event" | "duplicate_period" when not granted


def lock_account(db: Session, account_id: int) -> Account:
    """Load the account row with a write lock held until the transaction ends."""
    account = (
        db.query(Account)
        .filter(Account.id == account_id)
        .with_for_update()
        .one_or_none()
    )
    if account is None:
        raise AccountNotFound(f"account {account_id} does not exist")
    return account


def _validate(grant_type: GrantType, external_event_id: str, amount: int) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise LedgerValidationError(f"grant amount must be a positive integer, got {amount!r}")
    if not external_event_id or not str(external_event_id).strip():
        raise LedgerValidationError("external_event_id must be non-empty")
    GrantType(grant_type)


def apply_grant(
    db: Session,
    account_id: int,
    grant_type: GrantType | str,
    external_event_id: str,
    amount: int,
    period_key: str | None = None,
    plan: str | None = None,
) -> GrantResult:
    """Increase ``account_id``'s balance by ``amount`` at most once per key.

    Must be called inside a transaction (see ``run_in_transaction``); the
    caller commits.
    """
    grant_type = GrantType(grant_type)
    _validate(grant_type, external_event_id, amount)

    account = lock_account(db, account_id)

    if db.query(CreditGrant.id).filter(CreditGrant.external_event_id == external_event_id).first():
        logger.info("billing.grant.duplicate_event", account_id=account_id,
                    grant_type=grant_type.value, event_id=external_event_id)
        CREDIT_GRANTS.labels(grant_type=grant_type.value, outcome="duplicate").inc()
        return GrantResult(granted=False, balance=account.credit_balance, reason="duplicate_event")

    if period_key:
        duplicate_period = db.query(CreditGrant.id).filter(
            CreditGrant.account_id == account_id,
            CreditGrant.grant_type == grant_type.value,
            CreditGrant.period_key == period_key,
        ).first()
        if duplicate_period:
            logger.info("billing.grant.duplicate_period", account_id=account_id,
                        grant_type=grant_type.value, period_key=period_key, event_id=external_event_id)
            CREDIT_GRANTS.labels(grant_type=grant_type.value, outcome="duplicate").inc()
            return GrantResult(granted=False, balance=account.credit_balance, reason="duplicate_period")

    savepoint = db.begin_nested()
    try:
        account.credit_balance = (account.credit_balance or 0) + amount
        if grant_type is GrantType.PLAN_RENEWAL and period_key:
            account.last_grant_period_key = period_key
        db.add(CreditGrant(
            account_id=account_id,
            grant_type=grant_type.value,
            external_event_id=external_event_id,
            period_key=period_key,
            plan=plan,
            amount=amount,
            balance_after=account.credit_balance,
        ))
        db.flush()
        savepoint.commit()
    except IntegrityError:
        # A concurrent delivery inserted the same key first.
        savepoint.rollback()
        db.refresh(account)
        logger.info("billing.grant.lost_race", account_id=account_id,
                    grant_type=grant_type.value, event_id=external_event_id)
        CREDIT_GRANTS.labels(grant_type=grant_type.value, outcome="duplicate").inc()
        return GrantResult(granted=False, balance=account.credit_balance, reason="duplicate_event")

    logger.info("billing.grant.applied", account_id=account_id, grant_type=grant_type.value,
                amount=amount, balance=account.credit_balance, event_id=external_event_id,
                period_key=period_key)
    CREDIT_GRANTS.labels(grant_type=grant_type.value, outcome="granted").inc()
    return GrantResult(granted=True, balance=account.credit_balance)


def grant_credits(
    account_id: int,
    grant_type: GrantType | str,
    external_event_id: str,
    amount: int,
    period_key: str | None = None,
    plan: str | None = None,
) -> GrantResult:
    """Standalone entry point: :func:`apply_grant` in its own transaction."""
    return run_in_transaction(
        lambda db: apply_grant(db, account_id, grant_type, external_event_id, amount,
                               period_key=period_key, plan=plan)
    )


def list_grants(db: Session, account_id: int, limit: int = 50) -> list[CreditGrant]:
    return (
        db.query(CreditGrant)
        .filter(CreditGrant.account_id == account_id)
        .order_by(CreditGrant.created_at.desc(), CreditGrant.id.desc())
        .limit(limit)
        .all()
    )
