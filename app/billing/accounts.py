"""Account resolution: actors, lazy account creation, anonymous-session merge."""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.billing.errors import LedgerValidationError
from app.billing.grants import GrantType, apply_grant, lock_account
from app.core.db import run_in_transaction
from app.core.models import Account
from config.settings import get_settings

logger = structlog.get_logger()


@dataclass(frozen=True)
class Actor:
    """Who is spending credits: a signed-in user or an anonymous session."""

    user_id: str | None = None
    anonymous_id: str | None = None
    email: str | None = None

    def __post_init__(self) -> None:
        if not (self.user_id or self.anonymous_id):
            raise LedgerValidationError("actor needs a user_id or an anonymous_id")

    @property
    def is_anonymous(self) -> bool:
        return not self.user_id

    @property
    def key(self) -> str:
        if self.user_id:
            return f"user:{self.user_id}"
        return f"anon:{self.anonymous_id}"


@dataclass(frozen=True)
class MergeResult:
    merged: bool
    credits_transferred: int


def _find_account(db: Session, actor: Actor) -> Account | None:
    q = db.query(Account)
    if actor.user_id:
        return q.filter(Account.user_id == actor.user_id).one_or_none()
    return q.filter(Account.anonymous_id == actor.anonymous_id).one_or_none()


def ensure_account(db: Session, actor: Actor) -> Account:
    """Return the actor's account, creating it (with welcome credits) on first use.

    Runs inside the caller's transaction; the returned row is locked.
    """
    account = _find_account(db, actor)
    created = False
    if account is None:
        savepoint = db.begin_nested()
        try:
            account = Account(
                user_id=actor.user_id,
                anonymous_id=None if actor.user_id else actor.anonymous_id,
                email=actor.email,
                plan="none",
                credit_balance=0,
            )
            db.add(account)
            db.flush()
            savepoint.commit()
            created = True
            logger.info("billing.account.created", account_id=account.id, actor=actor.key)
        except IntegrityError:
            # Created concurrently by another request for the same actor.
            savepoint.rollback()
            account = _find_account(db, actor)
            if account is None:
                raise

    settings = get_settings()
    initial = settings.anonymous_initial_credits if actor.is_anonymous else settings.user_initial_credits
    if created and initial > 0:
        apply_grant(db, account.id, GrantType.WELCOME, f"welcome:{actor.key}", initial)
    return lock_account(db, account.id)


def get_account_id(actor: Actor) -> int:
    """Resolve (or create) the actor's account id in its own transaction."""
    return run_in_transaction(lambda db: ensure_account(db, actor).id)


def resolve_account_for_event(db: Session, account_ref: str | None, customer_id: str | None) -> Account | None:
    """Metadata account id first, then reverse lookup by Stripe customer id."""
    if account_ref:
        try:
            account = db.query(Account).filter(Account.id == int(account_ref)).one_or_none()
        except (TypeError, ValueError):
            account = None
        if account is not None:
            return account
        logger.warning("billing.account.metadata_ref_unknown", account_ref=account_ref)
    if customer_id:
        return db.query(Account).filter(Account.stripe_customer_id == customer_id).one_or_none()
    return None


def merge_anonymous_into_user(anonymous_id: str, user: Actor) -> MergeResult:
    """Move an anonymous session's remaining balance into the signed-in account, once."""
    if user.is_anonymous:
        raise LedgerValidationError("merge target must be a signed-in user")

    def _merge(db: Session) -> MergeResult:
        anon = db.query(Account).filter(Account.anonymous_id == anonymous_id).one_or_none()
        if anon is None or anon.merged_into_account_id is not None:
            return MergeResult(merged=False, credits_transferred=0)

        anon = lock_account(db, anon.id)
        target = ensure_account(db, user)
        transferred = anon.credit_balance or 0
        if transferred > 0:
            result = apply_grant(db, target.id, GrantType.ANONYMOUS_MERGE, f"merge:{anonymous_id}", transferred)
            if not result.granted:
                return MergeResult(merged=False, credits_transferred=0)
        anon.credit_balance = 0
        anon.merged_into_account_id = target.id
        logger.info("billing.account.anonymous_merged", anonymous_account_id=anon.id,
                    account_id=target.id, credits=transferred)
        return MergeResult(merged=True, credits_transferred=transferred)

    return run_in_transaction(_merge)
