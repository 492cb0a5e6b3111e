"""Usage Charge Ledger.

Debits the per-account credit balance for chat turns. Each
``(account, turn_id, charge_kind)`` is billed at most once: a retried request
(reconnect on a streamed reply, double submit, second tab) gets the
previously recorded balance back and is not charged again. A charge that
would take the balance below zero is rejected, never clamped.

A turn is charged at two checkpoints: ``user_send`` when the message is
accepted and ``assistant_reply`` once the reply has completed, so a reply
that failed to generate is never billed.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.billing.accounts import Actor, ensure_account
from app.billing.errors import LedgerValidationError
from app.core.db import run_in_transaction
from app.core.instrumentation import USAGE_CHARGES
from app.core.models import Account, UsageChargeEntry
from config.settings import get_settings

logger = structlog.get_logger()


class ChargeKind(str, Enum):
    USER_SEND = "user_send"
    ASSISTANT_REPLY = "assistant_reply"
    IMAGE_SURCHARGE = "image_surcharge"
    OUT_OF_CREDITS_BLOCK = "out_of_credits_block"


@dataclass(frozen=True)
class ChargeResult:
    charged: bool
    balance_after: int
    blocked: bool = False
    duplicate: bool = False

    @property
    def next_step(self) -> str | None:
        return "purchase_credits" if self.blocked else None


def _existing_entry(db: Session, account_id: int, turn_id: str, kind: ChargeKind) -> UsageChargeEntry | None:
    return db.query(UsageChargeEntry).filter(
        UsageChargeEntry.account_id == account_id,
        UsageChargeEntry.turn_id == turn_id,
        UsageChargeEntry.charge_kind == kind.value,
    ).one_or_none()


def _insert_entry(db: Session, account: Account, turn_id: str, kind: ChargeKind,
                  amount: int) -> UsageChargeEntry | None:
    """Insert the entry (and debit ``amount``) under a savepoint.

    Returns None when a concurrent request already recorded the same key.
    """
    savepoint = db.begin_nested()
    try:
        account.credit_balance = account.credit_balance - amount
        entry = UsageChargeEntry(
            account_id=account.id,
            actor=account.actor_key,
            turn_id=turn_id,
            charge_kind=kind.value,
            amount=amount,
            balance_after=account.credit_balance,
        )
        db.add(entry)
        db.flush()
        savepoint.commit()
        return entry
    except IntegrityError:
        savepoint.rollback()
        db.refresh(account)
        return None


def _record_block(db: Session, account: Account, turn_id: str) -> None:
    if _existing_entry(db, account.id, turn_id, ChargeKind.OUT_OF_CREDITS_BLOCK):
        return
    _insert_entry(db, account, turn_id, ChargeKind.OUT_OF_CREDITS_BLOCK, 0)


def apply_charge(
    db: Session,
    account: Account,
    turn_id: str,
    charge_kind: ChargeKind | str,
    amount: int,
    minimum: int | None = None,
) -> ChargeResult:
    """Debit a locked account inside the caller's transaction.

    ``minimum`` lets a checkpoint require more headroom than it spends (the
    send checkpoint reserves room for the reply).
    """
    kind = ChargeKind(charge_kind)
    if kind is ChargeKind.OUT_OF_CREDITS_BLOCK:
        raise LedgerValidationError("out_of_credits_block is recorded by the ledger, not charged")
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise LedgerValidationError(f"charge amount must be a positive integer, got {amount!r}")
    if not turn_id or not str(turn_id).strip():
        raise LedgerValidationError("turn_id must be non-empty")

    existing = _existing_entry(db, account.id, turn_id, kind)
    if existing is not None:
        logger.info("billing.charge.duplicate", account_id=account.id, turn_id=turn_id, kind=kind.value)
        USAGE_CHARGES.labels(charge_kind=kind.value, outcome="duplicate").inc()
        return ChargeResult(charged=False, balance_after=existing.balance_after, duplicate=True)

    required = max(amount, minimum or 0)
    # A merged anonymous session spends from the user account now.
    if account.merged_into_account_id is not None or account.credit_balance < required:
        _record_block(db, account, turn_id)
        logger.info("billing.charge.insufficient_credits", account_id=account.id, turn_id=turn_id,
                    kind=kind.value, balance=account.credit_balance, required=required)
        USAGE_CHARGES.labels(charge_kind=kind.value, outcome="blocked").inc()
        return ChargeResult(charged=False, balance_after=account.credit_balance, blocked=True)

    entry = _insert_entry(db, account, turn_id, kind, amount)
    if entry is None:
        existing = _existing_entry(db, account.id, turn_id, kind)
        USAGE_CHARGES.labels(charge_kind=kind.value, outcome="duplicate").inc()
        return ChargeResult(charged=False, balance_after=existing.balance_after if existing else account.credit_balance,
                            duplicate=True)

    logger.info("billing.charge.applied", account_id=account.id, turn_id=turn_id, kind=kind.value,
                amount=amount, balance=entry.balance_after)
    USAGE_CHARGES.labels(charge_kind=kind.value, outcome="charged").inc()
    return ChargeResult(charged=True, balance_after=entry.balance_after)


def charge(actor: Actor, turn_id: str, charge_kind: ChargeKind | str, amount: int,
           minimum: int | None = None) -> ChargeResult:
    """Charge ``amount`` credits for one checkpoint of a turn, at most once."""
    return run_in_transaction(
        lambda db: apply_charge(db, ensure_account(db, actor), turn_id, charge_kind, amount, minimum=minimum)
    )


def can_afford(actor: Actor, amount: int) -> bool:
    if not isinstance(amount, int) or amount < 0:
        raise LedgerValidationError(f"amount must be a non-negative integer, got {amount!r}")
    return run_in_transaction(lambda db: ensure_account(db, actor).credit_balance >= amount)


def charge_user_send(actor: Actor, turn_id: str, has_image: bool = False) -> ChargeResult:
    """Checkpoint 1: the user's message was accepted.

    Requires enough balance for the send, the image surcharge and the
    expected reply, so a turn is not started that cannot be finished.
    """
    settings = get_settings()
    required = settings.cost_user_message + settings.cost_assistant_reply
    if has_image:
        required += settings.cost_image_surcharge

    def _charge(db: Session) -> ChargeResult:
        account = ensure_account(db, actor)
        result = apply_charge(db, account, turn_id, ChargeKind.USER_SEND,
                              settings.cost_user_message, minimum=required)
        if result.duplicate:
            # The surcharge was taken after the send entry; its balance is the turn's latest.
            surcharge = _existing_entry(db, account.id, turn_id, ChargeKind.IMAGE_SURCHARGE)
            if surcharge is not None:
                return ChargeResult(charged=False, balance_after=surcharge.balance_after, duplicate=True)
            return result
        if not result.charged or not has_image:
            return result
        surcharge = apply_charge(db, account, turn_id, ChargeKind.IMAGE_SURCHARGE, settings.cost_image_surcharge)
        return ChargeResult(charged=True, balance_after=surcharge.balance_after)

    return run_in_transaction(_charge)


def charge_assistant_reply(actor: Actor, turn_id: str) -> ChargeResult:
    """Checkpoint 2: the assistant reply completed."""
    return charge(actor, turn_id, ChargeKind.ASSISTANT_REPLY, get_settings().cost_assistant_reply)


def get_balance(actor: Actor) -> dict:
    def _read(db: Session) -> dict:
        account = ensure_account(db, actor)
        return {
            "account_id": account.id,
            "credits": account.credit_balance,
            "plan": account.plan,
            "pending_downgrade_plan": account.pending_downgrade_plan,
            "subscription_status": account.subscription_status,
            "current_period_end": account.current_period_end.isoformat() if account.current_period_end else None,
        }

    return run_in_transaction(_read)
