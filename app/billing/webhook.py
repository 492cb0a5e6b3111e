"""Webhook Event Processor.

Entry point for Stripe notifications:

    verify signature (raw body) → classify → resolve account → route

Routing table:
    checkout_completed (payment)       → Credit Grant Ledger, topup
    checkout_completed (subscription)  → plan start
    subscription_created               → plan start (paid statuses only)
    subscription_updated               → plan change (rank comparison)
    subscription_deleted               → plan cancel
    invoice_paid  subscription_create  → plan start
                  subscription_update  → status only (the update event granted)
                  anything else        → plan renew (period-keyed)
    invoice_payment_failed             → status only, past_due

Every routed event runs in one transaction with the account row locked.
Delivery is at-least-once and unordered; safety comes from the idempotency
checks in the ledgers, never from arrival order.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import stripe
import structlog
from sqlalchemy.orm import Session

from app.billing import plan_machine
from app.billing.accounts import resolve_account_for_event
from app.billing.errors import AccountUnresolved, PriceUnmapped, SignatureInvalid
from app.billing.events import (
    BillingEvent,
    CheckoutCompleted,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionUpdated,
    classify,
    parse_payload,
)
from app.billing.grants import GrantResult, GrantType, apply_grant, lock_account
from app.billing.plan_machine import SubscriptionSnapshot, TransitionResult
from app.billing.plans import Plan, PriceMap, coerce_plan
from app.core.db import run_in_transaction
from app.core.instrumentation import WEBHOOK_EVENTS
from app.core.models import Account
from config.settings import Settings, get_settings

logger = structlog.get_logger()

PAID_CHECKOUT_STATUSES = {"paid", "no_payment_required"}


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: str | None
    kind: str | None
    outcome: str  # applied | duplicate | status_only | stale | dropped | ignored
    account_id: int | None = None
    transition: str | None = None


def _outcome_from(result: TransitionResult | GrantResult) -> tuple[str, str | None]:
    if isinstance(result, GrantResult):
        return ("applied" if result.granted else "duplicate"), "topup"
    if result.duplicate:
        return "duplicate", result.transition
    if result.transition in ("status_only", "stale"):
        return result.transition, result.transition
    return "applied", result.transition


class WebhookProcessor:
    """Verifies, classifies and routes one provider notification."""

    def __init__(self, webhook_secret: str, price_map: PriceMap, tolerance_seconds: int = 300) -> None:
        self._secret = (webhook_secret or "").strip()
        self._prices = price_map
        self._tolerance = tolerance_seconds
        self._routes: dict[str, Callable[[Session, Account, BillingEvent], TransitionResult | GrantResult | None]] = {
            "checkout_completed": self._on_checkout_completed,
            "subscription_created": self._on_subscription_created,
            "subscription_updated": self._on_subscription_updated,
            "subscription_deleted": self._on_subscription_deleted,
            "invoice_paid": self._on_invoice_paid,
            "invoice_payment_failed": self._on_invoice_payment_failed,
        }

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "WebhookProcessor":
        s = settings or get_settings()
        return cls(
            webhook_secret=s.stripe_webhook_secret,
            price_map=PriceMap.from_settings(s),
            tolerance_seconds=s.stripe_webhook_tolerance_seconds,
        )

    # ── Verification ──────────────────────────────────────────────────────────

    def verify(self, payload: bytes, signature: str) -> dict:
        """Check the signature over the untouched raw body and parse it."""
        if not self._secret:
            logger.warning("billing.webhook.no_secret_configured")
            raise SignatureInvalid("webhook secret not configured")
        if not signature:
            raise SignatureInvalid("missing stripe-signature header")
        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SignatureInvalid("payload is not utf-8") from exc
        try:
            stripe.WebhookSignature.verify_header(body, signature, self._secret, tolerance=self._tolerance)
        except stripe.SignatureVerificationError as exc:
            logger.warning("billing.webhook.sig_invalid", error=str(exc))
            raise SignatureInvalid(str(exc)) from exc
        return parse_payload(body)

    def handle(self, payload: bytes, signature: str) -> WebhookOutcome:
        event = self.verify(payload, signature)
        return self.process(event)

    # ── Routing ──────────────────────────────────────────────────────────────

    def process(self, event: dict) -> WebhookOutcome:
        """Route an already verified event."""
        billing_event = classify(event)
        if billing_event is None:
            logger.debug("billing.webhook.event_ignored", event_type=event.get("type"), event_id=event.get("id"))
            WEBHOOK_EVENTS.labels(kind="unhandled", outcome="ignored").inc()
            return WebhookOutcome(event_id=event.get("id"), kind=None, outcome="ignored")

        logger.info("billing.webhook.received", kind=billing_event.kind, event_id=billing_event.event_id)
        outcome = run_in_transaction(lambda db: self._route(db, billing_event))
        WEBHOOK_EVENTS.labels(kind=billing_event.kind, outcome=outcome.outcome).inc()
        return outcome

    def _route(self, db: Session, event: BillingEvent) -> WebhookOutcome:
        try:
            account = self._resolve(db, event)
        except AccountUnresolved as exc:
            # Resolution will not improve on retry: acknowledge and drop.
            logger.warning("billing.webhook.account_unresolved", kind=event.kind, event_id=event.event_id,
                           error=str(exc))
            return WebhookOutcome(event_id=event.event_id, kind=event.kind, outcome="dropped")

        result = self._routes[event.kind](db, account, event)
        if result is None:
            return WebhookOutcome(event_id=event.event_id, kind=event.kind, outcome="ignored",
                                  account_id=account.id)
        outcome, transition = _outcome_from(result)
        logger.info("billing.webhook.processed", kind=event.kind, event_id=event.event_id,
                    account_id=account.id, outcome=outcome, transition=transition)
        return WebhookOutcome(event_id=event.event_id, kind=event.kind, outcome=outcome,
                              account_id=account.id, transition=transition)

    def _resolve(self, db: Session, event: BillingEvent) -> Account:
        account = resolve_account_for_event(db, event.account_ref, event.customer_id)
        if account is None:
            raise AccountUnresolved(
                f"no account for account_ref={event.account_ref!r} customer={event.customer_id!r}"
            )
        return lock_account(db, account.id)

    def _plan_for(self, price_id: str | None) -> Plan:
        plan = self._prices.plan_for_price(price_id)
        if plan is None:
            raise PriceUnmapped(price_id)
        return plan

    def _status_only_unmapped(self, db: Session, account: Account, event, snap: SubscriptionSnapshot,
                              exc: PriceUnmapped) -> TransitionResult:
        logger.warning("billing.config.price_unmapped", price_id=exc.price_id, kind=event.kind,
                       event_id=event.event_id, account_id=account.id)
        return plan_machine.status_only(db, account, snap)

    # ── Handlers ─────────────────────────────────────────────────────────────

    def _on_checkout_completed(self, db: Session, account: Account, event: CheckoutCompleted):
        snap = SubscriptionSnapshot(customer_id=event.customer_id, subscription_id=event.subscription_id)

        if event.mode == "payment":
            if event.payment_status and event.payment_status not in PAID_CHECKOUT_STATUSES:
                logger.info("billing.webhook.topup_unpaid", event_id=event.event_id,
                            payment_status=event.payment_status)
                return None
            if not event.credits or event.credits <= 0:
                logger.warning("billing.webhook.topup_missing_credits", event_id=event.event_id)
                return None
            if event.customer_id and not account.stripe_customer_id:
                account.stripe_customer_id = event.customer_id
            return apply_grant(db, account.id, GrantType.TOPUP, event.event_id, event.credits)

        if event.mode == "subscription":
            plan = coerce_plan(event.plan)
            if plan is Plan.NONE:
                logger.warning("billing.webhook.checkout_missing_plan", event_id=event.event_id, plan=event.plan)
                return plan_machine.status_only(db, account, snap)
            return plan_machine.start(db, account, plan, snap, event.event_id)

        logger.info("billing.webhook.checkout_mode_ignored", mode=event.mode, event_id=event.event_id)
        return None

    def _on_subscription_created(self, db: Session, account: Account, event: SubscriptionCreated):
        snap = event.snapshot()
        try:
            plan = self._plan_for(event.price_id)
        except PriceUnmapped as exc:
            return self._status_only_unmapped(db, account, event, snap, exc)
        if (event.status or "") not in plan_machine.PAID_STATUSES:
            # Not paid yet (incomplete); the first invoice starts the plan.
            return plan_machine.status_only(db, account, snap)
        return plan_machine.start(db, account, plan, snap, event.event_id)

    def _on_subscription_updated(self, db: Session, account: Account, event: SubscriptionUpdated):
        snap = event.snapshot()
        if self._is_foreign_subscription(account, event):
            return None
        try:
            plan = self._plan_for(event.price_id)
        except PriceUnmapped as exc:
            return self._status_only_unmapped(db, account, event, snap, exc)
        return plan_machine.change(db, account, plan, snap, event.event_id)

    def _on_subscription_deleted(self, db: Session, account: Account, event: SubscriptionDeleted):
        if self._is_foreign_subscription(account, event):
            return None
        return plan_machine.cancel(db, account, event.snapshot())

    def _on_invoice_paid(self, db: Session, account: Account, event: InvoicePaid):
        if not event.subscription_id:
            logger.info("billing.webhook.invoice_without_subscription", event_id=event.event_id)
            return None
        snap = SubscriptionSnapshot(
            customer_id=event.customer_id,
            subscription_id=event.subscription_id,
            status=event.status,
            price_id=event.price_id,
            period_start=event.period_start,
            period_end=event.period_end,
        )
        if event.billing_reason == "subscription_update":
            return plan_machine.status_only(db, account, snap)
        try:
            plan = self._plan_for(event.price_id)
        except PriceUnmapped as exc:
            return self._status_only_unmapped(db, account, event, snap, exc)
        if event.billing_reason == "subscription_create":
            return plan_machine.start(db, account, plan, snap, event.event_id)
        return plan_machine.renew(db, account, plan, snap, event.event_id, event.period_key)

    def _on_invoice_payment_failed(self, db: Session, account: Account, event: InvoicePaymentFailed):
        if not event.subscription_id:
            return None
        snap = SubscriptionSnapshot(
            customer_id=event.customer_id,
            subscription_id=event.subscription_id,
            status="past_due",
        )
        return plan_machine.status_only(db, account, snap)

    def _is_foreign_subscription(self, account: Account, event) -> bool:
        """An event for a subscription the account has since replaced."""
        if account.stripe_subscription_id and event.subscription_id \
                and account.stripe_subscription_id != event.subscription_id \
                and account.plan != Plan.NONE.value:
            logger.info("billing.webhook.foreign_subscription_ignored", event_id=event.event_id,
                        account_id=account.id, subscription_id=event.subscription_id,
                        current_subscription_id=account.stripe_subscription_id)
            return True
        return False


def get_webhook_processor() -> WebhookProcessor:
    return WebhookProcessor.from_settings()
