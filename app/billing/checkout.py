"""Outbound Stripe calls: plan checkout, credit top-up checkout, customer portal.

Every session carries the local account id in its metadata so the webhook
that follows can be resolved without a customer lookup.
"""

from __future__ import annotations

import stripe
import structlog
from sqlalchemy.orm import Session

from app.billing.accounts import Actor, ensure_account
from app.billing.errors import AccountNotFound, BillingNotConfigured, LedgerValidationError, ProviderError
from app.billing.events import ACCOUNT_METADATA_KEY
from app.billing.plans import Plan, PriceMap, coerce_plan
from app.core.db import run_in_transaction
from app.core.models import Account
from config.settings import Settings, get_settings

logger = structlog.get_logger()


def _get_stripe(settings: Settings):
    """Return the configured stripe module. Raises BillingNotConfigured without a secret key."""
    secret_key = (settings.stripe_key or "").strip()
    if not secret_key:
        raise BillingNotConfigured("STRIPE_KEY is not configured")
    stripe.api_key = secret_key
    return stripe


def _return_urls(settings: Settings, success_url: str = "", cancel_url: str = "") -> tuple[str, str]:
    base_url = (settings.host_url or "").rstrip("/")
    if not base_url and not (success_url and cancel_url):
        raise BillingNotConfigured("HOST_URL is not configured")
    return (
        success_url or f"{base_url}/pricing?success=true",
        cancel_url or f"{base_url}/pricing?canceled=true",
    )


def _get_or_create_stripe_customer(client, actor: Actor) -> tuple[int, str]:
    """Return ``(account_id, stripe_customer_id)``, creating the Stripe customer once."""

    def _read(db: Session) -> tuple[int, str | None]:
        account = ensure_account(db, actor)
        return account.id, account.stripe_customer_id

    account_id, customer_id = run_in_transaction(_read)
    if customer_id:
        return account_id, customer_id

    try:
        customer = client.Customer.create(
            email=actor.email,
            metadata={ACCOUNT_METADATA_KEY: str(account_id), "user_id": actor.user_id or ""},
            idempotency_key=f"customer-account-{account_id}",
        )
    except stripe.StripeError as exc:
        logger.error("billing.customer_create_failed", error=str(exc), account_id=account_id)
        raise ProviderError(str(exc)) from exc

    def _store(db: Session) -> str:
        account = db.query(Account).filter(Account.id == account_id).with_for_update().one()
        if not account.stripe_customer_id:
            account.stripe_customer_id = customer["id"]
        return account.stripe_customer_id

    return account_id, run_in_transaction(_store)


def create_plan_checkout(actor: Actor, plan: Plan | str, success_url: str = "", cancel_url: str = "") -> dict:
    """Checkout session for a monthly plan subscription."""
    if actor.is_anonymous:
        raise LedgerValidationError("plan checkout requires a signed-in user")
    settings = get_settings()
    target = coerce_plan(plan)
    if target is Plan.NONE:
        raise LedgerValidationError(f"unknown plan {plan!r}")
    price_id = PriceMap.from_settings(settings).price_for_plan(target)
    if not price_id:
        raise BillingNotConfigured(f"no Stripe price id configured for plan {target.value}")

    client = _get_stripe(settings)
    success, cancel = _return_urls(settings, success_url, cancel_url)
    account_id, customer_id = _get_or_create_stripe_customer(client, actor)
    metadata = {ACCOUNT_METADATA_KEY: str(account_id), "plan": target.value}
    try:
        session = client.checkout.Session.create(
            mode="subscription",
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success,
            cancel_url=cancel,
            client_reference_id=str(account_id),
            metadata=metadata,
            subscription_data={"metadata": metadata},
        )
    except stripe.StripeError as exc:
        logger.error("billing.checkout_session_failed", error=str(exc), account_id=account_id)
        raise ProviderError(str(exc)) from exc

    logger.info("billing.checkout_session_created", account_id=account_id, plan=target.value,
                session_id=session["id"])
    return {"id": session["id"], "url": session["url"]}


def topup_units(credits: int, settings: Settings | None = None) -> int:
    """Validate a top-up amount and return the number of purchasable units."""
    s = settings or get_settings()
    per_unit = s.topup_credits_per_unit
    if not isinstance(credits, int) or isinstance(credits, bool) or credits < per_unit:
        raise LedgerValidationError(f"top-up must be at least {per_unit} credits")
    if credits % per_unit != 0:
        raise LedgerValidationError(f"top-up credits must be a multiple of {per_unit}")
    units = credits // per_unit
    if units > s.topup_max_units:
        raise LedgerValidationError(f"top-up is limited to {s.topup_max_units * per_unit} credits")
    return units


def create_topup_checkout(actor: Actor, credits: int, success_url: str = "", cancel_url: str = "") -> dict:
    """One-off payment checkout; the credits are granted by the completed-checkout webhook."""
    if actor.is_anonymous:
        raise LedgerValidationError("top-up checkout requires a signed-in user")
    settings = get_settings()
    units = topup_units(credits, settings)
    price_id = (settings.stripe_topup_price_id or "").strip()
    if not price_id:
        raise BillingNotConfigured("STRIPE_TOPUP_PRICE_ID is not configured")

    client = _get_stripe(settings)
    success, cancel = _return_urls(settings, success_url, cancel_url)
    account_id, customer_id = _get_or_create_stripe_customer(client, actor)
    try:
        session = client.checkout.Session.create(
            mode="payment",
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": units}],
            success_url=success,
            cancel_url=cancel,
            client_reference_id=str(account_id),
            metadata={ACCOUNT_METADATA_KEY: str(account_id), "type": "topup", "credits": str(credits)},
        )
    except stripe.StripeError as exc:
        logger.error("billing.topup_session_failed", error=str(exc), account_id=account_id)
        raise ProviderError(str(exc)) from exc

    logger.info("billing.topup_session_created", account_id=account_id, credits=credits,
                session_id=session["id"])
    return {"id": session["id"], "url": session["url"]}


def create_portal_session(actor: Actor, return_url: str = "") -> dict:
    """Stripe customer portal for managing (upgrading, downgrading, canceling) the subscription."""
    settings = get_settings()
    client = _get_stripe(settings)

    def _customer(db: Session) -> str | None:
        return ensure_account(db, actor).stripe_customer_id

    customer_id = run_in_transaction(_customer)
    if not customer_id:
        raise AccountNotFound("no Stripe customer for this account; subscribe first")

    base_url = (settings.host_url or "").rstrip("/")
    try:
        portal = client.billing_portal.Session.create(
            customer=customer_id,
            return_url=return_url or f"{base_url}/pricing",
        )
    except stripe.StripeError as exc:
        logger.error("billing.portal_session_failed", error=str(exc))
        raise ProviderError(str(exc)) from exc
    return {"url": portal["url"]}
