"""app/gateway/routers/billing.py — Stripe Checkout, Portal and Webhook.

Endpoints:
    GET  /billing/plans                → public plan catalog
    POST /billing/checkout-session     → Stripe Checkout Session (plan subscription)
    POST /billing/topup-session        → Stripe Checkout Session (one-off credit top-up)
    POST /billing/customer-portal      → Stripe Customer Portal Session
    POST /stripe, /billing/webhook     → Stripe Webhook (signature verified)

Webhook responses:
    200 → processed, including duplicates, ignored types and dropped events
    400 → bad signature, malformed payload, or a processing failure (Stripe retries)
"""
from __future__ import annotations

import json as _json
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from app.billing.accounts import Actor
from app.billing.checkout import create_plan_checkout, create_portal_session, create_topup_checkout
from app.billing.errors import (
    AccountNotFound,
    BillingError,
    BillingNotConfigured,
    LedgerValidationError,
    MalformedEvent,
    ProviderError,
    SignatureInvalid,
)
from app.billing.plans import plan_catalog
from app.billing.webhook import get_webhook_processor
from app.core.auth import get_current_user

logger = structlog.get_logger()

router = APIRouter()


def _http_error(exc: BillingError) -> HTTPException:
    if isinstance(exc, BillingNotConfigured):
        return HTTPException(status_code=402, detail=str(exc))
    if isinstance(exc, AccountNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, LedgerValidationError):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, ProviderError):
        return HTTPException(status_code=502, detail=f"Stripe error: {exc}")
    return HTTPException(status_code=400, detail=str(exc))


# ── Public Endpoints ───────────────────────────────────────────────────────────

@router.get("/billing/plans")
async def list_plans() -> list[dict[str, Any]]:
    return plan_catalog()


class CheckoutRequest(BaseModel):
    plan: str
    success_url: str = ""
    cancel_url: str = ""


class TopupRequest(BaseModel):
    credits: int
    success_url: str = ""
    cancel_url: str = ""


@router.post("/billing/checkout-session")
async def create_checkout_session(
    req: CheckoutRequest,
    user: Actor = Depends(get_current_user),
) -> dict[str, str]:
    """Creates a Stripe Checkout Session for a plan subscription."""
    try:
        session = await run_in_threadpool(create_plan_checkout, user, req.plan, req.success_url, req.cancel_url)
    except BillingError as exc:
        raise _http_error(exc)
    return {"url": session["url"]}


@router.post("/billing/topup-session")
async def create_topup_session(
    req: TopupRequest,
    user: Actor = Depends(get_current_user),
) -> dict[str, str]:
    """Creates a Stripe Checkout Session for a credit top-up."""
    try:
        session = await run_in_threadpool(create_topup_checkout, user, req.credits, req.success_url, req.cancel_url)
    except BillingError as exc:
        raise _http_error(exc)
    return {"url": session["url"]}


@router.post("/billing/customer-portal")
async def create_customer_portal(
    user: Actor = Depends(get_current_user),
) -> dict[str, str]:
    try:
        portal = await run_in_threadpool(create_portal_session, user)
    except BillingError as exc:
        raise _http_error(exc)
    return {"url": portal["url"]}


# ── Webhook ────────────────────────────────────────────────────────────────────

@router.post("/stripe", include_in_schema=False)
@router.post("/billing/webhook", include_in_schema=False)
async def stripe_webhook(request: Request) -> Response:
    """Stripe Webhook — signature verified over the raw body."""
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")
    processor = get_webhook_processor()

    try:
        outcome = await run_in_threadpool(processor.handle, payload, sig_header)
    except SignatureInvalid:
        return Response(content="invalid signature", status_code=400)
    except MalformedEvent as exc:
        logger.warning("billing.webhook.malformed", error=str(exc))
        return Response(content="invalid payload", status_code=400)
    except Exception as exc:
        logger.error("billing.webhook.handler_error", error=str(exc), exc_info=True)
        return Response(content="webhook processing failed", status_code=400)

    return Response(
        content=_json.dumps({"received": True, "outcome": outcome.outcome}),
        status_code=200,
        media_type="application/json",
    )
