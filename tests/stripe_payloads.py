"""Stripe payload builders shared by the webhook tests."""

import hashlib
import hmac
import json
import os
import time

WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "whsec_test_secret_1234567890abcdef")


def fake_stripe_signature(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Generate a valid Stripe-Signature header value for test payloads."""
    ts = timestamp or int(time.time())
    signed_payload = f"{ts}.{payload.decode()}"
    mac = hmac.new(secret.encode(), signed_payload.encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={mac}"


def stripe_event(event_type: str, obj: dict, event_id: str, previous_attributes: dict | None = None) -> bytes:
    data = {"object": obj}
    if previous_attributes is not None:
        data["previous_attributes"] = previous_attributes
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "data": data,
    }).encode()


def subscription_object(
    account_id: int | None,
    price_id: str,
    *,
    subscription_id: str = "sub_1",
    customer_id: str = "cus_1",
    status: str = "active",
    period_start: int = 1_790_000_000,
    period_end: int = 1_792_592_000,
) -> dict:
    metadata = {"account_id": str(account_id)} if account_id is not None else {}
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer_id,
        "status": status,
        "metadata": metadata,
        "current_period_start": period_start,
        "current_period_end": period_end,
        "items": {"data": [{"id": "si_1", "price": {"id": price_id}}]},
    }


def invoice_object(
    account_id: int | None,
    price_id: str,
    *,
    billing_reason: str = "subscription_cycle",
    subscription_id: str = "sub_1",
    customer_id: str = "cus_1",
    period_start: int = 1_792_592_000,
    period_end: int = 1_795_184_000,
) -> dict:
    metadata = {"account_id": str(account_id)} if account_id is not None else {}
    return {
        "id": f"in_{period_end}",
        "object": "invoice",
        "customer": customer_id,
        "subscription": subscription_id,
        "status": "paid",
        "billing_reason": billing_reason,
        "subscription_details": {"metadata": metadata},
        "lines": {"data": [{
            "price": {"id": price_id},
            "period": {"start": period_start, "end": period_end},
        }]},
    }
