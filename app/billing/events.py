"""Provider event classification.

Raw Stripe payloads are mapped onto a closed set of variants, each carrying
only what its handler needs. Anything outside the set classifies as ``None``
and is acknowledged without side effects, so an unexpected event shape can
never reach a ledger.

Stripe event types handled:
    checkout.session.completed       → CheckoutCompleted
    customer.subscription.created    → SubscriptionCreated
    customer.subscription.updated    → SubscriptionUpdated
    customer.subscription.deleted    → SubscriptionDeleted
    invoice.paid / .payment_succeeded → InvoicePaid
    invoice.payment_failed           → InvoicePaymentFailed
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from app.billing.errors import MalformedEvent
from app.billing.plan_machine import SubscriptionSnapshot

ACCOUNT_METADATA_KEY = "account_id"


# ── Variants ───────────────────────────────────────────────────────────────────

class _EventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str
    account_ref: Optional[str] = None
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    status: Optional[str] = None


class CheckoutCompleted(_EventBase):
    kind: Literal["checkout_completed"] = "checkout_completed"
    mode: str  # "payment" (top-up) | "subscription"
    plan: Optional[str] = None
    credits: Optional[int] = None
    payment_status: Optional[str] = None


class _SubscriptionFields(_EventBase):
    price_id: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None

    def snapshot(self) -> SubscriptionSnapshot:
        return SubscriptionSnapshot(
            customer_id=self.customer_id,
            subscription_id=self.subscription_id,
            status=self.status,
            price_id=self.price_id,
            period_start=self.period_start,
            period_end=self.period_end,
        )


class SubscriptionCreated(_SubscriptionFields):
    kind: Literal["subscription_created"] = "subscription_created"


class SubscriptionUpdated(_SubscriptionFields):
    kind: Literal["subscription_updated"] = "subscription_updated"
    previous_price_id: Optional[str] = None


class SubscriptionDeleted(_SubscriptionFields):
    kind: Literal["subscription_deleted"] = "subscription_deleted"


class InvoicePaid(_SubscriptionFields):
    kind: Literal["invoice_paid"] = "invoice_paid"
    billing_reason: Optional[str] = None
    period_key: Optional[str] = None


class InvoicePaymentFailed(_SubscriptionFields):
    kind: Literal["invoice_payment_failed"] = "invoice_payment_failed"


BillingEvent = Annotated[
    Union[
        CheckoutCompleted,
        SubscriptionCreated,
        SubscriptionUpdated,
        SubscriptionDeleted,
        InvoicePaid,
        InvoicePaymentFailed,
    ],
    Field(discriminator="kind"),
]


# ── Field extraction ──────────────────────────────────────────────────────────

def _ref(value: Any) -> str | None:
    """Stripe references are ids, or expanded objects carrying an ``id``."""
    if isinstance(value, str) and value:
        return value
    if isinstance(value, dict):
        return value.get("id") or None
    return None


def _ts(value: Any) -> datetime | None:
    if isinstance(value, (int, float)) and value > 0:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return None


def _meta(obj: dict) -> dict:
    meta = obj.get("metadata")
    return meta if isinstance(meta, dict) else {}


def _int_or_none(value: Any) -> int | None:
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return number


def _first_item(obj: dict) -> dict:
    data = (obj.get("items") or {}).get("data") or []
    return data[0] if data and isinstance(data[0], dict) else {}


def _subscription_fields(obj: dict) -> dict:
    item = _first_item(obj)
    # Newer API versions moved the period onto the subscription item.
    period_start = obj.get("current_period_start") or item.get("current_period_start")
    period_end = obj.get("current_period_end") or item.get("current_period_end")
    return {
        "account_ref": _meta(obj).get(ACCOUNT_METADATA_KEY),
        "customer_id": _ref(obj.get("customer")),
        "subscription_id": _ref(obj.get("id")),
        "status": obj.get("status"),
        "price_id": _ref(item.get("price")),
        "period_start": _ts(period_start),
        "period_end": _ts(period_end),
    }


def _is_proration(line: dict) -> bool:
    item_details = ((line.get("parent") or {}).get("subscription_item_details")) or {}
    return bool(line.get("proration") or item_details.get("proration"))


def _subscription_line(obj: dict) -> dict:
    """The invoice line billing the subscription's price for the new period.

    Cycle invoices list pending proration items (old plan included) ahead of it.
    """
    lines = [line for line in (obj.get("lines") or {}).get("data") or [] if isinstance(line, dict)]
    for line in lines:
        if not _is_proration(line):
            return line
    return lines[0] if lines else {}


def _invoice_fields(obj: dict) -> dict:
    parent_details = ((obj.get("parent") or {}).get("subscription_details")) or {}
    legacy_details = obj.get("subscription_details") or {}
    line = _subscription_line(obj)

    price_id = _ref(line.get("price"))
    if not price_id:
        price_id = _ref(((line.get("pricing") or {}).get("price_details") or {}).get("price"))

    line_period = line.get("period") or {}
    period_start = _ts(line_period.get("start")) or _ts(obj.get("period_start"))
    period_end = _ts(line_period.get("end")) or _ts(obj.get("period_end"))

    account_ref = (
        _meta(obj).get(ACCOUNT_METADATA_KEY)
        or _meta(parent_details).get(ACCOUNT_METADATA_KEY)
        or _meta(legacy_details).get(ACCOUNT_METADATA_KEY)
    )
    subscription_id = _ref(obj.get("subscription")) or _ref(parent_details.get("subscription"))
    return {
        "account_ref": account_ref,
        "customer_id": _ref(obj.get("customer")),
        "subscription_id": subscription_id,
        # The invoice's own status ("paid", "open") says nothing about the subscription.
        "status": None,
        "price_id": price_id,
        "period_start": period_start,
        "period_end": period_end,
    }


def _period_key(fields: dict) -> str | None:
    end = fields.get("period_end")
    if end is None:
        return None
    return str(int(end.timestamp()))


# ── Classification ────────────────────────────────────────────────────────────

def parse_payload(payload: bytes | str) -> dict:
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8")
    try:
        event = json.loads(payload)
    except ValueError as exc:
        raise MalformedEvent(f"payload is not valid JSON: {exc}") from exc
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise MalformedEvent("payload is missing id/type")
    return event


def classify(event: dict) -> BillingEvent | None:
    """Map a verified Stripe event onto its variant, or None when not handled."""
    event_type = event.get("type", "")
    event_id = event["id"]
    data = event.get("data") or {}
    obj = data.get("object") or {}
    if not isinstance(obj, dict):
        raise MalformedEvent(f"event {event_id} has no data.object")

    if event_type == "checkout.session.completed":
        meta = _meta(obj)
        return CheckoutCompleted(
            event_id=event_id,
            mode=obj.get("mode") or "",
            account_ref=meta.get(ACCOUNT_METADATA_KEY) or obj.get("client_reference_id"),
            customer_id=_ref(obj.get("customer")),
            subscription_id=_ref(obj.get("subscription")),
            status=None,
            plan=meta.get("plan"),
            credits=_int_or_none(meta.get("credits")),
            payment_status=obj.get("payment_status"),
        )

    if event_type == "customer.subscription.created":
        return SubscriptionCreated(event_id=event_id, **_subscription_fields(obj))

    if event_type == "customer.subscription.updated":
        previous = data.get("previous_attributes") or {}
        previous_items = (previous.get("items") or {}).get("data") or []
        previous_price = _ref(previous_items[0].get("price")) if previous_items else None
        return SubscriptionUpdated(event_id=event_id, previous_price_id=previous_price,
                                   **_subscription_fields(obj))

    if event_type == "customer.subscription.deleted":
        return SubscriptionDeleted(event_id=event_id, **_subscription_fields(obj))

    if event_type in ("invoice.paid", "invoice.payment_succeeded"):
        fields = _invoice_fields(obj)
        return InvoicePaid(event_id=event_id, billing_reason=obj.get("billing_reason"),
                           period_key=_period_key(fields), **fields)

    if event_type == "invoice.payment_failed":
        return InvoicePaymentFailed(event_id=event_id, **_invoice_fields(obj))

    return None
