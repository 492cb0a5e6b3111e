"""Checkout, top-up and portal sessions (Stripe SDK calls are patched)."""

from unittest.mock import MagicMock, patch

import pytest
from httpx import AsyncClient

from app.billing.accounts import Actor, get_account_id
from app.billing.checkout import topup_units
from app.billing.errors import LedgerValidationError
from app.core.auth import create_access_token


def _auth_header(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id=user_id, email=f'{user_id}@example.test')}"}


def _mock_stripe() -> MagicMock:
    mock = MagicMock()
    mock.Customer.create.return_value = {"id": "cus_new"}
    mock.checkout.Session.create.return_value = {"id": "cs_new", "url": "https://checkout.stripe.test/cs_new"}
    mock.billing_portal.Session.create.return_value = {"url": "https://billing.stripe.test/portal"}
    return mock


@pytest.mark.parametrize("credits,units", [(100, 1), (700, 7), (1500, 15)])
def test_topup_units(credits, units) -> None:
    assert topup_units(credits) == units


@pytest.mark.parametrize("credits", [0, 50, 150, 1600, -100])
def test_topup_units_rejects_invalid_amounts(credits) -> None:
    with pytest.raises(LedgerValidationError):
        topup_units(credits)


@pytest.mark.anyio
async def test_plans_are_public(client: AsyncClient) -> None:
    resp = await client.get("/billing/plans")

    assert resp.status_code == 200
    plans = {p["slug"]: p for p in resp.json()}
    assert set(plans) == {"starter", "plus", "pro"}
    assert plans["plus"]["stripe_price_id"] == "price_plus"
    assert plans["starter"]["monthly_credits"] == 300


@pytest.mark.anyio
async def test_checkout_requires_stripe_key(client: AsyncClient, monkeypatch) -> None:
    monkeypatch.setenv("STRIPE_KEY", "")
    resp = await client.post("/billing/checkout-session", json={"plan": "starter"}, headers=_auth_header("u-nokey"))
    assert resp.status_code == 402


@pytest.mark.anyio
async def test_checkout_requires_signed_in_user(client: AsyncClient) -> None:
    resp = await client.post("/billing/checkout-session", json={"plan": "starter"},
                             headers={"X-Anonymous-Id": "anon-1"})
    assert resp.status_code == 401


@pytest.mark.anyio
async def test_plan_checkout_carries_account_metadata(client: AsyncClient, monkeypatch, load_account) -> None:
    monkeypatch.setenv("STRIPE_KEY", "sk_test_123")
    mock = _mock_stripe()

    with patch("app.billing.checkout._get_stripe", return_value=mock):
        resp = await client.post("/billing/checkout-session", json={"plan": "plus"}, headers=_auth_header("u-co"))

    assert resp.status_code == 200
    assert resp.json() == {"url": "https://checkout.stripe.test/cs_new"}
    account_id = get_account_id(Actor(user_id="u-co"))
    kwargs = mock.checkout.Session.create.call_args.kwargs
    assert kwargs["mode"] == "subscription"
    assert kwargs["line_items"] == [{"price": "price_plus", "quantity": 1}]
    assert kwargs["metadata"] == {"account_id": str(account_id), "plan": "plus"}
    assert kwargs["subscription_data"]["metadata"]["account_id"] == str(account_id)
    assert load_account(account_id).stripe_customer_id == "cus_new"


@pytest.mark.anyio
async def test_unknown_plan_checkout_rejected(client: AsyncClient, monkeypatch) -> None:
    monkeypatch.setenv("STRIPE_KEY", "sk_test_123")
    with patch("app.billing.checkout._get_stripe", return_value=_mock_stripe()):
        resp = await client.post("/billing/checkout-session", json={"plan": "gold"}, headers=_auth_header("u-gold"))
    assert resp.status_code == 422


@pytest.mark.anyio
async def test_topup_checkout_quantity(client: AsyncClient, monkeypatch) -> None:
    mock = _mock_stripe()

    with patch("app.billing.checkout._get_stripe", return_value=mock):
        resp = await client.post("/billing/topup-session", json={"credits": 400}, headers=_auth_header("u-top"))

    assert resp.status_code == 200
    kwargs = mock.checkout.Session.create.call_args.kwargs
    assert kwargs["mode"] == "payment"
    assert kwargs["line_items"] == [{"price": "price_topup", "quantity": 4}]
    assert kwargs["metadata"]["credits"] == "400"


@pytest.mark.anyio
async def test_topup_checkout_rejects_partial_units(client: AsyncClient) -> None:
    with patch("app.billing.checkout._get_stripe", return_value=_mock_stripe()):
        resp = await client.post("/billing/topup-session", json={"credits": 250}, headers=_auth_header("u-part"))
    assert resp.status_code == 422


@pytest.mark.anyio
async def test_existing_customer_is_reused(client: AsyncClient, make_account) -> None:
    make_account(user_id="u-existing", stripe_customer_id="cus_existing")
    mock = _mock_stripe()

    with patch("app.billing.checkout._get_stripe", return_value=mock):
        await client.post("/billing/topup-session", json={"credits": 100}, headers=_auth_header("u-existing"))

    mock.Customer.create.assert_not_called()
    assert mock.checkout.Session.create.call_args.kwargs["customer"] == "cus_existing"


@pytest.mark.anyio
async def test_portal_without_customer_is_404(client: AsyncClient) -> None:
    with patch("app.billing.checkout._get_stripe", return_value=_mock_stripe()):
        resp = await client.post("/billing/customer-portal", headers=_auth_header("u-noportal"))
    assert resp.status_code == 404


@pytest.mark.anyio
async def test_portal_session(client: AsyncClient, make_account) -> None:
    make_account(user_id="u-portal", stripe_customer_id="cus_portal")
    mock = _mock_stripe()

    with patch("app.billing.checkout._get_stripe", return_value=mock):
        resp = await client.post("/billing/customer-portal", headers=_auth_header("u-portal"))

    assert resp.status_code == 200
    assert resp.json() == {"url": "https://billing.stripe.test/portal"}
    assert mock.billing_portal.Session.create.call_args.kwargs["customer"] == "cus_portal"
