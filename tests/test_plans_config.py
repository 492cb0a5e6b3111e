"""Plan catalog, price mapping and upgrade grant policy."""

import pytest

from app.billing.plans import (
    Plan,
    PriceMap,
    coerce_plan,
    monthly_credits,
    plan_catalog,
    plan_rank,
    upgrade_grant_amount,
)
from config.settings import Settings


def test_rank_order() -> None:
    assert plan_rank("none") < plan_rank("starter") < plan_rank("plus") < plan_rank("pro")
    assert plan_rank("mystery") == 0


def test_coerce_plan() -> None:
    assert coerce_plan(" Pro ") is Plan.PRO
    assert coerce_plan("") is Plan.NONE
    assert coerce_plan(None) is Plan.NONE


def test_monthly_credits_from_settings() -> None:
    s = Settings(plan_credits_starter=10, plan_credits_plus=20, plan_credits_pro=30)
    assert monthly_credits("starter", s) == 10
    assert monthly_credits("pro", s) == 30
    assert monthly_credits("none", s) == 0


@pytest.mark.parametrize("policy,expected", [("full", 1600), ("delta", 1300), ("DELTA", 1300)])
def test_upgrade_grant_policy(policy, expected) -> None:
    s = Settings(upgrade_grant_policy=policy)
    assert upgrade_grant_amount("starter", "pro", s) == expected


@pytest.mark.parametrize("raw", [
    '{"starter": "price_a", "plus": "price_b"}',
    "starter:price_a,plus:price_b",
    "{starter:price_a, plus:price_b}",
])
def test_price_map_formats(raw) -> None:
    prices = PriceMap.from_settings(Settings(stripe_plan_price_ids=raw))
    assert prices.plan_for_price("price_a") is Plan.STARTER
    assert prices.price_for_plan("plus") == "price_b"
    assert prices.plan_for_price("price_z") is None
    assert prices.plan_for_price(None) is None


def test_price_map_skips_unknown_plans() -> None:
    prices = PriceMap.from_settings(Settings(stripe_plan_price_ids='{"gold": "price_g", "pro": "price_p"}'))
    assert prices.plan_for_price("price_g") is None
    assert dict(prices.items()) == {Plan.PRO: "price_p"}


def test_price_map_rejects_shared_price() -> None:
    with pytest.raises(ValueError):
        PriceMap({Plan.STARTER: "price_same", Plan.PLUS: "price_same"})


def test_plan_catalog() -> None:
    catalog = plan_catalog(Settings(stripe_plan_price_ids="starter:price_s"))
    assert [p["slug"] for p in catalog] == ["starter", "plus", "pro"]
    assert catalog[0]["stripe_price_id"] == "price_s"
    assert catalog[1]["stripe_price_id"] is None
    assert catalog[2]["monthly_credits"] == 1600
