"""Plan catalog: ranks, monthly allotments, usage costs and the price→plan table."""

from __future__ import annotations

import json
from enum import Enum

import structlog

from config.settings import Settings, get_settings

logger = structlog.get_logger()


class Plan(str, Enum):
    NONE = "none"
    STARTER = "starter"
    PLUS = "plus"
    PRO = "pro"


PLAN_RANK: dict[Plan, int] = {
    Plan.NONE: 0,
    Plan.STARTER: 1,
    Plan.PLUS: 2,
    Plan.PRO: 3,
}


def plan_rank(plan: Plan | str | None) -> int:
    return PLAN_RANK.get(coerce_plan(plan), 0)


def coerce_plan(value: Plan | str | None) -> Plan:
    """Map a stored plan value to the enum. Unknown / empty values read as NONE."""
    if isinstance(value, Plan):
        return value
    try:
        return Plan((value or "none").strip().lower())
    except ValueError:
        return Plan.NONE


def monthly_credits(plan: Plan | str | None, settings: Settings | None = None) -> int:
    s = settings or get_settings()
    allotments = {
        Plan.NONE: 0,
        Plan.STARTER: s.plan_credits_starter,
        Plan.PLUS: s.plan_credits_plus,
        Plan.PRO: s.plan_credits_pro,
    }
    return allotments[coerce_plan(plan)]


def upgrade_grant_amount(old_plan: Plan | str | None, new_plan: Plan | str | None,
                         settings: Settings | None = None) -> int:
    """Credits issued on an immediate upgrade.

    ``full`` grants the new plan's whole allotment, ``delta`` only the
    difference to the old plan's allotment.
    """
    s = settings or get_settings()
    new_amount = monthly_credits(new_plan, s)
    if (s.upgrade_grant_policy or "full").strip().lower() == "delta":
        return max(0, new_amount - monthly_credits(old_plan, s))
    return new_amount


# ── Price mapping ─────────────────────────────────────────────────────────────

def _parse_price_ids(raw: str) -> dict[str, str]:
    """Accept a JSON object or the loose ``plan:price,plan:price`` form."""
    raw = (raw or "").strip()
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
        if isinstance(parsed, dict):
            return {str(k): str(v) for k, v in parsed.items() if v}
    except ValueError:
        pass
    pairs: dict[str, str] = {}
    for segment in raw.strip("{}").split(","):
        parts = [p.strip().strip('"').strip("'") for p in segment.split(":")]
        if len(parts) == 2 and parts[0] and parts[1]:
            pairs[parts[0]] = parts[1]
    return pairs


class PriceMap:
    """Invertible plan↔price table (plan→price for checkout, price→plan for webhooks)."""

    def __init__(self, plan_to_price: dict[Plan, str]) -> None:
        self._plan_to_price = dict(plan_to_price)
        self._price_to_plan: dict[str, Plan] = {}
        for plan, price in self._plan_to_price.items():
            if price in self._price_to_plan:
                raise ValueError(f"price id {price!r} is mapped to more than one plan")
            self._price_to_plan[price] = plan

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "PriceMap":
        s = settings or get_settings()
        mapping: dict[Plan, str] = {}
        for key, price in _parse_price_ids(s.stripe_plan_price_ids).items():
            plan = coerce_plan(key)
            if plan is Plan.NONE:
                logger.warning("billing.config.price_map_unknown_plan", plan=key)
                continue
            mapping[plan] = price
        return cls(mapping)

    def plan_for_price(self, price_id: str | None) -> Plan | None:
        if not price_id:
            return None
        return self._price_to_plan.get(price_id)

    def price_for_plan(self, plan: Plan | str) -> str | None:
        return self._plan_to_price.get(coerce_plan(plan))

    def items(self):
        return self._plan_to_price.items()


def plan_catalog(settings: Settings | None = None) -> list[dict]:
    s = settings or get_settings()
    prices = PriceMap.from_settings(s)
    return [
        {
            "slug": plan.value,
            "rank": PLAN_RANK[plan],
            "monthly_credits": monthly_credits(plan, s),
            "stripe_price_id": prices.price_for_plan(plan),
        }
        for plan in Plan
        if plan is not Plan.NONE
    ]
