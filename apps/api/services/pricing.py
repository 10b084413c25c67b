"""Membership plan catalogue and credit grant rules."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Literal, Optional, Tuple

BillingCycle = Literal["monthly", "yearly"]

REGION_CURRENCY = {"CN": "CNY", "INTL": "USD"}


@dataclass(frozen=True)
class MembershipPlan:
    id: str
    name: str
    tier: str
    monthly_price: Dict[str, Decimal]
    yearly_price: Dict[str, Decimal]
    credits_per_month: int
    credits_per_year: Optional[int] = None
    region_credits_per_month: Dict[str, int] = field(default_factory=dict)
    features: List[str] = field(default_factory=list)
    popular: bool = False


MEMBERSHIP_PLANS: List[MembershipPlan] = [
    MembershipPlan(
        id="basic",
        name="Basic",
        tier="basic",
        monthly_price={"CN": Decimal("29.00"), "INTL": Decimal("4.99")},
        yearly_price={"CN": Decimal("299.00"), "INTL": Decimal("49.99")},
        credits_per_month=300,
        features=["Core tools", "Email support", "Monthly credits refresh"],
    ),
    MembershipPlan(
        id="pro",
        name="Pro",
        tier="pro",
        monthly_price={"CN": Decimal("69.00"), "INTL": Decimal("9.99")},
        yearly_price={"CN": Decimal("699.00"), "INTL": Decimal("99.99")},
        credits_per_month=900,
        features=["All Basic features", "Priority queue", "Advanced tools"],
        popular=True,
    ),
    MembershipPlan(
        id="business",
        name="Business",
        tier="business",
        monthly_price={"CN": Decimal("199.00"), "INTL": Decimal("29.99")},
        yearly_price={"CN": Decimal("1999.00"), "INTL": Decimal("299.99")},
        credits_per_month=2800,
        features=["All Pro features", "Higher throughput", "Priority support"],
    ),
]


def normalize_billing_cycle(value: Optional[str]) -> BillingCycle:
    if str(value or "").strip().lower() == "yearly":
        return "yearly"
    return "monthly"


def plan_by_id(
    plan_id: Optional[str],
    plans: Optional[List[MembershipPlan]] = None,
) -> Optional[MembershipPlan]:
    """Look a plan up by id or tier, case-insensitively."""
    normalized = str(plan_id or "").strip().lower()
    if not normalized:
        return None
    for plan in plans if plans is not None else MEMBERSHIP_PLANS:
        if plan.id == normalized or plan.tier == normalized:
            return plan
    return None


def credits_for_plan(plan: MembershipPlan, billing_cycle: str, region: str = "INTL") -> int:
    """
    Credits granted for one purchase of ``plan``.

    The yearly grant is twelve monthly grants unless the plan sets
    ``credits_per_year``. A region override replaces the monthly base.
    """
    cycle = normalize_billing_cycle(billing_cycle)
    monthly = int(plan.region_credits_per_month.get(region, plan.credits_per_month))
    if cycle == "yearly":
        if plan.credits_per_year is not None:
            return int(plan.credits_per_year)
        return monthly * 12
    return monthly


def price_for_plan(plan: MembershipPlan, billing_cycle: str, region: str) -> Tuple[Decimal, str]:
    cycle = normalize_billing_cycle(billing_cycle)
    table = plan.yearly_price if cycle == "yearly" else plan.monthly_price
    currency = REGION_CURRENCY.get(region, "USD")
    return table.get(region, Decimal("0")), currency


def list_plans(region: str) -> List[Dict[str, object]]:
    payload = []
    for plan in MEMBERSHIP_PLANS:
        monthly_amount, currency = price_for_plan(plan, "monthly", region)
        yearly_amount, _ = price_for_plan(plan, "yearly", region)
        payload.append(
            {
                "id": plan.id,
                "name": plan.name,
                "tier": plan.tier,
                "currency": currency,
                "monthly_price": str(monthly_amount),
                "yearly_price": str(yearly_amount),
                "monthly_credits": credits_for_plan(plan, "monthly", region),
                "yearly_credits": credits_for_plan(plan, "yearly", region),
                "features": list(plan.features),
                "popular": plan.popular,
            }
        )
    return payload
