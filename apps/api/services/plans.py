"""Purchasable credit packs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from config import settings
from services.errors import InvalidPurchase, UnknownPlan


CUSTOM_PLAN_ID = "custom"


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    credits: int
    price: float
    description: str = ""

    @property
    def price_per_credit(self) -> float:
        return round(self.price / self.credits, 4) if self.credits else 0.0

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "credits": self.credits,
            "price": self.price,
            "price_per_credit": self.price_per_credit,
            "description": self.description,
        }


DEFAULT_PLANS: Dict[str, Plan] = {
    plan.id: plan
    for plan in (
        Plan("starter", "Starter", 25, 9.00, "Good for trying things out"),
        Plan("pro", "Pro", 100, 30.00, "For growing stores"),
        Plan("business", "Business", 500, 140.00, "For high volumes"),
        Plan("enterprise", "Enterprise", 2000, 500.00, "Lowest per-credit price"),
    )
}


def resolve_plan(
    plan_id: str,
    *,
    custom_credits: Optional[int] = None,
    catalog: Optional[Mapping[str, Plan]] = None,
) -> Plan:
    """Return the plan for ``plan_id``, pricing custom packs on the fly."""
    plans = DEFAULT_PLANS if catalog is None else catalog
    normalized = (plan_id or "").strip().lower()

    if normalized == CUSTOM_PLAN_ID:
        minimum = int(settings.CUSTOM_PACK_MIN_CREDITS)
        credits = int(custom_credits or 0)
        if credits < minimum:
            raise InvalidPurchase(f"Custom packs start at {minimum} credits.")
        return Plan(
            CUSTOM_PLAN_ID,
            "Custom",
            credits,
            round(credits * float(settings.CUSTOM_PACK_PRICE_PER_CREDIT), 2),
        )

    plan = plans.get(normalized)
    if plan is None:
        raise UnknownPlan(plan_id)
    return plan
