"""
Plan catalog.

Static mapping of paid plan ids to their Stripe price and duration.
Price ids come from settings so test/live keys can use different prices.
"""
from dataclasses import dataclass
from typing import Dict, Optional

from bookshelf.core.config import settings
from bookshelf.core.errors import InvalidPlanError


@dataclass(frozen=True)
class PlanEntry:
    plan_id: str
    price_ref: str
    duration_months: int


# plan_id -> duration in months
PLAN_DURATIONS: Dict[str, int] = {
    "explorer": 3,
    "traveler": 6,
    "devourer": 12,
}


def _price_refs() -> Dict[str, str]:
    return {
        "explorer": settings.STRIPE_PRICE_EXPLORER,
        "traveler": settings.STRIPE_PRICE_TRAVELER,
        "devourer": settings.STRIPE_PRICE_DEVOURER,
    }


def is_known_plan(plan_id: Optional[str]) -> bool:
    return plan_id in PLAN_DURATIONS


def get_plan(plan_id: Optional[str]) -> PlanEntry:
    """Look up a catalog entry, raising InvalidPlanError for unknown ids."""
    if not is_known_plan(plan_id):
        raise InvalidPlanError(
            f"Invalid plan: {plan_id!r}. Use one of: {', '.join(PLAN_DURATIONS)}"
        )
    return PlanEntry(
        plan_id=plan_id,
        price_ref=_price_refs()[plan_id],
        duration_months=PLAN_DURATIONS[plan_id],
    )


def plan_for_price(price_ref: Optional[str]) -> Optional[str]:
    """Map a Stripe price id back to the internal plan id."""
    for plan_id, ref in _price_refs().items():
        if ref == price_ref:
            return plan_id
    return None
