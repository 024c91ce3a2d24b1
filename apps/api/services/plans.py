"""Plan policy: monthly allowance and grant cap per plan."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from config import settings


class Plan(str, Enum):
    FREE = "free"
    PRO = "pro"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class PlanPolicy:
    monthly_credits: int
    max_credits: int


def plan_policies() -> Dict[Plan, PlanPolicy]:
    return {
        Plan.FREE: PlanPolicy(
            monthly_credits=max(int(settings.FREE_MONTHLY_CREDITS), 0),
            max_credits=max(int(settings.FREE_MAX_CREDITS), 0),
        ),
        Plan.PRO: PlanPolicy(
            monthly_credits=max(int(settings.PRO_MONTHLY_CREDITS), 0),
            max_credits=max(int(settings.PRO_MAX_CREDITS), 0),
        ),
    }


def get_plan_policy(plan: Optional[str]) -> PlanPolicy:
    """Return the policy for ``plan``; unknown values fall back to free."""
    policies = plan_policies()
    try:
        return policies[Plan(plan)]
    except ValueError:
        return policies[Plan.FREE]


def parse_plan(value: Optional[str]) -> Optional[Plan]:
    try:
        return Plan(str(value or "").strip().lower())
    except ValueError:
        return None


def subscription_plan_for_product(product_id: str) -> Optional[Plan]:
    return parse_plan(settings.SUBSCRIPTION_PRODUCTS.get(product_id))


def topup_credits_for_product(product_id: str) -> Optional[int]:
    credits = settings.TOPUP_PRODUCTS.get(product_id)
    if credits is None or int(credits) <= 0:
        return None
    return int(credits)
