"""
Plan Catalogue - The fixed set of plans sold through the payment gateway.

NO DICTIONARIES - Plans are frozen dataclasses keyed by PlanType.
"""

from dataclasses import dataclass
from decimal import Decimal

from stampledger.models.api import PlanType


@dataclass(frozen=True)
class PlanConfig:
    """Credits granted by one purchase (or one cycle) of a plan."""

    plan_type: PlanType
    credits: int
    is_subscription: bool
    minimum_value: Decimal

    def __post_init__(self) -> None:
        if self.credits <= 0:
            raise ValueError(f"Plan credits must be positive: {self.credits}")


BASIC = PlanConfig(PlanType.BASIC, credits=1, is_subscription=False, minimum_value=Decimal("0"))
MONTHLY = PlanConfig(
    PlanType.MONTHLY, credits=5, is_subscription=True, minimum_value=Decimal("99")
)
PROFESSIONAL = PlanConfig(
    PlanType.PROFESSIONAL, credits=5, is_subscription=False, minimum_value=Decimal("149")
)

PLANS: tuple[PlanConfig, ...] = (BASIC, PROFESSIONAL, MONTHLY)


def get_plan(plan_type: str | PlanType | None) -> PlanConfig:
    """Look up a plan; unknown names grant the single-credit plan."""
    for plan in PLANS:
        if plan.plan_type == plan_type:
            return plan
    return BASIC


def plan_for_value(value: Decimal) -> PlanConfig:
    """
    Infer the plan from a charged value when no local payment record exists.

    Highest threshold first: >=149 PROFESSIONAL, >=99 MONTHLY, otherwise BASIC.
    """
    for plan in sorted(PLANS, key=lambda p: p.minimum_value, reverse=True):
        if value >= plan.minimum_value:
            return plan
    return BASIC
