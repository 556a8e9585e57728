from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional


class PlanType(str, Enum):
    FREE = "FREE"
    BASIC = "BASIC"
    PRO = "PRO"


@dataclass(frozen=True)
class PlanDefinition:
    key: PlanType
    name: str
    credits: int


# Credits granted when a user moves onto the plan. Checkout and reconciliation
# both read this table.
PLAN_CATALOG: Dict[PlanType, PlanDefinition] = {
    PlanType.BASIC: PlanDefinition(key=PlanType.BASIC, name="Basic", credits=10_000),
    PlanType.PRO: PlanDefinition(key=PlanType.PRO, name="Pro", credits=20_000),
}


def parse_plan(value: object) -> Optional[PlanType]:
    """Return the plan named by ``value`` or None when it is not a known plan."""
    if isinstance(value, PlanType):
        return value
    if not isinstance(value, str):
        return None
    try:
        return PlanType(value.strip().upper())
    except ValueError:
        return None


def get_paid_plan(plan_key: str) -> PlanDefinition:
    plan = parse_plan(plan_key)
    if plan is None or plan not in PLAN_CATALOG:
        valid_keys = ", ".join(p.value for p in PLAN_CATALOG)
        raise ValueError(f"Unknown plan '{plan_key}'. Valid plans: {valid_keys}")
    return PLAN_CATALOG[plan]


def plan_credits(plan: PlanType) -> int:
    definition = PLAN_CATALOG.get(plan)
    return definition.credits if definition else 0
