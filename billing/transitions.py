# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.
"""Plan state machine.

``resolve_transition`` is pure: it never touches Stripe or the database, so
every row of the table below can be checked in isolation.

    current  target   credits  new plan
    FREE     BASIC    +10000   BASIC
    FREE     PRO      +20000   PRO
    BASIC    PRO      +20000   PRO
    any      same     0        unchanged
    any      (cancel) 0        FREE, subscription cleared

Anything else (PRO to BASIC, or a paid event targeting FREE) is rejected.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from billing.errors import UnsupportedTransition
from billing.events import EventKind
from utils.plans import PlanType, plan_credits


@dataclass(frozen=True)
class Transition:
    from_plan: PlanType
    new_plan: PlanType
    credit_delta: int
    clear_subscription: bool = False

    @property
    def is_noop(self) -> bool:
        return not self.clear_subscription and self.from_plan == self.new_plan


_UPGRADES: Dict[Tuple[PlanType, PlanType], int] = {
    (PlanType.FREE, PlanType.BASIC): plan_credits(PlanType.BASIC),
    (PlanType.FREE, PlanType.PRO): plan_credits(PlanType.PRO),
    (PlanType.BASIC, PlanType.PRO): plan_credits(PlanType.PRO),
}


def is_cancellation(kind: Optional[EventKind]) -> bool:
    return kind == EventKind.SUBSCRIPTION_DELETED


def resolve_transition(
    current_plan: PlanType,
    incoming_plan: Optional[PlanType],
    kind: Optional[EventKind],
) -> Transition:
    if is_cancellation(kind):
        return Transition(
            from_plan=current_plan,
            new_plan=PlanType.FREE,
            credit_delta=0,
            clear_subscription=True,
        )

    if incoming_plan is None:
        raise UnsupportedTransition(current_plan.value, "UNKNOWN", "target plan is unknown")

    if incoming_plan == current_plan:
        return Transition(from_plan=current_plan, new_plan=current_plan, credit_delta=0)

    credit_delta = _UPGRADES.get((current_plan, incoming_plan))
    if credit_delta is None:
        if incoming_plan == PlanType.FREE:
            reason = "only a cancellation can move a user to FREE"
        else:
            reason = "downgrades are not supported"
        raise UnsupportedTransition(current_plan.value, incoming_plan.value, reason)

    return Transition(from_plan=current_plan, new_plan=incoming_plan, credit_delta=credit_delta)


def is_supported_checkout(current_plan: PlanType, target_plan: PlanType) -> bool:
    """True when buying ``target_plan`` from ``current_plan`` would grant credits."""
    return (current_plan, target_plan) in _UPGRADES
