from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from dotenv import load_dotenv

from utils.plans import PlanType


class ResubscribePolicy(str, Enum):
    # A new subscription after cancellation is a new transition and is granted.
    GRANT = "grant"
    # Re-subscribing to a plan that was granted before restores the plan only.
    PLAN_ONLY = "plan_only"


def _load_int(name: str, default: int, minimum: int = 0) -> int:
    raw_value = os.getenv(name)
    if not raw_value:
        return default
    try:
        parsed = int(raw_value)
    except ValueError:
        return default
    return max(parsed, minimum)


def _load_policy(raw_value: Optional[str]) -> ResubscribePolicy:
    if not raw_value:
        return ResubscribePolicy.GRANT
    try:
        return ResubscribePolicy(raw_value.strip().lower())
    except ValueError:
        return ResubscribePolicy.GRANT


@dataclass(frozen=True)
class BillingSettings:
    stripe_secret_key: Optional[str]
    stripe_webhook_secret: Optional[str]
    price_ids: Dict[PlanType, str]
    app_base_url: str
    webhook_tolerance: int = 300
    signup_credits: int = 1000
    resubscribe_policy: ResubscribePolicy = ResubscribePolicy.GRANT

    def price_for(self, plan: PlanType) -> Optional[str]:
        return self.price_ids.get(plan) or None

    def plan_for_price(self, price_id: Optional[str]) -> Optional[PlanType]:
        if not price_id:
            return None
        for plan, configured in self.price_ids.items():
            if configured and configured == price_id:
                return plan
        return None

    @property
    def success_url(self) -> str:
        return f"{self.app_base_url}/settings?success=true&session_id={{CHECKOUT_SESSION_ID}}"

    @property
    def cancel_url(self) -> str:
        return f"{self.app_base_url}/settings?canceled=true"

    @property
    def portal_return_url(self) -> str:
        return f"{self.app_base_url}/settings"


def load_settings() -> BillingSettings:
    """Read billing configuration from the environment (and ``.env`` if present)."""
    load_dotenv()
    price_ids = {
        PlanType.BASIC: os.getenv("STRIPE_PRICE_BASIC", ""),
        PlanType.PRO: os.getenv("STRIPE_PRICE_PRO", ""),
    }
    return BillingSettings(
        stripe_secret_key=os.getenv("STRIPE_SECRET_KEY") or None,
        stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET") or None,
        price_ids=price_ids,
        app_base_url=os.getenv("APP_BASE_URL", "http://localhost:3000").rstrip("/"),
        webhook_tolerance=_load_int("STRIPE_WEBHOOK_TOLERANCE", 300, minimum=1),
        signup_credits=_load_int("SIGNUP_CREDITS", 1000),
        resubscribe_policy=_load_policy(os.getenv("RESUBSCRIBE_POLICY")),
    )
