# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.
from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterator, Optional

from sqlalchemy.orm import Session

from billing.errors import UnresolvableIntent
from billing.refs import coerce_id, get_field, get_path, metadata_of, subscription_ref, to_int
from database.crud import get_user_by_customer_id
from database.models import UserAccount
from utils.logger import get_logger
from utils.plans import PlanType, parse_plan, plan_credits

logger = get_logger("billing.metadata")

META_USER_ID = "user_id"
META_PLAN = "plan"
META_CREDITS = "credits"
META_PREVIOUS_PLAN = "previous_plan"
META_PREVIOUS_CREDITS = "previous_credits"


class IntentSource(str, Enum):
    PRIMARY = "primary_metadata"
    SUBSCRIPTION = "subscription_metadata"
    CHECKOUT_SESSION = "checkout_session_metadata"
    CUSTOMER = "customer_lookup"


@dataclass(frozen=True)
class CheckoutIntent:
    user_id: Optional[int]
    target_plan: Optional[PlanType]
    credit_grant: int
    source: IntentSource
    previous_plan: Optional[PlanType] = None
    previous_credits: Optional[int] = None

    @property
    def is_complete(self) -> bool:
        return self.user_id is not None and self.target_plan is not None


def build_session_metadata(user: UserAccount, plan: PlanType) -> Dict[str, str]:
    """Intent attached to a checkout session at creation time."""
    return {
        META_USER_ID: str(user.id),
        META_PLAN: plan.value,
        META_CREDITS: str(plan_credits(plan)),
        META_PREVIOUS_PLAN: user.plan_type or PlanType.FREE.value,
        META_PREVIOUS_CREDITS: str(user.credits),
    }


def build_subscription_metadata(user: UserAccount, plan: PlanType) -> Dict[str, str]:
    """Intent copied onto the subscription Stripe creates from the session."""
    return {
        META_USER_ID: str(user.id),
        META_PLAN: plan.value,
        META_CREDITS: str(plan_credits(plan)),
    }


def intent_from_metadata(metadata: Dict[str, str], source: IntentSource) -> Optional[CheckoutIntent]:
    user_id = to_int(metadata.get(META_USER_ID))
    plan = parse_plan(metadata.get(META_PLAN))
    if user_id is None and plan is None:
        return None

    declared_credits = to_int(metadata.get(META_CREDITS))
    credit_grant = plan_credits(plan) if plan else 0
    if plan and declared_credits is not None and declared_credits != credit_grant:
        logger.warning(
            "Metadata from %s declares %s credits for %s; using plan table value %s",
            source.value,
            declared_credits,
            plan.value,
            credit_grant,
        )

    return CheckoutIntent(
        user_id=user_id,
        target_plan=plan,
        credit_grant=credit_grant,
        source=source,
        previous_plan=parse_plan(metadata.get(META_PREVIOUS_PLAN)),
        previous_credits=to_int(metadata.get(META_PREVIOUS_CREDITS)),
    )


def _merge(current: Optional[CheckoutIntent], found: Optional[CheckoutIntent]) -> Optional[CheckoutIntent]:
    if found is None:
        return current
    if current is None:
        return found
    if current.user_id is not None and found.user_id is not None and found.user_id != current.user_id:
        logger.warning(
            "Ignoring %s: it names user %s but %s already named user %s",
            found.source.value,
            found.user_id,
            current.source.value,
            current.user_id,
        )
        return current
    merged = current
    if merged.user_id is None:
        merged = replace(merged, user_id=found.user_id, source=found.source)
    if merged.target_plan is None and found.target_plan is not None:
        merged = replace(merged, target_plan=found.target_plan, credit_grant=found.credit_grant)
    return merged


def _primary_metadata(obj: Dict[str, Any]) -> Dict[str, str]:
    metadata = metadata_of(obj)
    if not metadata and get_field(obj, "object") == "invoice":
        metadata = metadata_of(get_field(obj, "subscription_details")) or metadata_of(
            get_path(obj, "parent", "subscription_details")
        )
    return metadata


class MetadataResolver:
    """Recover who paid for what from a Stripe object, falling back step by step.

    1. metadata on the object itself;
    2. the subscription's metadata, then the latest checkout session created
       for that subscription;
    3. the user that owns the object's Stripe customer, assuming they are
       renewing the plan they already hold.
    """

    def __init__(self, client: Any) -> None:
        self._client = client

    def _remote_sources(
        self, obj: Dict[str, Any], subscription_id: Optional[str]
    ) -> Iterator[Callable[[], Optional[CheckoutIntent]]]:
        if not subscription_id:
            return
        if get_field(obj, "object") != "subscription":
            yield lambda: intent_from_metadata(
                metadata_of(self._client.retrieve_subscription(subscription_id)),
                IntentSource.SUBSCRIPTION,
            )

        def from_sessions() -> Optional[CheckoutIntent]:
            sessions = self._client.list_checkout_sessions(subscription_id=subscription_id, limit=1)
            if not sessions:
                return None
            return intent_from_metadata(metadata_of(sessions[0]), IntentSource.CHECKOUT_SESSION)

        yield from_sessions

    def resolve(self, db: Session, obj: Dict[str, Any]) -> CheckoutIntent:
        subscription_id = subscription_ref(obj)
        intent = intent_from_metadata(_primary_metadata(obj), IntentSource.PRIMARY)

        if intent is None or not intent.is_complete:
            for source in self._remote_sources(obj, subscription_id):
                intent = _merge(intent, source())
                if intent is not None and intent.is_complete:
                    break

        if intent is None or intent.user_id is None:
            customer_id = coerce_id(get_field(obj, "customer"))
            user = get_user_by_customer_id(db, customer_id) if customer_id else None
            if user is not None:
                current_plan = parse_plan(user.plan_type) or PlanType.FREE
                intent = _merge(
                    intent,
                    CheckoutIntent(
                        user_id=user.id,
                        target_plan=current_plan,
                        credit_grant=plan_credits(current_plan),
                        source=IntentSource.CUSTOMER,
                    ),
                )

        if intent is None or intent.user_id is None:
            raise UnresolvableIntent(
                f"No user could be resolved for {get_field(obj, 'object') or 'object'} {get_field(obj, 'id')}"
            )
        return intent
