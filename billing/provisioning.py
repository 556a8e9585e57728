# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.
from __future__ import annotations

from typing import Any, Dict

from sqlalchemy.orm import Session

from billing.errors import BillingNotConfigured, PlanAlreadyActive, UnsupportedTransition
from billing.metadata import build_session_metadata, build_subscription_metadata
from billing.transitions import is_supported_checkout
from database.crud import assign_customer_id
from database.models import UserAccount
from utils.config import BillingSettings
from utils.logger import get_logger
from utils.plans import PlanType, get_paid_plan, parse_plan

logger = get_logger("billing.provisioning")


def ensure_customer(db: Session, client: Any, user: UserAccount) -> str:
    """Return the user's Stripe customer id, creating and storing it on first use."""
    if user.billing_customer_id:
        return user.billing_customer_id

    logger.info("Creating Stripe customer for user %s", user.id)
    customer_id = client.create_customer(user_id=str(user.id), auth_sub=user.auth_sub, email=user.email)
    stored_id = assign_customer_id(db, user.id, customer_id)
    if stored_id and stored_id != customer_id:
        logger.warning(
            "User %s already had customer %s; discarding newly created %s",
            user.id,
            stored_id,
            customer_id,
        )
    db.refresh(user)
    return user.billing_customer_id or customer_id


def create_checkout(
    db: Session,
    client: Any,
    settings: BillingSettings,
    user: UserAccount,
    plan_key: str,
) -> Dict[str, Any]:
    """Open a subscription checkout for ``plan_key`` carrying the purchase intent.

    Raises ValueError for an unknown plan.
    """
    plan = get_paid_plan(plan_key)
    price_id = settings.price_for(plan.key)
    if not price_id:
        raise BillingNotConfigured(f"Stripe price for {plan.key.value} is not configured.")

    current_plan = parse_plan(user.plan_type) or PlanType.FREE
    if current_plan == plan.key:
        raise PlanAlreadyActive(f"User is already on the {plan.key.value} plan.")
    if not is_supported_checkout(current_plan, plan.key):
        raise UnsupportedTransition(current_plan.value, plan.key.value, "downgrades are not supported")

    customer_id = ensure_customer(db, client, user)

    # An upgrade must not leave the user paying for two subscriptions.
    if current_plan == PlanType.BASIC and plan.key == PlanType.PRO and user.billing_subscription_id:
        logger.info(
            "Cancelling subscription %s for user %s before upgrading to %s",
            user.billing_subscription_id,
            user.id,
            plan.key.value,
        )
        client.cancel_subscription(user.billing_subscription_id)

    session = client.create_checkout_session(
        customer=customer_id,
        client_reference_id=str(user.id),
        payment_method_types=["card"],
        line_items=[{"price": price_id, "quantity": 1}],
        mode="subscription",
        success_url=settings.success_url,
        cancel_url=settings.cancel_url,
        metadata=build_session_metadata(user, plan.key),
        subscription_data={"metadata": build_subscription_metadata(user, plan.key)},
    )

    logger.info(
        "Created Stripe checkout session %s for user %s (%s, %s credits)",
        session.get("id"),
        user.id,
        plan.key.value,
        plan.credits,
    )
    return {
        "session_id": session.get("id"),
        "checkout_url": session.get("url") or "",
        "plan": plan.key.value,
        "credits": plan.credits,
    }


def create_portal_session(db: Session, client: Any, settings: BillingSettings, user: UserAccount) -> str:
    customer_id = ensure_customer(db, client, user)
    portal = client.create_portal_session(customer_id=customer_id, return_url=settings.portal_return_url)
    return portal.get("url") or ""
