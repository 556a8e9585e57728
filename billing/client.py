# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.
from __future__ import annotations

import hashlib
from typing import Any, Dict, List, Optional

import stripe

from billing.errors import ProviderUnavailable
from billing.refs import list_data, to_dict
from utils.logger import get_logger

logger = get_logger("billing.client")


def customer_idempotency_key(auth_sub: str, email: Optional[str]) -> str:
    """Retry key for customer creation.

    Row ids repeat across databases that share a Stripe account, so the key is
    built from the identity-provider subject and the email sent with the request.
    """
    digest = hashlib.sha256(f"{auth_sub}\n{email or ''}".encode("utf-8")).hexdigest()
    return f"customer-create-{digest}"


class StripeBillingClient:
    """Thin handle on the Stripe API.

    Every call passes the API key explicitly so the client never depends on the
    module-level ``stripe.api_key``. Results come back as plain dicts and
    Stripe errors are re-raised as ``ProviderUnavailable``.
    """

    def __init__(self, api_key: str) -> None:
        if not api_key:
            raise ValueError("A Stripe API key is required.")
        self._api_key = api_key

    def _call(self, description: str, func: Any, *args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, api_key=self._api_key, **kwargs)
        except stripe.StripeError as exc:
            logger.error("Stripe call failed (%s): %s", description, exc)
            raise ProviderUnavailable(f"Stripe call failed: {description}") from exc

    def create_customer(self, *, user_id: str, auth_sub: str, email: Optional[str]) -> str:
        params: Dict[str, Any] = {"metadata": {"user_id": user_id, "auth_sub": auth_sub}}
        if email:
            params["email"] = email
        customer = self._call(
            "create customer",
            stripe.Customer.create,
            idempotency_key=customer_idempotency_key(auth_sub, email),
            **params,
        )
        return customer["id"]

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        subscription = self._call("retrieve subscription", stripe.Subscription.retrieve, subscription_id)
        return to_dict(subscription)

    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        subscription = self._call("cancel subscription", stripe.Subscription.cancel, subscription_id)
        return to_dict(subscription)

    def create_checkout_session(self, **params: Any) -> Dict[str, Any]:
        session = self._call("create checkout session", stripe.checkout.Session.create, **params)
        return to_dict(session)

    def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        session = self._call("retrieve checkout session", stripe.checkout.Session.retrieve, session_id)
        return to_dict(session)

    def list_checkout_sessions(self, *, subscription_id: str, limit: int = 1) -> List[Dict[str, Any]]:
        sessions = self._call(
            "list checkout sessions",
            stripe.checkout.Session.list,
            subscription=subscription_id,
            limit=limit,
        )
        return list_data(sessions)

    def create_portal_session(self, *, customer_id: str, return_url: str) -> Dict[str, Any]:
        portal = self._call(
            "create billing portal session",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return to_dict(portal)
