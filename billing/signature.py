# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.
from __future__ import annotations

from typing import Any, Dict, Optional

import stripe

from billing.errors import AuthenticationFailure
from billing.refs import to_dict
from utils.logger import get_logger

logger = get_logger("billing.signature")


def verify_event(
    payload: bytes,
    signature: Optional[str],
    secret: str,
    *,
    tolerance: int = 300,
) -> Dict[str, Any]:
    """Check a webhook payload against its ``Stripe-Signature`` header.

    ``payload`` must be the raw request body: the signature covers those exact
    bytes. Returns the event as a plain dict only once the signature has been
    verified.
    """
    if not signature:
        logger.warning("Stripe webhook called without signature header")
        raise AuthenticationFailure("Missing Stripe signature header.")

    try:
        event = stripe.Webhook.construct_event(payload, signature, secret, tolerance=tolerance)
    except (ValueError, stripe.SignatureVerificationError) as exc:
        logger.warning("Invalid Stripe webhook signature: %s", exc)
        raise AuthenticationFailure("Invalid Stripe webhook signature.") from exc

    event_data = to_dict(event)
    if not event_data.get("type"):
        raise AuthenticationFailure("Stripe webhook payload is not an event.")
    return event_data
