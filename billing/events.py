# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from billing.refs import get_field, to_dict


class EventKind(str, Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    INVOICE_PAID = "invoice.paid"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"


@dataclass(frozen=True)
class ClassifiedEvent:
    event_id: Optional[str]
    event_type: str
    kind: Optional[EventKind]
    payload: Dict[str, Any]

    @property
    def is_known(self) -> bool:
        return self.kind is not None


def classify_event(event: Dict[str, Any]) -> ClassifiedEvent:
    """Map a verified event onto one of the handled kinds (or None)."""
    event_type = str(event.get("type") or "")
    try:
        kind: Optional[EventKind] = EventKind(event_type)
    except ValueError:
        kind = None
    payload = to_dict(get_field(get_field(event, "data"), "object"))
    return ClassifiedEvent(
        event_id=event.get("id"),
        event_type=event_type,
        kind=kind,
        payload=payload,
    )
