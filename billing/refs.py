# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.
"""Helpers that flatten Stripe objects into plain Python values.

Stripe returns references either as bare ids or as expanded objects, and its
objects are not always plain dicts. Everything past the client goes through
these helpers so business logic only sees dicts and string ids.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


def to_dict(obj: Any) -> Dict[str, Any]:
    """Convert Stripe objects to plain dicts for safer access."""
    if obj is None:
        return {}
    if isinstance(obj, dict) and type(obj) is dict:
        return obj

    for method_name in ("to_dict_recursive", "to_dict"):
        converter = getattr(obj, method_name, None)
        if callable(converter):
            try:
                result = converter()
            except (TypeError, AttributeError):
                continue
            if isinstance(result, dict):
                return dict(result)

    try:
        return dict(obj)
    except (TypeError, ValueError):
        return {}


def get_field(obj: Any, key: str) -> Any:
    """Fetch ``key`` from a dict, a Stripe object or a plain attribute holder."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    getter = getattr(obj, "get", None)
    if callable(getter):
        try:
            return getter(key)
        except (TypeError, KeyError):
            pass
    return getattr(obj, key, None)


def get_path(obj: Any, *keys: str) -> Any:
    current = obj
    for key in keys:
        current = get_field(current, key)
        if current is None:
            return None
    return current


def coerce_id(value: Any) -> Optional[str]:
    """Normalise an id-or-expanded-object reference to a plain id."""
    if not value:
        return None
    if isinstance(value, str):
        return value
    potential_id = get_field(value, "id")
    if isinstance(potential_id, str) and potential_id:
        return potential_id
    return None


def metadata_of(obj: Any) -> Dict[str, str]:
    raw = to_dict(get_field(obj, "metadata"))
    return {str(k): str(v) for k, v in raw.items() if v is not None and v != ""}


def to_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def list_data(collection: Any) -> List[Dict[str, Any]]:
    """Return the ``data`` entries of a Stripe list (or a plain list) as dicts."""
    if collection is None:
        return []
    if isinstance(collection, list):
        items = collection
    else:
        items = get_field(collection, "data") or []
    return [to_dict(item) for item in items]


def subscription_ref(obj: Any) -> Optional[str]:
    """Find the subscription id on a checkout session, invoice or subscription."""
    if get_field(obj, "object") == "subscription":
        return coerce_id(get_field(obj, "id"))
    direct = coerce_id(get_field(obj, "subscription"))
    if direct:
        return direct
    # Newer API versions move the invoice's subscription under ``parent``.
    return coerce_id(get_path(obj, "parent", "subscription_details", "subscription"))


def first_price_id(subscription: Any) -> Optional[str]:
    items = list_data(get_field(subscription, "items"))
    if not items:
        return None
    return coerce_id(items[0].get("price"))
