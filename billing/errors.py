# Copyright © 2025 Phaethon Order LLC. All rights reserved. Provided solely for evaluation. See LICENSE.
from __future__ import annotations


class BillingError(Exception):
    """Base class for reconciliation failures."""


class AuthenticationFailure(BillingError):
    """Raised when a webhook payload cannot be proven to come from Stripe."""


class UnresolvableIntent(BillingError):
    """Raised when no user can be recovered for a billing event."""


class UnsupportedTransition(BillingError):
    """Raised for plan moves the ledger refuses to apply (e.g. PRO to BASIC)."""

    def __init__(self, current_plan: str, target_plan: str, reason: str) -> None:
        super().__init__(f"Unsupported plan transition {current_plan} -> {target_plan}: {reason}")
        self.current_plan = current_plan
        self.target_plan = target_plan
        self.reason = reason


class ProviderUnavailable(BillingError):
    """Raised when a Stripe API call fails."""


class StorageConflict(BillingError):
    """Raised when a concurrent writer already moved the user's plan."""


class SessionOwnershipError(BillingError):
    """Raised when a checkout session belongs to a different user."""


class PlanAlreadyActive(BillingError):
    """Raised when a user tries to buy the plan they already hold."""


class BillingNotConfigured(BillingError):
    """Raised when Stripe keys or price ids are missing."""
