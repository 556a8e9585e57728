#!/usr/bin/env python3
"""
Diagnostic script to verify Auth0, Stripe and database configuration.

Usage:
    python check_config.py
"""

import os
import sys
from typing import List, Tuple

from dotenv import load_dotenv

from utils.config import ResubscribePolicy, load_settings
from utils.plans import PLAN_CATALOG

SENSITIVE_MARKERS = ("KEY", "SECRET", "TOKEN")


def check_env_var(name: str, required: bool = True) -> Tuple[bool, str]:
    """Check if environment variable is set and return status."""
    value = os.getenv(name)
    if value:
        if any(marker in name for marker in SENSITIVE_MARKERS):
            masked = value[:8] + "..." if len(value) > 8 else "***"
            return True, f"✓ {name}: {masked}"
        return True, f"✓ {name}: {value}"
    marker = "✗" if required else "○"
    return False, f"{marker} {name}: NOT SET"


def _section(title: str) -> None:
    print(f"{title}:")
    print("-" * 40)


def main() -> None:
    load_dotenv()
    print("=" * 60)
    print("Plan Credits Configuration Check")
    print("=" * 60)
    print()

    issues: List[str] = []

    _section("Auth0 Configuration")
    for var in ["AUTH0_DOMAIN", "AUTH0_AUDIENCE"]:
        ok, msg = check_env_var(var, required=True)
        print(msg)
        if not ok:
            issues.append(f"Missing required variable: {var}")
    domain = os.getenv("AUTH0_DOMAIN")
    if domain and domain.startswith("https://"):
        print("  ⚠ AUTH0_DOMAIN should NOT include 'https://'")
        issues.append("AUTH0_DOMAIN includes protocol (should be just 'tenant.auth0.com')")
    print()

    _section("Stripe Configuration")
    for var in ["STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET"]:
        ok, msg = check_env_var(var, required=True)
        print(msg)
        if not ok:
            issues.append(f"Missing required variable: {var}")

    settings = load_settings()
    for plan in PLAN_CATALOG:
        var = f"STRIPE_PRICE_{plan.value}"
        ok, msg = check_env_var(var, required=True)
        print(msg)
        if not ok:
            issues.append(f"No Stripe price configured for {plan.value}")
    configured_prices = [price for price in settings.price_ids.values() if price]
    if len(configured_prices) != len(set(configured_prices)):
        issues.append("Two plans share the same Stripe price id")
    print()

    _section("Ledger Policy")
    ok, msg = check_env_var("RESUBSCRIBE_POLICY", required=False)
    print(msg)
    valid_policies = {policy.value for policy in ResubscribePolicy}
    raw_policy = os.getenv("RESUBSCRIBE_POLICY")
    if raw_policy and raw_policy.strip().lower() not in valid_policies:
        issues.append(f"RESUBSCRIBE_POLICY must be one of: {', '.join(sorted(valid_policies))}")
    print(f"  ℹ Effective policy: {settings.resubscribe_policy.value}")
    print(f"  ℹ Signup credits: {settings.signup_credits}")
    print()

    _section("Database Configuration")
    ok, msg = check_env_var("DATABASE_URL", required=False)
    print(msg)
    if not ok:
        print("  ℹ Using default SQLite database")
    ok, msg = check_env_var("APP_BASE_URL", required=False)
    print(msg)
    if not ok:
        print("  ℹ Using default: http://localhost:3000")
    print()

    print("=" * 60)
    if issues:
        print("⚠ ISSUES FOUND:")
        for issue in issues:
            print(f"  - {issue}")
        sys.exit(1)

    print("✓ Configuration looks good!")
    print()
    print("Next steps:")
    print("  1. Create the schema: python -m database.initialize")
    print("  2. Run locally: uvicorn main:app --reload")
    print("  3. Point the Stripe webhook at /api/webhooks/billing")
    sys.exit(0)


if __name__ == "__main__":
    main()
