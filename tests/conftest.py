import copy
import hashlib
import hmac
import itertools
import json
import os
import tempfile
import time
from typing import Any, Dict, List, Optional

_TEST_DB = os.path.join(tempfile.gettempdir(), f"plan_credits_test_{os.getpid()}.db")
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DB}"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from billing.errors import ProviderUnavailable  # noqa: E402
from database import models  # noqa: E402,F401
from database.models import UserAccount  # noqa: E402
from database.session import Base, SessionLocal, engine  # noqa: E402
from main import app, get_billing_client, get_settings  # noqa: E402
from utils.auth import AuthContext, get_auth_context  # noqa: E402
from utils.config import BillingSettings, ResubscribePolicy  # noqa: E402
from utils.plans import PlanType  # noqa: E402

WEBHOOK_SECRET = "whsec_test_secret"
PRICE_IDS = {PlanType.BASIC: "price_basic", PlanType.PRO: "price_pro"}


class FakeStripeClient:
    """In-memory stand-in for StripeBillingClient."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.session_params: Dict[str, Dict[str, Any]] = {}
        self.cancelled: List[str] = []
        self.fail_on: set = set()

    def _next(self, prefix: str) -> str:
        return f"{prefix}_{next(self._ids)}"

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.fail_on:
            raise ProviderUnavailable(f"Stripe call failed: {operation}")

    def create_customer(self, *, user_id: str, auth_sub: str, email: Optional[str]) -> str:
        self._maybe_fail("create_customer")
        customer_id = self._next("cus")
        self.customers[customer_id] = {
            "id": customer_id,
            "email": email,
            "metadata": {"user_id": user_id, "auth_sub": auth_sub},
        }
        return customer_id

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        self._maybe_fail("retrieve_subscription")
        if subscription_id not in self.subscriptions:
            raise ProviderUnavailable(f"No such subscription: {subscription_id}")
        return copy.deepcopy(self.subscriptions[subscription_id])

    def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        self._maybe_fail("cancel_subscription")
        self.cancelled.append(subscription_id)
        subscription = self.subscriptions.setdefault(subscription_id, {"id": subscription_id, "object": "subscription"})
        subscription["status"] = "canceled"
        return copy.deepcopy(subscription)

    def create_checkout_session(self, **params: Any) -> Dict[str, Any]:
        self._maybe_fail("create_checkout_session")
        session_id = self._next("cs_test")
        self.session_params[session_id] = params
        self.sessions[session_id] = {
            "id": session_id,
            "object": "checkout.session",
            "url": f"https://checkout.stripe.test/{session_id}",
            "mode": params["mode"],
            "payment_status": "unpaid",
            "status": "open",
            "customer": params["customer"],
            "client_reference_id": params.get("client_reference_id"),
            "metadata": dict(params.get("metadata") or {}),
            "subscription": None,
        }
        return copy.deepcopy(self.sessions[session_id])

    def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        self._maybe_fail("retrieve_checkout_session")
        if session_id not in self.sessions:
            raise ProviderUnavailable(f"No such checkout session: {session_id}")
        return copy.deepcopy(self.sessions[session_id])

    def list_checkout_sessions(self, *, subscription_id: str, limit: int = 1) -> List[Dict[str, Any]]:
        self._maybe_fail("list_checkout_sessions")
        matches = [s for s in self.sessions.values() if s.get("subscription") == subscription_id]
        return [copy.deepcopy(s) for s in reversed(matches)][:limit]

    def create_portal_session(self, *, customer_id: str, return_url: str) -> Dict[str, Any]:
        self._maybe_fail("create_portal_session")
        return {"id": self._next("bps"), "url": f"https://billing.stripe.test/{customer_id}", "return_url": return_url}

    # --- helpers for tests ----------------------------------------------

    def complete_session(self, session_id: str) -> Dict[str, Any]:
        """Mark a checkout session paid and create the subscription Stripe would create."""
        params = self.session_params[session_id]
        subscription_id = self._next("sub")
        self.subscriptions[subscription_id] = {
            "id": subscription_id,
            "object": "subscription",
            "customer": params["customer"],
            "status": "active",
            "metadata": dict(params["subscription_data"]["metadata"]),
            "items": {"object": "list", "data": [{"price": {"id": params["line_items"][0]["price"]}}]},
        }
        session = self.sessions[session_id]
        session.update(payment_status="paid", status="complete", subscription=subscription_id)
        return copy.deepcopy(session)


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


_event_ids = itertools.count(1)


def make_event(event_type: str, obj: Dict[str, Any], event_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "id": event_id or f"evt_{next(_event_ids)}",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }


def make_settings(**overrides: Any) -> BillingSettings:
    values: Dict[str, Any] = {
        "stripe_secret_key": "sk_test_123",
        "stripe_webhook_secret": WEBHOOK_SECRET,
        "price_ids": dict(PRICE_IDS),
        "app_base_url": "http://testserver",
        "resubscribe_policy": ResubscribePolicy.GRANT,
    }
    values.update(overrides)
    return BillingSettings(**values)


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    app.dependency_overrides.clear()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def fake_stripe() -> FakeStripeClient:
    return FakeStripeClient()


@pytest.fixture
def settings() -> BillingSettings:
    return make_settings()


@pytest.fixture
def make_user(db):
    def _make_user(
        sub: str = "auth0|alice",
        *,
        plan: PlanType = PlanType.FREE,
        credits: int = 1000,
        customer_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
        email: Optional[str] = "alice@example.com",
    ) -> UserAccount:
        user = UserAccount(
            auth_sub=sub,
            email=email,
            credits=credits,
            plan_type=plan.value,
            billing_customer_id=customer_id,
            billing_subscription_id=subscription_id,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make_user


@pytest.fixture
def auth_state() -> Dict[str, Any]:
    return {"sub": "auth0|alice", "email": "alice@example.com"}


@pytest.fixture
def api(fake_stripe, settings, auth_state):
    def _auth_override() -> AuthContext:
        return AuthContext(token="test-token", payload={}, sub=auth_state["sub"], email=auth_state["email"])

    app.dependency_overrides[get_billing_client] = lambda: fake_stripe
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_auth_context] = _auth_override
    return TestClient(app)


@pytest.fixture
def post_event(api):
    def _post_event(event: Dict[str, Any], *, secret: str = WEBHOOK_SECRET):
        payload = json.dumps(event).encode("utf-8")
        return api.post(
            "/api/webhooks/billing",
            content=payload,
            headers={"stripe-signature": sign_payload(payload, secret), "content-type": "application/json"},
        )

    return _post_event


def pytest_sessionfinish(session, exitstatus):
    engine.dispose()
    if os.path.exists(_TEST_DB):
        os.remove(_TEST_DB)
