from conftest import make_event, make_settings
from database.crud import get_user, get_user_summary
from main import app, get_settings
from utils.auth import get_auth_context
from utils.plans import PlanType


def test_checkout_carries_intent_on_session_and_subscription(api, fake_stripe, make_user):
    user = make_user()

    response = api.post("/api/checkout", json={"plan": "pro"})

    assert response.status_code == 200
    body = response.json()
    assert body["plan"] == "PRO"
    assert body["credits"] == 20_000
    assert body["checkout_url"].startswith("https://checkout.stripe.test/")

    params = fake_stripe.session_params[body["session_id"]]
    assert params["mode"] == "subscription"
    assert params["line_items"] == [{"price": "price_pro", "quantity": 1}]
    assert params["client_reference_id"] == str(user.id)
    assert params["metadata"]["user_id"] == str(user.id)
    assert params["metadata"]["plan"] == "PRO"
    assert params["subscription_data"]["metadata"]["user_id"] == str(user.id)
    assert params["subscription_data"]["metadata"]["plan"] == "PRO"
    assert "{CHECKOUT_SESSION_ID}" in params["success_url"]


def test_customer_is_created_once_and_reused(api, fake_stripe, make_user, db):
    user = make_user()

    api.post("/api/checkout", json={"plan": "BASIC"})
    api.post("/api/checkout", json={"plan": "PRO"})

    assert len(fake_stripe.customers) == 1
    customer_id = next(iter(fake_stripe.customers))
    assert get_user(db, user.id).billing_customer_id == customer_id
    assert {p["customer"] for p in fake_stripe.session_params.values()} == {customer_id}


def test_first_request_creates_user_with_signup_credits(api, db):
    response = api.get("/api/user/me")

    assert response.status_code == 200
    assert response.json() == {"email": "alice@example.com", "credits": 1000, "plan_type": "FREE"}


def test_invalid_plan_is_rejected(api, make_user):
    make_user()

    response = api.post("/api/checkout", json={"plan": "ENTERPRISE"})

    assert response.status_code == 400


def test_free_plan_cannot_be_purchased(api, make_user):
    make_user()

    response = api.post("/api/checkout", json={"plan": "FREE"})

    assert response.status_code == 400


def test_checkout_requires_authentication(api):
    app.dependency_overrides.pop(get_auth_context)

    response = api.post("/api/checkout", json={"plan": "BASIC"})

    assert response.status_code == 401


def test_same_plan_checkout_conflicts(api, fake_stripe, make_user):
    make_user(plan=PlanType.BASIC, credits=11_000, customer_id="cus_1", subscription_id="sub_1")

    response = api.post("/api/checkout", json={"plan": "BASIC"})

    assert response.status_code == 409
    assert fake_stripe.session_params == {}


def test_downgrade_checkout_is_rejected(api, fake_stripe, make_user):
    make_user(plan=PlanType.PRO, credits=21_000, customer_id="cus_1", subscription_id="sub_1")

    response = api.post("/api/checkout", json={"plan": "BASIC"})

    assert response.status_code == 400
    assert fake_stripe.cancelled == []


def test_upgrade_cancels_current_subscription(api, fake_stripe, make_user):
    make_user(plan=PlanType.BASIC, credits=11_000, customer_id="cus_1", subscription_id="sub_1")

    response = api.post("/api/checkout", json={"plan": "PRO"})

    assert response.status_code == 200
    assert fake_stripe.cancelled == ["sub_1"]


def test_failed_cancellation_aborts_upgrade(api, fake_stripe, make_user):
    make_user(plan=PlanType.BASIC, credits=11_000, customer_id="cus_1", subscription_id="sub_1")
    fake_stripe.fail_on.add("cancel_subscription")

    response = api.post("/api/checkout", json={"plan": "PRO"})

    assert response.status_code == 500
    assert fake_stripe.session_params == {}


def test_missing_price_is_a_server_error(api, make_user):
    make_user()
    app.dependency_overrides[get_settings] = lambda: make_settings(price_ids={PlanType.PRO: "price_pro"})

    response = api.post("/api/checkout", json={"plan": "BASIC"})

    assert response.status_code == 500


def test_poll_applies_paid_checkout(api, fake_stripe, make_user, db):
    user = make_user()
    session_id = api.post("/api/checkout", json={"plan": "BASIC"}).json()["session_id"]
    fake_stripe.complete_session(session_id)

    response = api.get("/api/checkout", params={"session_id": session_id})

    assert response.status_code == 200
    assert response.json() == {
        "status": "paid",
        "success": True,
        "applied": True,
        "plan": "BASIC",
        "credits": 11_000,
    }
    assert get_user_summary(db, user.id) == {"credits": 11_000, "plan_type": "BASIC"}


def test_poll_applies_checkout_that_needed_no_payment(api, fake_stripe, post_event, make_user, db):
    user = make_user()
    session_id = api.post("/api/checkout", json={"plan": "BASIC"}).json()["session_id"]
    fake_stripe.complete_session(session_id)
    fake_stripe.sessions[session_id]["payment_status"] = "no_payment_required"

    response = api.get("/api/checkout", params={"session_id": session_id})
    delivered = post_event(make_event("checkout.session.completed", fake_stripe.sessions[session_id]))

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert response.json()["applied"] is True
    assert delivered.json()["outcome"] == "noop"
    assert get_user_summary(db, user.id) == {"credits": 11_000, "plan_type": "BASIC"}


def test_poll_before_payment_changes_nothing(api, make_user, db):
    user = make_user()
    session_id = api.post("/api/checkout", json={"plan": "BASIC"}).json()["session_id"]

    response = api.get("/api/checkout", params={"session_id": session_id})

    assert response.json()["success"] is False
    assert response.json()["applied"] is False
    assert get_user_summary(db, user.id) == {"credits": 1000, "plan_type": "FREE"}


def test_poll_then_webhook_grants_once(api, fake_stripe, post_event, make_user, db):
    user = make_user()
    session_id = api.post("/api/checkout", json={"plan": "PRO"}).json()["session_id"]
    session = fake_stripe.complete_session(session_id)

    polled = api.get("/api/checkout", params={"session_id": session_id})
    delivered = post_event(make_event("checkout.session.completed", session))

    assert polled.json()["applied"] is True
    assert delivered.json()["outcome"] == "noop"
    assert get_user_summary(db, user.id) == {"credits": 21_000, "plan_type": "PRO"}


def test_webhook_then_poll_grants_once(api, fake_stripe, post_event, make_user, db):
    user = make_user()
    session_id = api.post("/api/checkout", json={"plan": "PRO"}).json()["session_id"]
    session = fake_stripe.complete_session(session_id)

    delivered = post_event(make_event("checkout.session.completed", session))
    polled = api.get("/api/checkout", params={"session_id": session_id})

    assert delivered.json()["outcome"] == "applied"
    assert polled.json()["applied"] is False
    assert polled.json()["plan"] == "PRO"
    assert get_user_summary(db, user.id) == {"credits": 21_000, "plan_type": "PRO"}


def test_poll_of_foreign_session_is_forbidden(api, fake_stripe, auth_state, make_user, db):
    make_user()
    bob = make_user("auth0|bob", email="bob@example.com")
    session_id = api.post("/api/checkout", json={"plan": "BASIC"}).json()["session_id"]
    fake_stripe.complete_session(session_id)

    auth_state.update(sub="auth0|bob", email="bob@example.com")
    response = api.get("/api/checkout", params={"session_id": session_id})

    assert response.status_code == 403
    assert get_user_summary(db, bob.id) == {"credits": 1000, "plan_type": "FREE"}


def test_poll_requires_session_id(api, make_user):
    make_user()

    response = api.get("/api/checkout")

    assert response.status_code == 400


def test_portal_returns_provider_url(api, fake_stripe, make_user):
    make_user(customer_id="cus_1")

    response = api.post("/api/billing/portal")

    assert response.status_code == 200
    assert response.json() == {"url": "https://billing.stripe.test/cus_1"}
    assert fake_stripe.customers == {}


def test_plans_lists_catalog(api):
    response = api.get("/api/plans")

    assert response.status_code == 200
    assert [(p["key"], p["credits"]) for p in response.json()] == [("BASIC", 10_000), ("PRO", 20_000)]
