import json
import time

import pytest
import stripe

from billing.errors import AuthenticationFailure
from billing.events import EventKind, classify_event
from billing.refs import coerce_id, first_price_id, metadata_of, subscription_ref, to_dict
from billing.signature import verify_event
from conftest import WEBHOOK_SECRET, make_event, sign_payload


def test_coerce_id_accepts_ids_and_expanded_objects():
    assert coerce_id("cus_123") == "cus_123"
    assert coerce_id({"id": "cus_456", "object": "customer"}) == "cus_456"
    assert coerce_id(stripe.StripeObject.construct_from({"id": "sub_789"}, "sk_test")) == "sub_789"
    assert coerce_id(None) is None
    assert coerce_id({"object": "customer"}) is None


def test_to_dict_flattens_stripe_objects():
    obj = stripe.StripeObject.construct_from({"id": "cs_1", "metadata": {"plan": "PRO"}}, "sk_test")

    result = to_dict(obj)

    assert result["id"] == "cs_1"
    assert metadata_of(result) == {"plan": "PRO"}


def test_subscription_ref_handles_each_object_shape():
    assert subscription_ref({"object": "subscription", "id": "sub_1"}) == "sub_1"
    assert subscription_ref({"object": "checkout.session", "subscription": {"id": "sub_2"}}) == "sub_2"
    assert subscription_ref({"object": "invoice", "subscription": "sub_3"}) == "sub_3"
    assert (
        subscription_ref(
            {"object": "invoice", "parent": {"subscription_details": {"subscription": "sub_4"}}}
        )
        == "sub_4"
    )
    assert subscription_ref({"object": "invoice"}) is None


def test_first_price_id_reads_expanded_or_bare_prices():
    assert first_price_id({"items": {"data": [{"price": {"id": "price_pro"}}]}}) == "price_pro"
    assert first_price_id({"items": {"data": [{"price": "price_basic"}]}}) == "price_basic"
    assert first_price_id({"items": {"data": []}}) is None


def test_verify_event_accepts_valid_signature():
    payload = json.dumps(make_event("invoice.paid", {"id": "in_1"}, event_id="evt_sig")).encode()

    event = verify_event(payload, sign_payload(payload), WEBHOOK_SECRET)

    assert event["id"] == "evt_sig"
    assert classify_event(event).kind == EventKind.INVOICE_PAID


def test_verify_event_rejects_missing_header():
    with pytest.raises(AuthenticationFailure):
        verify_event(b"{}", None, WEBHOOK_SECRET)


def test_verify_event_rejects_wrong_secret():
    payload = json.dumps(make_event("invoice.paid", {"id": "in_1"})).encode()

    with pytest.raises(AuthenticationFailure):
        verify_event(payload, sign_payload(payload, secret="whsec_other"), WEBHOOK_SECRET)


def test_verify_event_rejects_tampered_body():
    payload = json.dumps(make_event("invoice.paid", {"id": "in_1"})).encode()
    header = sign_payload(payload)
    tampered = payload.replace(b"in_1", b"in_2")

    with pytest.raises(AuthenticationFailure):
        verify_event(tampered, header, WEBHOOK_SECRET)


def test_verify_event_rejects_stale_timestamp():
    payload = json.dumps(make_event("invoice.paid", {"id": "in_1"})).encode()
    header = sign_payload(payload, timestamp=int(time.time()) - 3600)

    with pytest.raises(AuthenticationFailure):
        verify_event(payload, header, WEBHOOK_SECRET, tolerance=300)


def test_classifier_leaves_unknown_types_unrouted():
    classified = classify_event(make_event("customer.created", {"id": "cus_1"}))

    assert classified.kind is None
    assert not classified.is_known
    assert classified.payload == {"id": "cus_1"}


def test_verify_event_rejects_signed_body_that_is_not_json():
    payload = b"not-json"

    with pytest.raises(AuthenticationFailure):
        verify_event(payload, sign_payload(payload), WEBHOOK_SECRET)


def test_verify_event_returns_plain_nested_dicts():
    session = {"id": "cs_1", "object": "checkout.session", "metadata": {"user_id": "7", "plan": "BASIC"}}
    payload = json.dumps(make_event("checkout.session.completed", session)).encode()

    event = verify_event(payload, sign_payload(payload), WEBHOOK_SECRET)

    assert type(event) is dict
    assert type(event["data"]["object"]) is dict
    assert metadata_of(event["data"]["object"]) == {"user_id": "7", "plan": "BASIC"}
