import json
import time

import pytest

from services.billing.clock import utcnow
from services.billing.reconciliation import find_subscription
from services.billing.webhook_store import claim_event, get_event
from services.payments.stripe_webhook import compute_signature
from tests.factories import remote_subscription_payload

SECRET = "whsec_api_test"
URL = "/api/v1/webhooks/stripe"


@pytest.fixture(autouse=True)
def _webhook_secret(monkeypatch):
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", SECRET)
    monkeypatch.delenv("STRIPE_WEBHOOK_TOLERANCE_SECONDS", raising=False)


def _signed(body: bytes, secret: str = SECRET):
    timestamp = int(time.time())
    return {
        "Stripe-Signature": f"t={timestamp},v1={compute_signature(body, timestamp, secret)}",
        "Content-Type": "application/json",
    }


def _body(event_type, obj, event_id="evt_api_1"):
    payload = {"id": event_id, "type": event_type, "created": int(time.time()), "data": {"object": obj}}
    return json.dumps(payload).encode("utf-8")


def test_missing_signature_is_400(api_client):
    response = api_client.post(URL, content=b"{}")

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "webhook.signature_missing"


def test_bad_signature_is_401(api_client):
    body = _body("invoice.paid", {"id": "in_1"})

    response = api_client.post(URL, content=body, headers=_signed(body, secret="whsec_other"))

    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "webhook.signature_invalid"


def test_missing_secret_is_503(api_client, monkeypatch):
    body = _body("invoice.paid", {"id": "in_1"})
    headers = _signed(body)
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET")

    response = api_client.post(URL, content=body, headers=headers)

    assert response.status_code == 503


def test_non_json_body_is_400(api_client):
    body = b"not json"

    response = api_client.post(URL, content=body, headers=_signed(body))

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "webhook.invalid_payload"


def test_malformed_supported_event_is_400(api_client):
    body = json.dumps({"type": "invoice.paid", "data": {"object": {"id": "in_1"}}}).encode("utf-8")

    response = api_client.post(URL, content=body, headers=_signed(body))

    assert response.status_code == 400


def test_unsupported_event_is_acknowledged(api_client):
    body = _body("customer.created", {"id": "cus_1"})

    response = api_client.post(URL, content=body, headers=_signed(body))

    assert response.status_code == 200
    assert response.json() == {"received": True, "status": "ignored"}


def test_subscription_event_is_applied_once(api_client, db_session, catalog, make_org, provider):
    org = make_org(customer_id="cus_1")
    subscription = remote_subscription_payload("sub_hook", price_id="price_basic_monthly")
    body = _body("customer.subscription.created", subscription)

    first = api_client.post(URL, content=body, headers=_signed(body))
    second = api_client.post(URL, content=body, headers=_signed(body))

    assert first.json() == {"received": True, "status": "processed"}
    assert second.json() == {"received": True, "status": "duplicate"}
    assert find_subscription(db_session, "sub_hook").organization_id == org.id


def test_event_in_flight_is_409(api_client, db_session):
    claim_event(db_session, "evt_api_1", "invoice.paid", now=utcnow())
    body = _body("invoice.paid", {"id": "in_1", "subscription": "sub_1"})

    response = api_client.post(URL, content=body, headers=_signed(body))

    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "webhook.in_progress"


def test_failed_event_is_500_so_provider_retries(api_client, db_session, catalog):
    body = _body("customer.subscription.created", remote_subscription_payload("sub_orphan", price_id="price_basic_monthly"))

    response = api_client.post(URL, content=body, headers=_signed(body))

    assert response.status_code == 500
    detail = response.json()["detail"]
    assert detail["code"] == "webhook.processing_failed"
    assert detail["error"]["code"] == "organization.not_found"
    db_session.expire_all()
    assert get_event(db_session, "evt_api_1").status == "FAILED"
