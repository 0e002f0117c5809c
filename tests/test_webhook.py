import json

import httpx
import pytest
import stripe
from jose import jwt

import medcheckout.fanout
from medcheckout.fanout import FAILED, OK, SKIPPED, invoice_input, run_fanout
from medcheckout.integrations.airtable import AirtableClient
from medcheckout.integrations.ghl import GhlClient
from medcheckout.integrations.intakeq import IntakeQClient
from medcheckout.integrations.meta_capi import MetaCapiClient
from medcheckout.kv import KeyValueStore, intake_link_key
from medcheckout.models import FanoutFailure

PAYMENT_INTENT = {
    "id": "pi_mock_123",
    "object": "payment_intent",
    "amount": 36800,
    "currency": "usd",
    "created": 1735830240,
    "customer": "cus_123",
    "metadata": {
        "intakeId": "hf-1",
        "customer_email": "jane@example.com",
        "customer_first_name": "Jane",
        "customer_last_name": "Doe",
        "customer_phone": "5551234567",
        "customer_id": "cus_123",
        "language": "en",
        "meta_event_id": "evt-1",
        "page_url": "https://checkout.eonmeds.com/?lang=en",
        "medication": "Tirzepatide",
        "plan": "Monthly Recurring",
        "is_subscription": "true",
        "addons": '["Nausea Relief Prescription"]',
        "expedited_shipping": "no",
        "total": "368",
        "shipping_address": '{"line1": "1 Main St", "line2": "", "city": "Tampa", '
                            '"state": "FL", "zip": "33601", "country": "US"}',
    },
}


def succeeded_event(payment_intent=None):
    return {"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": payment_intent or PAYMENT_INTENT}}


def vendor_handler(calls, airtable_status=200):
    def handler(request: httpx.Request):
        calls.append(request)
        host = request.url.host
        if host == "intakeq.com":
            if request.method == "GET":
                return httpx.Response(200, json=[{"ClientId": 55, "Email": "jane@example.com"}])
            return httpx.Response(200)
        if host == "api.airtable.com":
            if request.method == "GET":
                return httpx.Response(200, json={"records": [{"id": "rec1", "fields": {}}]})
            if airtable_status != 200:
                return httpx.Response(airtable_status, text="upstream down")
            return httpx.Response(200, json={"id": "rec1"})
        if host == "rest.gohighlevel.com":
            return httpx.Response(200, json={"contact": {"id": "c1"}})
        return httpx.Response(200, json={"events_received": 1})
    return handler


def vendor_clients(calls, **kwargs):
    http = httpx.Client(transport=httpx.MockTransport(vendor_handler(calls, **kwargs)))
    return {
        "intakeq": IntakeQClient(api_key="k", client=http),
        "airtable": AirtableClient(api_token="tok", base_id="app", table_id="tbl", client=http),
        "ghl": GhlClient(api_key="ghl", location_id="loc", custom_field_ids={}, client=http),
        "meta": MetaCapiClient(pixel_id="px", access_token="meta", test_event_code="", client=http),
    }


def admin_headers(secret="admin-secret"):
    return {"Authorization": f"Bearer {jwt.encode({'sub': 'ops'}, secret, algorithm='HS256')}"}


@pytest.fixture(autouse=True)
def webhook_secret(env):
    env(STRIPE_WEBHOOK_SECRET="whsec_test")


def test_webhook_requires_configured_secret(client, env, mocker):
    env(STRIPE_WEBHOOK_SECRET="")
    construct = mocker.patch("stripe.Webhook.construct_event")
    response = client.post("/api/webhooks/stripe", json=succeeded_event(), headers={"stripe-signature": "sig"})
    assert response.status_code == 500
    assert response.json()["detail"] == "Webhook secret not configured"
    construct.assert_not_called()


def test_webhook_invalid_signature(client, mocker):
    mocker.patch("stripe.Webhook.construct_event",
                 side_effect=stripe.SignatureVerificationError("bad signature", "t=1,v1=x"))
    response = client.post("/api/webhooks/stripe", json=succeeded_event(), headers={"stripe-signature": "t=1,v1=x"})
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid signature"


def test_webhook_invalid_payload(client, mocker):
    mocker.patch("stripe.Webhook.construct_event", side_effect=ValueError("bad json"))
    response = client.post("/api/payment/webhook", content=b"not json", headers={"stripe-signature": "sig"})
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid payload"


def test_webhook_missing_email(client, mocker):
    mocker.patch("stripe.Webhook.construct_event")
    build = mocker.patch("medcheckout.fanout.build_clients")
    intent = {**PAYMENT_INTENT, "metadata": {}, "receipt_email": None}

    response = client.post("/api/webhooks/stripe", json=succeeded_event(intent), headers={"stripe-signature": "sig"})
    assert response.status_code == 400
    assert response.json()["detail"] == "Missing customer email"
    build.assert_not_called()


def test_webhook_payment_succeeded_runs_fanout(client, mocker):
    mocker.patch("stripe.Webhook.construct_event")
    calls = []
    mocker.patch("medcheckout.fanout.build_clients", return_value=vendor_clients(calls))

    response = client.post("/api/webhooks/stripe", json=succeeded_event(), headers={"stripe-signature": "sig"})

    assert response.status_code == 200
    assert response.json() == {
        "received": True,
        "results": {"intakeq": OK, "airtable": OK, "ghl": OK, "meta": OK},
    }
    upload = next(c for c in calls if c.url.host == "intakeq.com" and c.method == "POST")
    assert upload.url.path == "/api/v1/files/55"
    assert b'filename="invoice-pi_mock_123.pdf"' in upload.content

    patch = next(c for c in calls if c.method == "PATCH")
    fields = json.loads(patch.content)["fields"]
    assert fields["Payment Amount"] == "$368.00"
    assert fields["Payment Date"] == "2025-01-02"
    assert fields["Shipping Method"] == "Standard"
    assert fields["Stripe Customer ID"] == "cus_123"

    meta = next(c for c in calls if c.url.host == "graph.facebook.com")
    event = json.loads(meta.content)["data"][0]
    assert event["event_id"] == "evt-1"
    assert event["custom_data"] == {"value": 368.0, "currency": "USD"}


def test_webhook_other_events(client, mocker):
    mocker.patch("stripe.Webhook.construct_event")
    build = mocker.patch("medcheckout.fanout.build_clients")
    failed = {"type": "payment_intent.payment_failed",
              "data": {"object": {"id": "pi_2", "last_payment_error": {"code": "card_declined"}}}}

    assert client.post("/api/webhooks/stripe", json=failed).json() == {"received": True}
    assert client.post("/api/webhooks/stripe", json={"type": "charge.refunded", "data": {}}).json() == {
        "received": True,
    }
    build.assert_not_called()


def test_fanout_uses_intake_link_for_intakeq():
    KeyValueStore().set(intake_link_key("hf-1"), {"intakeId": "hf-1", "intakeQClientId": 77})
    calls = []
    results = run_fanout(PAYMENT_INTENT, vendor_clients(calls))

    assert results["intakeq"] == OK
    intakeq_calls = [c for c in calls if c.url.host == "intakeq.com"]
    assert [c.method for c in intakeq_calls] == ["POST"]
    assert intakeq_calls[0].url.path == "/api/v1/files/77"


def test_fanout_skips_unconfigured_integrations():
    clients = {
        "intakeq": IntakeQClient(api_key=""),
        "airtable": AirtableClient(api_token=""),
        "ghl": GhlClient(api_key="", location_id=""),
        "meta": MetaCapiClient(pixel_id="", access_token=""),
    }
    assert run_fanout(PAYMENT_INTENT, clients) == {
        "intakeq": SKIPPED, "airtable": SKIPPED, "ghl": SKIPPED, "meta": SKIPPED,
    }

    db = medcheckout.fanout.SessionLocal()
    assert db.query(FanoutFailure).count() == 0
    db.close()


def test_fanout_failure_is_recorded_and_retried(client, env, mocker):
    env(JWT_SECRET="admin-secret")
    calls = []
    results = run_fanout(PAYMENT_INTENT, vendor_clients(calls, airtable_status=503))
    assert results == {"intakeq": OK, "airtable": FAILED, "ghl": OK, "meta": OK}

    listing = client.get("/api/admin/fanout-failures", headers=admin_headers())
    assert listing.status_code == 200
    failures = listing.json()["failures"]
    assert len(failures) == 1
    failure = failures[0]
    assert failure["integration"] == "airtable"
    assert failure["paymentIntentId"] == "pi_mock_123"
    assert "503" in failure["error"]
    assert failure["attempts"] == 1
    assert failure["resolved"] is False

    # still down
    mocker.patch("medcheckout.fanout.build_clients",
                 return_value=vendor_clients([], airtable_status=503))
    retried = client.post(f"/api/admin/fanout-failures/{failure['id']}/retry", headers=admin_headers())
    assert retried.status_code == 200
    assert retried.json()["attempts"] == 2
    assert retried.json()["resolved"] is False

    recovered = []
    mocker.patch("medcheckout.fanout.build_clients", return_value=vendor_clients(recovered))
    retried = client.post(f"/api/admin/fanout-failures/{failure['id']}/retry", headers=admin_headers())
    assert retried.json()["resolved"] is True
    assert any(c.method == "PATCH" for c in recovered)

    assert client.get("/api/admin/fanout-failures", headers=admin_headers()).json() == {"failures": []}
    everything = client.get("/api/admin/fanout-failures", params={"include_resolved": "true"},
                            headers=admin_headers())
    assert len(everything.json()["failures"]) == 1


def test_fanout_continues_when_failure_cannot_be_recorded(caplog):
    db = medcheckout.fanout.SessionLocal()
    FanoutFailure.__table__.drop(bind=db.get_bind())
    db.close()

    calls = []
    results = run_fanout(PAYMENT_INTENT, vendor_clients(calls, airtable_status=503))

    assert results == {"intakeq": OK, "airtable": FAILED, "ghl": OK, "meta": OK}
    hosts = {c.url.host for c in calls}
    assert {"rest.gohighlevel.com", "graph.facebook.com"} <= hosts
    assert "Could not record airtable failure for payment pi_mock_123" in caplog.text



@pytest.mark.parametrize("headers,status", [
    ({}, 422),
    ({"Authorization": "Bearer not-a-jwt"}, 401),
    ({"Authorization": "Token abc"}, 401),
])
def test_admin_requires_token(client, env, headers, status):
    env(JWT_SECRET="admin-secret")
    assert client.get("/api/admin/fanout-failures", headers=headers).status_code == status


def test_admin_rejects_wrong_secret_and_unknown_failure(client, env):
    env(JWT_SECRET="admin-secret")
    response = client.get("/api/admin/fanout-failures", headers=admin_headers("other-secret"))
    assert response.status_code == 401
    response = client.post("/api/admin/fanout-failures/999/retry", headers=admin_headers())
    assert response.status_code == 404


def test_invoice_input_from_payment_intent():
    data = invoice_input(PAYMENT_INTENT)
    assert data.patient_name == "Jane Doe"
    assert data.addons == ["Nausea Relief Prescription"]
    assert data.shipping_address["zip"] == "33601"
    assert data.paid_at_iso.startswith("2025-01-02T15:04:00")
    assert data.expedited_shipping is False
