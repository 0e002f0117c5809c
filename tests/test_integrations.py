import json
from datetime import date

import httpx
import pytest

from medcheckout.integrations.airtable import AirtableClient
from medcheckout.integrations.base import IntegrationError, IntegrationNotConfigured, RestClient, retry_delay
from medcheckout.integrations.ghl import GhlClient, build_payload_from_stripe, format_e164
from medcheckout.integrations.intakeq import (
    IntakeQAddress,
    IntakeQClient,
    IntakeQClientInput,
    cached_field_ids,
    clear_field_id_cache,
)
from medcheckout.integrations.meta_capi import MetaCapiClient, MetaPurchase, sha256


class EchoClient(RestClient):
    provider = "echo"
    base_url = "https://api.example.com"


def test_rest_client_backs_off_on_429(http_recorder):
    responses = iter([
        httpx.Response(429, headers={"retry-after": "2"}),
        httpx.Response(429),
        httpx.Response(200, json={"ok": True}),
    ])
    http, calls = http_recorder(lambda r: next(responses))
    delays = []
    client = EchoClient(client=http, sleep=delays.append)
    assert client.request_json("GET", "/thing") == {"ok": True}
    assert len(calls) == 3
    assert delays == [2.0, 1.0]


def test_rest_client_gives_up_after_three_attempts(http_recorder):
    http, calls = http_recorder(lambda r: httpx.Response(429, text="slow down"))
    with pytest.raises(IntegrationError) as exc:
        EchoClient(client=http, sleep=lambda s: None).request("GET", "/thing")
    assert exc.value.status_code == 429
    assert len(calls) == 3


def test_retry_delay_caps():
    assert retry_delay(httpx.Response(429, headers={"retry-after": "120"}), 1) == 8.0
    assert retry_delay(httpx.Response(429), 3) == 2.0


def test_intakeq_find_client_matches_email_exactly(http_recorder):
    clients = [
        {"ClientId": 7, "Email": "jane.doe@example.com"},
        {"ClientId": 8, "Email": "JANE@example.com"},
    ]
    http, calls = http_recorder(lambda r: httpx.Response(200, json=clients))
    intakeq = IntakeQClient(api_key="k", client=http)
    found = intakeq.find_client_by_email(" jane@EXAMPLE.com ")
    assert found["Id"] == 8
    assert calls[0].headers["X-Auth-Key"] == "k"
    assert calls[0].url.params["search"] == "jane@EXAMPLE.com"


def test_intakeq_create_client_payload(http_recorder):
    def handler(request):
        if request.method == "GET":
            return httpx.Response(200, json=[])
        return httpx.Response(200, json={"ClientId": 55})

    http, calls = http_recorder(handler)
    intakeq = IntakeQClient(api_key="k", client=http)
    client, created = intakeq.ensure_client(IntakeQClientInput(
        first_name="Jane", last_name="Doe", email="jane@example.com", phone="5551234567",
        date_of_birth="1985-01-02",
        address=IntakeQAddress(street="1 Main St", city="Tampa", state="fl", zip="33601"),
    ))
    assert created is True
    assert client["Id"] == 55
    body = json.loads(calls[1].content)
    assert body["DateOfBirth"] == 473472000000
    assert body["StateShort"] == "FL"
    assert body["Country"] == "USA"
    assert body["Address"] == "1 Main St Tampa, FL 33601 USA"


def test_intakeq_not_configured():
    with pytest.raises(IntegrationNotConfigured):
        IntakeQClient(api_key="").find_client_by_email("a@b.co")


def test_intakeq_upload_pdf(http_recorder):
    http, calls = http_recorder(lambda r: httpx.Response(200))
    IntakeQClient(api_key="k", client=http).upload_client_pdf(9, "intake-1.pdf", b"%PDF-1.4")
    assert calls[0].url.path == "/api/v1/files/9"
    assert b'filename="intake-1.pdf"' in calls[0].content


def test_intakeq_custom_field_update(http_recorder):
    clear_field_id_cache()
    profile = [{
        "ClientId": 12,
        "Email": "jane@example.com",
        "CustomFields": [
            {"FieldId": "h1", "Text": "Height", "Value": "5'5"},
            {"FieldId": "t1", "Text": "Tracking #", "Value": "1Z"},
        ],
    }]

    def handler(request):
        if request.method == "GET":
            return httpx.Response(200, json=profile)
        return httpx.Response(200, json={"ClientId": 12})

    http, calls = http_recorder(handler)
    result = IntakeQClient(api_key="k", client=http).update_custom_fields_by_email(
        "jane@example.com", {"height": "5'6", "BMI": "31", "Ideal Weight": None},
    )
    assert result.client_id == 12
    assert result.updated == ["height"]
    assert result.missing == ["BMI"]
    assert cached_field_ids()["tracking"] == "t1"

    sent = json.loads(calls[-1].content)
    assert sent["ClientId"] == 12
    assert {"FieldId": "h1", "Text": "Height", "Value": "5'6"} in sent["CustomFields"]
    assert {"FieldId": "t1", "Text": "Tracking #", "Value": "1Z"} in sent["CustomFields"]


def test_airtable_tries_each_email_field(http_recorder):
    def handler(request):
        formula = request.url.params["filterByFormula"]
        if "{Email}" in formula:
            return httpx.Response(422, json={"error": "UNKNOWN_FIELD_NAME"})
        return httpx.Response(200, json={"records": [{"id": "rec1", "fields": {}}]})

    http, calls = http_recorder(handler)
    airtable = AirtableClient(api_token="tok", base_id="app", table_id="tbl", client=http)
    record = airtable.find_record_by_email("Jane@Example.com")
    assert record["id"] == "rec1"
    assert len(calls) == 2
    assert calls[1].url.params["filterByFormula"] == 'LOWER({email})="jane@example.com"'
    assert calls[0].headers["Authorization"] == "Bearer tok"


def test_airtable_escapes_quotes_in_email_formula(http_recorder):
    http, calls = http_recorder(lambda r: httpx.Response(200, json={"records": [{"id": "rec1"}]}))
    airtable = AirtableClient(api_token="tok", base_id="app", table_id="tbl", client=http)
    airtable.find_record_by_email('x"),TRUE(),("\\@example.com')
    assert calls[0].url.params["filterByFormula"] == 'LOWER({Email})="x\\"),true(),(\\"\\\\@example.com"'


def test_airtable_update_payment_status(http_recorder):
    http, calls = http_recorder(lambda r: httpx.Response(200, json={"id": "rec1"}))
    AirtableClient(api_token="tok", base_id="app", table_id="tbl", client=http).update_payment_status(
        "rec1", 22900, "2025-01-01", "pi_1", medication="Tirzepatide", order_total=24899,
    )
    assert calls[0].method == "PATCH"
    assert calls[0].url.path == "/v0/app/tbl/rec1"
    fields = json.loads(calls[0].content)["fields"]
    assert fields["Payment Amount"] == "$229.00"
    assert fields["Order Total"] == "$248.99"
    assert fields["Payment Status"] == "Paid"
    assert "Plan Selected" not in fields


def test_ghl_payload_from_stripe():
    contact = build_payload_from_stripe(
        {"id": "pi_1", "amount": 34900, "customer": "cus_1"},
        {"customer_email": "a@b.co", "language": "es", "medication": "Tirzepatide",
         "plan": "Monthly Recurring", "is_subscription": "true", "customer_phone": "555 123 4567"},
        today=date(2025, 3, 9),
    )
    assert contact.tags == [
        "WL-PURCHASED", "SOURCE-META-ES", "LANG-ES", "tirzepatide", "plan-monthly-recurring", "subscription",
    ]
    assert contact.payment_amount == "$349.00"
    assert contact.payment_date == "March 9, 2025"
    assert contact.stripe_customer_id == "cus_1"
    assert format_e164(contact.phone) == "+15551234567"
    assert format_e164("123") == ""


def test_ghl_upsert_contact(http_recorder):
    http, calls = http_recorder(lambda r: httpx.Response(200, json={"contact": {"id": "c1"}}))
    ghl = GhlClient(api_key="key", location_id="loc", custom_field_ids={"GHL_CF_MEDICATION": "cf1"}, client=http)
    contact = build_payload_from_stripe({"id": "pi_1", "amount": 100}, {"customer_email": "a@b.co",
                                                                       "medication": "Semaglutide"})
    assert ghl.upsert_contact(contact) == {"id": "c1"}
    body = json.loads(calls[0].content)
    assert body["locationId"] == "loc"
    assert {"id": "cf1", "value": "Semaglutide"} in body["customField"]
    assert "LANG-EN" in body["tags"] and "english" in body["tags"]


def test_ghl_and_meta_skip_when_not_configured():
    assert GhlClient(api_key="", location_id="").upsert_contact(build_payload_from_stripe({}, {})) is None
    assert MetaCapiClient(pixel_id="", access_token="").send_purchase(
        MetaPurchase(event_source_url="https://x", event_id="e", value=1)) is None


def test_meta_purchase_event(http_recorder):
    http, calls = http_recorder(lambda r: httpx.Response(200, json={"events_received": 1}))
    meta = MetaCapiClient(pixel_id="px", access_token="tok", test_event_code="TEST1",
                          clock=lambda: 1700000000.5, client=http)
    meta.send_purchase(MetaPurchase(
        event_source_url="https://checkout.example.com", event_id="evt-1", value=229.0,
        fbp="fb.1.1", email=" Jane@Example.com ", phone="555 123 4567", lead_id="lead-1",
    ))
    request = calls[0]
    assert request.url.path == "/v20.0/px/events"
    assert request.url.params["access_token"] == "tok"
    payload = json.loads(request.content)
    assert payload["test_event_code"] == "TEST1"
    event = payload["data"][0]
    assert event["event_time"] == 1700000000
    assert event["event_id"] == "evt-1"
    assert event["user_data"]["em"] == sha256("jane@example.com")
    assert event["user_data"]["ph"] == sha256("5551234567")
    assert event["user_data"]["external_id"] == sha256("lead-1")
    assert event["user_data"]["fbp"] == "fb.1.1"
