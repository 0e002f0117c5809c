import json

import pytest
from fastapi.testclient import TestClient

from medcheckout.checkout.cli import build_parser, cmd_create_intent, main
from medcheckout.main import app as fastapi_app

LANDING_URL = (
    "https://checkout.eonmeds.com/?firstName=Jane&lastName=Doe&email=jane@example.com"
    "&phone=5551234567&lang=es&intakeId=hf-1&fbclid=abc&lead_id=lead-9"
)
ORDER_ARGS = ["--medication", "tirzepatide", "--plan", "tirz_monthly", "--addon", "nausea-rx"]
ADDRESS_ARGS = ["--address1", "1 Main St", "--city", "Tampa", "--state", "fl", "--zip", "33601"]


@pytest.fixture
def stripe_mocks(mocker):
    customer = mocker.Mock()
    customer.id = "cus_123"
    intent = mocker.Mock()
    intent.id = "pi_123"
    intent.client_secret = "secret_123"
    mocker.patch("stripe.Customer.list", return_value=mocker.Mock(data=[]))
    mocker.patch("stripe.Customer.create", return_value=customer)
    return mocker.patch("stripe.PaymentIntent.create", return_value=intent)


def test_quote(capsys):
    assert main(["quote"] + ORDER_ARGS) == 0

    quote = json.loads(capsys.readouterr().out)
    assert quote["amount"] == 36800
    assert quote["orderData"]["plan"] == "Monthly Recurring"
    assert quote["orderData"]["addons"] == ["Nausea Relief Prescription"]


def test_quote_rejects_unknown_plan(capsys):
    assert main(["quote", "--medication", "tirzepatide", "--plan", "sema_2.5-5_monthly"]) == 1
    assert "Please choose a plan" in capsys.readouterr().err


def test_prefill_from_landing_url(capsys):
    assert main(["prefill", LANDING_URL]) == 0

    resolved = json.loads(capsys.readouterr().out)
    assert resolved["source"] == "simple"
    assert resolved["intakeId"] == "hf-1"
    assert resolved["language"] == "es"
    assert resolved["data"]["email"] == "jane@example.com"


def test_prefill_nothing_found(capsys):
    assert main(["prefill", "https://checkout.eonmeds.com/?utm_source=fb"]) == 0
    assert capsys.readouterr().out.strip() == "Nothing to prefill"


def test_create_intent_through_api(stripe_mocks, capsys):
    args = build_parser().parse_args(
        ["create-intent", "--api-url", "http://testserver", "--url", LANDING_URL] + ORDER_ARGS + ADDRESS_ARGS
    )
    assert cmd_create_intent(args, http_client=TestClient(fastapi_app)) == 0

    out = capsys.readouterr().out
    result = json.loads(out[out.index("{"):])
    assert result["clientSecret"] == "secret_123"
    assert result["amount"] == 36800

    kwargs = stripe_mocks.call_args.kwargs
    assert kwargs["amount"] == 36800
    assert kwargs["receipt_email"] == "jane@example.com"
    assert kwargs["shipping"]["address"]["state"] == "FL"
    metadata = kwargs["metadata"]
    assert metadata["intakeId"] == "hf-1"
    assert metadata["language"] == "es"
    assert metadata["customer_first_name"] == "Jane"
    assert metadata["lead_id"] == "lead-9"
    assert metadata["fbc"].startswith("fb.1.") and metadata["fbc"].endswith(".abc")
    assert metadata["meta_event_id"] in out
    assert metadata["user_agent"] == "medcheckout-cli"


def test_create_intent_stops_on_incomplete_address(stripe_mocks, capsys):
    args = build_parser().parse_args(
        ["create-intent", "--api-url", "http://testserver", "--city", "Tampa"] + ORDER_ARGS
    )
    assert cmd_create_intent(args, http_client=TestClient(fastapi_app)) == 1
    assert "(shipping)" in capsys.readouterr().err
    stripe_mocks.assert_not_called()
