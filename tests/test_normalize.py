import re

from medcheckout.intake.normalize import (
    build_answer_index,
    extract_answers,
    extract_intake_id,
    first_non_empty,
    format_dob,
    format_phone,
    map_heyflow_fields,
    map_redirect_params,
    parse_address,
    pick_string,
    split_phi,
)


def test_parse_formatted_address():
    assert parse_address("123 Main St, Houston, TX 77001, USA") == {
        "address1": "123 Main St",
        "city": "Houston",
        "state": "TX",
        "zip": "77001",
    }


def test_parse_address_zip_in_fourth_part():
    result = parse_address("1 Elm Rd, Tampa, Florida, 33601")
    assert result["state"] == "FL"
    assert result["zip"] == "33601"


def test_parse_json_address():
    result = parse_address('{"street": "9 Oak Ave", "city": "Miami", "state": "FL", "postal_code": "33101"}')
    assert result == {"address1": "9 Oak Ave", "city": "Miami", "state": "FL", "zip": "33101"}


def test_format_phone_and_dob():
    assert format_phone("(555) 123-4567") == "5551234567"
    assert format_dob("1990-05-01") == "1990-05-01"
    assert format_dob("5/1/1990") == "1990-05-01"
    assert format_dob("May 1, 1990") == "1990-05-01"
    assert format_dob("not a date") == "not a date"


def test_map_heyflow_fields():
    params = map_heyflow_fields({
        "First Name": "Jane",
        "lastname": "Doe",
        "Phone Number": "+1 (555) 123-4567",
        "Date of Birth": "01/02/1985",
        "mapsNativeSelect": "10 Bay St, Orlando, FL 32801, USA",
        "language": "es",
        "unrelated": "ignored",
        "count": 3,
    })
    assert params == {
        "firstName": "Jane",
        "lastName": "Doe",
        "phone": "15551234567",
        "dob": "1985-01-02",
        "address1": "10 Bay St",
        "city": "Orlando",
        "state": "FL",
        "zip": "32801",
        "lang": "es",
    }


def test_map_heyflow_fields_picks_up_unmapped_address_parts():
    params = map_heyflow_fields({"shipping_city": "Austin", "shipping_state": "texas", "postal_code_1": "78701-1234"})
    assert params["city"] == "Austin"
    assert params["state"] == "TE"
    assert params["zip"] == "78701"


def test_map_redirect_params_skips_placeholders():
    params = map_redirect_params({
        "firstName": "@firstname",
        "lastName": "{{lastname}}",
        "email": "jane@example.com",
        "tel": "555.123.4567",
        "state": "fl",
        "address": "1 Main St, Tampa, FL 33601, USA",
        "intake_id": "hf-123",
    })
    assert "firstName" not in params
    assert "lastName" not in params
    assert params["phone"] == "5551234567"
    assert params["state"] == "FL"
    assert params["address1"] == "1 Main St"
    assert params["city"] == "Tampa"
    assert params["intakeId"] == "hf-123"
    assert params["lang"] == "en"


def test_map_redirect_params_generates_intake_id():
    params = map_redirect_params({"lang": "es"})
    assert params["lang"] == "es"
    assert re.match(r"^hf-\d+-[a-z0-9]{6}$", params["intakeId"])


def test_split_phi():
    phi, non_phi = split_phi({"firstName": "A", "email": "a@b.co", "lang": "en", "intakeId": "x", "plan": ""})
    assert phi == {"firstName": "A", "email": "a@b.co"}
    assert non_phi == {"lang": "en", "intakeId": "x"}


def test_extract_answers_shapes():
    assert extract_answers({"fields": [{"label": "Height", "value": 70}]}) == [{"label": "Height", "value": "70"}]
    assert extract_answers({"answers": [{"question": "BMI", "answer": "31"}]}) == [{"label": "BMI", "value": "31"}]
    assert extract_answers({"answers": {"Weight": "200"}}) == [{"label": "Weight", "value": "200"}]
    assert extract_answers({"data": {"Goal": "lose"}}) == [{"label": "Goal", "value": "lose"}]
    flat = extract_answers({"email": "a@b.co", "signature": "data:image/png"})
    assert flat == [{"label": "email", "value": "a@b.co"}]


def test_answer_index_and_helpers():
    index = build_answer_index([
        {"label": "Starting Weight", "value": "210"},
        {"label": "starting weight", "value": "999"},
        {"label": "BMI", "value": ""},
    ])
    assert index == {"startingweight": "210"}
    assert first_non_empty(None, "  ", " x ") == "x"
    assert pick_string({"Email": " a@b.co "}, ["email", "Email"]) == "a@b.co"
    assert pick_string(["not", "a", "dict"], ["email"]) == ""


def test_extract_intake_id():
    assert extract_intake_id({"meta": {"intake_id": "m-1"}, "id": "x"}) == "m-1"
    assert extract_intake_id({"responseId": "r-1"}) == "r-1"
    assert extract_intake_id({}).startswith("hf-")
