"""Normalization of intake form submissions (Heyflow) into checkout fields."""
import json
import random
import re
import string
import time
from datetime import datetime
from typing import Dict, List, Optional

# Heyflow system labels -> checkout keys
FIELD_MAPPING = {
    # Name
    "firstname": "firstName",
    "first_name": "firstName",
    "First Name": "firstName",
    "lastname": "lastName",
    "last_name": "lastName",
    "Last Name": "lastName",
    # Contact
    "email": "email",
    "Email": "email",
    "phonenumber": "phone",
    "phone_number": "phone",
    "phone": "phone",
    "Phone Number": "phone",
    # Date of birth
    "dob": "dob",
    "date_of_birth": "dob",
    "Date of Birth": "dob",
    # Address (Google Maps autocomplete)
    "address": "address1",
    "Address": "address1",
    "mapsNativeSelect": "address1",
    "street": "address1",
    "address1": "address1",
    "address2": "address2",
    "apartment": "address2",
    "Apartment Number": "address2",
    "city": "city",
    "City": "city",
    "state": "state",
    "State": "state",
    "zip": "zip",
    "zipcode": "zip",
    "postal": "zip",
    "ZIP Code": "zip",
    # Preferences
    "medication": "medication",
    "medication_preference": "medication",
    "language": "lang",
    "lang": "lang",
}

# Raw address fields that hold a full autocomplete result
ADDRESS_BLOB_KEYS = {"mapsNativeSelect", "address", "Address"}

# Query-string names accepted by the redirect endpoint
REDIRECT_MAPPING = {
    "firstName": "firstName",
    "firstname": "firstName",
    "first_name": "firstName",
    "lastName": "lastName",
    "lastname": "lastName",
    "last_name": "lastName",
    "email": "email",
    "phone": "phone",
    "phonenumber": "phone",
    "phone_number": "phone",
    "tel": "phone",
    "dob": "dob",
    "dateOfBirth": "dob",
    "date_of_birth": "dob",
    "address1": "address1",
    "street": "address1",
    "address2": "address2",
    "apt": "address2",
    "apartment": "address2",
    "city": "city",
    "state": "state",
    "zip": "zip",
    "zipcode": "zip",
    "zipCode": "zip",
    "postal": "zip",
    "medication": "medication",
    "plan": "plan",
    "lang": "lang",
    "language": "lang",
    "intakeId": "intakeId",
    "intake_id": "intakeId",
    "source": "source",
}

PHI_FIELDS = ("firstName", "lastName", "email", "phone", "dob", "address1", "address2", "city", "state", "zip")
NON_PHI_FIELDS = ("lang", "intakeId", "medication", "plan", "source")

_STATE_ZIP = re.compile(r"^([A-Z]{2})\s*(\d{5})?")
_ZIP = re.compile(r"\d{5}")
_MDY = re.compile(r"(\d{1,2})/(\d{1,2})/(\d{4})")
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def is_placeholder(value: str) -> bool:
    """True for template variables the form builder failed to substitute."""
    return value.startswith("{{") or value.startswith("@")


def parse_address(text: str) -> Dict[str, str]:
    result: Dict[str, str] = {}
    if not text or not isinstance(text, str):
        return result

    try:
        parsed = json.loads(text)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict):
        if parsed.get("street"):
            result["address1"] = str(parsed["street"])
        if parsed.get("city"):
            result["city"] = str(parsed["city"])
        if parsed.get("state"):
            result["state"] = str(parsed["state"])
        zip_code = parsed.get("zip") or parsed.get("zipcode") or parsed.get("postal_code")
        if zip_code:
            result["zip"] = str(zip_code)
        return result

    parts = [p.strip() for p in text.split(",")]
    if len(parts) >= 1 and parts[0]:
        result["address1"] = parts[0]
    if len(parts) >= 2:
        result["city"] = parts[1]
    if len(parts) >= 3:
        state_zip = parts[2]
        match = _STATE_ZIP.match(state_zip)
        if match:
            result["state"] = match.group(1)
            if match.group(2):
                result["zip"] = match.group(2)
        elif state_zip:
            result["state"] = state_zip[:2].upper()
    if len(parts) >= 4 and "zip" not in result:
        zip_match = _ZIP.search(parts[3])
        if zip_match:
            result["zip"] = zip_match.group(0)
    return result


def format_phone(phone: Optional[str]) -> str:
    if not phone:
        return ""
    return re.sub(r"\D", "", phone)


def format_dob(dob: Optional[str]) -> str:
    if not dob:
        return ""
    dob = dob.strip()
    if _ISO_DATE.match(dob):
        return dob

    match = _MDY.search(dob)
    if match:
        month, day, year = match.groups()
        return f"{year}-{month.zfill(2)}-{day.zfill(2)}"

    for fmt in ("%B %d, %Y", "%b %d, %Y", "%d %B %Y", "%Y/%m/%d", "%m-%d-%Y"):
        try:
            return datetime.strptime(dob, fmt).date().isoformat()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(dob).date().isoformat()
    except ValueError:
        return dob


def generate_intake_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"hf-{int(time.time() * 1000)}-{suffix}"


def map_heyflow_fields(fields: dict) -> Dict[str, str]:
    params: Dict[str, str] = {}
    for key, value in fields.items():
        if not value or not isinstance(value, str):
            continue
        target = FIELD_MAPPING.get(key)
        if not target:
            continue
        if key in ADDRESS_BLOB_KEYS:
            params.update(parse_address(value))
        elif target == "phone":
            params[target] = format_phone(value)
        elif target == "dob":
            params[target] = format_dob(value)
        else:
            params[target] = value

    # Unmapped keys that still look like address parts
    for key, value in fields.items():
        if not value or not isinstance(value, str):
            continue
        lower = key.lower()
        if "city" in lower and not params.get("city"):
            params["city"] = value
        elif "state" in lower and not params.get("state"):
            params["state"] = value.upper()[:2]
        elif ("zip" in lower or "postal" in lower) and not params.get("zip"):
            params["zip"] = re.sub(r"\D", "", value)[:5]
    return params


def map_redirect_params(query: Dict[str, str]) -> Dict[str, str]:
    params: Dict[str, str] = {}
    for input_key, output_key in REDIRECT_MAPPING.items():
        value = query.get(input_key)
        if not value or not isinstance(value, str) or not value.strip():
            continue
        if is_placeholder(value):
            continue
        if output_key == "phone":
            params[output_key] = format_phone(value)
        elif output_key == "dob":
            params[output_key] = format_dob(value)
        elif output_key == "state":
            params[output_key] = value.upper()[:2]
        else:
            params[output_key] = value.strip()

    address_value = query.get("address") or query.get("mapsNativeSelect")
    if address_value and not is_placeholder(address_value):
        for key, value in parse_address(address_value).items():
            if value and not params.get(key):
                params[key] = value

    params.setdefault("lang", "en")
    if not params.get("intakeId"):
        params["intakeId"] = generate_intake_id()
    return params


def split_phi(params: Dict[str, str]):
    """Split checkout params into (phi, non_phi) dicts, dropping empty values."""
    phi = {k: params[k] for k in PHI_FIELDS if params.get(k)}
    non_phi = {k: params[k] for k in NON_PHI_FIELDS if params.get(k)}
    return phi, non_phi


# -- helpers for the IntakeQ intake webhook -------------------------------------------------

def pick_string(payload, keys: List[str]) -> str:
    if not isinstance(payload, dict):
        return ""
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def safe_to_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return str(value)


def normalize_text_key(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "", (value or "").lower())


def _pairs(items, label_keys, value_keys):
    answers = []
    for item in items:
        item = item if isinstance(item, dict) else {}
        label = next((item[k] for k in label_keys if item.get(k)), "")
        value = next((item[k] for k in value_keys if item.get(k) is not None), "")
        answer = {"label": safe_to_text(label).strip(), "value": safe_to_text(value).strip()}
        if answer["label"] or answer["value"]:
            answers.append(answer)
    return answers


def _mapping_pairs(mapping: dict, skip=()):
    answers = []
    for key, value in mapping.items():
        if key in skip:
            continue
        answer = {"label": safe_to_text(key).strip(), "value": safe_to_text(value).strip()}
        if answer["label"] or answer["value"]:
            answers.append(answer)
    return answers


def extract_answers(payload) -> List[Dict[str, str]]:
    """Pull question/answer pairs out of the common submission shapes."""
    if not isinstance(payload, dict):
        return []
    if isinstance(payload.get("fields"), list):
        return _pairs(payload["fields"], ("label", "name", "key"), ("value", "answer"))
    if isinstance(payload.get("answers"), list):
        return _pairs(payload["answers"], ("label", "question", "name"), ("value", "answer"))
    if isinstance(payload.get("answers"), dict):
        return _mapping_pairs(payload["answers"])
    if isinstance(payload.get("data"), dict):
        return _mapping_pairs(payload["data"])
    return _mapping_pairs(payload, skip=("signature", "file", "files"))


def build_answer_index(answers: List[Dict[str, str]]) -> Dict[str, str]:
    index: Dict[str, str] = {}
    for answer in answers:
        key = normalize_text_key(answer.get("label", ""))
        value = (answer.get("value") or "").strip()
        if key and value and key not in index:
            index[key] = value
    return index


def first_non_empty(*values) -> str:
    for value in values:
        text = (value or "").strip()
        if text:
            return text
    return ""


def extract_intake_id(payload) -> str:
    payload = payload if isinstance(payload, dict) else {}
    meta = payload.get("meta") if isinstance(payload.get("meta"), dict) else {}
    candidates = (
        payload.get("intakeId"),
        payload.get("intake_id"),
        meta.get("intakeId"),
        meta.get("intake_id"),
        payload.get("submissionId"),
        payload.get("submission_id"),
        payload.get("responseId"),
        payload.get("response_id"),
        payload.get("id"),
    )
    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return generate_intake_id()
