"""IntakeQ client: patient records, custom fields and PDF uploads."""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from medcheckout.config import get_settings
from medcheckout.intake.normalize import normalize_text_key
from medcheckout.integrations.base import IntegrationError, IntegrationNotConfigured, RestClient

logger = logging.getLogger(__name__)

INTAKEQ_API_BASE = "https://intakeq.com/api/v1"

# normalized field text -> FieldId, learned from client profiles (process lifetime)
_field_id_cache: Dict[str, str] = {}


def cached_field_ids() -> Dict[str, str]:
    return dict(_field_id_cache)


def clear_field_id_cache():
    _field_id_cache.clear()


@dataclass
class IntakeQAddress:
    street: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""


@dataclass
class IntakeQClientInput:
    first_name: str
    last_name: str
    email: str
    phone: str = ""
    date_of_birth: str = ""     # YYYY-MM-DD
    gender: str = ""
    address: Optional[IntakeQAddress] = None


@dataclass
class CustomFieldUpdate:
    client_id: int
    updated: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)


def _client_id(record) -> Optional[int]:
    if not isinstance(record, dict):
        return None
    for key in ("Id", "ClientId"):
        value = record.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def _dob_millis(date_of_birth: str) -> Optional[int]:
    try:
        dob = datetime.strptime(date_of_birth, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    except ValueError:
        return None
    return int(dob.timestamp() * 1000)


class IntakeQClient(RestClient):
    provider = "intakeq"
    base_url = INTAKEQ_API_BASE

    def __init__(self, api_key: str = None, **kwargs):
        super().__init__(**kwargs)
        self.api_key = api_key if api_key is not None else get_settings().intakeq_api_key

    def headers(self) -> dict:
        if not self.api_key:
            raise IntegrationNotConfigured(self.provider, "INTAKEQ_API_KEY")
        return {"X-Auth-Key": self.api_key}

    def _search(self, email: str, include_profile: bool = False):
        params = {"search": email}
        if include_profile:
            params["includeProfile"] = "true"
        result = self.request_json("GET", "/clients", params=params)
        return result if isinstance(result, list) else []

    def find_client_by_email(self, email: str) -> Optional[dict]:
        trimmed = (email or "").strip()
        if not trimmed:
            return None
        wanted = trimmed.lower()
        for record in self._search(trimmed):
            client_id = _client_id(record)
            if client_id is None:
                continue
            if str(record.get("Email") or "").lower() == wanted:
                return {**record, "Id": client_id}
        return None

    def create_client(self, data: IntakeQClientInput) -> dict:
        payload = {
            "FirstName": data.first_name or "",
            "LastName": data.last_name or "",
            "Email": data.email,
        }
        if data.phone:
            payload["Phone"] = data.phone
        if data.date_of_birth:
            millis = _dob_millis(data.date_of_birth)
            if millis is not None:
                payload["DateOfBirth"] = millis
        if data.gender:
            payload["Gender"] = data.gender

        if data.address:
            street = data.address.street or ""
            city = data.address.city or ""
            state = (data.address.state or "").upper()[:2]
            zip_code = data.address.zip or ""
            if street:
                payload["StreetAddress"] = street
            if city:
                payload["City"] = city
            if state:
                payload["StateShort"] = state
            if zip_code:
                payload["PostalCode"] = zip_code
            payload["Country"] = "USA"

            city_state = f"{city}{',' if city and state else ''} {state}".strip()
            full = " ".join(part for part in (street, city_state, zip_code, "USA") if part)
            if full.strip():
                payload["Address"] = full.strip()

        created = self.request_json("POST", "/clients", json=payload)
        client_id = _client_id(created)
        if client_id is None:
            raise IntegrationError(self.provider, "create client returned unexpected response")
        return {**created, "Id": client_id}

    def ensure_client(self, data: IntakeQClientInput):
        """Return ``(client, created)``; the client is looked up by email first."""
        existing = self.find_client_by_email(data.email)
        if existing:
            return existing, False
        return self.create_client(data), True

    def upload_client_pdf(self, client_id: int, filename: str, pdf_bytes: bytes) -> None:
        self.request(
            "POST",
            f"/files/{client_id}",
            files={"file": (filename, pdf_bytes, "application/pdf")},
        )
        logger.info("Uploaded %s to IntakeQ client %s", filename, client_id)

    def get_client_profile_by_email(self, email: str) -> Optional[dict]:
        trimmed = (email or "").strip()
        if not trimmed:
            return None
        wanted = trimmed.lower()
        for record in self._search(trimmed, include_profile=True):
            if not isinstance(record, dict):
                continue
            if str(record.get("Email") or "").lower() != wanted:
                continue
            try:
                client_id = int(record.get("ClientId") or record.get("Id") or 0)
            except (TypeError, ValueError):
                client_id = 0
            if client_id:
                return {"client_id": client_id, "profile": record}
        return None

    def update_custom_fields_by_email(self, email: str, updates: Dict[str, Optional[str]],
                                      client_id: int = None) -> CustomFieldUpdate:
        email = email.strip()
        desired = {}
        for name, value in updates.items():
            name = (name or "").strip()
            value = (value or "").strip()
            if name and value:
                desired[normalize_text_key(name)] = (name, value)

        if not desired:
            return CustomFieldUpdate(client_id=int(client_id or 0))

        profile_result = self.get_client_profile_by_email(email)
        resolved_id = profile_result["client_id"] if profile_result else int(client_id or 0)
        if not resolved_id:
            raise IntegrationError(self.provider, "client not found for custom field update")

        existing = []
        profile = profile_result["profile"] if profile_result else {}
        for item in profile.get("CustomFields") or []:
            if not isinstance(item, dict):
                continue
            text = item.get("Text") if isinstance(item.get("Text"), str) else None
            value = item.get("Value")
            existing.append({
                "FieldId": str(item.get("FieldId") or ""),
                "Text": text,
                "Value": value if isinstance(value, str) or value is None else str(value),
            })
            if text and item.get("FieldId"):
                _field_id_cache[normalize_text_key(text)] = str(item["FieldId"])

        result = CustomFieldUpdate(client_id=resolved_id)
        seen = set()
        merged = []
        for item in existing:
            key = normalize_text_key(item["Text"]) if item["Text"] else ""
            if key in desired:
                seen.add(key)
                result.updated.append(desired[key][0])
                item = {**item, "Value": desired[key][1]}
            merged.append(item)

        for key, (name, value) in desired.items():
            if key in seen:
                continue
            field_id = _field_id_cache.get(key)
            if field_id:
                merged.append({"FieldId": field_id, "Text": name, "Value": value})
                result.updated.append(name)
            else:
                result.missing.append(name)

        self.request_json("POST", "/clients", json={
            "ClientId": resolved_id,
            "Email": email,
            "CustomFields": [
                {"FieldId": str(f["FieldId"]), "Text": f["Text"], "Value": f["Value"] or ""}
                for f in merged
            ],
        })
        return result
