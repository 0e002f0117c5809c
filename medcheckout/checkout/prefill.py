"""
Prefill of the checkout form from intake data.

Sources are tried in order: signed URL parameters (``data``/``ts``/``sig``),
plain URL parameters, the one-time ``token`` handed out by the intake
redirect, and finally the encrypted ``eon_prefill`` cookie.
"""
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, List, Mapping, Optional, Tuple

from jose import jwe
from jose.exceptions import JOSEError
from pydantic import BaseModel, ValidationError, field_validator

from medcheckout.config import Settings, get_settings
from medcheckout.integrations.base import IntegrationError, RestClient
from medcheckout.tokens import base64url_decode, now_ms, verify_signed_params

logger = logging.getLogger(__name__)

PREFILL_COOKIE_NAME = "eon_prefill"
INTAKE_ID_COOKIE_NAME = "eon_intake_id"
COOKIE_DOMAIN = ".eonmeds.com"
COOKIE_EXPIRY_MS = 24 * 60 * 60 * 1000

SENSITIVE_PARAMS = (
    "data", "ts", "sig",
    "firstName", "first_name", "lastName", "last_name",
    "email", "phone", "tel", "dob", "dateOfBirth", "date_of_birth",
    "address", "address1", "address2", "street", "apt",
    "city", "state", "zip", "zipCode", "postal", "country",
    "intakeId", "intake_id", "id",
)

_EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_CHARS = re.compile(r"^[\d\s\-\(\)\+]+$")
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_ZIP = re.compile(r"^\d{5}(-\d{4})?$")


class PrefillAddress(BaseModel):
    line1: str
    line2: Optional[str] = None
    city: str
    state: str
    zip: str
    country: str = "US"

    @field_validator("line1", "city")
    @classmethod
    def _required(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be empty")
        return value

    @field_validator("state")
    @classmethod
    def _state(cls, value: str) -> str:
        if len(value) != 2:
            raise ValueError("must be a 2-letter state code")
        return value.upper()

    @field_validator("zip")
    @classmethod
    def _zip(cls, value: str) -> str:
        if not _ZIP.match(value):
            raise ValueError("Invalid ZIP code")
        return value


class IntakePrefillData(BaseModel):
    firstName: str
    lastName: str
    email: str
    phone: str
    dob: str
    address: PrefillAddress
    medication: Optional[str] = None
    plan: Optional[str] = None
    language: str = "en"
    intakeId: Optional[str] = None
    source: Optional[str] = None

    @field_validator("firstName", "lastName")
    @classmethod
    def _name(cls, value: str) -> str:
        value = value.strip()
        if not value or len(value) > 100:
            raise ValueError("must be 1-100 characters")
        return value

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        value = value.strip().lower()
        if len(value) > 254 or not _EMAIL.match(value):
            raise ValueError("Invalid email")
        return value

    @field_validator("phone")
    @classmethod
    def _phone(cls, value: str) -> str:
        if not _PHONE_CHARS.match(value):
            raise ValueError("Invalid phone format")
        digits = re.sub(r"\D", "", value)
        if len(digits) < 10:
            raise ValueError("Phone must have at least 10 digits")
        return digits

    @field_validator("dob")
    @classmethod
    def _dob(cls, value: str) -> str:
        if not _ISO_DATE.match(value):
            raise ValueError("DOB must be YYYY-MM-DD format")
        try:
            born = date.fromisoformat(value)
        except ValueError:
            raise ValueError("DOB must be YYYY-MM-DD format")
        age = (date.today() - born).days / 365.25
        if not 18 <= age <= 120:
            raise ValueError("Must be 18+ years old")
        return value

    @field_validator("medication")
    @classmethod
    def _medication(cls, value):
        if value is not None and value not in ("semaglutide", "tirzepatide"):
            raise ValueError("Unknown medication")
        return value

    @field_validator("plan")
    @classmethod
    def _plan(cls, value):
        if value is not None and value not in ("monthly", "3month", "6month"):
            raise ValueError("Unknown plan")
        return value

    @field_validator("language")
    @classmethod
    def _language(cls, value: str) -> str:
        if value not in ("en", "es"):
            raise ValueError("language must be en or es")
        return value

    @field_validator("intakeId", "source")
    @classmethod
    def _short(cls, value):
        if value is not None and len(value) > 100:
            raise ValueError("must be at most 100 characters")
        return value


@dataclass
class PrefillResult:
    data: Optional[IntakePrefillData] = None
    source: Optional[str] = None        # signed | simple | token | cookie
    intake_id: Optional[str] = None
    language: str = "en"
    error: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    cookie: Optional[str] = None        # encrypted value to persist as eon_prefill


def parse_intake_prefill_data(raw) -> Tuple[Optional[IntakePrefillData], List[str]]:
    try:
        return IntakePrefillData.model_validate(raw), []
    except ValidationError as exc:
        errors = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        ]
        return None, errors


def _unchecked(values: dict) -> IntakePrefillData:
    """Build prefill data without validation; plain URL and token sources are best effort."""
    values = dict(values)
    address = PrefillAddress.model_construct(**(values.pop("address", None) or {}))
    return IntakePrefillData.model_construct(address=address, **values)


# -- sanitizers -----------------------------------------------------------------------------

def sanitize_string(value: Optional[str]) -> str:
    if not value:
        return ""
    value = value.strip()
    value = re.sub(r"[<>]", "", value)
    value = re.sub(r"javascript:", "", value, flags=re.IGNORECASE)
    value = re.sub(r"on\w+=", "", value, flags=re.IGNORECASE)
    return value[:500]


def sanitize_email(value: Optional[str]) -> str:
    return sanitize_string(value).lower()


def sanitize_phone(value: Optional[str]) -> str:
    return re.sub(r"\D", "", value or "")[:15]


def sanitize_state(value: Optional[str]) -> str:
    return re.sub(r"[^A-Z]", "", (value or "").upper())[:2]


def sanitize_zip(value: Optional[str]) -> str:
    return re.sub(r"[^\d-]", "", value or "")[:10]


def sanitize_dob(value: Optional[str]) -> str:
    if not value:
        return ""
    cleaned = re.sub(r"[^\d-]", "", value)
    if _ISO_DATE.match(cleaned):
        return cleaned
    match = re.search(r"(\d{1,2})[/\-](\d{1,2})[/\-](\d{4})", value)
    if match:
        month, day, year = match.groups()
        return f"{year}-{month.zfill(2)}-{day.zfill(2)}"
    return cleaned


def parse_simple_params(params: Mapping[str, str]) -> dict:
    get = params.get
    return {
        "firstName": sanitize_string(get("firstName") or get("first_name")),
        "lastName": sanitize_string(get("lastName") or get("last_name")),
        "email": sanitize_email(get("email")),
        "phone": sanitize_phone(get("phone") or get("tel")),
        "dob": sanitize_dob(get("dob") or get("dateOfBirth") or get("date_of_birth")),
        "address": {
            "line1": sanitize_string(get("address1") or get("address") or get("street")),
            "line2": sanitize_string(get("address2") or get("apt")) or None,
            "city": sanitize_string(get("city")),
            "state": sanitize_state(get("state")),
            "zip": sanitize_zip(get("zip") or get("zipCode") or get("postal")),
            "country": sanitize_string(get("country")) or "US",
        },
        "medication": get("medication") or None,
        "plan": get("plan") or None,
        "language": get("lang") or get("language") or "en",
        "intakeId": sanitize_string(get("intakeId") or get("intake_id") or get("id")) or None,
        "source": sanitize_string(get("source") or get("utm_source")) or None,
    }


def phi_to_prefill(phi: Mapping[str, str], non_phi: Mapping[str, str] = None) -> dict:
    """Convert the flat PHI record stored by the intake endpoints into prefill fields."""
    non_phi = non_phi or {}
    return {
        "firstName": phi.get("firstName", ""),
        "lastName": phi.get("lastName", ""),
        "email": (phi.get("email") or "").lower(),
        "phone": sanitize_phone(phi.get("phone")),
        "dob": phi.get("dob", ""),
        "address": {
            "line1": phi.get("address1", ""),
            "line2": phi.get("address2") or None,
            "city": phi.get("city", ""),
            "state": sanitize_state(phi.get("state")),
            "zip": phi.get("zip", ""),
            "country": "US",
        },
        "medication": non_phi.get("medication") or None,
        "plan": non_phi.get("plan") or None,
        "language": non_phi.get("lang") or "en",
        "intakeId": non_phi.get("intakeId") or None,
        "source": non_phi.get("source") or None,
    }


def clean_query(params: Mapping[str, str]) -> dict:
    """Query parameters with PHI and signing fields removed (lang, source, utm_* survive)."""
    return {k: v for k, v in params.items() if k not in SENSITIVE_PARAMS}


# -- encrypted cookie -----------------------------------------------------------------------

def _cookie_key(hex_key: str) -> bytes:
    key = bytes.fromhex(hex_key)
    if len(key) != 32:
        raise ValueError("PREFILL_ENCRYPTION_KEY must be 64 hex characters")
    return key


def encrypt_prefill_cookie(data: IntakePrefillData, hex_key: str, intake_id: str = None,
                           current_ms: int = None) -> str:
    current = current_ms if current_ms is not None else now_ms()
    payload = {
        "data": data.model_dump(),
        "expiresAt": current + COOKIE_EXPIRY_MS,
        "intakeId": intake_id,
    }
    token = jwe.encrypt(json.dumps(payload), _cookie_key(hex_key), algorithm="dir", encryption="A256GCM")
    return token.decode("ascii") if isinstance(token, bytes) else token


def decrypt_prefill_cookie(value: str, hex_key: str, current_ms: int = None):
    """Return ``(data, intake_id, expired)``; undecryptable cookies read as empty."""
    try:
        payload = json.loads(jwe.decrypt(value, _cookie_key(hex_key)))
    except (JOSEError, ValueError) as exc:
        logger.warning("Failed to decrypt prefill cookie: %s", exc.__class__.__name__)
        return None, None, False

    intake_id = payload.get("intakeId")
    current = current_ms if current_ms is not None else now_ms()
    if current > int(payload.get("expiresAt") or 0):
        logger.info("Prefill cookie expired")
        return None, intake_id, True

    raw = payload.get("data") or {}
    data, _ = parse_intake_prefill_data(raw)
    if data is None:
        data = _unchecked(raw)
    return data, intake_id, False


# -- resolution -----------------------------------------------------------------------------

class PrefillApiClient(RestClient):
    provider = "checkout-api"

    def __init__(self, base_url: str, **kwargs):
        super().__init__(**kwargs)
        self.base_url = base_url.rstrip("/")

    def get_prefill(self, token: str) -> dict:
        result = self.request_json("GET", "/api/intake/get-prefill", params={"token": token})
        if not isinstance(result, dict) or not result.get("ok"):
            raise IntegrationError(self.provider, "prefill lookup returned no data")
        return result.get("data") or {}


class PrefillResolver:
    def __init__(self, settings: Settings = None, fetch_token: Callable[[str], dict] = None,
                 clock=now_ms):
        self.settings = settings or get_settings()
        self._fetch_token = fetch_token
        self._clock = clock

    def fetch_token(self, token: str) -> dict:
        if self._fetch_token is not None:
            return self._fetch_token(token)
        with PrefillApiClient(self.settings.checkout_url) as client:
            return client.get_prefill(token)

    def resolve(self, params: Mapping[str, str], cookies: Mapping[str, str] = None,
                save_cookie: bool = True) -> PrefillResult:
        cookies = cookies or {}
        result = self._from_url(params)
        if result is None:
            result = self._from_token(params)
        if result is None:
            result = self._from_cookie(cookies)
        if result is None:
            result = PrefillResult(language=params.get("lang") or "en")

        if save_cookie and result.data is not None and result.source != "cookie":
            key = self.settings.prefill_encryption_key
            if key:
                result.cookie = encrypt_prefill_cookie(result.data, key, result.intake_id, self._clock())
        return result

    def _from_url(self, params: Mapping[str, str]) -> Optional[PrefillResult]:
        if not params:
            return None
        if all(params.get(k) for k in ("data", "ts", "sig")):
            if self.settings.intake_hmac_secret:
                return self._from_signed(params)
            logger.warning("Signed params found but INTAKE_HMAC_SECRET is not set")

        simple = parse_simple_params(params)
        if not any(simple[k] for k in ("firstName", "lastName", "email", "phone")):
            return None
        intake_id = simple["intakeId"]
        language = simple["language"]
        return PrefillResult(data=_unchecked(simple), source="simple", intake_id=intake_id, language=language)

    def _from_signed(self, params: Mapping[str, str]) -> PrefillResult:
        lang = params.get("lang") if params.get("lang") in ("en", "es") else "en"
        failed = PrefillResult(source="signed", language=lang)
        if not params["ts"].isdigit():
            failed.error = "Invalid signed parameters"
            return failed

        check = verify_signed_params(
            params["data"], params["ts"], params["sig"], self.settings.intake_hmac_secret, self._clock(),
        )
        if check.expired:
            failed.error = "Link has expired (>30 minutes old)"
            return failed
        if not check.valid:
            failed.error = "Invalid signature - data may have been tampered with"
            return failed

        try:
            decoded = json.loads(base64url_decode(params["data"]))
        except ValueError:
            failed.error = "Failed to decode data payload"
            return failed

        data, errors = parse_intake_prefill_data(decoded)
        if data is None:
            failed.error = "Data validation failed"
            failed.errors = errors
            return failed
        return PrefillResult(data=data, source="signed", intake_id=data.intakeId, language=data.language or lang)

    def _from_token(self, params: Mapping[str, str]) -> Optional[PrefillResult]:
        token = params.get("token")
        if not token:
            return None
        language = params.get("lang") or "en"
        intake_id = params.get("intakeId") or None
        try:
            phi = self.fetch_token(token)
        except IntegrationError as exc:
            logger.warning("Prefill token lookup failed (%s)", exc.status_code)
            return PrefillResult(source="token", intake_id=intake_id, language=language,
                                 error="Prefill data is no longer available")
        values = phi_to_prefill(phi, params)
        return PrefillResult(data=_unchecked(values), source="token", intake_id=intake_id, language=language)

    def _from_cookie(self, cookies: Mapping[str, str]) -> Optional[PrefillResult]:
        value = cookies.get(PREFILL_COOKIE_NAME)
        key = self.settings.prefill_encryption_key
        if not value or not key:
            return None
        data, intake_id, expired = decrypt_prefill_cookie(value, key, self._clock())
        if expired:
            return PrefillResult(intake_id=intake_id,
                                 error="Prefill data has expired. Please start a new intake.")
        if data is None:
            return None
        return PrefillResult(data=data, source="cookie", intake_id=intake_id, language=data.language or "en")
