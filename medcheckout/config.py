import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

# Force-load .env (reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)

FALLBACK_TOKEN_SECRET = "fallback-secret-change-me"

# Stripe price IDs keyed by (medication, plan key)
PRICE_ENV_VARS = {
    ("semaglutide", "monthly"): ["STRIPE_PRICE_SEMAGLUTIDE_MONTHLY"],
    ("semaglutide", "singleMonth"): ["STRIPE_PRICE_SEMAGLUTIDE_SINGLEMONTH"],
    ("semaglutide", "threeMonth"): ["STRIPE_PRICE_SEMAGLUTIDE_3MONTH"],
    ("semaglutide", "sixMonth"): ["STRIPE_PRICE_SEMAGLUTIDE_6MONTH"],
    ("semaglutide", "oneTime"): ["STRIPE_PRICE_SEMAGLUTIDE_ONETIME"],
    ("tirzepatide", "monthly"): ["STRIPE_PRICE_TIRZEPATIDE_MONTHLY"],
    ("tirzepatide", "singleMonth"): ["STRIPE_PRICE_TIRZEPATIDE_SINGLEMONTH"],
    ("tirzepatide", "threeMonth"): ["STRIPE_PRICE_TIRZEPATIDE_3MONTH"],
    ("tirzepatide", "sixMonth"): ["STRIPE_PRICE_TIRZEPATIDE_6MONTH"],
    ("tirzepatide", "oneTime"): ["STRIPE_PRICE_TIRZEPATIDE_ONETIME"],
    ("addons", "nausea-rx"): ["STRIPE_PRICE_NAUSEA_RELIEF", "STRIPE_PRODUCT_NAUSEA_RELIEF"],
    ("addons", "fat-burner"): ["STRIPE_PRICE_FAT_BURNER", "STRIPE_PRODUCT_FAT_BURNER"],
    ("shipping", "expedited"): ["STRIPE_PRICE_EXPEDITED_SHIPPING", "STRIPE_SHIPPING_EXPEDITED"],
}

GHL_CUSTOM_FIELD_VARS = [
    "GHL_CF_LEAD_ID",
    "GHL_CF_META_EVENT_ID",
    "GHL_CF_FBP",
    "GHL_CF_FBC",
    "GHL_CF_FBCLID",
    "GHL_CF_STRIPE_CUSTOMER_ID",
    "GHL_CF_STRIPE_SUBSCRIPTION_ID",
    "GHL_CF_STRIPE_PAYMENT_INTENT_ID",
    "GHL_CF_MEDICATION",
    "GHL_CF_PLAN",
    "GHL_CF_SOURCE",
    "GHL_CF_LAST_PAYMENT_AMOUNT",
    "GHL_CF_LAST_PAYMENT_DATE",
]


def _env(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _first_env(names) -> str:
    for name in names:
        value = _env(name)
        if value:
            return value
    return ""


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./medcheckout.db"
    log_level: str = "INFO"

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    price_ids: Dict[Tuple[str, str], str] = field(default_factory=dict)

    airtable_api_token: str = ""
    airtable_base_id: str = "apphw1gpkw3YhBkVd"
    airtable_table_id: str = "tbl60EntLeyNUxv44"

    intakeq_api_key: str = ""

    ghl_api_key: str = ""
    ghl_location_id: str = ""
    ghl_custom_fields: Dict[str, str] = field(default_factory=dict)

    meta_pixel_id: str = ""
    meta_capi_access_token: str = ""
    meta_test_event_code: str = ""

    intake_token_secret: str = ""
    intake_hmac_secret: str = ""
    prefill_encryption_key: str = ""
    heyflow_webhook_secret: str = ""

    checkout_url: str = "https://checkout.eonmeds.com"
    allowed_origins: Tuple[str, ...] = ()
    jwt_secret: str = ""

    @classmethod
    def from_env(cls) -> "Settings":
        extra_origins = tuple(
            o.strip() for o in _env("ALLOWED_ORIGINS").split(",") if o.strip()
        )
        return cls(
            database_url=_env("DATABASE_URL", "sqlite:///./medcheckout.db"),
            log_level=_env("LOG_LEVEL", "INFO").upper(),
            stripe_secret_key=_env("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=_env("STRIPE_WEBHOOK_SECRET"),
            price_ids={key: _first_env(names) for key, names in PRICE_ENV_VARS.items()},
            airtable_api_token=_env("AIRTABLE_API_TOKEN"),
            airtable_base_id=_env("AIRTABLE_BASE_ID", "apphw1gpkw3YhBkVd"),
            airtable_table_id=_env("AIRTABLE_TABLE_ID", "tbl60EntLeyNUxv44"),
            intakeq_api_key=_env("INTAKEQ_API_KEY"),
            ghl_api_key=_env("GHL_API_KEY"),
            ghl_location_id=_env("GHL_LOCATION_ID"),
            ghl_custom_fields={name: _env(name) for name in GHL_CUSTOM_FIELD_VARS if _env(name)},
            meta_pixel_id=_env("META_PIXEL_ID"),
            meta_capi_access_token=_env("META_CAPI_ACCESS_TOKEN"),
            meta_test_event_code=_env("META_TEST_EVENT_CODE"),
            intake_token_secret=_env("INTAKE_TOKEN_SECRET"),
            intake_hmac_secret=_env("INTAKE_HMAC_SECRET"),
            prefill_encryption_key=_env("PREFILL_ENCRYPTION_KEY"),
            heyflow_webhook_secret=_env("HEYFLOW_WEBHOOK_SECRET"),
            checkout_url=_env("CHECKOUT_URL", "https://checkout.eonmeds.com").rstrip("/"),
            allowed_origins=extra_origins,
            jwt_secret=_env("JWT_SECRET"),
        )

    @property
    def token_secret(self) -> str:
        return self.intake_token_secret or self.stripe_webhook_secret or FALLBACK_TOKEN_SECRET

    def price_id(self, group: str, key: str) -> Optional[str]:
        return self.price_ids.get((group, key)) or None

    @property
    def stripe_configured(self) -> bool:
        return bool(self.stripe_secret_key and self.stripe_webhook_secret)

    @property
    def airtable_configured(self) -> bool:
        return bool(self.airtable_api_token and self.airtable_base_id and self.airtable_table_id)

    @property
    def ghl_configured(self) -> bool:
        return bool(self.ghl_api_key and self.ghl_location_id)

    @property
    def intakeq_configured(self) -> bool:
        return bool(self.intakeq_api_key)

    @property
    def meta_configured(self) -> bool:
        return bool(self.meta_pixel_id and self.meta_capi_access_token)


@lru_cache()
def get_settings() -> Settings:
    return Settings.from_env()
