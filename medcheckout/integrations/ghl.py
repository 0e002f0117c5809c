"""GoHighLevel contact upserts driven by Stripe payments."""
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional

from medcheckout.config import get_settings
from medcheckout.integrations.base import IntegrationNotConfigured, RestClient
from medcheckout.phi import mask_email

logger = logging.getLogger(__name__)

GHL_BASE = "https://rest.gohighlevel.com/v1"
DEFAULT_SOURCE = "checkout.eonmeds.com"


@dataclass
class GhlContact:
    email: str = ""
    phone: str = ""
    first_name: str = ""
    last_name: str = ""
    address1: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    lead_id: str = ""
    stripe_customer_id: str = ""
    stripe_subscription_id: str = ""
    stripe_payment_intent_id: str = ""
    meta_event_id: str = ""
    fbp: str = ""
    fbc: str = ""
    fbclid: str = ""
    source: str = DEFAULT_SOURCE
    medication: str = ""
    plan: str = ""
    payment_amount: str = ""
    payment_date: str = ""
    language: str = "en"
    tags: List[str] = field(default_factory=list)


def format_e164(phone: str) -> str:
    digits = re.sub(r"\D", "", phone or "")
    last10 = digits[-10:]
    return f"+1{last10}" if len(last10) == 10 else ""


def _slug(value: str) -> str:
    return re.sub(r"\s+", "-", value.lower())


def contact_tags(contact: GhlContact) -> List[str]:
    tags = list(contact.tags)
    wanted = ["spanish", "LANG-ES"] if contact.language == "es" else ["english", "LANG-EN"]
    wanted += ["eonmeds", "payment-completed"]
    for tag in wanted:
        if tag not in tags:
            tags.append(tag)
    return tags


def contact_custom_fields(contact: GhlContact, field_ids: dict) -> List[dict]:
    values = [
        ("GHL_CF_LEAD_ID", contact.lead_id),
        ("GHL_CF_META_EVENT_ID", contact.meta_event_id),
        ("GHL_CF_FBP", contact.fbp),
        ("GHL_CF_FBC", contact.fbc),
        ("GHL_CF_FBCLID", contact.fbclid),
        ("GHL_CF_STRIPE_CUSTOMER_ID", contact.stripe_customer_id),
        ("GHL_CF_STRIPE_SUBSCRIPTION_ID", contact.stripe_subscription_id),
        ("GHL_CF_STRIPE_PAYMENT_INTENT_ID", contact.stripe_payment_intent_id),
        ("GHL_CF_MEDICATION", contact.medication),
        ("GHL_CF_PLAN", contact.plan),
        ("GHL_CF_SOURCE", contact.source or DEFAULT_SOURCE),
        ("GHL_CF_LAST_PAYMENT_AMOUNT", contact.payment_amount),
        ("GHL_CF_LAST_PAYMENT_DATE", contact.payment_date),
    ]
    return [
        {"id": field_ids[env_var], "value": value}
        for env_var, value in values
        if field_ids.get(env_var) and value
    ]


def build_payload_from_stripe(payment_intent: dict, metadata: dict,
                              subscription_id: str = None, today: date = None) -> GhlContact:
    shipping = (payment_intent.get("shipping") or {}).get("address") or {}
    language = metadata.get("language") or metadata.get("lang") or "en"
    spanish = language == "es"

    tags = [
        "WL-PURCHASED",
        "SOURCE-META-ES" if spanish else "SOURCE-META-EN",
        "LANG-ES" if spanish else "LANG-EN",
    ]
    if metadata.get("medication"):
        tags.append(_slug(metadata["medication"]))
    if metadata.get("plan"):
        tags.append(f"plan-{_slug(metadata['plan'])}")
    tags.append("subscription" if metadata.get("is_subscription") == "true" else "one-time-purchase")

    today = today or date.today()
    return GhlContact(
        email=metadata.get("customer_email") or payment_intent.get("receipt_email") or "",
        phone=metadata.get("customer_phone", ""),
        first_name=metadata.get("customer_first_name", ""),
        last_name=metadata.get("customer_last_name", ""),
        address1=metadata.get("shipping_line1") or shipping.get("line1") or "",
        city=metadata.get("shipping_city") or shipping.get("city") or "",
        state=metadata.get("shipping_state") or shipping.get("state") or "",
        postal_code=metadata.get("shipping_zip") or shipping.get("postal_code") or "",
        lead_id=metadata.get("lead_id", ""),
        stripe_customer_id=metadata.get("customer_id") or payment_intent.get("customer") or "",
        stripe_subscription_id=subscription_id or "",
        stripe_payment_intent_id=payment_intent.get("id", ""),
        meta_event_id=metadata.get("meta_event_id", ""),
        fbp=metadata.get("fbp", ""),
        fbc=metadata.get("fbc", ""),
        fbclid=metadata.get("fbclid", ""),
        source=metadata.get("source") or DEFAULT_SOURCE,
        medication=metadata.get("medication", ""),
        plan=metadata.get("plan", ""),
        payment_amount=f"${(payment_intent.get('amount') or 0) / 100:.2f}",
        payment_date=f"{today:%B} {today.day}, {today.year}",
        language="es" if spanish else "en",
        tags=tags,
    )


class GhlClient(RestClient):
    provider = "gohighlevel"
    base_url = GHL_BASE

    def __init__(self, api_key: str = None, location_id: str = None,
                 custom_field_ids: dict = None, **kwargs):
        super().__init__(**kwargs)
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.ghl_api_key
        self.location_id = location_id if location_id is not None else settings.ghl_location_id
        self.custom_field_ids = (
            custom_field_ids if custom_field_ids is not None else settings.ghl_custom_fields
        )

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.location_id)

    def headers(self) -> dict:
        if not self.api_key:
            raise IntegrationNotConfigured(self.provider, "GHL_API_KEY")
        return {"Authorization": f"Bearer {self.api_key}"}

    def contact_body(self, contact: GhlContact) -> dict:
        body = {
            "locationId": self.location_id,
            "email": contact.email or None,
            "phone": format_e164(contact.phone) or None,
            "firstName": contact.first_name or None,
            "lastName": contact.last_name or None,
            "address1": contact.address1 or None,
            "city": contact.city or None,
            "state": contact.state or None,
            "postalCode": contact.postal_code or None,
            "country": "US",
            "source": contact.source or "EONMeds Checkout",
            "tags": contact_tags(contact),
        }
        custom_fields = contact_custom_fields(contact, self.custom_field_ids)
        if custom_fields:
            body["customField"] = custom_fields
        return {k: v for k, v in body.items() if v is not None}

    def upsert_contact(self, contact: GhlContact) -> Optional[dict]:
        """Create or update the contact; returns None when GHL is not configured."""
        if not self.configured:
            logger.warning("GHL not configured (missing GHL_LOCATION_ID or GHL_API_KEY)")
            return None

        body = self.contact_body(contact)
        logger.info(
            "Upserting GHL contact %s (%d tags, %d custom fields)",
            mask_email(contact.email), len(body["tags"]), len(body.get("customField", [])),
        )
        response = self.request_json("POST", "/contacts/", json=body)
        result = response.get("contact", response) if isinstance(response, dict) else {}
        logger.info("GHL contact upserted: %s", result.get("id"))
        return result
