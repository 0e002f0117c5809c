"""Server-side Purchase events for the Meta Conversions API."""
import hashlib
import logging
import re
import time
from dataclasses import dataclass
from typing import Optional

from medcheckout.config import get_settings
from medcheckout.integrations.base import RestClient

logger = logging.getLogger(__name__)

GRAPH_API_BASE = "https://graph.facebook.com/v20.0"


def sha256(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_phone(phone: str) -> str:
    return re.sub(r"\s+", "", phone)


@dataclass
class MetaPurchase:
    event_source_url: str
    event_id: str               # must match the browser pixel's event id for dedup
    value: float                # dollars
    currency: str = "USD"
    fbp: str = ""
    fbc: str = ""
    lead_id: str = ""
    email: str = ""
    phone: str = ""
    user_agent: str = ""
    client_ip_address: str = ""
    test_event_code: str = ""


def build_user_data(event: MetaPurchase) -> dict:
    user_data = {}
    if event.fbp:
        user_data["fbp"] = event.fbp
    if event.fbc:
        user_data["fbc"] = event.fbc
    if event.lead_id:
        user_data["external_id"] = sha256(str(event.lead_id))
    if event.email:
        user_data["em"] = sha256(normalize_email(event.email))
    if event.phone:
        user_data["ph"] = sha256(normalize_phone(event.phone))
    if event.user_agent:
        user_data["client_user_agent"] = event.user_agent
    if event.client_ip_address:
        user_data["client_ip_address"] = event.client_ip_address
    return user_data


class MetaCapiClient(RestClient):
    provider = "meta"
    base_url = GRAPH_API_BASE

    def __init__(self, pixel_id: str = None, access_token: str = None,
                 test_event_code: str = None, clock=time.time, **kwargs):
        super().__init__(**kwargs)
        settings = get_settings()
        self.pixel_id = pixel_id if pixel_id is not None else settings.meta_pixel_id
        self.access_token = access_token if access_token is not None else settings.meta_capi_access_token
        self.test_event_code = (
            test_event_code if test_event_code is not None else settings.meta_test_event_code
        )
        self._clock = clock

    @property
    def configured(self) -> bool:
        return bool(self.pixel_id and self.access_token)

    def build_payload(self, event: MetaPurchase) -> dict:
        event_data = {
            "event_name": "Purchase",
            "event_time": int(self._clock()),
            "event_source_url": event.event_source_url,
            "action_source": "website",
            "event_id": event.event_id,
            "user_data": build_user_data(event),
            "custom_data": {"value": event.value, "currency": event.currency},
        }
        payload = {"data": [event_data]}
        test_code = event.test_event_code or self.test_event_code
        if test_code:
            payload["test_event_code"] = test_code
        return payload

    def send_purchase(self, event: MetaPurchase) -> Optional[dict]:
        if not self.configured:
            logger.warning("Meta CAPI not configured (missing META_PIXEL_ID or META_CAPI_ACCESS_TOKEN)")
            return None

        payload = self.build_payload(event)
        logger.info(
            "Sending Meta Purchase event %s value=%s %s test_mode=%s",
            event.event_id, event.value, event.currency, "test_event_code" in payload,
        )
        return self.request_json(
            "POST",
            f"/{self.pixel_id}/events",
            params={"access_token": self.access_token},
            json=payload,
        )
