"""Debounced, fingerprint-keyed PaymentIntent creation for a checkout session."""
import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from medcheckout.integrations.base import RestClient

logger = logging.getLogger(__name__)

DEBOUNCE_SECONDS = 0.35


def intent_fingerprint(amount_cents: int, email: str = "", phone: str = "", shipping: dict = None,
                       order: dict = None, language: str = "en", intake_id: str = "",
                       session_id: str = "") -> str:
    return json.dumps(
        {
            "amount": amount_cents,
            "email": (email or "").strip().lower(),
            "phone": phone or "",
            "shipping": shipping or {},
            "order": order or {},
            "language": language or "en",
            "intakeId": intake_id or "",
            "session": session_id or "",
        },
        sort_keys=True,
        separators=(",", ":"),
    )


def intent_cache_key(fingerprint: str) -> str:
    """KV key under which the create-intent response for one order is kept."""
    return "intent:" + hashlib.sha256(fingerprint.encode("utf-8")).hexdigest()


@dataclass
class IntentRequest:
    amount_cents: int
    customer_email: str = ""
    customer_name: str = ""
    customer_phone: str = ""
    shipping_address: dict = field(default_factory=dict)
    order_data: dict = field(default_factory=dict)
    language: str = "en"
    intake_id: str = ""
    tracking: dict = field(default_factory=dict)
    page_url: str = ""
    user_agent: str = ""

    def fingerprint(self) -> str:
        return intent_fingerprint(
            self.amount_cents,
            self.customer_email,
            self.customer_phone,
            self.shipping_address,
            self.order_data,
            self.language,
            self.intake_id,
            self.tracking.get("meta_event_id") or "",
        )

    def to_body(self) -> dict:
        body = {
            "amount": self.amount_cents,
            "currency": "usd",
            "customer_email": self.customer_email,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "shipping_address": self.shipping_address,
            "order_data": self.order_data,
            "language": self.language,
            "metadata": {"intakeId": self.intake_id} if self.intake_id else {},
            "page_url": self.page_url,
            "user_agent": self.user_agent,
        }
        body.update(self.tracking)
        return body


class IntentCoordinator:
    """Collapse bursts of order edits into one create-intent call per distinct order.

    ``update`` records the newest request; ``poll`` fires once the debounce
    window has passed and only when the fingerprint changed since the last
    call that was made.
    """

    def __init__(self, create_intent: Callable[[IntentRequest], dict], debounce: float = DEBOUNCE_SECONDS,
                 clock=time.monotonic, sleep=time.sleep):
        self._create_intent = create_intent
        self._debounce = debounce
        self._clock = clock
        self._sleep = sleep
        self._pending: Optional[IntentRequest] = None
        self._pending_at = 0.0
        self._last_fingerprint: Optional[str] = None
        self.result: Optional[dict] = None

    @property
    def last_fingerprint(self) -> Optional[str]:
        return self._last_fingerprint

    def update(self, request: IntentRequest) -> None:
        self._pending = request
        self._pending_at = self._clock()

    def poll(self, force: bool = False) -> Optional[dict]:
        if self._pending is None:
            return None
        if not force and self._clock() - self._pending_at < self._debounce:
            return None

        request, self._pending = self._pending, None
        if request.amount_cents <= 0:
            return None
        fingerprint = request.fingerprint()
        if fingerprint == self._last_fingerprint:
            logger.debug("Order unchanged, keeping current payment intent")
            return None

        self._last_fingerprint = fingerprint
        try:
            self.result = self._create_intent(request)
        except Exception:
            self._last_fingerprint = None
            raise
        return self.result

    def settle(self) -> Optional[dict]:
        if self._pending is not None:
            remaining = self._debounce - (self._clock() - self._pending_at)
            if remaining > 0:
                self._sleep(remaining)
        return self.poll(force=True)


class IntentApiClient(RestClient):
    provider = "checkout-api"

    def __init__(self, base_url: str, **kwargs):
        super().__init__(**kwargs)
        self.base_url = base_url.rstrip("/")

    def create_intent(self, request: IntentRequest) -> dict:
        result = self.request_json("POST", "/api/payment/create-intent", json=request.to_body())
        if not isinstance(result, dict) or not result.get("clientSecret"):
            raise ValueError("No client secret received")
        return result
