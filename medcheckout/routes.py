import logging
from typing import Any, Dict, List, Optional

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from medcheckout.checkout.identity import CheckoutIdentity
from medcheckout.checkout.intent import intent_cache_key, intent_fingerprint
from medcheckout.config import get_settings
from medcheckout.cors import enforce_origin, preflight
from medcheckout.kv import get_kv
from medcheckout.phi import mask_email
from medcheckout.stripe_service import (
    addon_price_ids,
    build_description,
    build_intent_metadata,
    create_checkout_session,
    create_hosted_session,
    create_payment_intent,
    create_subscription,
    find_or_create_subscription_customer,
    get_or_create_customer,
    get_price_id,
    is_one_time_plan,
    is_subscription_plan,
    normalize_plan_name,
    subscription_price_id,
)

logger = logging.getLogger(__name__)

router = APIRouter()

MIN_AMOUNT_CENTS = 50
INTENT_CACHE_TTL_SECONDS = 24 * 60 * 60
REQUIRED_SHIPPING_FIELDS = ("addressLine1", "city", "state", "zipCode")


class ShippingAddressIn(BaseModel):
    addressLine1: str = ""
    addressLine2: str = ""
    city: str = ""
    state: str = ""
    zipCode: str = ""
    country: str = "US"

    def missing(self) -> List[str]:
        return [name for name in REQUIRED_SHIPPING_FIELDS if not getattr(self, name).strip()]


class CreateIntentRequest(BaseModel):
    amount: float = 0
    currency: str = "usd"
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    shipping_address: Optional[ShippingAddressIn] = None
    order_data: Dict[str, Any] = Field(default_factory=dict)
    language: str = "en"
    metadata: Dict[str, Any] = Field(default_factory=dict)
    lead_id: Optional[str] = None
    fbp: Optional[str] = None
    fbc: Optional[str] = None
    fbclid: Optional[str] = None
    meta_event_id: Optional[str] = None
    page_url: Optional[str] = None
    user_agent: Optional[str] = None


class CreateSubscriptionRequest(BaseModel):
    customer_email: Optional[str] = None
    plan_id: Optional[str] = None
    payment_type: Optional[str] = None
    shipping_address: Optional[ShippingAddressIn] = None
    order_data: Dict[str, Any] = Field(default_factory=dict)


class CheckoutSessionRequest(BaseModel):
    customer_email: Optional[str] = None
    order_data: Dict[str, Any] = Field(default_factory=dict)
    shipping_address: Optional[ShippingAddressIn] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class LineItem(BaseModel):
    name: Optional[str] = None
    amount: float = 0
    quantity: float = 1


class HostedSessionRequest(BaseModel):
    lineItems: List[LineItem] = Field(default_factory=list)
    customerEmail: Optional[str] = None


def _stripe_failure(exc: stripe.StripeError, action: str) -> HTTPException:
    logger.error("Stripe error while %s: %s", action, exc)
    return HTTPException(status_code=500, detail=exc.user_message or str(exc) or "Stripe error")


@router.options("/api/payment/create-intent")
@router.options("/api/payment/create-subscription")
@router.options("/api/payment/create-checkout-session")
@router.options("/api/checkout/sessions")
def payment_preflight(request: Request):
    return preflight(request)


def request_identity(request: CreateIntentRequest) -> CheckoutIdentity:
    existing = CheckoutIdentity(meta_event_id=request.meta_event_id) if request.meta_event_id else None
    return CheckoutIdentity.from_query(
        {
            "lead_id": request.lead_id,
            "fbp": request.fbp,
            "fbc": request.fbc,
            "fbclid": request.fbclid,
            "email": request.customer_email,
            "phone": request.customer_phone,
            "lang": request.language,
        },
        existing=existing,
    )


def forget_cached_intent(payment_intent: dict) -> None:
    """Drop the cached create-intent response once its PaymentIntent is paid."""
    key = (payment_intent.get("metadata") or {}).get("checkout_key")
    if not key:
        return
    try:
        get_kv().delete(key)
    except SQLAlchemyError:
        logger.exception("Could not clear cached intent for payment %s", payment_intent.get("id"))


@router.post("/api/payment/create-intent")
def create_intent_api(request: CreateIntentRequest, origin=Depends(enforce_origin)):
    amount = int(round(request.amount or 0))
    if amount < MIN_AMOUNT_CENTS:
        raise HTTPException(status_code=400, detail="Invalid amount")
    shipping = request.shipping_address
    if shipping is None or shipping.missing():
        raise HTTPException(
            status_code=400,
            detail="Shipping address is required (addressLine1, city, state, zipCode)",
        )
    shipping_payload = shipping.model_dump()
    order = request.order_data or {}
    intake_id = str(request.metadata.get("intakeId") or "")
    identity = request_identity(request)

    fingerprint = intent_fingerprint(
        amount,
        request.customer_email or "",
        request.customer_phone or "",
        shipping_payload,
        order,
        request.language,
        intake_id,
        identity.meta_event_id,
    )
    key = intent_cache_key(fingerprint)
    kv = get_kv()
    cached = kv.get(key)
    if cached:
        logger.info("Returning existing payment intent %s for unchanged order", cached.get("paymentIntentId"))
        return cached

    plan_name = normalize_plan_name(order.get("plan") or "")
    subscription = is_subscription_plan(order.get("plan") or "")
    main_price_id = get_price_id(order.get("medication") or "", order.get("plan") or "")
    addon_prices = addon_price_ids(order.get("addons") or [], bool(order.get("expeditedShipping")))

    try:
        customer = get_or_create_customer(
            request.customer_email,
            name=request.customer_name,
            phone=request.customer_phone,
            address={
                "line1": shipping.addressLine1,
                "line2": shipping.addressLine2 or None,
                "city": shipping.city,
                "state": shipping.state,
                "postal_code": shipping.zipCode,
                "country": shipping.country or "US",
            },
            metadata={"language": request.language, "source": "checkout.eonmeds.com"},
        )
        metadata = build_intent_metadata(
            extra=request.metadata,
            customer_id=customer.id,
            email=request.customer_email,
            name=request.customer_name,
            phone=request.customer_phone,
            language=request.language,
            tracking={
                **identity.tracking_payload(),
                "page_url": request.page_url,
                "user_agent": request.user_agent,
            },
            shipping=shipping_payload,
            order=order,
            plan_name=plan_name,
            subscription=subscription,
            main_price_id=main_price_id,
            addon_prices=addon_prices,
        )
        metadata["checkout_key"] = key
        intent = create_payment_intent(
            amount=amount,
            currency=request.currency,
            customer_id=customer.id,
            description=build_description(
                order.get("medication"), plan_name, order.get("addons") or [], bool(order.get("expeditedShipping"))
            ),
            email=request.customer_email,
            name=request.customer_name,
            shipping=shipping_payload,
            metadata=metadata,
            subscription=subscription,
        )
    except stripe.StripeError as e:
        raise _stripe_failure(e, "creating payment intent")

    logger.info(
        "Created payment intent %s for %s (%d cents)", intent.id, mask_email(request.customer_email or ""), amount
    )
    result = {
        "clientSecret": intent.client_secret,
        "paymentIntentId": intent.id,
        "amount": amount,
        "customerId": customer.id,
        "isSubscription": subscription,
    }
    kv.set(key, result, ex=INTENT_CACHE_TTL_SECONDS)
    return result


@router.post("/api/payment/create-subscription")
def create_subscription_api(request: CreateSubscriptionRequest, origin=Depends(enforce_origin)):
    if not request.customer_email or not request.plan_id:
        raise HTTPException(status_code=400, detail="Missing required fields: customer_email and plan_id")
    if request.payment_type == "one-time" or is_one_time_plan(request.plan_id):
        raise HTTPException(status_code=400, detail="Use create-intent for one-time purchases")

    price_id = subscription_price_id(request.plan_id)
    if not price_id:
        raise HTTPException(status_code=400, detail=f"Invalid plan ID: {request.plan_id}")

    try:
        customer = find_or_create_subscription_customer(
            request.customer_email,
            request.shipping_address.model_dump() if request.shipping_address else None,
            request.order_data,
        )
        subscription = create_subscription(customer.id, price_id, request.order_data)
    except stripe.StripeError as e:
        raise _stripe_failure(e, "creating subscription")

    confirmation = subscription.latest_invoice.confirmation_secret
    logger.info("Created subscription %s for customer %s", subscription.id, customer.id)
    return {
        "clientSecret": confirmation.client_secret,
        "subscriptionId": subscription.id,
        "customerId": customer.id,
    }


@router.post("/api/payment/create-checkout-session")
def create_checkout_session_api(request: CheckoutSessionRequest, origin=Depends(enforce_origin)):
    checkout_url = get_settings().checkout_url
    has_shipping = bool(request.shipping_address and request.shipping_address.addressLine1)
    try:
        session = create_checkout_session(
            request.customer_email,
            request.order_data,
            has_shipping,
            request.success_url or f"{checkout_url}/?status=success&session_id={{CHECKOUT_SESSION_ID}}",
            request.cancel_url or f"{checkout_url}/?status=cancel",
        )
    except stripe.StripeError as e:
        raise _stripe_failure(e, "creating checkout session")
    return {"sessionId": session.id, "url": session.url}


@router.post("/api/checkout/sessions")
def create_hosted_session_api(request: HostedSessionRequest, http_request: Request,
                              origin=Depends(enforce_origin)):
    if not request.lineItems:
        raise HTTPException(status_code=400, detail="lineItems required")
    if not get_settings().stripe_secret_key:
        raise HTTPException(status_code=500, detail="Stripe secret key not configured")

    items = [
        {
            "name": item.name or "Item",
            "amount": max(MIN_AMOUNT_CENTS, int(item.amount or 0)),
            "quantity": max(1, int(item.quantity or 1)),
        }
        for item in request.lineItems
    ]
    proto = http_request.headers.get("x-forwarded-proto", "https")
    host = http_request.headers.get("host", "")
    try:
        session = create_hosted_session(
            items,
            request.customerEmail,
            f"{proto}://{host}/?status=success",
            f"{proto}://{host}/?status=cancel",
        )
    except stripe.StripeError as e:
        logger.error("Create session error: %s", e)
        raise HTTPException(status_code=400, detail=str(e) or "Unknown error")
    return {"url": session.url}
