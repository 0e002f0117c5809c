import json
import logging
import re
from datetime import datetime, timezone
from typing import List, Optional

import stripe

from medcheckout.checkout.pricing import MEDICATIONS
from medcheckout.config import get_settings

logger = logging.getLogger(__name__)

stripe.api_key = get_settings().stripe_secret_key
stripe.max_network_retries = 2

EXPEDITED_SHIPPING_FALLBACK_CENTS = 2500

_EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

CHECKOUT_PLAN_KEYS = {
    "Monthly Recurring": "monthly",
    "Recurrencia Mensual": "monthly",
    "3-Month Supply": "threeMonth",
    "Suministro de 3 Meses": "threeMonth",
    "6-Month Supply": "sixMonth",
    "Suministro de 6 Meses": "sixMonth",
    "One-time purchase": "oneTime",
    "Compra Única": "oneTime",
}


def is_valid_email(email: Optional[str]) -> bool:
    return bool(email and _EMAIL.match(email))


def medication_key(medication: str) -> str:
    return "semaglutide" if "semaglutide" in (medication or "").lower().replace(" ", "") else "tirzepatide"


def plan_key(plan_type: str) -> str:
    plan = (plan_type or "").lower()
    if "6" in plan or "six" in plan:
        return "sixMonth"
    if "3" in plan or "three" in plan:
        return "threeMonth"
    if "one-time" in plan or "onetime" in plan:
        return "oneTime"
    return "singleMonth"


def get_price_id(medication: str, plan_type: str) -> Optional[str]:
    if not medication or not plan_type:
        logger.info("Missing medication or plan type, no catalog price")
        return None
    settings = get_settings()
    med = medication_key(medication)
    key = plan_key(plan_type)
    price_id = settings.price_id(med, key)
    if not price_id and key == "singleMonth":
        price_id = settings.price_id(med, "monthly")
    logger.info("Resolved price for %s/%s -> %s", med, key, price_id or "<none>")
    return price_id


def subscription_price_id(plan_id: str) -> Optional[str]:
    plan = (plan_id or "").lower()
    med = "semaglutide" if plan.startswith("sema") else "tirzepatide" if plan.startswith("tirz") else None
    if med is None:
        return None
    if "6month" in plan:
        key = "sixMonth"
    elif "3month" in plan:
        key = "threeMonth"
    elif "monthly" in plan:
        key = "monthly"
    else:
        return None
    return get_settings().price_id(med, key)


def is_one_time_plan(plan_id: str) -> bool:
    if "onetime" in plan_id or "single" in plan_id:
        return True
    for medication in MEDICATIONS.values():
        plan = medication.plan(plan_id)
        if plan is not None:
            return plan.is_one_time
    return False


def addon_price_ids(addons: List[str], expedited_shipping: bool) -> List[str]:
    settings = get_settings()
    price_ids = []
    for addon in addons or []:
        name = addon.lower()
        if "nausea" in name:
            price_id = settings.price_id("addons", "nausea-rx")
        elif "fat burner" in name:
            price_id = settings.price_id("addons", "fat-burner")
        else:
            price_id = None
        if price_id:
            price_ids.append(price_id)
    if expedited_shipping:
        shipping_price = settings.price_id("shipping", "expedited")
        if shipping_price:
            price_ids.append(shipping_price)
    return price_ids


def normalize_plan_name(plan: str) -> str:
    """English plan name for the Stripe dashboard, whatever language the checkout used."""
    p = (plan or "").lower()
    if any(word in p for word in ("mensual", "monthly", "recurrente", "recurring")):
        return "Monthly Recurring"
    if "3" in p and ("mes" in p or "month" in p):
        return "3-Month Plan"
    if "6" in p and ("mes" in p or "month" in p):
        return "6-Month Plan"
    if any(word in p for word in ("única", "one-time", "onetime")):
        return "One-Time Purchase"
    return plan or "Monthly Recurring"


def is_subscription_plan(plan: str) -> bool:
    return bool(plan) and "one time" not in plan.lower()


def get_or_create_customer(email: Optional[str], name: str = None, phone: str = None,
                           address: dict = None, metadata: dict = None):
    details = {
        "name": name or None,
        "phone": phone or None,
        "address": address or None,
        "metadata": metadata or {},
    }
    details = {k: v for k, v in details.items() if v is not None}

    if is_valid_email(email):
        existing = stripe.Customer.list(email=email, limit=1)
        if existing.data:
            return stripe.Customer.modify(existing.data[0].id, **details)
        return stripe.Customer.create(email=email, **details)

    details["metadata"] = {**details.get("metadata", {}), "anonymous": "true"}
    return stripe.Customer.create(**details)


def build_description(medication: str, plan_name: str, addons: List[str], expedited: bool) -> str:
    description = f"{medication or 'Medication'} - {plan_name}"
    if addons:
        description += f" + {', '.join(addons)}"
    if expedited:
        description += " + Expedited Shipping"
    return description


def _stringify(value) -> str:
    return "" if value is None else str(value)


def build_intent_metadata(*, extra: dict, customer_id: str, email: str, name: str, phone: str,
                          language: str, tracking: dict, shipping: dict, order: dict,
                          plan_name: str, subscription: bool, main_price_id: Optional[str],
                          addon_prices: List[str], now: datetime = None) -> dict:
    now = now or datetime.now(timezone.utc)
    timestamp = now.isoformat().replace("+00:00", "Z")
    name_parts = (name or "").strip().split()
    metadata = {k: _stringify(v) for k, v in (extra or {}).items()}
    metadata.update({
        "customer_email": _stringify(email),
        "customer_first_name": name_parts[0] if name_parts else "",
        "customer_last_name": " ".join(name_parts[1:]),
        "customer_phone": _stringify(phone),
        "customer_id": customer_id,
        "language": language or "en",
        "lead_id": _stringify(tracking.get("lead_id")),
        "fbp": _stringify(tracking.get("fbp")),
        "fbc": _stringify(tracking.get("fbc")),
        "fbclid": _stringify(tracking.get("fbclid")),
        "meta_event_id": _stringify(tracking.get("meta_event_id")),
        "page_url": _stringify(tracking.get("page_url")),
        "user_agent": _stringify(tracking.get("user_agent")),
        "source": "checkout.eonmeds.com",
        "shipping_line1": shipping["addressLine1"],
        "shipping_city": shipping["city"],
        "shipping_state": shipping["state"],
        "shipping_zip": shipping["zipCode"],
        "timestamp": timestamp,
        "terms_accepted_at": timestamp,
        "medication": _stringify(order.get("medication")),
        "plan": plan_name,
        "is_subscription": "true" if subscription else "false",
        "main_price_id": main_price_id or "",
        "addon_price_ids": ",".join(addon_prices),
        "addons": json.dumps(order.get("addons") or []),
        "expedited_shipping": "yes" if order.get("expeditedShipping") else "no",
        "subtotal": _stringify(order.get("subtotal")),
        "shipping_cost": _stringify(order.get("shippingCost")),
        "total": _stringify(order.get("total")),
        "shipping_address": json.dumps({
            "line1": shipping["addressLine1"],
            "line2": shipping["addressLine2"],
            "city": shipping["city"],
            "state": shipping["state"],
            "zip": shipping["zipCode"],
            "country": shipping["country"],
        }),
    })
    return metadata


def create_payment_intent(*, amount: int, currency: str, customer_id: str, description: str,
                          email: Optional[str], name: str, shipping: dict, metadata: dict,
                          subscription: bool):
    params = dict(
        amount=amount,
        currency=currency or "usd",
        customer=customer_id,
        description=description,
        automatic_payment_methods={"enabled": True},
        metadata=metadata,
        shipping={
            "name": name or (email if is_valid_email(email) else "Customer"),
            "address": {
                "line1": shipping["addressLine1"],
                "line2": shipping["addressLine2"] or None,
                "city": shipping["city"],
                "state": shipping["state"],
                "postal_code": shipping["zipCode"],
                "country": shipping["country"] or "US",
            },
        },
        payment_method_options={
            "card": {"request_three_d_secure": "automatic"},
            "affirm": {"capture_method": "manual"},
            "klarna": {"capture_method": "manual"},
            "afterpay_clearpay": {"capture_method": "manual"},
        },
    )
    if subscription:
        params["setup_future_usage"] = "off_session"
    if is_valid_email(email):
        params["receipt_email"] = email
    return stripe.PaymentIntent.create(**params)


def find_or_create_subscription_customer(email: str, shipping: dict = None, order: dict = None):
    existing = stripe.Customer.list(email=email, limit=1)
    if existing.data:
        return existing.data[0]
    order = order or {}
    params = {
        "email": email,
        "metadata": {"medication": order.get("medication") or "", "plan": order.get("plan") or ""},
    }
    if shipping:
        params["shipping"] = {
            "name": email,
            "address": {
                "line1": shipping.get("addressLine1"),
                "line2": shipping.get("addressLine2") or None,
                "city": shipping.get("city"),
                "state": shipping.get("state"),
                "postal_code": shipping.get("zipCode"),
                "country": shipping.get("country") or "US",
            },
        }
    return stripe.Customer.create(**params)


def order_metadata(order: dict) -> dict:
    return {
        "medication": order.get("medication") or "",
        "plan": order.get("plan") or "",
        "addons": json.dumps(order.get("addons") or []),
        "expedited_shipping": "yes" if order.get("expeditedShipping") else "no",
        "subtotal": _stringify(order.get("subtotal")),
        "shipping_cost": _stringify(order.get("shippingCost")),
        "total": _stringify(order.get("total")),
    }


def create_subscription(customer_id: str, price_id: str, order: dict):
    return stripe.Subscription.create(
        customer=customer_id,
        items=[{"price": price_id}],
        payment_behavior="default_incomplete",
        payment_settings={
            "payment_method_types": ["card", "link"],
            "save_default_payment_method": "on_subscription",
        },
        expand=["latest_invoice.confirmation_secret"],
        metadata=order_metadata(order),
    )


def checkout_line_items(order: dict) -> List[dict]:
    settings = get_settings()
    items = []
    if order.get("medication") and order.get("plan"):
        key = CHECKOUT_PLAN_KEYS.get(order["plan"], "oneTime")
        price_id = settings.price_id(medication_key(order["medication"]), key)
        if price_id:
            items.append({"price": price_id, "quantity": 1})
        else:
            price_data = {
                "currency": "usd",
                "product_data": {
                    "name": f"{order['medication']} - {order['plan']}",
                    "description": "GLP-1 medication for weight management",
                },
                "unit_amount": round((order.get("subtotal") or 0) * 100),
            }
            if key == "monthly":
                price_data["recurring"] = {"interval": "month"}
            items.append({"price_data": price_data, "quantity": 1})

    for addon in order.get("addons") or []:
        name = addon.lower()
        if "nausea" in name:
            price_id = settings.price_id("addons", "nausea-rx")
        elif "fat" in name or "burner" in name:
            price_id = settings.price_id("addons", "fat-burner")
        else:
            price_id = None
        if price_id:
            items.append({"price": price_id, "quantity": 1})

    if order.get("expeditedShipping"):
        shipping_price = settings.price_id("shipping", "expedited")
        if shipping_price:
            items.append({"price": shipping_price, "quantity": 1})
        else:
            items.append({
                "price_data": {
                    "currency": "usd",
                    "product_data": {"name": "Expedited Shipping", "description": "3-5 business days delivery"},
                    "unit_amount": EXPEDITED_SHIPPING_FALLBACK_CENTS,
                },
                "quantity": 1,
            })
    return items


def create_checkout_session(email: str, order: dict, has_shipping_address: bool,
                            success_url: str, cancel_url: str):
    params = dict(
        payment_method_types=["card", "affirm", "klarna", "afterpay_clearpay"],
        line_items=checkout_line_items(order),
        mode="subscription" if "monthly" in (order.get("plan") or "").lower() else "payment",
        customer_email=email,
        success_url=success_url,
        cancel_url=cancel_url,
        metadata={"customer_email": email or "", **order_metadata(order)},
    )
    if not has_shipping_address:
        params["shipping_address_collection"] = {"allowed_countries": ["US", "PR"]}
    if not order.get("expeditedShipping"):
        params["shipping_options"] = [{
            "shipping_rate_data": {
                "type": "fixed_amount",
                "fixed_amount": {"amount": 0, "currency": "usd"},
                "display_name": "Standard Shipping (5-7 business days)",
                "delivery_estimate": {
                    "minimum": {"unit": "business_day", "value": 5},
                    "maximum": {"unit": "business_day", "value": 7},
                },
            },
        }]
    return stripe.checkout.Session.create(**params)


def create_hosted_session(line_items: List[dict], email: Optional[str], success_url: str, cancel_url: str):
    return stripe.checkout.Session.create(
        mode="payment",
        locale="en",
        customer_email=email,
        billing_address_collection="auto",
        submit_type="pay",
        line_items=[
            {
                "price_data": {
                    "currency": "usd",
                    "product_data": {"name": item["name"]},
                    "unit_amount": item["amount"],
                },
                "quantity": item["quantity"],
            }
            for item in line_items
        ],
        success_url=success_url,
        cancel_url=cancel_url,
    )
