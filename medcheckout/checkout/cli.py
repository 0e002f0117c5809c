"""
Command line checkout against a running medcheckout API.

Usage:
    medcheckout-checkout quote --medication tirzepatide --plan tirz_monthly
    medcheckout-checkout prefill "https://checkout.eonmeds.com/?token=...&lang=es"
    medcheckout-checkout create-intent --api-url http://localhost:8000 \\
        --medication tirzepatide --plan tirz_monthly --email jane@example.com \\
        --address1 "1 Main St" --city Tampa --state FL --zip 33601

The landing URL passed with ``--url`` is resolved the same way the checkout
page does it: prefill data fills whatever the command line leaves empty, and
the Meta attribution parameters become the session identity.
"""

import argparse
import json
import sys
from urllib.parse import parse_qsl, urlparse

from medcheckout.checkout.identity import CheckoutIdentity
from medcheckout.checkout.intent import IntentApiClient, IntentCoordinator, IntentRequest
from medcheckout.checkout.order import STEPS, CheckoutOrder, OrderValidationError, ShippingAddress
from medcheckout.checkout.prefill import PrefillApiClient, PrefillResolver, PrefillResult
from medcheckout.integrations.base import IntegrationError

USER_AGENT = "medcheckout-cli"


def query_params(url: str) -> dict:
    return dict(parse_qsl(urlparse(url or "").query))


def resolve_prefill(params: dict, api_url: str = None) -> PrefillResult:
    fetch_token = None
    if api_url:
        def fetch_token(token):
            with PrefillApiClient(api_url) as client:
                return client.get_prefill(token)
    return PrefillResolver(fetch_token=fetch_token).resolve(params, save_cookie=False)


def _prefilled(data, name: str) -> str:
    # token and plain-URL data is built without validation, fields may be absent
    return (getattr(data, name, None) or "") if data is not None else ""


def build_order(args, prefill: PrefillResult = None) -> CheckoutOrder:
    data = prefill.data if prefill else None
    address = getattr(data, "address", None)
    order = CheckoutOrder(
        language=args.lang or (prefill.language if prefill else "en"),
        medication_id=args.medication or _prefilled(data, "medication") or None,
        plan_id=args.plan,
        fat_burner_duration=args.fat_burner_duration,
        expedited_shipping=args.expedited,
        promo_applied=args.promo,
        shipping=ShippingAddress(
            address_line1=getattr(args, "address1", None) or _prefilled(address, "line1"),
            address_line2=getattr(args, "address2", None) or _prefilled(address, "line2"),
            city=getattr(args, "city", None) or _prefilled(address, "city"),
            state=getattr(args, "state", None) or _prefilled(address, "state"),
            zip_code=getattr(args, "zip", None) or _prefilled(address, "zip"),
        ),
    )
    if order.plan_id is None and order.medication is not None and _prefilled(data, "plan"):
        wanted = _prefilled(data, "plan")
        order.plan_id = next((p.id for p in order.medication.plans if p.type == wanted), None)
    for addon in args.addon or []:
        order.toggle_addon(addon)
    return order


def complete_order(order: CheckoutOrder) -> CheckoutOrder:
    """Walk the wizard up to the payment step, validating every step on the way."""
    while order.step != STEPS[-1]:
        order.advance()
    return order


def build_intent_request(args, order: CheckoutOrder, prefill: PrefillResult, identity: CheckoutIdentity):
    data = prefill.data
    name = args.name or " ".join(
        part for part in (_prefilled(data, "firstName"), _prefilled(data, "lastName")) if part
    )
    email = args.email or _prefilled(data, "email")
    phone = args.phone or _prefilled(data, "phone")
    identity.update(email=email, phone=phone, lang=order.language)
    return IntentRequest(
        amount_cents=order.amount_cents(),
        customer_email=email,
        customer_name=name,
        customer_phone=phone,
        shipping_address=order.shipping.to_payload(),
        order_data=order.order_data(),
        language=order.language,
        intake_id=prefill.intake_id or "",
        tracking=identity.tracking_payload(),
        page_url=args.url or "",
        user_agent=USER_AGENT,
    )


def cmd_quote(args):
    """Print the order payload and amount for a medication and plan."""
    try:
        order = build_order(args)
        order.validate_step("medication")
        order.validate_step("plan")
    except OrderValidationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(json.dumps({"orderData": order.order_data(), "amount": order.amount_cents()}, indent=2))
    return 0


def cmd_prefill(args):
    """Resolve checkout prefill data from a landing URL."""
    result = resolve_prefill(query_params(args.url), args.api_url)
    if result.error:
        print(f"Error: {result.error}", file=sys.stderr)
        for error in result.errors:
            print(f"  {error}", file=sys.stderr)
        return 1
    if result.data is None:
        print("Nothing to prefill")
        return 0

    print(json.dumps({
        "source": result.source,
        "intakeId": result.intake_id,
        "language": result.language,
        "data": result.data.model_dump(exclude_unset=True, mode="json"),
    }, indent=2))
    return 0


def cmd_create_intent(args, http_client=None):
    """Create (or reuse) the PaymentIntent for an order."""
    params = query_params(args.url)
    prefill = resolve_prefill(params, args.api_url) if params else PrefillResult()
    if prefill.error:
        print(f"Warning: {prefill.error}", file=sys.stderr)
    identity = CheckoutIdentity.from_query(params)

    try:
        order = complete_order(build_order(args, prefill))
    except OrderValidationError as e:
        print(f"Error ({e.step}): {e}", file=sys.stderr)
        return 1

    request = build_intent_request(args, order, prefill, identity)
    print(f"Creating payment intent for {request.amount_cents} cents (session {identity.meta_event_id})")
    with IntentApiClient(args.api_url, client=http_client) as api:
        coordinator = IntentCoordinator(api.create_intent)
        coordinator.update(request)
        try:
            result = coordinator.settle()
        except (IntegrationError, ValueError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    print(json.dumps(result, indent=2))
    return 0


def _add_order_arguments(parser):
    parser.add_argument("--medication", help="semaglutide or tirzepatide")
    parser.add_argument("--plan", help="plan ID, e.g. tirz_monthly")
    parser.add_argument("--addon", action="append", help="add-on ID (repeatable)")
    parser.add_argument("--fat-burner-duration", dest="fat_burner_duration")
    parser.add_argument("--expedited", action="store_true", help="expedited shipping")
    parser.add_argument("--promo", action="store_true", help="apply the promo discount")
    parser.add_argument("--lang", choices=("en", "es"))


def build_parser():
    parser = argparse.ArgumentParser(
        description="EONMeds checkout from the command line",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    quote_parser = subparsers.add_parser("quote", help="Price an order")
    _add_order_arguments(quote_parser)
    quote_parser.set_defaults(func=cmd_quote)

    prefill_parser = subparsers.add_parser("prefill", help="Resolve prefill data from a landing URL")
    prefill_parser.add_argument("url", help="checkout landing URL")
    prefill_parser.add_argument("--api-url", dest="api_url", help="API that serves get-prefill tokens")
    prefill_parser.set_defaults(func=cmd_prefill)

    intent_parser = subparsers.add_parser("create-intent", help="Create the PaymentIntent for an order")
    _add_order_arguments(intent_parser)
    intent_parser.add_argument("--api-url", dest="api_url", required=True, help="medcheckout API base URL")
    intent_parser.add_argument("--url", default="", help="checkout landing URL (prefill and attribution)")
    intent_parser.add_argument("--email")
    intent_parser.add_argument("--name")
    intent_parser.add_argument("--phone")
    intent_parser.add_argument("--address1")
    intent_parser.add_argument("--address2")
    intent_parser.add_argument("--city")
    intent_parser.add_argument("--state")
    intent_parser.add_argument("--zip")
    intent_parser.set_defaults(func=cmd_create_intent)
    return parser


def main(argv=None):
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
