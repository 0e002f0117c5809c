"""Push a succeeded PaymentIntent to IntakeQ, Airtable, GoHighLevel and Meta.

Each integration runs on its own; a failing vendor is logged and recorded in
``fanout_failures`` without stopping the others. A recorded failure can be
re-run later with ``retry_failure``.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from medcheckout.config import get_settings
from medcheckout.database import SessionLocal
from medcheckout.integrations.airtable import AirtableClient
from medcheckout.integrations.base import IntegrationNotConfigured
from medcheckout.integrations.ghl import GhlClient, build_payload_from_stripe
from medcheckout.integrations.intakeq import IntakeQClient
from medcheckout.integrations.meta_capi import MetaCapiClient, MetaPurchase
from medcheckout.kv import email_link_key, get_kv, intake_link_key
from medcheckout.models import FanoutFailure, utcnow
from medcheckout.pdf import InvoicePdfInput, generate_invoice_pdf
from medcheckout.phi import mask_email

logger = logging.getLogger(__name__)

OK = "ok"
SKIPPED = "skipped"
FAILED = "failed"


def customer_email(payment_intent: dict) -> str:
    metadata = payment_intent.get("metadata") or {}
    return (metadata.get("customer_email") or payment_intent.get("receipt_email") or "").strip()


def build_clients() -> Dict[str, object]:
    settings = get_settings()
    return {
        "intakeq": IntakeQClient(api_key=settings.intakeq_api_key),
        "airtable": AirtableClient(),
        "ghl": GhlClient(),
        "meta": MetaCapiClient(),
    }


def _paid_at(payment_intent: dict) -> datetime:
    created = payment_intent.get("created")
    if isinstance(created, (int, float)):
        return datetime.fromtimestamp(created, tz=timezone.utc)
    return datetime.now(timezone.utc)


def _shipping_address(payment_intent: dict, metadata: dict) -> Optional[dict]:
    try:
        stored = json.loads(metadata.get("shipping_address") or "null")
    except ValueError:
        stored = None
    if isinstance(stored, dict):
        return stored
    address = (payment_intent.get("shipping") or {}).get("address")
    if not address:
        return None
    return {
        "line1": address.get("line1") or "",
        "line2": address.get("line2") or "",
        "city": address.get("city") or "",
        "state": address.get("state") or "",
        "zip": address.get("postal_code") or "",
        "country": address.get("country") or "US",
    }


def invoice_input(payment_intent: dict) -> InvoicePdfInput:
    metadata = payment_intent.get("metadata") or {}
    try:
        addons = json.loads(metadata.get("addons") or "[]")
    except ValueError:
        addons = []
    name = " ".join(
        part for part in (metadata.get("customer_first_name"), metadata.get("customer_last_name")) if part
    )
    return InvoicePdfInput(
        payment_intent_id=payment_intent["id"],
        amount=payment_intent.get("amount") or 0,
        currency=payment_intent.get("currency") or "usd",
        paid_at_iso=_paid_at(payment_intent).isoformat(),
        patient_name=name,
        patient_email=customer_email(payment_intent),
        patient_phone=metadata.get("customer_phone", ""),
        medication=metadata.get("medication", ""),
        plan=metadata.get("plan", ""),
        addons=[str(a) for a in addons] if isinstance(addons, list) else [],
        expedited_shipping=metadata.get("expedited_shipping") == "yes",
        shipping_address=_shipping_address(payment_intent, metadata),
    )


def resolve_intakeq_client_id(payment_intent: dict, client: IntakeQClient) -> Optional[int]:
    metadata = payment_intent.get("metadata") or {}
    email = customer_email(payment_intent)
    kv = get_kv()

    intake_id = metadata.get("intakeId") or metadata.get("intake_id")
    link = kv.get(intake_link_key(intake_id)) if intake_id else None
    if not link and email:
        link = kv.get(email_link_key(email))
    if link and link.get("intakeQClientId"):
        return int(link["intakeQClientId"])

    found = client.find_client_by_email(email) if email else None
    return found["Id"] if found else None


def sync_intakeq(payment_intent: dict, client: IntakeQClient) -> str:
    client_id = resolve_intakeq_client_id(payment_intent, client)
    if client_id is None:
        logger.warning("No IntakeQ client for payment %s, invoice not uploaded", payment_intent["id"])
        return SKIPPED
    pdf = generate_invoice_pdf(invoice_input(payment_intent))
    client.upload_client_pdf(client_id, f"invoice-{payment_intent['id']}.pdf", pdf)
    return OK


def sync_airtable(payment_intent: dict, client: AirtableClient) -> str:
    metadata = payment_intent.get("metadata") or {}
    record = client.find_record_by_email(customer_email(payment_intent))
    if record is None:
        return SKIPPED
    try:
        order_total = int(round(float(metadata.get("total") or 0) * 100))
    except ValueError:
        order_total = None
    client.update_payment_status(
        record["id"],
        payment_amount=payment_intent.get("amount") or 0,
        payment_date=_paid_at(payment_intent).date().isoformat(),
        payment_id=payment_intent["id"],
        medication=metadata.get("medication"),
        plan=metadata.get("plan"),
        shipping_method="Expedited" if metadata.get("expedited_shipping") == "yes" else "Standard",
        order_total=order_total,
        stripe_customer_id=metadata.get("customer_id") or payment_intent.get("customer"),
    )
    return OK


def sync_ghl(payment_intent: dict, client: GhlClient) -> str:
    if not client.configured:
        return SKIPPED
    contact = build_payload_from_stripe(payment_intent, payment_intent.get("metadata") or {})
    client.upsert_contact(contact)
    return OK


def send_meta(payment_intent: dict, client: MetaCapiClient) -> str:
    if not client.configured:
        return SKIPPED
    metadata = payment_intent.get("metadata") or {}
    client.send_purchase(MetaPurchase(
        event_source_url=metadata.get("page_url") or get_settings().checkout_url,
        event_id=metadata.get("meta_event_id") or payment_intent["id"],
        value=round((payment_intent.get("amount") or 0) / 100, 2),
        currency=(payment_intent.get("currency") or "usd").upper(),
        fbp=metadata.get("fbp", ""),
        fbc=metadata.get("fbc", ""),
        lead_id=metadata.get("lead_id", ""),
        email=customer_email(payment_intent),
        phone=metadata.get("customer_phone", ""),
        user_agent=metadata.get("user_agent", ""),
    ))
    return OK


INTEGRATIONS: Dict[str, Callable[[dict, object], str]] = {
    "intakeq": sync_intakeq,
    "airtable": sync_airtable,
    "ghl": sync_ghl,
    "meta": send_meta,
}


def record_failure(integration: str, payment_intent: dict, error: Exception) -> None:
    db = SessionLocal()
    try:
        db.add(FanoutFailure(
            integration=integration,
            payment_intent_id=payment_intent.get("id"),
            error=str(error),
            payload=json.dumps(payment_intent),
        ))
        db.commit()
    finally:
        db.close()


def run_integration(name: str, payment_intent: dict, client) -> str:
    try:
        result = INTEGRATIONS[name](payment_intent, client)
    except IntegrationNotConfigured as e:
        logger.warning("%s not configured (%s), skipping", name, e)
        return SKIPPED
    except Exception as e:
        logger.exception("%s sync failed for payment %s", name, payment_intent.get("id"))
        try:
            record_failure(name, payment_intent, e)
        except SQLAlchemyError:
            logger.exception("Could not record %s failure for payment %s", name, payment_intent.get("id"))
        return FAILED
    logger.info("%s sync for payment %s: %s", name, payment_intent.get("id"), result)
    return result


def run_fanout(payment_intent: dict, clients: Dict[str, object] = None) -> Dict[str, str]:
    owned = clients is None
    clients = clients or build_clients()
    logger.info(
        "Fanning out payment %s for %s", payment_intent.get("id"), mask_email(customer_email(payment_intent))
    )
    try:
        return {name: run_integration(name, payment_intent, clients[name]) for name in INTEGRATIONS}
    finally:
        if owned:
            for client in clients.values():
                client.close()


def retry_failure(failure_id: int, clients: Dict[str, object] = None) -> Optional[FanoutFailure]:
    db = SessionLocal()
    try:
        failure = db.get(FanoutFailure, failure_id)
        if failure is None:
            return None
        if failure.resolved:
            return failure

        payment_intent = json.loads(failure.payload)
        owned = clients is None
        clients = clients or build_clients()
        client = clients[failure.integration]
        try:
            INTEGRATIONS[failure.integration](payment_intent, client)
        except Exception as e:
            logger.warning("Retry of %s for payment %s failed: %s",
                           failure.integration, failure.payment_intent_id, e)
            failure.attempts = (failure.attempts or 1) + 1
            failure.error = str(e)
        else:
            logger.info("Retry of %s for payment %s succeeded", failure.integration, failure.payment_intent_id)
            failure.resolved = True
        finally:
            if owned:
                for c in clients.values():
                    c.close()
        failure.updated_at = utcnow()
        db.commit()
        db.refresh(failure)
        db.expunge(failure)
        return failure
    finally:
        db.close()
