import logging
from typing import Optional

from medcheckout.config import get_settings
from medcheckout.integrations.base import IntegrationError, IntegrationNotConfigured, RestClient

logger = logging.getLogger(__name__)

AIRTABLE_API_BASE = "https://api.airtable.com/v0"

EMAIL_FIELD_NAMES = ("Email", "email", "E-mail", "e-mail", "EMAIL")


def format_dollars(cents: int) -> str:
    return f"${cents / 100:.2f}"


class AirtableClient(RestClient):
    provider = "airtable"

    def __init__(self, api_token: str = None, base_id: str = None, table_id: str = None, **kwargs):
        super().__init__(**kwargs)
        settings = get_settings()
        self.api_token = api_token if api_token is not None else settings.airtable_api_token
        base_id = base_id or settings.airtable_base_id
        table_id = table_id or settings.airtable_table_id
        self.base_url = f"{AIRTABLE_API_BASE}/{base_id}/{table_id}"

    def headers(self) -> dict:
        if not self.api_token:
            raise IntegrationNotConfigured(self.provider, "AIRTABLE_API_TOKEN")
        return {"Authorization": f"Bearer {self.api_token}"}

    def find_record_by_email(self, email: str) -> Optional[dict]:
        """Look a record up by email, trying each common spelling of the field name."""
        trimmed = (email or "").strip().lower()
        if not trimmed:
            return None

        # escape for the formula string literal
        quoted = trimmed.replace("\\", "\\\\").replace('"', '\\"')
        for field_name in EMAIL_FIELD_NAMES:
            params = {
                "filterByFormula": f'LOWER({{{field_name}}})="{quoted}"',
                "maxRecords": 1,
            }
            try:
                response = self.request_json("GET", "", params=params)
            except IntegrationNotConfigured:
                raise
            except IntegrationError as exc:
                # unknown field names come back as 422
                logger.info("Airtable lookup on {%s} failed (%s), trying next", field_name, exc.status_code)
                continue
            records = response.get("records") if isinstance(response, dict) else None
            if records:
                logger.info("Found Airtable record using field name %s", field_name)
                return records[0]

        logger.warning("No Airtable record found (tried fields: %s)", ", ".join(EMAIL_FIELD_NAMES))
        return None

    def update_payment_status(self, record_id: str, payment_amount: int, payment_date: str,
                              payment_id: str, medication: str = None, plan: str = None,
                              shipping_method: str = None, order_total: int = None,
                              stripe_customer_id: str = None) -> None:
        fields = {
            "Payment Status": "Paid",
            "Payment Amount": format_dollars(payment_amount),
            "Payment Date": payment_date,
            "Payment ID": payment_id,
        }
        if medication:
            fields["Medication Ordered"] = medication
        if plan:
            fields["Plan Selected"] = plan
        if shipping_method:
            fields["Shipping Method"] = shipping_method
        if order_total:
            fields["Order Total"] = format_dollars(order_total)
        if stripe_customer_id:
            fields["Stripe Customer ID"] = stripe_customer_id

        self.update_record(record_id, fields)

    def create_record(self, fields: dict) -> dict:
        response = self.request_json("POST", "", json={"fields": fields})
        return {"id": response.get("id"), "fields": response.get("fields", {})}

    def update_record(self, record_id: str, fields: dict) -> None:
        self.request_json("PATCH", f"/{record_id}", json={"fields": fields})
        logger.info("Updated Airtable record %s", record_id)
