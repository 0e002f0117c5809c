import logging
from datetime import datetime, timezone
from typing import Any, Dict
from urllib.parse import urlencode

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.exc import SQLAlchemyError

from medcheckout.auth import verify_heyflow_secret
from medcheckout.config import get_settings
from medcheckout.integrations.base import IntegrationError
from medcheckout.integrations.intakeq import IntakeQAddress, IntakeQClient, IntakeQClientInput
from medcheckout.intake.normalize import (
    build_answer_index,
    extract_answers,
    extract_intake_id,
    first_non_empty,
    generate_intake_id,
    map_heyflow_fields,
    map_redirect_params,
    pick_string,
    split_phi,
)
from medcheckout.kv import email_link_key, get_kv, intake_link_key, phi_key
from medcheckout.pdf import IntakePdfInput, PdfPatient, generate_intake_pdf
from medcheckout.tokens import issue_prefill_token, verify_prefill_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/intake")

PHI_TTL_SECONDS = 4 * 60 * 60
LINK_TTL_SECONDS = 24 * 60 * 60


def get_intakeq_client() -> IntakeQClient:
    return IntakeQClient(api_key=get_settings().intakeq_api_key)


def store_phi(phi: Dict[str, str]) -> str:
    """Park PHI server-side and return the one-time prefill token that unlocks it."""
    token = issue_prefill_token(get_settings().token_secret)
    get_kv().set(phi_key(token), phi, ex=PHI_TTL_SECONDS)
    return token


def checkout_redirect_url(non_phi: Dict[str, str], token: str) -> str:
    ordered = {k: non_phi[k] for k in ("lang", "intakeId", "medication", "plan", "source") if non_phi.get(k)}
    ordered["token"] = token
    return f"{get_settings().checkout_url}/?{urlencode(ordered)}"


@router.post("/heyflow-webhook")
def heyflow_webhook(payload: Dict[str, Any] = Body(...)):
    fields = payload.get("fields") if isinstance(payload.get("fields"), dict) else payload
    response_id = payload.get("id") if isinstance(payload.get("id"), str) else ""
    logger.info("Heyflow submission received for flow %s", payload.get("flowID") or payload.get("flowId"))

    params = {"lang": "en", "intakeId": response_id or generate_intake_id()}
    params.update(map_heyflow_fields(fields))
    phi, non_phi = split_phi(params)
    logger.info("Mapped intake fields: %s", ", ".join(sorted(params)))

    try:
        token = store_phi(phi)
    except SQLAlchemyError as e:
        logger.error("Failed to store intake data: %s", e.__class__.__name__)
        raise HTTPException(status_code=500, detail="Failed to process webhook")

    return {
        "success": True,
        "redirectUrl": checkout_redirect_url(non_phi, token),
        "message": "Intake data received successfully",
        "intakeId": non_phi["intakeId"],
    }


@router.get("/redirect")
def intake_redirect(request: Request):
    params = map_redirect_params(dict(request.query_params))
    phi, non_phi = split_phi(params)
    logger.info("Intake redirect for %s with fields: %s", non_phi.get("intakeId"), ", ".join(sorted(params)))

    try:
        token = store_phi(phi)
    except SQLAlchemyError as e:
        logger.error("Failed to store intake data: %s", e.__class__.__name__)
        raise HTTPException(status_code=500, detail="Failed to process intake")

    return RedirectResponse(
        checkout_redirect_url(non_phi, token),
        status_code=302,
        headers={"Cache-Control": "no-cache, no-store, must-revalidate"},
    )


def _custom_field_updates(payload: dict, index: Dict[str, str]) -> Dict[str, str]:
    updates = {
        "Height": first_non_empty(pick_string(payload, ["height", "Height"]), index.get("height")),
        "Starting Weight": first_non_empty(
            pick_string(payload, ["startingWeight", "starting_weight", "starting weight", "weight", "Weight"]),
            index.get("startingweight"),
            index.get("weight"),
            index.get("startinglbs"),
            index.get("startingweightlbs"),
        ),
        "BMI": first_non_empty(
            pick_string(payload, ["bmi", "BMI", "startingBmi", "starting_bmi", "starting bmi"]),
            index.get("bmi"),
            index.get("startingbmi"),
        ),
        "Ideal Weight": first_non_empty(
            pick_string(payload, ["idealWeight", "ideal_weight", "ideal weight"]),
            index.get("idealweight"),
        ),
    }
    tracking = first_non_empty(
        pick_string(payload, ["tracking", "trackingNumber", "tracking_number", "tracking #"]),
        index.get("tracking"),
        index.get("trackingnumber"),
    )
    # never blank out an existing tracking number
    if tracking:
        updates["Tracking #"] = tracking
    return {name: value for name, value in updates.items() if value}


@router.post("/webhook", dependencies=[Depends(verify_heyflow_secret)])
def intake_webhook(payload: Dict[str, Any] = Body(...), intakeq: IntakeQClient = Depends(get_intakeq_client)):
    email = pick_string(payload, ["email", "Email"])
    if not email:
        raise HTTPException(status_code=400, detail="Missing required field: email")

    intake_id = extract_intake_id(payload)
    patient = PdfPatient(
        first_name=pick_string(payload, ["firstName", "firstname", "first_name"]),
        last_name=pick_string(payload, ["lastName", "lastname", "last_name"]),
        email=email,
        phone=pick_string(payload, ["phone", "phonenumber", "phone_number", "tel", "Phone"]),
        date_of_birth=pick_string(payload, ["dob", "dateOfBirth", "date_of_birth", "DateOfBirth"]),
        address_line1=pick_string(payload, ["address1", "addressLine1", "street", "shipping_line1"]),
        address_line2=pick_string(payload, ["address2", "addressLine2", "apt", "apartment"]),
        city=pick_string(payload, ["city"]),
        state=pick_string(payload, ["state"]),
        zip_code=pick_string(payload, ["zip", "zipCode", "zipcode", "postal"]),
    )

    try:
        with intakeq:
            client, created = intakeq.ensure_client(IntakeQClientInput(
                first_name=patient.first_name,
                last_name=patient.last_name,
                email=email,
                phone=patient.phone,
                date_of_birth=patient.date_of_birth,
                address=IntakeQAddress(
                    street=patient.address_line1,
                    city=patient.city,
                    state=patient.state,
                    zip=patient.zip_code,
                ),
            ))
            client_id = client["Id"]
            logger.info("IntakeQ client %s %s for intake %s", client_id, "created" if created else "found", intake_id)

            answers = extract_answers(payload)
            updates = _custom_field_updates(payload, build_answer_index(answers))
            if updates:
                try:
                    result = intakeq.update_custom_fields_by_email(email, updates, client_id=client_id)
                    logger.info(
                        "IntakeQ custom fields updated for client %s: updated=%s missing=%s",
                        result.client_id, result.updated, result.missing,
                    )
                except IntegrationError as e:
                    logger.error("Custom field update failed (continuing): %s", e)

            submitted_at = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
            pdf = generate_intake_pdf(IntakePdfInput(
                intake_id=intake_id,
                patient=patient,
                answers=answers,
                submitted_at_iso=submitted_at,
            ))
            intakeq.upload_client_pdf(client_id, f"intake-{intake_id}.pdf", pdf)
    except IntegrationError as e:
        logger.error("Error processing intake webhook: %s", e)
        raise HTTPException(status_code=500, detail="Internal server error")

    link = {
        "intakeId": intake_id,
        "intakeQClientId": client_id,
        "email": email,
        "createdAtIso": submitted_at,
    }
    kv_stored = True
    try:
        kv = get_kv()
        kv.set(intake_link_key(intake_id), link, ex=LINK_TTL_SECONDS)
        kv.set(email_link_key(email), link, ex=LINK_TTL_SECONDS)
    except SQLAlchemyError as e:
        kv_stored = False
        logger.error("KV store failed (continuing): %s", e.__class__.__name__)

    return {"ok": True, "intakeId": intake_id, "intakeQClientId": client_id, "kvStored": kv_stored}


@router.get("/get-prefill")
def get_prefill(token: str = Query(None)):
    if not token:
        logger.warning("Missing token parameter")
        raise HTTPException(status_code=400, detail="Token parameter is required")
    if not verify_prefill_token(token, get_settings().token_secret):
        logger.warning("Invalid or expired prefill token")
        raise HTTPException(
            status_code=401,
            detail="Token is invalid or expired. Please restart the checkout process.",
        )

    try:
        data = get_kv().take(phi_key(token))
    except SQLAlchemyError as e:
        logger.error("Failed to retrieve prefill data: %s", e.__class__.__name__)
        raise HTTPException(status_code=500, detail="Failed to retrieve patient data. Contact support.")

    if not data:
        logger.warning("Prefill token not found or already used")
        raise HTTPException(
            status_code=404,
            detail="Token not found or already used. Please restart the checkout process.",
        )
    logger.info("Prefill data retrieved, token consumed")
    return {"ok": True, "data": data}
