import json
import logging

import stripe
from fastapi import FastAPI, Header, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from medcheckout.admin import router as admin_router
from medcheckout.config import get_settings
from medcheckout.database import Base, engine
from medcheckout.fanout import customer_email, run_fanout
from medcheckout.health import router as health_router
from medcheckout.intake.routes import router as intake_router
from medcheckout.routes import forget_cached_intent
from medcheckout.routes import router as payment_router

logger = logging.getLogger(__name__)


def configure_logging():
    logging.basicConfig(
        level=get_settings().log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


configure_logging()

app = FastAPI(title="EONMeds Checkout Service")

app.include_router(payment_router)
app.include_router(intake_router)
app.include_router(admin_router)
app.include_router(health_router)

Base.metadata.create_all(bind=engine)


@app.post("/api/webhooks/stripe")
@app.post("/api/payment/webhook")
async def stripe_webhook(request: Request, stripe_signature: str = Header(None)):
    payload = await request.body()
    webhook_secret = get_settings().stripe_webhook_secret
    if not webhook_secret:
        logger.error("STRIPE_WEBHOOK_SECRET is not set, rejecting webhook")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    try:
        stripe.Webhook.construct_event(
            payload,
            stripe_signature,
            webhook_secret
        )
        event = json.loads(payload)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")

    event_type = event.get("type")
    intent = (event.get("data") or {}).get("object") or {}

    if event_type == "payment_intent.succeeded":
        await run_in_threadpool(forget_cached_intent, intent)
        if not customer_email(intent):
            logger.warning("Payment %s succeeded without a customer email", intent.get("id"))
            raise HTTPException(status_code=400, detail="Missing customer email")
        results = await run_in_threadpool(run_fanout, intent)
        return {"received": True, "results": results}

    if event_type == "payment_intent.payment_failed":
        error = intent.get("last_payment_error") or {}
        logger.warning("Payment failed: %s (%s)", intent.get("id"), error.get("code") or error.get("message"))
    else:
        logger.info("Unhandled event type: %s", event_type)
    return {"received": True}
