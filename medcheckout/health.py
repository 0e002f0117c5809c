from datetime import datetime, timezone

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from medcheckout.config import get_settings
from medcheckout.database import engine

router = APIRouter()


def kv_available() -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError:
        return False


def integration_status() -> dict:
    settings = get_settings()
    return {
        "stripe": {
            "configured": settings.stripe_configured,
            "required": True,
            "description": "Stripe payment processing and webhooks",
            "envVars": ["STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET"],
        },
        "airtable": {
            "configured": settings.airtable_configured,
            "required": True,
            "description": "Airtable intake form data sync",
            "envVars": ["AIRTABLE_API_TOKEN", "AIRTABLE_BASE_ID", "AIRTABLE_TABLE_ID"],
        },
        "gohighlevel": {
            "configured": settings.ghl_configured,
            "required": True,
            "description": "GoHighLevel contact sync",
            "envVars": ["GHL_API_KEY", "GHL_LOCATION_ID"],
        },
        "intakeq": {
            "configured": settings.intakeq_configured,
            "required": True,
            "description": "IntakeQ client management and PDF upload",
            "envVars": ["INTAKEQ_API_KEY"],
        },
        "kv": {
            "configured": kv_available(),
            "required": False,
            "description": "Key-value store for prefill tokens and intake links (optional)",
            "envVars": ["DATABASE_URL"],
        },
    }


@router.get("/api/webhooks/health")
def health():
    integrations = integration_status()
    required = {name: i for name, i in integrations.items() if i["required"]}
    missing = [
        {"integration": name, "description": i["description"], "missingEnvVars": i["envVars"]}
        for name, i in required.items()
        if not i["configured"]
    ]
    healthy = not missing

    body = {
        "status": "healthy" if healthy else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "integrations": {
            name: {
                "configured": i["configured"],
                "required": i["required"],
                "description": i["description"],
                "status": "ok" if i["configured"] else ("missing" if i["required"] else "optional"),
            }
            for name, i in integrations.items()
        },
        "summary": {
            "totalIntegrations": len(integrations),
            "requiredIntegrations": len(required),
            "configuredIntegrations": sum(1 for i in integrations.values() if i["configured"]),
            "missingRequired": len(missing),
        },
    }
    if not healthy:
        body["errors"] = missing
        body["message"] = "Some required integrations are not configured. Set the missing environment variables."
    return JSONResponse(status_code=200 if healthy else 503, content=body)
