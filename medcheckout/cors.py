import logging
import re
from typing import Optional

from fastapi import HTTPException, Request, Response
from fastapi.responses import JSONResponse

from medcheckout.config import get_settings

logger = logging.getLogger(__name__)

ALLOWED_ORIGINS = (
    # Production
    "https://eonmeds-checkout.vercel.app",
    "https://checkout.eonmeds.com",
    "https://eonmeds.com",
    "https://www.eonmeds.com",
    "https://weightloss.eonmeds.com",
    "https://espanol.eonmeds.com",
    # Intake
    "https://weightlossintake.vercel.app",
    "https://intake.eonmeds.com",
    # Local development
    "http://localhost:3000",
    "http://localhost:4001",
    "http://localhost:5173",
)

PREVIEW_ORIGIN_PATTERNS = (
    re.compile(r"^https://eonmeds-checkout-[a-z0-9]+-[a-z0-9]+\.vercel\.app$"),
    re.compile(r"^https://weightlossintake-[a-z0-9]+-[a-z0-9]+\.vercel\.app$"),
)


def get_cors_origin(request_origin: Optional[str], extra_origins=()) -> Optional[str]:
    if not request_origin:
        return None
    if request_origin in ALLOWED_ORIGINS or request_origin in extra_origins:
        return request_origin
    for pattern in PREVIEW_ORIGIN_PATTERNS:
        if pattern.match(request_origin):
            return request_origin
    return None


def set_cors_headers(response: Response, origin: Optional[str]) -> None:
    if not origin:
        return
    response.headers["Access-Control-Allow-Origin"] = origin
    response.headers["Access-Control-Allow-Methods"] = "POST, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type"
    response.headers["Access-Control-Allow-Credentials"] = "true"
    response.headers["Vary"] = "Origin"


def enforce_origin(request: Request, response: Response) -> Optional[str]:
    """Dependency for browser-facing endpoints.

    Requests without an Origin header (same-origin or server-to-server) pass.
    Cross-origin requests from origins outside the allow-list get a 403.
    """
    origin = request.headers.get("origin")
    allowed = get_cors_origin(origin, get_settings().allowed_origins)
    set_cors_headers(response, allowed)
    if origin and not allowed:
        logger.warning("Rejected request from unauthorized origin: %s", origin)
        raise HTTPException(status_code=403, detail="Origin not allowed")
    return allowed


def preflight(request: Request) -> Response:
    origin = request.headers.get("origin")
    allowed = get_cors_origin(origin, get_settings().allowed_origins)
    if not allowed:
        logger.warning("Rejected preflight from unauthorized origin: %s", origin)
        return JSONResponse(status_code=403, content={"detail": "Origin not allowed"})
    response = Response(status_code=200)
    set_cors_headers(response, allowed)
    return response
