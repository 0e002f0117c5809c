import hmac
from typing import Optional

from fastapi import Header, HTTPException
from jose import jwt

from medcheckout.config import get_settings


def verify_token(authorization: str = Header(...)):
    secret = get_settings().jwt_secret
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer" or not secret:
            raise ValueError("bad scheme")
        return jwt.decode(token, secret, algorithms=["HS256"])
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid or missing token")


def verify_heyflow_secret(x_heyflow_secret: Optional[str] = Header(None),
                          authorization: Optional[str] = Header(None)):
    expected = get_settings().heyflow_webhook_secret
    if not expected:
        return
    provided = x_heyflow_secret or authorization or ""
    if provided[:7].lower() == "bearer ":
        provided = provided[7:].strip()
    if not provided or not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=401, detail="Unauthorized")
