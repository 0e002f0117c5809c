"""Signed, time-limited tokens used to hand intake data to the checkout.

Prefill tokens look like ``<random>.<timestamp_ms>.<sig>`` where ``sig`` is the
first 16 hex chars of HMAC-SHA256 over ``"<random>:<timestamp_ms>"``. Tokens
expire after four hours.

Signed URL parameters (``data``/``ts``/``sig``) use the full hex digest over
``"<data>:<ts>"`` and expire after thirty minutes.
"""
import base64
import hashlib
import hmac
import secrets
import time
from dataclasses import dataclass

PREFILL_TOKEN_MAX_AGE_MS = 4 * 60 * 60 * 1000
SIGNED_PARAMS_MAX_AGE_MS = 30 * 60 * 1000
SIGNATURE_LENGTH = 16


def now_ms() -> int:
    return int(time.time() * 1000)


def _hmac_hex(secret: str, message: str) -> str:
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def sign_token_parts(random_part: str, timestamp: str, secret: str) -> str:
    return _hmac_hex(secret, f"{random_part}:{timestamp}")[:SIGNATURE_LENGTH]


def issue_prefill_token(secret: str, timestamp_ms: int = None) -> str:
    random_part = secrets.token_hex(16)
    timestamp = str(timestamp_ms if timestamp_ms is not None else now_ms())
    return f"{random_part}.{timestamp}.{sign_token_parts(random_part, timestamp, secret)}"


def verify_prefill_token(token: str, secret: str, current_ms: int = None) -> bool:
    parts = (token or "").split(".")
    if len(parts) != 3:
        return False
    random_part, timestamp, signature = parts
    if not random_part or not timestamp or not signature:
        return False

    expected = sign_token_parts(random_part, timestamp, secret)
    if not hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8")):
        return False

    try:
        issued = int(timestamp)
    except ValueError:
        return False
    current = current_ms if current_ms is not None else now_ms()
    return current - issued < PREFILL_TOKEN_MAX_AGE_MS


def base64url_encode(text: str) -> str:
    raw = base64.urlsafe_b64encode(text.encode("utf-8")).decode("ascii")
    return raw.rstrip("=")


def base64url_decode(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")


@dataclass
class SignedParamsCheck:
    valid: bool
    expired: bool


def sign_params(data: str, ts: str, secret: str) -> str:
    return _hmac_hex(secret, f"{data}:{ts}")


def verify_signed_params(data: str, ts: str, sig: str, secret: str, current_ms: int = None) -> SignedParamsCheck:
    current = current_ms if current_ms is not None else now_ms()
    try:
        issued = int(ts)
    except (TypeError, ValueError):
        return SignedParamsCheck(valid=False, expired=True)
    if current - issued > SIGNED_PARAMS_MAX_AGE_MS:
        return SignedParamsCheck(valid=False, expired=True)

    if not secret:
        return SignedParamsCheck(valid=False, expired=False)
    expected = sign_params(data, ts, secret)
    valid = hmac.compare_digest((sig or "").lower().encode("utf-8"), expected.encode("utf-8"))
    return SignedParamsCheck(valid=valid, expired=False)
