"""Masking helpers so log lines never carry raw PHI."""
import re


def mask_email(email: str) -> str:
    if not email or "@" not in email:
        return "<none>"
    local, _, domain = email.strip().partition("@")
    return f"{local[:1]}***@{domain}"


def mask_phone(phone: str) -> str:
    digits = re.sub(r"\D", "", phone or "")
    if not digits:
        return "<none>"
    return f"***{digits[-4:]}"
