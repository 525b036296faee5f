# For guard keys (subject, UA) and contact fingerprints.

import hashlib
import re

_NON_DIGITS = re.compile(r"\D")


def hash_value(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def hash_ua(user_agent: str | None) -> str:
    if not user_agent:
        return "no-ua"
    return hash_value(user_agent)


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def normalize_phone(phone: str | None) -> str:
    return _NON_DIGITS.sub("", phone or "")


def contact_fingerprint(phone: str | None, email: str | None) -> str:
    """Stable identity of a booking contact, derived from phone + email."""
    return hash_value(f"{normalize_phone(phone)}|{normalize_email(email)}")
