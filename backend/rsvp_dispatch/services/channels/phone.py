"""Phone number normalisation to E.164"""
import re
from typing import Optional

from rsvp_dispatch.core.config import settings

# code: international dialling code, local_prefix: trunk prefix dropped when dialling abroad
COUNTRY_CODES = {
    "IL": {"code": "972", "local_prefix": "0"},
    "US": {"code": "1", "local_prefix": "1"},
    "UK": {"code": "44", "local_prefix": "0"},
}

E164_RE = re.compile(r"^\+[1-9]\d{1,14}$")


def is_valid_e164(phone: str) -> bool:
    return bool(phone) and bool(E164_RE.match(phone))


def _clean(phone: str) -> str:
    has_plus = phone.strip().startswith("+")
    digits = re.sub(r"\D", "", phone)
    return f"+{digits}" if has_plus else digits


def format_to_e164(phone: Optional[str], country: Optional[str] = None) -> Optional[str]:
    """
    Convert a phone number in any common notation to E.164.

    Examples (country IL):
        "+972 58 400 3578" -> "+972584003578"
        "058-400-3578"     -> "+972584003578"
        "584003578"        -> "+972584003578"

    Returns:
        The E.164 number, or None if the input cannot be turned into one
    """
    if not phone or not phone.strip():
        return None

    country = country or settings.DEFAULT_COUNTRY
    config = COUNTRY_CODES.get(country, COUNTRY_CODES["IL"])
    cleaned = _clean(phone)

    if cleaned.startswith("+"):
        return cleaned if is_valid_e164(cleaned) else None

    # International format dialled with 00
    if cleaned.startswith("00"):
        candidate = f"+{cleaned[2:]}"
        return candidate if is_valid_e164(candidate) else None

    if cleaned.startswith(config["code"]) and len(cleaned) > 10:
        candidate = f"+{cleaned}"
    elif config["local_prefix"] == "0" and cleaned.startswith("0"):
        candidate = f"+{config['code']}{cleaned[1:]}"
    elif country == "US" and len(cleaned) == 11 and cleaned.startswith("1"):
        candidate = f"+{cleaned}"
    else:
        candidate = f"+{config['code']}{cleaned}"

    if len(cleaned) < 7 or not is_valid_e164(candidate):
        return None
    return candidate
