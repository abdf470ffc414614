import os
import re
import logging

logger = logging.getLogger(__name__)

DEFAULT_COUNTRY_CODE = os.getenv("DEFAULT_COUNTRY_CODE", "+91")

# Prefixes recognised from a leading "+" in the raw input, longest first
KNOWN_COUNTRY_CODES = ["+91", "+44", "+61", "+1"]

# Country code digits stripped from the national part to avoid double counting
_LEADING_CODE_RE = re.compile(r"^(91|1|44|61)")
_NON_DIGIT_RE = re.compile(r"\D")

DISPOSABLE_DOMAINS = {"tempmail.com", "10minutemail.com", "guerrillamail.com"}
COMMON_TYPOS = {
    "gmial.com": "gmail.com",
    "gmai.com": "gmail.com",
    "yahooo.com": "yahoo.com",
    "hotmial.com": "hotmail.com",
}
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_NAME_DISALLOWED_RE = re.compile(r"[^\w\s\-']|[\d_]")


def digits_only(value: str) -> str:
    return _NON_DIGIT_RE.sub("", value or "")


def detect_country_code(phone_input: str) -> str:
    """
    Best-effort country code for a raw phone string.

    A leading "+" prefix wins, then national-number length heuristics,
    then the configured default.
    """
    phone_input = (phone_input or "").strip()
    for code in KNOWN_COUNTRY_CODES:
        if phone_input.startswith(code):
            return code

    digits = digits_only(phone_input)
    if len(digits) == 10:
        return "+91"
    if len(digits) == 11 and digits.startswith("1"):
        return "+1"
    if len(digits) == 12 and digits.startswith("91"):
        return "+91"

    return DEFAULT_COUNTRY_CODE


def resolve_country_code(phone_input: str, country_code: str = None) -> str:
    """An explicit code only takes precedence over detection when it differs from the default."""
    if country_code and digits_only(country_code) and country_code != DEFAULT_COUNTRY_CODE:
        return f"+{digits_only(country_code)}"
    return detect_country_code(phone_input)


def normalize_phone(phone_input: str, country_code: str = None) -> str:
    """
    Canonical dedup key: <country_code><national digits>.

    Pure and total: garbage in still yields a best-effort key.
    """
    code = resolve_country_code(phone_input, country_code)
    national = _LEADING_CODE_RE.sub("", digits_only(phone_input), count=1)
    return f"{code}{national}"


def national_number(phone_normalized: str, country_code: str) -> str:
    if country_code and phone_normalized.startswith(country_code):
        return phone_normalized[len(country_code):]
    return phone_normalized


def validate_email(email: str):
    """Returns (valid, error, warning)."""
    if not _EMAIL_RE.match(email or ""):
        return False, "Invalid email format", None

    domain = email.split("@")[1].lower()
    if domain in DISPOSABLE_DOMAINS:
        return False, "Disposable email addresses not allowed", None

    if domain in COMMON_TYPOS:
        suggestion = email.replace(email.split("@")[1], COMMON_TYPOS[domain])
        return True, None, f"Did you mean {suggestion}?"

    return True, None, None


def sanitize_name(name_input: str) -> str:
    """Keeps letters, spaces, hyphens and apostrophes."""
    return _NAME_DISALLOWED_RE.sub("", name_input or "").strip()
