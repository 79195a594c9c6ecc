"""Normalization functions for appointment CSV ingestion.

All functions accept str | None and return the appropriate type or None
when the value is blank or cannot be parsed.
"""

from __future__ import annotations

import re
from datetime import date, datetime, time
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PHONE_RE = re.compile(r"^\+?[\d\s\-().]+$")
_TIME_12H_RE = re.compile(r"^(\d{1,2}):(\d{2})\s*([AP])\.?M\.?$", re.IGNORECASE)
_TIME_24H_RE = re.compile(r"^(\d{1,2}):(\d{2})$")

PET_SIZES = ("small", "medium", "large", "xlarge")

_PET_SIZE_ALIASES = {
    "small": "small",
    "s": "small",
    "medium": "medium",
    "med": "medium",
    "m": "medium",
    "large": "large",
    "lge": "large",
    "l": "large",
    "xlarge": "xlarge",
    "extralarge": "xlarge",
    "xtralarge": "xlarge",
    "xl": "xlarge",
    "xxl": "xlarge",
}

_PAYMENT_STATUS_ALIASES = {
    "pending": "pending",
    "unpaid": "pending",
    "paid": "paid",
    "partiallypaid": "partially_paid",
    "partial": "partially_paid",
    "depositpaid": "partially_paid",
    "deposit": "partially_paid",
}

_PAYMENT_METHOD_ALIASES = {
    "cash": "cash",
    "card": "card",
    "creditcard": "card",
    "debitcard": "card",
    "credit": "card",
    "debit": "card",
    "other": "other",
}


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


def normalize_header(value: str) -> str:
    """'Customer Email ' -> 'customer_email'."""
    return re.sub(r"\s+", "_", value.strip().lower())


# ---------------------------------------------------------------------------
# Rule 3: normalize_email
# ---------------------------------------------------------------------------

def normalize_email(value: str | None) -> str | None:
    """Lowercase and trim an email address."""
    v = trim(value)
    if v is None:
        return None
    return v.lower()


def is_valid_email(value: str | None) -> bool:
    v = trim(value)
    return bool(v and _EMAIL_RE.match(v))


# ---------------------------------------------------------------------------
# Rule 4: normalize_phone
# ---------------------------------------------------------------------------

def normalize_phone(value: str | None) -> str | None:
    """Return the canonical 10-digit phone number or None.

    Accepts digits with optional spaces, dashes, dots, parentheses and a
    leading '+'.  11 digits starting with the country code 1 are reduced to
    the national 10 digits.  Anything else is rejected.
    """
    v = trim(value)
    if v is None or not _PHONE_RE.match(v):
        return None
    digits = re.sub(r"\D", "", v)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) != 10:
        return None
    return digits


# ---------------------------------------------------------------------------
# Rule 5: identity keys
# ---------------------------------------------------------------------------

def name_key(value: str | None) -> str | None:
    """Case-insensitive identity key for pet/service/addon names."""
    v = normalize_space(value)
    if v is None:
        return None
    return v.lower()


def parse_name_parts(full_name: str | None) -> tuple[str | None, str | None]:
    """Split a full name at the first whitespace boundary.

    "Jane Ann Doe" -> ("Jane", "Ann Doe"); "Cher" -> ("Cher", None).
    """
    v = normalize_space(full_name)
    if not v:
        return (None, None)
    first, _, rest = v.partition(" ")
    return (first, rest or None)


# ---------------------------------------------------------------------------
# Rule 6: enums
# ---------------------------------------------------------------------------

def _enum_token(value: str | None) -> str | None:
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"[\s_\-]", "", v.lower())


def normalize_pet_size(value: str | None) -> str | None:
    token = _enum_token(value)
    if token is None:
        return None
    return _PET_SIZE_ALIASES.get(token)


def normalize_payment_status(value: str | None) -> str | None:
    """Return 'pending' | 'paid' | 'partially_paid', or None if unknown.

    A blank value means 'pending'.
    """
    token = _enum_token(value)
    if token is None:
        return "pending"
    return _PAYMENT_STATUS_ALIASES.get(token)


def normalize_payment_method(value: str | None) -> str | None:
    token = _enum_token(value)
    if token is None:
        return None
    return _PAYMENT_METHOD_ALIASES.get(token)


# ---------------------------------------------------------------------------
# Rule 7: numbers
# ---------------------------------------------------------------------------

def parse_numeric(value: str | None) -> Decimal | None:
    """Parse a decimal number from a string, returning None on failure."""
    v = trim(value)
    if v is None:
        return None
    try:
        d = Decimal(v)
    except InvalidOperation:
        return None
    return d if d.is_finite() else None


def parse_amount(value: str | None) -> Decimal | None:
    """Parse a non-negative money amount ('$1,234.5' -> Decimal('1234.50'))."""
    v = trim(value)
    if v is None:
        return None
    d = parse_numeric(v.replace("$", "").replace(",", ""))
    if d is None or d < 0:
        return None
    return d.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


# ---------------------------------------------------------------------------
# Rule 8: dates and times
# ---------------------------------------------------------------------------

def parse_date(value: str | None) -> date | None:
    """Parse 'YYYY-MM-DD' or 'M/D/YYYY'."""
    v = trim(value)
    if v is None:
        return None
    for fmt in ("%Y-%m-%d", "%m/%d/%Y"):
        try:
            return datetime.strptime(v, fmt).date()
        except ValueError:
            continue
    return None


def parse_time(value: str | None) -> time | None:
    """Parse 'H:MM AM/PM' (12-hour) or 'HH:MM' (24-hour)."""
    v = trim(value)
    if v is None:
        return None

    m = _TIME_12H_RE.match(v)
    if m:
        hour, minute = int(m.group(1)), int(m.group(2))
        if not (1 <= hour <= 12) or minute > 59:
            return None
        pm = m.group(3).upper() == "P"
        if hour == 12:
            hour = 12 if pm else 0
        elif pm:
            hour += 12
        return time(hour, minute)

    m = _TIME_24H_RE.match(v)
    if m:
        hour, minute = int(m.group(1)), int(m.group(2))
        if hour > 23 or minute > 59:
            return None
        return time(hour, minute)

    return None


# ---------------------------------------------------------------------------
# Helper: parse_addons
# ---------------------------------------------------------------------------

def parse_addons(value: str | None) -> list[str]:
    """Split a comma-separated addon list, dropping blank items."""
    v = trim(value)
    if v is None:
        return []
    return [n for n in (normalize_space(p) for p in v.split(",")) if n]
