"""Normalization functions for bulk-import cell values.

All functions accept str | None and return the appropriate type or None.
None means "no value" for trim-style rules and "did not parse" for the
parse_* rules; callers distinguish the two by trimming first.
"""

from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Iterable

DEFAULT_DATE_FORMATS = (
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%Y/%m/%d",
    "%d %b %Y",
    "%d %B %Y",
    "%b %d, %Y",
    "%B %d, %Y",
    "%Y-%m-%d %H:%M:%S",
)

_COUNTRY_CODE = "260"

_CURRENCY_PREFIX_RE = re.compile(r"^(?:zmw|zk|usd|us\$|k|\$|€|£)\s*", re.IGNORECASE)
_CURRENCY_SUFFIX_RE = re.compile(r"\s*(?:zmw|usd|%)$", re.IGNORECASE)
_THOUSANDS_RE = re.compile(r"(?<=\d)[,\s'_](?=\d{3}(?:\D|$))")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


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


# ---------------------------------------------------------------------------
# Rule 3: normalize_email
# ---------------------------------------------------------------------------

def normalize_email(value: str | None) -> str | None:
    """Lowercase and trim an email address; None if it has no usable shape."""
    v = trim(value)
    if v is None:
        return None
    v = re.sub(r"\s+", "", v.lower())
    v = re.sub(r"\.{2,}", ".", v)
    return v if _EMAIL_RE.match(v) else None


# ---------------------------------------------------------------------------
# Rule 4: normalize_phone
# ---------------------------------------------------------------------------

def normalize_phone(value: str | None) -> str | None:
    """Return an E.164-style phone number or None.

    Zambian numbers are canonicalised to +260XXXXXXXXX:
      +260 97 123 4567 / 260971234567 / 0971234567 / 971234567
    Anything else with at least 7 digits keeps its digits behind a '+'.
    Fewer than 7 digits is treated as a data error.
    """
    v = trim(value)
    if v is None:
        return None
    digits = re.sub(r"\D", "", v)
    if len(digits) == 12 and digits.startswith(_COUNTRY_CODE):
        return f"+{digits}"
    if len(digits) == 10 and digits.startswith("0") and digits[1] in "5679":
        return f"+{_COUNTRY_CODE}{digits[1:]}"
    if len(digits) == 9 and digits[0] in "5679":
        return f"+{_COUNTRY_CODE}{digits}"
    if len(digits) >= 7:
        return f"+{digits}"
    return None


# ---------------------------------------------------------------------------
# Rule 5: normalize_nrc
# ---------------------------------------------------------------------------

def normalize_nrc(value: str | None) -> str | None:
    """Uppercase a national registration number and drop internal whitespace.

    The '/' separators of the 123456/78/9 layout are kept; they are part of
    how NRCs are printed and stored.
    """
    v = trim(value)
    if v is None:
        return None
    v = re.sub(r"\s+", "", v.upper())
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 6: normalize_header
# ---------------------------------------------------------------------------

def normalize_header(value: str | None) -> str:
    """Lowercase and strip all punctuation and whitespace.

    "Full Name", "full_name" and "FULL-NAME " all become "fullname".
    """
    if value is None:
        return ""
    v = unicodedata.normalize("NFKD", value)
    v = "".join(c for c in v if not unicodedata.combining(c))
    return re.sub(r"[\W_]+", "", v.lower())


def header_tokens(value: str | None) -> str:
    """Lowercase words of a header separated by single spaces."""
    if value is None:
        return ""
    v = re.sub(r"([a-z])([A-Z])", r"\1 \2", value)
    return " ".join(re.split(r"[\W_]+", v.lower())).strip()


# ---------------------------------------------------------------------------
# Rule 7: parse_numeric
# ---------------------------------------------------------------------------

def parse_numeric(value: str | None) -> Decimal | None:
    """Parse a decimal, tolerating currency markers and thousands separators.

    "K 12,500.00", "ZMW12 500", "$1,000" and "15%" all parse.  Returns None
    on failure.
    """
    v = trim(value)
    if v is None:
        return None
    v = _CURRENCY_PREFIX_RE.sub("", v)
    v = _CURRENCY_SUFFIX_RE.sub("", v)
    v = _THOUSANDS_RE.sub("", v)
    try:
        result = Decimal(v)
    except InvalidOperation:
        return None
    return result if result.is_finite() else None


def parse_int(value: str | None) -> int | None:
    """Parse a whole number; '12.0' is accepted, '12.5' is not."""
    number = parse_numeric(value)
    if number is None or number != number.to_integral_value():
        return None
    return int(number)


# ---------------------------------------------------------------------------
# Rule 8: parse_date
# ---------------------------------------------------------------------------

def parse_date(
    value: str | None,
    formats: Iterable[str] = DEFAULT_DATE_FORMATS,
) -> date | None:
    """Try each format in order and return the first date that parses."""
    v = trim(value)
    if v is None:
        return None
    for fmt in formats:
        try:
            return datetime.strptime(v, fmt).date()
        except ValueError:
            continue
    return None


def parse_bool(value: str | None) -> bool | None:
    """Parse yes/no style cells."""
    v = trim(value)
    if v is None:
        return None
    lowered = v.lower()
    if lowered in {"yes", "y", "true", "1"}:
        return True
    if lowered in {"no", "n", "false", "0"}:
        return False
    return None
