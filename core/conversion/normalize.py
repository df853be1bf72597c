"""Value normalization for CRM <-> ERP conversion.

The ERP rejects some characters that the CRM happily stores (typographic
quotes, zero-width spaces, control characters), expects identifier codes in
a restricted alphabet, and exchanges amounts as decimal strings. Everything
here is pure and deterministic.

    normalize_text("  \u201cAcme\u201d  Ltd ")  -> '"Acme" Ltd'
    normalize_identifier("cont 12/ab")       -> 'CONT-12/AB'
    normalize_currency("\u20ac")                  -> 'EUR'
    parse_decimal("1.234,50")                -> Decimal('1234.50')
    parse_date("09.01.2024")                 -> date(2024, 1, 9)
"""

import re
import unicodedata
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional


# Typographic characters the ERP does not accept, mapped to ASCII
CHARACTER_REPLACEMENTS = {
    "\u2018": "'", "\u2019": "'", "\u201a": "'", "\u201b": "'",
    "\u201c": '"', "\u201d": '"', "\u201e": '"', "\u201f": '"',
    "\u2013": "-", "\u2014": "-", "\u2212": "-",
    "\u2026": "...",
    "\u00a0": " ", "\u2007": " ", "\u202f": " ",
}

ZERO_WIDTH_CHARACTERS = {"\u200b", "\u200c", "\u200d", "\u2060", "\ufeff"}

CURRENCY_SYMBOLS = {
    "\u20ac": "EUR",
    "$": "USD",
    "\u00a3": "GBP",
    "KN": "HRK",
}

CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
IDENTIFIER_RE = re.compile(r"[^A-Z0-9\-_./]")

DATE_FORMATS = ("%Y-%m-%d", "%d.%m.%Y", "%d. %m. %Y", "%Y/%m/%d")


def normalize_text(value: Any, max_length: Optional[int] = None) -> str:
    """Normalize free text for the ERP.

    1. Unicode NFC composition
    2. Typographic quotes/dashes/spaces to ASCII
    3. Zero-width and control characters removed
    4. Whitespace collapsed

    Length is not enforced here; callers validate it so that nothing is
    silently truncated.
    """
    if value is None:
        return ""
    text = unicodedata.normalize("NFC", str(value))
    out = []
    for ch in text:
        if ch in ZERO_WIDTH_CHARACTERS:
            continue
        if ch in CHARACTER_REPLACEMENTS:
            out.append(CHARACTER_REPLACEMENTS[ch])
            continue
        if ch in ("\n", "\t", "\r"):
            out.append(" ")
            continue
        if unicodedata.category(ch) in ("Cc", "Cf"):
            continue
        out.append(ch)
    return re.sub(r"\s+", " ", "".join(out)).strip()


def normalize_multiline(value: Any) -> str:
    """Like normalize_text but keeps line breaks (notes, descriptions)."""
    if value is None:
        return ""
    lines = str(value).replace("\r\n", "\n").split("\n")
    return "\n".join(normalize_text(line) for line in lines).strip()


def normalize_identifier(value: Any) -> str:
    """Normalize an identifier code (count codes, SKUs, document numbers)."""
    text = normalize_text(value).upper()
    text = re.sub(r"\s+", "-", text)
    return IDENTIFIER_RE.sub("", text)


def normalize_currency(value: Any) -> Optional[str]:
    """Map a currency code or symbol to an upper-case ISO-4217 code.

    Returns None for blank input; invalid codes are returned as-is for the
    caller to report.
    """
    text = normalize_text(value).upper()
    if not text:
        return None
    return CURRENCY_SYMBOLS.get(text, text)


def is_valid_currency(code: Optional[str]) -> bool:
    return bool(code) and bool(CURRENCY_RE.match(code))


def is_valid_email(value: Optional[str]) -> bool:
    return bool(value) and bool(EMAIL_RE.match(value))


def parse_decimal(value: Any) -> Optional[Decimal]:
    """Parse a decimal from ERP/CRM formats.

    Accepts Decimal, int, float and strings using either ',' or '.' as the
    decimal separator ("1.234,50" and "1,234.50" both parse to 1234.50).

    Raises:
        ValueError: If the value is not a number
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"Not a number: {value!r}")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    s = normalize_text(value).replace(" ", "")
    if s == "":
        return None
    if "," in s and "." in s:
        if s.rfind(",") > s.rfind("."):
            s = s.replace(".", "").replace(",", ".")
        else:
            s = s.replace(",", "")
    elif "," in s:
        s = s.replace(",", ".")
    try:
        return Decimal(s)
    except InvalidOperation:
        raise ValueError(f"Not a number: {value!r}")


def format_decimal(value: Optional[Decimal], places: int = 2) -> str:
    """Render a decimal the way the ERP expects it ("12.50")."""
    if value is None:
        value = Decimal("0")
    quantum = Decimal(1).scaleb(-places)
    return str(Decimal(value).quantize(quantum, rounding=ROUND_HALF_UP))


def parse_date(value: Any) -> Optional[date]:
    """Parse a date from the formats seen on either side.

    The ERP sometimes appends a UTC offset to plain dates ("2024-01-09+02:00").

    Raises:
        ValueError: If the value cannot be parsed
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = normalize_text(value)
    if s == "":
        return None
    iso_prefix = re.match(r"^(\d{4}-\d{2}-\d{2})(?:[T ].*|[+-]\d{2}:?\d{2}|Z)?$", s)
    if iso_prefix:
        s = iso_prefix.group(1)
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Cannot parse date: {value!r}")


def format_date(value: Optional[date]) -> str:
    return value.isoformat() if value else ""


def parse_bool(value: Any) -> bool:
    """ERP booleans arrive as 'true'/'false' strings."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ("true", "1", "yes", "y")


def format_bool(value: bool) -> str:
    return "true" if value else "false"
