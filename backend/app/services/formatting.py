"""
Formatting utilities — Vietnamese currency, number and date rendering,
Roman numerals and quote identifiers.

Every function here is pure and never raises: malformed input degrades to
an empty string or a zero value.
"""
import math
import random
import string
import time
from datetime import date, datetime
from typing import Any, Optional

CURRENCY_SYMBOL = "₫"
_BASE36 = string.digits + string.ascii_lowercase

_ROMAN_TABLE = [
    ("M", 1000), ("CM", 900), ("D", 500), ("CD", 400),
    ("C", 100), ("XC", 90), ("L", 50), ("XL", 40),
    ("X", 10), ("IX", 9), ("V", 5), ("IV", 4), ("I", 1),
]


# ---------------------------------------------------------------------------
# Coercion
# ---------------------------------------------------------------------------

def to_number(value: Any, default: float = 0.0) -> float:
    """
    Coerce *value* to a finite float, or return *default*.

    Accepts ints, floats and numeric strings; a single decimal comma
    ("1,5") is read as a decimal point. Booleans and None are not numbers.
    """
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return default
        if "," in text and "." not in text:
            text = text.replace(",", ".")
        try:
            number = float(text)
        except ValueError:
            return default
    else:
        return default
    if math.isnan(number) or math.isinf(number):
        return default
    return number


def is_number(value: Any) -> bool:
    """True for real, finite int/float values (booleans excluded)."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return not (math.isnan(value) or math.isinf(value))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _group_thousands(digits: str) -> str:
    groups = []
    while len(digits) > 3:
        groups.insert(0, digits[-3:])
        digits = digits[:-3]
    groups.insert(0, digits)
    return ".".join(groups)


# ---------------------------------------------------------------------------
# Currency / numbers
# ---------------------------------------------------------------------------

def format_currency(value: Any, show_symbol: bool = True) -> str:
    """1234567.4 -> '1.234.567 ₫'. Non-numbers render as zero."""
    if not is_number(value):
        return f"0 {CURRENCY_SYMBOL}" if show_symbol else "0"
    rounded = _round_half_up(value)
    sign = "-" if rounded < 0 else ""
    formatted = sign + _group_thousands(str(abs(rounded)))
    return f"{formatted} {CURRENCY_SYMBOL}" if show_symbol else formatted


def format_number(value: Any, max_decimals: int = 2) -> str:
    """Vietnamese grouping with a decimal comma; trailing zeros are trimmed."""
    if not is_number(value):
        return "0"
    quantized = round(float(value), max_decimals)
    sign = "-" if quantized < 0 else ""
    text = f"{abs(quantized):.{max_decimals}f}"
    if "." in text:
        whole, frac = text.split(".")
        frac = frac.rstrip("0")
    else:
        whole, frac = text, ""
    if whole == "0" and not frac:
        sign = ""
    result = sign + _group_thousands(whole)
    return f"{result},{frac}" if frac else result


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------

def parse_date(value: Any) -> Optional[date]:
    """Read a date, datetime, ISO string or epoch-milliseconds number."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)):
        if not is_number(value):
            return None
        try:
            return datetime.fromtimestamp(value / 1000.0).date()
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        try:
            return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
        except ValueError:
            pass
        try:
            return date.fromisoformat(text[:10])
        except ValueError:
            return None
    return None


def format_date(value: Any) -> str:
    """DD/MM/YYYY, or '' for anything that is not a date."""
    parsed = parse_date(value)
    if parsed is None:
        return ""
    return f"{parsed.day:02d}/{parsed.month:02d}/{parsed.year:04d}"


# ---------------------------------------------------------------------------
# Roman numerals / identifiers
# ---------------------------------------------------------------------------

def number_to_roman(value: Any) -> str:
    if not is_number(value) or value <= 0:
        return ""
    remaining = int(math.floor(value))
    out = []
    for symbol, amount in _ROMAN_TABLE:
        count, remaining = divmod(remaining, amount)
        out.append(symbol * count)
    return "".join(out)


def _random_base36(length: int) -> str:
    return "".join(random.choice(_BASE36) for _ in range(length))


def generate_unique_id(prefix: str = "id") -> str:
    """'qitem-1718000000000-k3j9x0a1b'"""
    return f"{prefix}-{int(time.time() * 1000)}-{_random_base36(9)}"


def generate_simple_quote_id(
    customer_name: Optional[str],
    quote_date: Optional[str] = None,
    for_pdf: bool = False,
) -> str:
    """
    Build a short quote reference: customer initials, DDMMYY and a random
    suffix, e.g. 'NVA-100625-K3J9'. *for_pdf* drops the suffix.
    """
    if quote_date:
        parts = str(quote_date).split("-")
        date_part = f"{parts[2]}{parts[1]}{parts[0][2:]}" if len(parts) == 3 else "DDMMYY"
    else:
        today = date.today()
        date_part = today.strftime("%d%m%y")

    initials = "X"
    words = (customer_name or "").split()
    if words:
        initials = "".join(word[0].upper() for word in words)

    if for_pdf:
        return f"{initials}-{date_part}"
    return f"{initials}-{date_part}-{_random_base36(4).upper()}"
