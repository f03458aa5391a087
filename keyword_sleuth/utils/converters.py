# Regexes are compiled once at import time.
# The separator rules below are tuned for Peruvian storefront prices.
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
import re
from typing import Any

from dateutil.parser import isoparse
from dateutil.tz import UTC


_RE_PRICE_NOISE = re.compile(r"[^\d.,S/]")
_RE_NUMBER_CHUNK = re.compile(r"\d[\d.,]*")
_RE_LEADING_NUMERAL = re.compile(r"\d+(?:\.\d*)?")
_RE_NEGATIVE_PREFIX = re.compile(r"-[\sS/.]*$")


def parse_price(value: Any) -> int | None:
    """
    Converts localized price text (e.g. "S/ 1.299,90") into a whole amount.

    Returns None when no positive amount can be recovered.
    """
    if value is None or isinstance(value, bool):
        return None

    # 1. Handle native types
    if isinstance(value, (int, float, Decimal)):
        try:
            return _round_positive(Decimal(str(value)))
        except InvalidOperation:
            return None

    # 2. String cleanup
    # Remove non-breaking spaces
    s = str(value).replace("\u00a0", " ").strip()
    if not s:
        return None

    first_digit = re.search(r"\d", s)
    if not first_digit:
        return None

    # "- S/ 20" or "-20" are refunds/discount lines, not prices
    if _RE_NEGATIVE_PREFIX.search(s[: first_digit.start()]):
        return None

    match = _RE_NUMBER_CHUNK.search(_RE_PRICE_NOISE.sub("", s))
    if not match:
        return None

    raw_num = match.group(0)

    dot_count = raw_num.count(".")
    comma_count = raw_num.count(",")

    clean_num = raw_num

    # ---------------------------------------------------------
    # Logic Branching
    # ---------------------------------------------------------
    if dot_count > 0 and comma_count > 0:
        # Case A: Mixed Separators ("1.234,56")
        # Dot is the thousands separator, the first comma is the decimal one.
        clean_num = raw_num.replace(".", "").replace(",", ".", 1)

    elif comma_count > 1:
        # Case B: Several commas ("1,234,567") are thousands separators
        clean_num = raw_num.replace(",", "")

    elif comma_count == 1:
        # Case C: A single comma is read as the decimal separator.
        # "45,90" -> "45.90", and "1,234" -> "1.234" as well.
        clean_num = raw_num.replace(",", ".")

    elif dot_count > 1:
        # Case D: "1.000.000" -> Remove dots
        clean_num = raw_num.replace(".", "")

    # (Case E: a single dot is left untouched; "89.90" stays as written.)

    numeral = _RE_LEADING_NUMERAL.match(clean_num)
    if not numeral:
        return None

    try:
        price = Decimal(numeral.group(0))
    except InvalidOperation:
        return None

    return _round_positive(price)


def _round_positive(price: Decimal) -> int | None:
    if not price.is_finite():
        return None
    rounded = int(price.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return rounded if rounded > 0 else None


def parse_iso_date(s: str | None) -> datetime | None:
    """Parse ISO-like date strings using dateutil."""
    if not s:
        return None

    try:
        dt = isoparse(str(s))
    except (ValueError, TypeError):
        return None

    return dt if dt.tzinfo else dt.replace(tzinfo=UTC)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
