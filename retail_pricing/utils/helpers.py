# utils/helpers.py
from __future__ import annotations

from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
import logging
import secrets
from typing import Union, Optional

from ..constants import CURRENCY_PLACES

NumberLike = Union[Decimal, float, int, str]

ZERO = Decimal("0")
HUNDRED = Decimal("100")

_log = logging.getLogger(__name__)


def make_document_number(prefix: str, when: Optional[datetime] = None) -> str:
    """PREFIX + yyyyMMddHHmmss + 4 random digits, e.g. INV202510191530421234."""
    when = when or datetime.now()
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S')}{secrets.randbelow(10000):04d}"


def to_decimal(v: NumberLike | None) -> Decimal | None:
    """
    Convert a number-like value to Decimal. None stays None.

    Floats go through str() so 0.1 becomes Decimal('0.1'), not its binary
    expansion. Raises ValueError when the value cannot be parsed.
    """
    if v is None:
        return None
    if isinstance(v, Decimal):
        return v
    try:
        return Decimal(str(v).strip())
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Could not parse {v!r} as a number.") from e


def quantize_money(v: NumberLike, places: int = CURRENCY_PLACES) -> Decimal:
    """Round half-up to currency precision."""
    d = to_decimal(v)
    if d is None:
        raise ValueError("Cannot round a missing amount.")
    return d.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def clamp_non_negative(v: Decimal) -> Decimal:
    return v if v > ZERO else ZERO


def to_datetime(v: date | datetime | str | None, *, end_of_day: bool = False) -> datetime | None:
    """
    Normalize a date/datetime/ISO string to a naive datetime.

    Plain dates become midnight, or 23:59:59.999999 when `end_of_day`
    is set (so an end date covers the whole day).
    """
    if v is None or v == "":
        return None
    if isinstance(v, datetime):
        return v
    if isinstance(v, date):
        return datetime.combine(v, time.max if end_of_day else time.min)
    s = str(v).strip()
    if len(s) == 10:
        return to_datetime(date.fromisoformat(s), end_of_day=end_of_day)
    return datetime.fromisoformat(s)


def fmt_money(v: NumberLike, places: int = CURRENCY_PLACES) -> str:
    """
    Format a number as money with thousands separators and a fixed number of decimals.
    Values that do not parse are returned as str(v).
    """
    try:
        x = quantize_money(v, places)
    except (ValueError, TypeError) as e:
        _log.debug("fmt_money: failed to parse %r as a number: %s", v, e)
        return str(v)
    return f"{x:,.{places}f}"
