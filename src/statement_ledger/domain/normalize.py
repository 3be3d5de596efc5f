import re
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Tuple

from ..logging import get_logger
from .models import ZERO

_LOG = get_logger("normalize")

EPOCH = date(1970, 1, 1)


def parse_statement_date(value: Any) -> Optional[date]:
    """Parse a statement date; day-month-year is the canonical reading.

    Supports:
    - DD/MM/YYYY, D.M.YYYY, DD-MM-YYYY
    - YYYY-MM-DD (ISO) and YYYY/MM/DD
    - Two-digit years map to 19xx for >=70 else 20xx
    """
    if value is None:
        return None
    v = str(value).strip()
    if not v:
        return None
    m = re.match(r"^(\d{4})[-/.](\d{1,2})[-/.](\d{1,2})", v)
    if m:
        y, mth, d = (int(g) for g in m.groups())
    else:
        m = re.match(r"^(\d{1,2})[-/.](\d{1,2})[-/.](\d{2,4})\b", v)
        if not m:
            return None
        d, mth = int(m.group(1)), int(m.group(2))
        year_raw = m.group(3)
        if len(year_raw) == 2:
            year_raw = ("20" + year_raw) if int(year_raw) < 70 else ("19" + year_raw)
        y = int(year_raw)
    try:
        return date(y, mth, d)
    except ValueError:
        return None


def normalize_statement_date(value: Any) -> str:
    """Return DD/MM/YYYY when the value parses, otherwise the trimmed raw text."""
    parsed = parse_statement_date(value)
    if parsed is None:
        return str(value).strip() if value is not None else ""
    return parsed.strftime("%d/%m/%Y")


def date_sort_key(value: Any) -> date:
    """Sort key for ledger lines; unparseable dates sort first."""
    return parse_statement_date(value) or EPOCH


def parse_amount(val: Any) -> Optional[Decimal]:
    """Parse a currency amount into a signed Decimal.

    Handles numbers and strings like '14,70', '1.470,00', '1,470.00',
    '1.000.000' (dot thousands) and '(500)' for negatives.
    """
    if val is None or isinstance(val, bool):
        return None
    if isinstance(val, int):
        return Decimal(val)
    if isinstance(val, float):
        return Decimal(str(val))
    if isinstance(val, Decimal):
        return val
    s = str(val).strip().replace(" ", "").replace(" ", "")
    if not s:
        return None
    negative = False
    if s.startswith("(") and s.endswith(")"):
        negative = True
        s = s[1:-1]
    s = re.sub(r"[^\d.,\-+]", "", s)
    if s.startswith("-"):
        negative = not negative
        s = s[1:]
    s = s.lstrip("+")
    if not s:
        return None

    has_dot = "." in s
    has_comma = "," in s
    if has_dot and has_comma:
        if s.rfind(",") > s.rfind("."):
            s2 = s.replace(".", "").replace(",", ".")
        else:
            s2 = s.replace(",", "")
    elif has_comma:
        if re.search(r",\d{1,2}$", s) and s.count(",") == 1:
            s2 = s.replace(",", ".")
        else:
            s2 = s.replace(",", "")
    elif has_dot:
        if re.search(r"\.\d{1,2}$", s) and s.count(".") == 1:
            s2 = s
        else:
            s2 = s.replace(".", "")
    else:
        s2 = s

    try:
        num = Decimal(s2)
    except InvalidOperation:
        _LOG.debug("Unparseable amount: %r", val)
        return None
    return -num if negative else num


def non_negative_amount(val: Any) -> Decimal:
    """Amount as a non-negative Decimal; missing or unparseable values become 0."""
    parsed = parse_amount(val)
    if parsed is None:
        return ZERO
    if parsed < 0:
        _LOG.debug("Negative amount %s coerced to absolute value", parsed)
        return -parsed
    return parsed


def parse_user_amount(text: Optional[str]) -> Optional[Decimal]:
    """Parse an amount typed by the user (thousands separators accepted)."""
    if text is None or not str(text).strip():
        return None
    return parse_amount(text)


def ledger_amounts_from_statement(statement_debit: Any, statement_credit: Any) -> Tuple[Decimal, Decimal]:
    """Map the bank's Debit/Credit columns to ledger (debit, credit).

    The statement is written from the bank's side, so it is the inverse of
    the tracked entity's books: the bank's Credit column (money received) is
    the ledger debit, and the bank's Debit column (money paid out) is the
    ledger credit.
    """
    return non_negative_amount(statement_credit), non_negative_amount(statement_debit)


def ledger_amounts_from_signed(amount: Any) -> Tuple[Decimal, Decimal]:
    """Map a single signed amount column (+ inflow, - outflow) to ledger (debit, credit)."""
    parsed = parse_amount(amount)
    if parsed is None or parsed == 0:
        return ZERO, ZERO
    if parsed > 0:
        return parsed, ZERO
    return ZERO, -parsed
