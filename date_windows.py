"""
Date parsing and business-period filtering.

Billing session dates and payroll check dates arrive in whatever shape the
source spreadsheet used (M/D/YYYY text, ISO strings, Excel serials, real
datetimes, or text carrying a " - Void" style annotation). Everything is
reduced to a calendar day and compared against the closed billing or
payroll window. Parse failures yield None and the row simply falls outside
both windows.
"""

import logging
import math
import numbers
import re
import warnings
from datetime import date, datetime, timedelta
from typing import Optional

import pandas as pd

from business_rules import DEFAULT_RULES, BusinessRules, DateWindow
from models import Cell

log = logging.getLogger(__name__)

# Payroll exports append notes such as "4/18/2025 - Prior" or "- Void".
_SUFFIX = re.compile(r"\s*-\s*(Prior|Void|[A-Za-z\s]+).*$")
_SLASH = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
_YMD = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$")

# Excel day 25569 is 1970-01-01.
EXCEL_EPOCH_OFFSET = 25569
EXCEL_SERIAL_RANGE = (25000, 60000)
GENERIC_PARSE_YEARS = (2020, 2029)
UNIX_EPOCH = date(1970, 1, 1)


def strip_date_suffix(text: str) -> str:
    return _SUFFIX.sub("", text.strip())


def is_void_marker(value: Cell) -> bool:
    """True when a cell carries a void annotation ("Void", "4/25/2025 - Void")."""
    if value is None or not isinstance(value, str):
        return False
    return "void" in value.lower()


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _from_excel_serial(serial: float) -> Optional[date]:
    low, high = EXCEL_SERIAL_RANGE
    if not (low < serial < high):
        return None
    return UNIX_EPOCH + timedelta(days=math.floor(serial - EXCEL_EPOCH_OFFSET))


def _generic_parse(text: str) -> Optional[date]:
    # Relative words such as "today" or "now" resolve against the clock.
    if not re.search(r"\d", text):
        return None
    with warnings.catch_warnings():
        # pandas warns when it has to guess a format; guessing is the point here.
        warnings.simplefilter("ignore", UserWarning)
        parsed = pd.to_datetime(text, errors="coerce")
    if parsed is None or pd.isna(parsed):
        return None
    low, high = GENERIC_PARSE_YEARS
    if not (low <= parsed.year <= high):
        return None
    return parsed.date()


def parse_flexible_date(value: Cell) -> Optional[date]:
    """
    Parse a date cell to a calendar day, or None.

    Text is tried as, in order: M/D/YYYY, YYYY-M-D, an Excel serial number,
    ISO 8601, and finally a generic parse whose result must fall in
    2020-2029. Time of day is always dropped.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return None if pd.isna(value) else value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, bool):
        return None
    if isinstance(value, numbers.Real):
        if math.isnan(value):
            return None
        return _from_excel_serial(float(value))
    if not isinstance(value, str):
        return None

    text = strip_date_suffix(value)
    if not text:
        return None

    m = _SLASH.match(text)
    if m:
        month, day, year = (int(g) for g in m.groups())
        parsed = _safe_date(year, month, day)
        if parsed:
            return parsed

    m = _YMD.match(text)
    if m:
        year, month, day = (int(g) for g in m.groups())
        parsed = _safe_date(year, month, day)
        if parsed:
            return parsed

    try:
        serial = float(text)
    except ValueError:
        serial = None
    if serial is not None and not math.isnan(serial):
        parsed = _from_excel_serial(serial)
        if parsed:
            return parsed

    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        pass

    return _generic_parse(text)


def in_window(value: Cell, window: DateWindow) -> bool:
    day = parse_flexible_date(value)
    if day is None:
        return False
    return window.contains(day)


def is_valid_billing_date(value: Cell, rules: BusinessRules = DEFAULT_RULES) -> bool:
    return in_window(value, rules.billing_window)


def is_valid_payroll_date(value: Cell, rules: BusinessRules = DEFAULT_RULES) -> bool:
    return in_window(value, rules.payroll_window)


def date_range_summary(rules: BusinessRules = DEFAULT_RULES) -> dict:
    """Display strings for both windows, e.g. "Apr 18, 2025 - Jul 11, 2025"."""
    def fmt(d: date) -> str:
        return d.strftime("%b %d, %Y")

    out = {}
    for key, window in (("billing", rules.billing_window), ("payroll", rules.payroll_window)):
        out[key] = {
            "label": window.label,
            "start": fmt(window.start),
            "end": fmt(window.end),
            "range": f"{fmt(window.start)} - {fmt(window.end)}",
        }
    return out
