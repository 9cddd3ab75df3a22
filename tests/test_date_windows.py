from datetime import date, datetime
from pathlib import Path
import sys

import pandas as pd

# Ensure src root (where main.py lives) is on PYTHONPATH
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from date_windows import (  # noqa: E402
    date_range_summary,
    is_valid_billing_date,
    is_valid_payroll_date,
    is_void_marker,
    parse_flexible_date,
    strip_date_suffix,
)


def test_payroll_window_lower_bound_is_inclusive():
    assert is_valid_payroll_date("4/18/2025")
    assert not is_valid_payroll_date("4/17/2025")
    assert is_valid_payroll_date("7/11/2025")
    assert not is_valid_payroll_date("7/12/2025")


def test_billing_window_bounds():
    assert is_valid_billing_date("3/31/2025")
    assert is_valid_billing_date("2025-06-27")
    assert not is_valid_billing_date("3/30/2025")
    assert not is_valid_billing_date("6/28/2025")


def test_time_of_day_is_dropped():
    assert is_valid_billing_date(datetime(2025, 6, 27, 23, 59))
    assert parse_flexible_date(pd.Timestamp("2025-04-18 15:30")) == date(2025, 4, 18)


def test_slash_and_ymd_formats():
    assert parse_flexible_date("4/18/2025") == date(2025, 4, 18)
    assert parse_flexible_date("04/08/2025") == date(2025, 4, 8)
    assert parse_flexible_date("2025-4-8") == date(2025, 4, 8)


def test_suffix_annotations_are_stripped():
    assert strip_date_suffix("4/25/2025 - Void") == "4/25/2025"
    assert parse_flexible_date("4/25/2025 - Prior") == date(2025, 4, 25)
    assert parse_flexible_date("5/9/2025 - Void") == date(2025, 5, 9)


def test_excel_serial_numbers():
    # 45765 is 2025-04-18 in Excel's 1900 date system.
    assert parse_flexible_date(45765) == date(2025, 4, 18)
    assert parse_flexible_date(45765.75) == date(2025, 4, 18)
    assert parse_flexible_date("45765") == date(2025, 4, 18)
    assert parse_flexible_date(12) is None


def test_iso_and_generic_parse():
    assert parse_flexible_date("2025-04-18T09:00:00") == date(2025, 4, 18)
    assert parse_flexible_date("April 18, 2025") == date(2025, 4, 18)
    # Outside the accepted year band
    assert parse_flexible_date("April 18, 1999") is None


def test_unparsable_values_return_none():
    for value in [None, "", "   ", "not a date", float("nan"), pd.NaT, True]:
        assert parse_flexible_date(value) is None
    assert not is_valid_billing_date("not a date")
    assert not is_valid_payroll_date(None)


def test_relative_words_are_not_dates():
    for value in ["today", "Today", "now", "yesterday", "tomorrow"]:
        assert parse_flexible_date(value) is None
    assert not is_valid_payroll_date("Today")


def test_void_marker():
    assert is_void_marker("VOID 10234")
    assert is_void_marker("4/25/2025 - Void")
    assert not is_void_marker("10234")
    assert not is_void_marker(None)


def test_date_range_summary():
    summary = date_range_summary()
    assert summary["payroll"]["range"] == "Apr 18, 2025 - Jul 11, 2025"
    assert summary["billing"]["label"] == "Q2 Billing Period"
