"""
Record aggregation: typed rows -> per-employee sums.

Billing rows are kept when their session date falls in the billing window,
payroll rows when their check date falls in the payroll window. Each row is
keyed by the normalized form of its exact-mapped name, payroll-only names
are fuzzily promoted onto billing-only names where the match is
unambiguous, and both sides are grouped and outer-merged into one table of
employees.
"""

import logging
import re
from dataclasses import asdict
from typing import Dict, Iterable, List, Tuple

import numpy as np
import pandas as pd

from business_rules import DEFAULT_RULES, BusinessRules
from date_windows import is_void_marker, parse_flexible_date
from employee_mapping import (
    apply_exact_mapping,
    is_hr_staff,
    normalize_name,
    resolve_payroll_identities,
)
from models import BillingRow, Cell, PayrollRow

log = logging.getLogger(__name__)


# =========================
# ACCOUNTING NUMBERS
# =========================

_PARENS = re.compile(r"^\((.*)\)$")


def parse_accounting_number(value: Cell) -> float:
    """
    "(1,683.94)" -> -1683.94, "-12" -> -12.0, "$1,000" -> 1000.0.

    Anything unparsable (blank, text, None, NaN) is 0.0.
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float, np.number)):
        return 0.0 if pd.isna(value) else float(value)

    text = str(value).strip().replace(",", "").replace("$", "").replace(" ", "")
    negative = False
    m = _PARENS.match(text)
    if m:
        negative = True
        text = m.group(1)
    try:
        number = float(text)
    except ValueError:
        return 0.0
    if np.isnan(number) or np.isinf(number):
        return 0.0
    return -abs(number) if negative else number


def parse_accounting_series(series: pd.Series) -> pd.Series:
    """Vectorised parse_accounting_number for a whole column."""
    text = (
        series.astype(str)
        .str.replace(",", "", regex=False)
        .str.replace("$", "", regex=False)
        .str.replace(" ", "", regex=False)
        .str.strip()
    )
    negative = text.str.match(r"^\(.*\)$")
    text = text.str.replace(r"^\((.*)\)$", r"\1", regex=True)
    numbers = (
        text.replace({"": "0", "nan": "0", "None": "0", "NaN": "0"})
        .pipe(pd.to_numeric, errors="coerce")
        .replace([np.inf, -np.inf], np.nan)
        .fillna(0.0)
        .astype(float)
    )
    return numbers.where(~negative, -numbers.abs())


# =========================
# ROW FRAMES
# =========================

BILLING_FRAME_COLUMNS = ["source_name", "display_name", "key", "code", "day", "hours", "amount"]
PAYROLL_FRAME_COLUMNS = [
    "source_name", "display_name", "key", "day", "hours", "cost",
    "department", "is_void", "is_hr",
]


def _clean_name(value) -> str:
    if value is None or (isinstance(value, float) and np.isnan(value)):
        return ""
    return str(value).strip()


def _numeric(series: pd.Series) -> pd.Series:
    return pd.to_numeric(series, errors="coerce").fillna(0.0).astype(float)


def billing_frame(rows: Iterable[BillingRow], rules: BusinessRules = DEFAULT_RULES) -> pd.DataFrame:
    """In-window billing rows with their canonical key, one DataFrame row each."""
    raw = pd.DataFrame([asdict(r) for r in rows])
    if raw.empty:
        return pd.DataFrame(columns=BILLING_FRAME_COLUMNS)

    df = pd.DataFrame({"source_name": raw["tech_name"].map(_clean_name)})
    df["display_name"] = df["source_name"].map(lambda n: apply_exact_mapping(n, rules))
    df["key"] = df["display_name"].map(normalize_name)
    df["code"] = pd.to_numeric(raw["code"], errors="coerce")
    df["day"] = raw["session_date"].map(parse_flexible_date)
    df["hours"] = _numeric(raw["hours"])
    df["amount"] = _numeric(raw["price"])

    in_period = df["day"].map(lambda d: d is not None and rules.billing_window.contains(d)).astype(bool)
    named = df["key"] != ""
    kept = df[in_period & named].reset_index(drop=True)

    dropped = len(df) - len(kept)
    if dropped:
        log.debug("Billing: excluded %d of %d rows (outside %s or unnamed)",
                  dropped, len(df), rules.billing_window.label)
    return kept


def payroll_frame(rows: Iterable[PayrollRow], rules: BusinessRules = DEFAULT_RULES) -> pd.DataFrame:
    """In-window payroll rows, accounting-parsed cost, HR and void flags."""
    raw = pd.DataFrame([asdict(r) for r in rows])
    if raw.empty:
        return pd.DataFrame(columns=PAYROLL_FRAME_COLUMNS)

    df = pd.DataFrame({"source_name": raw["name"].map(_clean_name)})
    df["display_name"] = df["source_name"].map(lambda n: apply_exact_mapping(n, rules))
    df["key"] = df["display_name"].map(normalize_name)
    df["day"] = raw["check_date"].map(parse_flexible_date)
    df["hours"] = _numeric(raw["hours"])
    df["cost"] = parse_accounting_series(raw["total_expenses"])
    df["department"] = raw["department"].fillna("").astype(str)
    df["is_void"] = (
        raw["check_date"].map(is_void_marker).astype(bool)
        | raw["payment_details"].map(is_void_marker).astype(bool)
    )
    df["is_hr"] = df["source_name"].map(lambda n: is_hr_staff(n, rules)).astype(bool)

    keep = df["day"].map(lambda d: d is not None and rules.payroll_window.contains(d)).astype(bool)
    keep &= df["key"] != ""
    if not rules.include_void_payroll:
        keep &= ~df["is_void"]
    kept = df[keep].reset_index(drop=True)

    dropped = len(df) - len(kept)
    if dropped:
        log.debug("Payroll: excluded %d of %d rows (outside %s, unnamed%s)",
                  dropped, len(df), rules.payroll_window.label,
                  "" if rules.include_void_payroll else " or void")
    return kept


def unify_identities(
    billing: pd.DataFrame,
    payroll: pd.DataFrame,
    rules: BusinessRules = DEFAULT_RULES,
) -> pd.DataFrame:
    """
    Re-key payroll rows whose name only fuzzily matches a billing name.

    Only names present on one side are considered; HR staff never take part.
    Returns a (possibly) re-keyed copy of the payroll frame.
    """
    if billing.empty or payroll.empty:
        return payroll

    billing_keys = set(billing["key"])
    payroll_keys = set(payroll["key"])

    billing_only = billing[~billing["key"].isin(payroll_keys)]
    payroll_only = payroll[~payroll["key"].isin(billing_keys) & ~payroll["is_hr"]]
    if billing_only.empty or payroll_only.empty:
        return payroll

    promoted = resolve_payroll_identities(
        list(dict.fromkeys(payroll_only["display_name"])),
        list(dict.fromkeys(billing_only["display_name"])),
        rules,
    )
    if not promoted:
        return payroll

    out = payroll.copy()
    hit = out["display_name"].isin(list(promoted)) & ~out["is_hr"]
    out.loc[hit, "display_name"] = out.loc[hit, "display_name"].map(promoted)
    out.loc[hit, "key"] = out.loc[hit, "display_name"].map(normalize_name)
    log.info("Promoted %d payroll name(s) onto billing names by fuzzy match", len(promoted))
    return out


# =========================
# GROUPING
# =========================

def _codes(series: pd.Series) -> List[int]:
    return [int(c) for c in series.dropna()]


def group_billing(frame: pd.DataFrame) -> pd.DataFrame:
    """One row per key: billing_name, billing_display, billable_hours, revenue, billing_rows, codes."""
    columns = ["key", "billing_name", "billing_display", "billable_hours", "revenue", "billing_rows", "codes"]
    if frame.empty:
        return pd.DataFrame(columns=columns)

    return frame.groupby("key", as_index=False, sort=False).agg(
        billing_name=("source_name", "first"),
        billing_display=("display_name", "first"),
        billable_hours=("hours", "sum"),
        revenue=("amount", "sum"),
        billing_rows=("amount", "size"),
        codes=("code", _codes),
    )[columns]


def group_payroll(frame: pd.DataFrame) -> pd.DataFrame:
    """One row per key: payroll_name, payroll_display, payroll_hours, payroll_cost, payroll_rows, department, is_hr."""
    columns = [
        "key", "payroll_name", "payroll_display", "payroll_hours", "payroll_cost",
        "payroll_rows", "department", "is_hr",
    ]
    if frame.empty:
        return pd.DataFrame(columns=columns)

    return frame.groupby("key", as_index=False, sort=False).agg(
        payroll_name=("source_name", "first"),
        payroll_display=("display_name", "first"),
        payroll_hours=("hours", "sum"),
        payroll_cost=("cost", "sum"),
        payroll_rows=("cost", "size"),
        department=("department", "first"),
        is_hr=("is_hr", "any"),
    )[columns]


def prepare_frames(
    billing_rows: Iterable[BillingRow],
    payroll_rows: Iterable[PayrollRow],
    rules: BusinessRules = DEFAULT_RULES,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Filtered billing frame and identity-unified payroll frame."""
    billing = billing_frame(billing_rows, rules)
    payroll = unify_identities(billing, payroll_frame(payroll_rows, rules), rules)
    return billing, payroll


def build_employee_table(
    billing: pd.DataFrame,
    payroll: pd.DataFrame,
    rules: BusinessRules = DEFAULT_RULES,
) -> pd.DataFrame:
    """
    Outer-merge per-employee billing and payroll sums from prepared frames.

    Columns: key, name, billing_name, payroll_name, billable_hours, revenue,
    codes, payroll_hours, payroll_cost, department, is_hr, is_matched, source
    ("both", "billing" or "payroll").
    """
    merged = group_billing(billing).merge(
        group_payroll(payroll),
        on="key",
        how="outer",
        indicator=True,
    )

    for col in ("billable_hours", "revenue", "payroll_hours", "payroll_cost", "billing_rows", "payroll_rows"):
        merged[col] = pd.to_numeric(merged[col], errors="coerce").fillna(0.0).astype(float)
    for col in ("billing_name", "payroll_name", "billing_display", "payroll_display", "department"):
        merged[col] = merged[col].fillna("").astype(str)
    merged["codes"] = merged["codes"].map(lambda c: c if isinstance(c, list) else [])

    merged["name"] = merged["billing_display"].where(merged["billing_display"] != "", merged["payroll_display"])
    merged["is_hr"] = merged["is_hr"].eq(True) | merged["key"].isin(rules.normalized_hr_staff)
    merged["is_matched"] = merged["_merge"] == "both"
    merged["source"] = merged["_merge"].map(
        {"both": "both", "left_only": "billing", "right_only": "payroll"}
    ).astype(str)

    return merged.drop(columns=["_merge", "billing_display", "payroll_display"]).reset_index(drop=True)


def split_payroll_totals(frame: pd.DataFrame) -> Dict[str, float]:
    """Cost and hours for HR vs billable staff from a payroll frame."""
    if frame.empty:
        return {"billable_cost": 0.0, "billable_hours": 0.0, "hr_cost": 0.0, "hr_hours": 0.0}
    hr = frame["is_hr"]
    return {
        "billable_cost": float(frame.loc[~hr, "cost"].sum()),
        "billable_hours": float(frame.loc[~hr, "hours"].sum()),
        "hr_cost": float(frame.loc[hr, "cost"].sum()),
        "hr_hours": float(frame.loc[hr, "hours"].sum()),
    }
