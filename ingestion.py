"""
File ingestion: billing / payroll exports -> typed rows.

Used by the CLI only. Reads CSV or Excel, finds the header row (payroll
exports carry a report banner above it), maps the physical columns onto
logical fields and converts each data row into a BillingRow or PayrollRow.
Dates are left as delivered; the date filter reparses them.
"""

import csv
import logging
from itertools import islice
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from aggregation import parse_accounting_series
from models import BillingRow, IngestionResult, PayrollRow, RowFinding

log = logging.getLogger(__name__)

HEADER_SCAN_ROWS = 20


class IngestionError(ValueError):
    """A file cannot be turned into rows (missing required columns)."""


# Logical column names -> candidate physical column names
BILLING_COLUMN_MAP: Dict[str, List[str]] = {
    "tech_name": ["Tech Name", "Technician", "Provider", "Rendering Provider", "Employee"],
    "code": ["Code", "Service Code", "CPT", "CPT Code", "Procedure Code"],
    "session_date": ["Session Date", "Date of Service", "DOS", "Service Date", "Date"],
    "hours": ["Hours", "Hrs", "Duration Hours"],
    "price": ["Price", "Amount", "Billed Amount", "Charge", "Charges"],
    "rate": ["Rate", "Unit Rate", "Hourly Rate"],
    "client_name": ["Client Name", "Client", "Patient"],
    "location": ["Location", "Site"],
}
BILLING_REQUIRED = ["tech_name", "session_date", "hours", "price"]

PAYROLL_COLUMN_MAP: Dict[str, List[str]] = {
    "name": ["Name", "Employee Name", "Employee"],
    "check_date": ["Check Date", "Pay Date", "Payroll Date"],
    "hours": ["Hours", "Total Hours", "Hrs"],
    "total_expenses": ["Total Expenses", "Total Expense", "Total Cost", "Employer Cost"],
    "department": ["Department", "Dept"],
    "pay_frequency": ["Pay Frequency", "Frequency"],
    "total_paid": ["Total Paid", "Gross Pay", "Gross"],
    "tax_withheld": ["Tax Withheld", "Taxes"],
    "deductions": ["Deductions"],
    "net_pay": ["Net Pay", "Net"],
    "payment_details": ["Payment Details/Check No", "Payment Details", "Check No", "Check Number"],
    "employer_liability": ["Employer Liability", "Employer Taxes"],
}
PAYROLL_REQUIRED = ["name", "check_date", "hours", "total_expenses"]


# =========================
# FILE LOADING
# =========================

def _is_excel(path: Path) -> bool:
    return path.suffix.lower() in [".xlsx", ".xls"]


def _read(path: Path, skiprows: int = 0) -> pd.DataFrame:
    if _is_excel(path):
        return pd.read_excel(path, skiprows=skiprows)
    return pd.read_csv(path, skiprows=skiprows)


def _raw_head(path: Path) -> pd.DataFrame:
    """First HEADER_SCAN_ROWS rows with no header; short CSV rows are padded."""
    if _is_excel(path):
        return pd.read_excel(path, header=None, nrows=HEADER_SCAN_ROWS)
    # A banner line has fewer fields than the table, which read_csv rejects.
    with path.open(newline="", encoding="utf-8-sig") as f:
        return pd.DataFrame(list(islice(csv.reader(f), HEADER_SCAN_ROWS)))


def find_header_row(raw: pd.DataFrame, logical_map: Dict[str, List[str]], required: List[str]) -> Optional[int]:
    """Index of the first row whose cells name every required column."""
    for idx in range(min(HEADER_SCAN_ROWS, len(raw))):
        cells = {str(v).strip().lower() for v in raw.iloc[idx].tolist() if pd.notna(v)}
        if all(any(c.lower() in cells for c in logical_map[key]) for key in required):
            return idx
    return None


def load_table(
    path: Path,
    logical_map: Optional[Dict[str, List[str]]] = None,
    required: Optional[List[str]] = None,
) -> pd.DataFrame:
    """
    Load CSV or Excel into a DataFrame.

    When a column map is given, the first HEADER_SCAN_ROWS rows are searched
    for the header and everything above it is skipped.
    """
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    header_idx = 0
    if logical_map and required:
        found = find_header_row(_raw_head(path), logical_map, required)
        if found:
            log.debug("%s: header found on row %d", path.name, found + 1)
            header_idx = found

    df = _read(path, skiprows=header_idx)
    df.columns = [str(c).strip() for c in df.columns]
    return df.dropna(how="all").reset_index(drop=True)


def infer_column_mapping(df: pd.DataFrame, logical_map: Dict[str, List[str]]) -> Dict[str, str]:
    """
    Given a DataFrame and a dict of logical_name -> list of possible column names,
    return a dict of logical_name -> actual column name in df where possible.
    """
    actual = {}
    normalized_to_actual = {str(c).lower().strip(): c for c in df.columns}

    for logical, candidates in logical_map.items():
        for candidate in candidates:
            key = candidate.lower().strip()
            if key in normalized_to_actual:
                actual[logical] = normalized_to_actual[key]
                break

    return actual


# =========================
# CELL CONVERSION
# =========================

def _cell(value):
    """NaN/NaT -> None, numpy scalars -> Python scalars, text stripped."""
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        return value or None
    if pd.isna(value):
        return None
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    if isinstance(value, np.generic):
        return value.item()
    return value


def _numbers(series: pd.Series) -> pd.Series:
    cleaned = (
        series.astype(str)
        .str.replace(",", "", regex=False)
        .str.replace("$", "", regex=False)
        .str.strip()
    )
    return pd.to_numeric(cleaned, errors="coerce").where(series.notna())


def _column(df: pd.DataFrame, mapping: Dict[str, str], logical: str) -> pd.Series:
    if logical in mapping:
        return df[mapping[logical]]
    return pd.Series([None] * len(df), index=df.index, dtype=object)


def _is_summary_row(name) -> bool:
    return isinstance(name, str) and "total" in name.lower()


def _reported(values: pd.Series, parse) -> Optional[float]:
    """Figure on the export's last total row, or None when it has none."""
    values = values.dropna()
    if values.empty:
        return None
    figure = parse(values).iloc[-1]
    return None if pd.isna(figure) else float(figure)


def _numeric_findings(df, mapping, logical_fields, parsed: Dict[str, pd.Series]) -> List[RowFinding]:
    findings = []
    for logical in logical_fields:
        if logical not in mapping:
            continue
        raw = df[mapping[logical]]
        bad = raw.notna() & (raw.astype(str).str.strip() != "") & parsed[logical].isna()
        for idx in raw[bad].index:
            column = mapping[logical]
            findings.append(
                RowFinding(int(idx) + 1, column, str(raw[idx]), f"{column} is not a number", "warning")
            )
    return findings


def _require(mapping: Dict[str, str], required: List[str], kind: str):
    missing = [k for k in required if k not in mapping]
    if missing:
        raise IngestionError(f"{kind} file is missing required column(s): {missing}")


# =========================
# ROW BUILDERS
# =========================

def billing_rows_from_frame(df: pd.DataFrame) -> IngestionResult:
    mapping = infer_column_mapping(df, BILLING_COLUMN_MAP)
    _require(mapping, BILLING_REQUIRED, "Billing")

    summary = df[mapping["tech_name"]].map(_is_summary_row).astype(bool)
    totals, df = df[summary], df[~summary]
    parsed = {k: _numbers(_column(df, mapping, k)) for k in ("code", "hours", "price", "rate")}
    findings = _numeric_findings(df, mapping, ("hours", "price", "rate"), parsed)

    client = _column(df, mapping, "client_name")
    location = _column(df, mapping, "location")

    rows = []
    for i, idx in enumerate(df.index):
        code = parsed["code"].iloc[i]
        rows.append(
            BillingRow(
                tech_name=_cell(df.at[idx, mapping["tech_name"]]) or "",
                code=None if pd.isna(code) else int(code),
                session_date=_cell(df.at[idx, mapping["session_date"]]),
                hours=_cell(parsed["hours"].iloc[i]),
                price=_cell(parsed["price"].iloc[i]),
                rate=_cell(parsed["rate"].iloc[i]),
                client_name=_cell(client.iloc[i]) or "",
                location=_cell(location.iloc[i]) or "",
            )
        )

    names = [r.tech_name for r in rows if r.tech_name]
    return IngestionResult(
        rows=tuple(rows),
        errors=tuple(findings),
        reported_total_amount=_reported(totals[mapping["price"]], _numbers),
        reported_total_hours=_reported(totals[mapping["hours"]], _numbers),
        unique_employees=tuple(dict.fromkeys(names)),
    )


def payroll_rows_from_frame(df: pd.DataFrame) -> IngestionResult:
    mapping = infer_column_mapping(df, PAYROLL_COLUMN_MAP)
    _require(mapping, PAYROLL_REQUIRED, "Payroll")

    summary = df[mapping["name"]].map(_is_summary_row).astype(bool)
    totals, df = df[summary], df[~summary]
    numeric = ("hours", "total_paid", "tax_withheld", "deductions", "net_pay", "employer_liability")
    parsed = {k: _numbers(_column(df, mapping, k)) for k in numeric}
    findings = _numeric_findings(df, mapping, ("hours",), parsed)

    def text(logical, i):
        value = _cell(_column(df, mapping, logical).iloc[i])
        return "" if value is None else str(value)

    rows = []
    for i, idx in enumerate(df.index):
        rows.append(
            PayrollRow(
                name=_cell(df.at[idx, mapping["name"]]) or "",
                check_date=_cell(df.at[idx, mapping["check_date"]]),
                hours=_cell(parsed["hours"].iloc[i]),
                total_expenses=_cell(df.at[idx, mapping["total_expenses"]]),
                department=text("department", i),
                pay_frequency=text("pay_frequency", i),
                total_paid=_cell(parsed["total_paid"].iloc[i]),
                tax_withheld=_cell(parsed["tax_withheld"].iloc[i]),
                deductions=_cell(parsed["deductions"].iloc[i]),
                net_pay=_cell(parsed["net_pay"].iloc[i]),
                payment_details=text("payment_details", i),
                employer_liability=_cell(parsed["employer_liability"].iloc[i]),
            )
        )

    names = [r.name for r in rows if r.name]
    return IngestionResult(
        rows=tuple(rows),
        errors=tuple(findings),
        reported_total_amount=_reported(totals[mapping["total_expenses"]], parse_accounting_series),
        reported_total_hours=_reported(totals[mapping["hours"]], _numbers),
        unique_employees=tuple(dict.fromkeys(names)),
    )


def load_billing(path: Path) -> IngestionResult:
    df = load_table(path, BILLING_COLUMN_MAP, BILLING_REQUIRED)
    result = billing_rows_from_frame(df)
    log.info("Loaded %d billing row(s) from %s", len(result.rows), path)
    return result


def load_payroll(path: Path) -> IngestionResult:
    df = load_table(path, PAYROLL_COLUMN_MAP, PAYROLL_REQUIRED)
    result = payroll_rows_from_frame(df)
    log.info("Loaded %d payroll row(s) from %s", len(result.rows), path)
    return result
