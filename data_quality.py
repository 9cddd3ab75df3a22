"""
Row validation and data-quality scoring.

Findings never stop a load cycle: they are collected per row with a
severity, counted into per-source quality percentages and summarised as
categorised issues next to the employee matching rate.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List, Sequence, Tuple

import numpy as np

from aggregation import parse_accounting_number
from business_rules import DEFAULT_RULES, BusinessRules
from date_windows import is_void_marker, parse_flexible_date
from employee_mapping import is_hr_staff, normalize_name, round_half_up
from models import (
    BillingRow,
    Cell,
    DataQualityIssue,
    DataQualityMetrics,
    FinancialMetrics,
    IngestionResult,
    PayrollRow,
    RowFinding,
)

log = logging.getLogger(__name__)

MAX_SESSION_HOURS = 24
MAX_PAY_PERIOD_HOURS = 80
RATE_TOLERANCE = 1.0
NET_PAY_TOLERANCE = 0.01
REPORTED_TOTAL_TOLERANCE = 0.01
HIGH_REVENUE = 10_000_000


@dataclass(frozen=True)
class ValidationResult:
    errors: Tuple[RowFinding, ...] = ()
    warnings: Tuple[RowFinding, ...] = ()
    valid_records: int = 0
    invalid_records: int = 0

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def total_records(self) -> int:
        return self.valid_records + self.invalid_records


@dataclass(frozen=True)
class ConsistencyReport:
    duplicate_billing: Tuple[str, ...] = ()
    duplicate_payroll: Tuple[str, ...] = ()
    suspicious_names: Tuple[str, ...] = ()
    hr_staff_in_billing: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ReasonablenessResult:
    is_reasonable: bool
    warnings: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class QualityGrade:
    grade: str
    color: str
    description: str


def _is_number(value: Cell) -> bool:
    if value is None or isinstance(value, bool):
        return False
    if isinstance(value, (int, float, np.number)):
        return not np.isnan(value)
    return False


_ACCOUNTING = re.compile(r"^\(?-?\d+(\.\d+)?\)?$|^\(?-?\.\d+\)?$")


def _is_accounting_number(value: Cell) -> bool:
    if _is_number(value):
        return True
    if not isinstance(value, str):
        return False
    text = value.strip().replace(",", "").replace("$", "").replace(" ", "")
    return bool(_ACCOUNTING.match(text))


def _blank(value: Cell) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and np.isnan(value):
        return True
    return isinstance(value, str) and not value.strip()


def _fmt(value: Cell) -> str:
    return "" if value is None else str(value)


def _total_findings(result: IngestionResult, amount: float, hours: float) -> Tuple[RowFinding, ...]:
    """Warn where the export's total row disagrees with the sum of its rows."""
    findings = []
    for label, reported, summed in (
        ("Amount", result.reported_total_amount, amount),
        ("Hours", result.reported_total_hours, hours),
    ):
        if reported is None or abs(reported - summed) <= REPORTED_TOTAL_TOLERANCE:
            continue
        findings.append(
            RowFinding(0, f"Total {label}", f"Reported: {reported:.2f}, Rows: {summed:.2f}",
                       f"Reported total {label.lower()} does not match the sum of rows", "warning")
        )
    return tuple(findings)


class DataValidator:
    def __init__(self, rules: BusinessRules = DEFAULT_RULES):
        self.rules = rules

    # =========================
    # ROW VALIDATION
    # =========================

    def validate_billing_rows(self, rows: Sequence[BillingRow]) -> ValidationResult:
        errors: List[RowFinding] = []
        warnings: List[RowFinding] = []
        valid = invalid = 0

        for index, row in enumerate(rows, start=1):
            row_errors: List[RowFinding] = []

            def error(field_name, value, message):
                row_errors.append(RowFinding(index, field_name, _fmt(value), message, "error"))

            def warn(field_name, value, message):
                warnings.append(RowFinding(index, field_name, _fmt(value), message, "warning"))

            if _blank(row.tech_name):
                error("Tech Name", row.tech_name, "Tech Name is required")

            if _blank(row.session_date):
                error("Session Date", row.session_date, "Session Date is required")
            else:
                day = parse_flexible_date(row.session_date)
                if day is None:
                    error("Session Date", row.session_date, "Invalid date format")
                elif not self.rules.billing_window.contains(day):
                    warn("Session Date", row.session_date,
                         f"Date outside {self.rules.billing_window.label}")

            if not _is_number(row.hours) or row.hours < 0:
                error("Hours", row.hours, "Hours must be a positive number")
            elif row.hours > MAX_SESSION_HOURS:
                warn("Hours", row.hours, f"Hours exceed {MAX_SESSION_HOURS} in a single day")

            if not _is_number(row.price) or row.price < 0:
                error("Price", row.price, "Price must be a positive number")

            if not _is_number(row.rate) or row.rate < 0:
                warn("Rate", row.rate, "Rate should be a positive number")
            elif _is_number(row.hours) and _is_number(row.price) and row.hours > 0 and row.price > 0:
                calculated = row.price / row.hours
                if row.rate > 0 and abs(calculated - row.rate) > RATE_TOLERANCE:
                    warn("Rate", f"Calculated: {calculated:.2f}, Recorded: {row.rate}",
                         "Rate mismatch between calculated and recorded values")

            errors.extend(row_errors)
            if row_errors:
                invalid += 1
            else:
                valid += 1

        log.debug("Billing validation: %d valid, %d invalid, %d warning(s)", valid, invalid, len(warnings))
        return ValidationResult(tuple(errors), tuple(warnings), valid, invalid)

    def validate_payroll_rows(self, rows: Sequence[PayrollRow]) -> ValidationResult:
        errors: List[RowFinding] = []
        warnings: List[RowFinding] = []
        valid = invalid = 0

        for index, row in enumerate(rows, start=1):
            row_errors: List[RowFinding] = []

            def error(field_name, value, message):
                row_errors.append(RowFinding(index, field_name, _fmt(value), message, "error"))

            def warn(field_name, value, message):
                warnings.append(RowFinding(index, field_name, _fmt(value), message, "warning"))

            if _blank(row.name):
                error("Name", row.name, "Employee name is required")

            if _blank(row.check_date):
                error("Check Date", row.check_date, "Check Date is required")
            else:
                day = parse_flexible_date(row.check_date)
                if day is None:
                    error("Check Date", row.check_date, "Invalid date format")
                elif not self.rules.payroll_window.contains(day):
                    warn("Check Date", row.check_date,
                         f"Date outside {self.rules.payroll_window.label}")

            if not _is_number(row.hours) or row.hours < 0:
                error("Hours", row.hours, "Hours must be a positive number")
            elif row.hours > MAX_PAY_PERIOD_HOURS:
                warn("Hours", row.hours, f"Hours exceed {MAX_PAY_PERIOD_HOURS} in a pay period")

            if not _is_accounting_number(row.total_expenses):
                error("Total Expenses", row.total_expenses, "Total Expenses must be a number")
            elif parse_accounting_number(row.total_expenses) < 0:
                warn("Total Expenses", row.total_expenses, "Negative expense (adjustment or reversal)")

            calculated = (row.total_paid or 0) - (row.tax_withheld or 0) - (row.deductions or 0)
            net_pay = row.net_pay or 0
            if abs(calculated - net_pay) > NET_PAY_TOLERANCE:
                warn("Net Pay", f"Calculated: {calculated:.2f}, Recorded: {net_pay:.2f}",
                     "Net pay calculation mismatch")

            if is_void_marker(row.payment_details):
                warn("Payment Details/Check No", row.payment_details, "Void payment detected")
            elif is_void_marker(row.check_date):
                warn("Check Date", row.check_date, "Void payment detected")

            errors.extend(row_errors)
            if row_errors:
                invalid += 1
            else:
                valid += 1

        log.debug("Payroll validation: %d valid, %d invalid, %d warning(s)", valid, invalid, len(warnings))
        return ValidationResult(tuple(errors), tuple(warnings), valid, invalid)

    # =========================
    # REPORTED TOTALS
    # =========================

    def check_billing_totals(self, result: IngestionResult) -> Tuple[RowFinding, ...]:
        amount = sum(r.price for r in result.rows if _is_number(r.price))
        hours = sum(r.hours for r in result.rows if _is_number(r.hours))
        return _total_findings(result, amount, hours)

    def check_payroll_totals(self, result: IngestionResult) -> Tuple[RowFinding, ...]:
        amount = sum(parse_accounting_number(r.total_expenses) for r in result.rows)
        hours = sum(r.hours for r in result.rows if _is_number(r.hours))
        return _total_findings(result, amount, hours)

    # =========================
    # SCORING
    # =========================

    def calculate_data_quality(
        self,
        billing: ValidationResult,
        payroll: ValidationResult,
        employee_matching_rate: float,
    ) -> DataQualityMetrics:
        billing_quality = billing.valid_records * 100 / billing.total_records if billing.total_records else 0.0
        payroll_quality = payroll.valid_records * 100 / payroll.total_records if payroll.total_records else 0.0

        issues: List[DataQualityIssue] = []
        for category, result in (("billing", billing), ("payroll", payroll)):
            label = category.capitalize()
            if result.errors:
                issues.append(DataQualityIssue(
                    "error", category, f"{label} data contains validation errors", len(result.errors), "high"))
            if result.warnings:
                issues.append(DataQualityIssue(
                    "warning", category, f"{label} data contains validation warnings", len(result.warnings), "medium"))

        if employee_matching_rate < self.rules.matching_rate_warning:
            impact = "high" if employee_matching_rate < self.rules.matching_rate_critical else "medium"
            issues.append(DataQualityIssue(
                "warning", "matching", "Low employee matching rate between systems", 1, impact))

        overall = (billing_quality + payroll_quality + employee_matching_rate) / 3
        return DataQualityMetrics(
            billing_data_quality=round_half_up(billing_quality),
            payroll_data_quality=round_half_up(payroll_quality),
            employee_matching_rate=round_half_up(employee_matching_rate),
            overall_score=round_half_up(overall),
            issues=tuple(issues),
        )

    def get_data_quality_grade(self, score: float) -> QualityGrade:
        excellent, good, fair = self.rules.data_quality_thresholds
        if score >= excellent:
            return QualityGrade("A+", "success", "Excellent data quality")
        if score >= good:
            return QualityGrade("A", "success", "Good data quality")
        if score >= fair:
            return QualityGrade("B", "warning", "Fair data quality - some issues present")
        return QualityGrade("C", "danger", "Poor data quality - significant issues")

    # =========================
    # CONSISTENCY / REASONABLENESS
    # =========================

    def validate_employee_consistency(
        self,
        billing_names: Sequence[str],
        payroll_names: Sequence[str],
    ) -> ConsistencyReport:
        """
        Name hygiene across both systems.

        A duplicate is a second spelling of the same person within one
        source (names that normalize to the same key).
        """
        def duplicates(names: Sequence[str]) -> Tuple[str, ...]:
            spellings = {}
            for name in dict.fromkeys(names):
                spellings.setdefault(normalize_name(name), []).append(name)
            return tuple(n for group in spellings.values() if len(group) > 1 for n in group)

        def suspicious(name: str) -> bool:
            return len(name) < 3 or bool(re.search(r"\d", name)) or not re.search(r"[a-zA-Z]", name)

        everyone = list(billing_names) + list(payroll_names)
        return ConsistencyReport(
            duplicate_billing=duplicates(billing_names),
            duplicate_payroll=duplicates(payroll_names),
            suspicious_names=tuple(dict.fromkeys(n for n in everyone if suspicious(n))),
            hr_staff_in_billing=tuple(dict.fromkeys(
                n for n in billing_names if is_hr_staff(n, self.rules))),
        )

    def validate_financial_metrics(self, metrics: FinancialMetrics) -> ReasonablenessResult:
        """Sanity warnings on the headline figures; none of them are errors."""
        warnings: List[str] = []
        revenue = metrics.total_revenue
        cost = metrics.total_payroll_cost
        utilization = metrics.utilization_rate
        margin = metrics.profit_margin_vs_billable_staff

        if revenue <= 0:
            warnings.append("Total revenue is zero or negative")
        elif revenue > HIGH_REVENUE:
            warnings.append("Total revenue seems unusually high")

        if cost <= 0:
            warnings.append("Total payroll cost is zero or negative")
        elif cost > revenue * 2:
            warnings.append("Payroll costs exceed twice the revenue")

        if utilization < 0:
            warnings.append("Utilization rate is negative")
        elif utilization > 100:
            warnings.append("Utilization rate exceeds 100% (billing hours exceed payroll hours)")
        elif utilization > 95:
            warnings.append("Utilization rate seems unusually high (>95%)")
        elif utilization < 20:
            warnings.append("Utilization rate seems unusually low (<20%)")

        if margin < -100 or margin > 100:
            warnings.append("Profit margin is outside reasonable range")
        elif margin < 0:
            warnings.append("Negative profit margin indicates losses")
        elif margin > 80:
            warnings.append("Profit margin seems unusually high (>80%)")

        for message in warnings:
            log.warning("Reasonableness: %s", message)
        return ReasonablenessResult(is_reasonable=not warnings, warnings=tuple(warnings))
