# main.py

import argparse
import json
import logging
import traceback
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import pandas as pd

from business_rules import CONFIG_NAME, DEFAULT_RULES, BusinessRules, load_rules
from data_quality import ConsistencyReport, DataValidator, ValidationResult
from employee_mapping import diagnose_unmatched, validate_employee_matching
from ingestion import load_billing, load_payroll
from metrics_engine import MetricsEngine
from models import (
    BillingRow,
    DashboardBundle,
    IngestionResult,
    PayrollRow,
)

log = logging.getLogger(__name__)

BillingInput = Union[IngestionResult, Sequence[BillingRow]]
PayrollInput = Union[IngestionResult, Sequence[PayrollRow]]

DEFAULT_OUTPUT_DIR = Path("data") / "processed"
REPORT_NAME = "reconciliation_report.xlsx"
TOP_OPPORTUNITIES = 5


@dataclass
class RunSummary:
    run_id: str
    billing_rows: int
    payroll_rows: int
    employees: int
    total_revenue: float
    total_payroll_cost: float
    utilization_rate: float
    profit_margin_vs_billable_staff: float
    employee_matching_rate: int
    data_quality_score: int
    self_check_passed: bool
    report_path: Optional[Path] = None


# =========================
# LOAD CYCLE
# =========================

def _split_input(data) -> tuple:
    if isinstance(data, IngestionResult):
        return tuple(data.rows), tuple(data.errors)
    return tuple(data), ()


def _with_ingestion_findings(result: ValidationResult, findings) -> ValidationResult:
    if not findings:
        return result
    return replace(
        result,
        errors=result.errors + tuple(f for f in findings if f.severity == "error"),
        warnings=result.warnings + tuple(f for f in findings if f.severity == "warning"),
    )


def _log_consistency(report: ConsistencyReport) -> None:
    if report.duplicate_billing:
        log.warning("Billing names with several spellings: %s", ", ".join(report.duplicate_billing))
    if report.duplicate_payroll:
        log.warning("Payroll names with several spellings: %s", ", ".join(report.duplicate_payroll))
    if report.suspicious_names:
        log.warning("Suspicious employee names: %s", ", ".join(report.suspicious_names))
    if report.hr_staff_in_billing:
        log.warning("HR staff found in billing: %s", ", ".join(report.hr_staff_in_billing))


def compute_bundle(
    billing: BillingInput,
    payroll: PayrollInput,
    rules: BusinessRules = DEFAULT_RULES,
) -> DashboardBundle:
    """
    One pure reconciliation pass.

    The same inputs always give an identical bundle; last_updated is left
    unset so the result carries no wall-clock value.
    """
    billing_rows, billing_findings = _split_input(billing)
    payroll_rows, payroll_findings = _split_input(payroll)

    engine = MetricsEngine(rules)
    validator = DataValidator(rules)

    if isinstance(billing, IngestionResult):
        billing_findings += validator.check_billing_totals(billing)
    if isinstance(payroll, IngestionResult):
        payroll_findings += validator.check_payroll_totals(payroll)

    result = engine.compute(billing_rows, payroll_rows)

    matching = validate_employee_matching(result.billing_names, result.payroll_names, rules)
    unmatched = diagnose_unmatched(matching, rules)

    billing_validation = _with_ingestion_findings(validator.validate_billing_rows(billing_rows), billing_findings)
    payroll_validation = _with_ingestion_findings(validator.validate_payroll_rows(payroll_rows), payroll_findings)
    data_quality = validator.calculate_data_quality(
        billing_validation, payroll_validation, matching.matching_rate
    )
    reasonableness = validator.validate_financial_metrics(result.financial_metrics)
    _log_consistency(validator.validate_employee_consistency(result.billing_names, result.payroll_names))

    return DashboardBundle(
        financial_metrics=result.financial_metrics,
        utilization_metrics=result.utilization_metrics,
        employee_metrics=result.employee_metrics,
        top_opportunities=result.opportunities,
        unmatched_employees=unmatched,
        data_quality=data_quality,
        self_check=result.self_check,
        reasonableness_warnings=reasonableness.warnings,
    )


def run_reconciliation(
    billing: BillingInput,
    payroll: PayrollInput,
    rules: BusinessRules = DEFAULT_RULES,
) -> DashboardBundle:
    bundle = compute_bundle(billing, payroll, rules)
    return replace(bundle, last_updated=datetime.now())


def run_reconciliation_with_summary(
    billing: BillingInput,
    payroll: PayrollInput,
    rules: BusinessRules = DEFAULT_RULES,
) -> Dict[str, Any]:
    """
    Wrapper around run_reconciliation that never raises.

    RETURN CONTRACT:
    ================
    Always a dict with exactly these keys:

    SUCCESS CASE:
        {"bundle": DashboardBundle, "error": None}

    FAILURE CASE:
        {"bundle": None, "error": str}  # full traceback from traceback.format_exc()
    """
    try:
        return {"bundle": run_reconciliation(billing, payroll, rules), "error": None}
    except Exception:
        error_text = traceback.format_exc()
        log.error("Reconciliation cycle failed:\n%s", error_text)
        return {"bundle": None, "error": error_text}


class ReconciliationSession:
    """
    Holds the bundle the presentation layer is showing.

    A load either replaces the bundle wholesale or, on failure, leaves the
    previous one in place.
    """

    def __init__(self, rules: BusinessRules = DEFAULT_RULES):
        self.rules = rules
        self._bundle: Optional[DashboardBundle] = None
        self.last_error: Optional[str] = None

    @property
    def bundle(self) -> Optional[DashboardBundle]:
        return self._bundle

    def load(self, billing: BillingInput, payroll: PayrollInput) -> Dict[str, Any]:
        results = run_reconciliation_with_summary(billing, payroll, self.rules)
        if results["error"] is None:
            self._bundle = results["bundle"]
            self.last_error = None
        else:
            self.last_error = results["error"]
        return results


# =========================
# REPORTING
# =========================

def summary_rows(bundle: DashboardBundle, grade: str = "") -> List[dict]:
    fm = bundle.financial_metrics
    um = bundle.utilization_metrics
    dq = bundle.data_quality
    rows = [
        ("Financial", "Total Revenue", fm.total_revenue),
        ("Financial", "Total Payroll Cost", fm.total_payroll_cost),
        ("Financial", "Billable Staff Cost", fm.billable_staff_cost),
        ("Financial", "HR Cost", fm.hr_cost),
        ("Financial", "Gross Profit", fm.gross_profit),
        ("Financial", "Profit Margin (%)", fm.profit_margin),
        ("Financial", "Net Profit (vs Billable Staff)", fm.net_profit),
        ("Financial", "Profit Margin vs Billable Staff (%)", fm.profit_margin_vs_billable_staff),
        ("Financial", "Non-Billable Cost", fm.non_billable_cost),
        ("Financial", "Comprehensive Profit", fm.comprehensive_profit),
        ("Financial", "Comprehensive Profit Margin (%)", fm.comprehensive_profit_margin),
        ("Hours", "Total Billable Hours", fm.total_billable_hours),
        ("Hours", "Billable Staff Payroll Hours", fm.billable_staff_hours),
        ("Hours", "HR Hours", fm.hr_hours),
        ("Hours", "Utilization Rate (%)", fm.utilization_rate),
        ("Hours", "Revenue per Billable Hour", fm.revenue_per_billable_hour),
        ("Technicians", "Utilization Rate (%)", um.utilization_rate),
        ("Technicians", "Performance vs Benchmark (pp)", um.performance_vs_benchmark),
        ("Technicians", "Cost of Non-Billable Time", um.cost_of_non_billable_time),
        ("Technicians", "Average Utilization (%)", um.average_utilization_rate),
        ("Supervisors", "Average Profit Margin (%)", um.average_profit_margin),
        ("Data Quality", "Billing Data Quality (%)", dq.billing_data_quality),
        ("Data Quality", "Payroll Data Quality (%)", dq.payroll_data_quality),
        ("Data Quality", "Employee Matching Rate (%)", dq.employee_matching_rate),
        ("Data Quality", "Overall Score", dq.overall_score),
        ("Data Quality", "Grade", grade),
        ("Self Check", "Passed", bundle.self_check.is_valid),
    ]
    return [{"section": s, "metric": m, "value": v} for s, m, v in rows]


def _frame_or_placeholder(records: List[dict], message: str) -> pd.DataFrame:
    if records:
        return pd.DataFrame(records)
    return pd.DataFrame([{"info": message}])


def bundle_sheets(bundle: DashboardBundle, rules: BusinessRules = DEFAULT_RULES) -> Dict[str, pd.DataFrame]:
    """Sheet name -> DataFrame for every section of the report."""
    grade = DataValidator(rules).get_data_quality_grade(bundle.data_quality.overall_score)

    opportunities = []
    for opp in bundle.top_opportunities:
        row = asdict(opp)
        row["action_items"] = "; ".join(opp.action_items)
        opportunities.append(row)

    unmatched = []
    for emp in bundle.unmatched_employees:
        row = asdict(emp)
        row["suggested_matches"] = "; ".join(emp.suggested_matches)
        unmatched.append(row)

    quality = [asdict(i) for i in bundle.data_quality.issues]
    quality += [
        {"type": "warning", "category": "calculation", "message": w, "count": 1, "impact": "low"}
        for w in bundle.reasonableness_warnings
    ]

    return {
        "Summary": pd.DataFrame(summary_rows(bundle, grade.grade)),
        "Employees": _frame_or_placeholder(
            [asdict(e) for e in bundle.employee_metrics], "No employees in the reporting period"),
        "Opportunities": _frame_or_placeholder(opportunities, "No technicians below the utilization benchmark"),
        "Unmatched": _frame_or_placeholder(unmatched, "All employees matched across billing and payroll"),
        "Data Quality": _frame_or_placeholder(quality, "No data quality issues"),
        "Self Check": _frame_or_placeholder(
            [asdict(d) for d in bundle.self_check.discrepancies],
            "All headline metrics within tolerance",
        ),
    }


def generate_excel_report(
    bundle: DashboardBundle,
    output_dir: Path,
    rules: BusinessRules = DEFAULT_RULES,
) -> Path:
    """Write the bundle to <output_dir>/reconciliation_report.xlsx."""
    output_dir = Path(output_dir)
    output_dir.mkdir(exist_ok=True, parents=True)
    report_path = output_dir / REPORT_NAME

    with pd.ExcelWriter(report_path, engine="openpyxl") as writer:
        for sheet_name, df in bundle_sheets(bundle, rules).items():
            df.to_excel(writer, sheet_name=sheet_name[:31], index=False)

    log.info("Excel report written to %s", report_path)
    return report_path


def console_lines(bundle: DashboardBundle) -> List[str]:
    fm = bundle.financial_metrics
    um = bundle.utilization_metrics
    dq = bundle.data_quality

    lines = [
        "=== Financial Summary ===",
        f"Total revenue:                ${fm.total_revenue:>14,.2f}",
        f"Total payroll cost:           ${fm.total_payroll_cost:>14,.2f}",
        f"  Billable staff:             ${fm.billable_staff_cost:>14,.2f}",
        f"  HR staff:                   ${fm.hr_cost:>14,.2f}",
        f"Profit margin (all staff):    {fm.profit_margin:>14.1f}%",
        f"Profit margin (billable):     {fm.profit_margin_vs_billable_staff:>14.1f}%",
        f"Utilization rate:             {fm.utilization_rate:>14.1f}%",
        f"Non-billable cost:            ${fm.non_billable_cost:>14,.2f}",
        "",
        "=== Technician Utilization ===",
        f"Utilization vs benchmark:     {um.utilization_rate:.1f}% vs {um.benchmark:g}% "
        f"({um.performance_vs_benchmark:+.1f} pp)",
        f"Cost of non-billable time:    ${um.cost_of_non_billable_time:,.2f}",
        "",
        "=== Data Quality ===",
        f"Billing / payroll quality:    {dq.billing_data_quality}% / {dq.payroll_data_quality}%",
        f"Employee matching rate:       {dq.employee_matching_rate}%",
        f"Overall score:                {dq.overall_score}",
    ]

    if bundle.top_opportunities:
        lines += ["", f"=== Top {TOP_OPPORTUNITIES} Opportunities ==="]
        for opp in bundle.top_opportunities[:TOP_OPPORTUNITIES]:
            lines.append(
                f"  [{opp.priority.upper():<6}] {opp.employee_name:<30} "
                f"{opp.current_utilization:5.1f}% -> +${opp.potential_additional_revenue:,.2f}"
            )

    if bundle.unmatched_employees:
        lines += ["", "=== Unmatched Employees ==="]
        for emp in bundle.unmatched_employees:
            hint = f" (maybe: {', '.join(emp.suggested_matches)})" if emp.suggested_matches else ""
            lines.append(f"  [{emp.source}] {emp.name}: {emp.reason}{hint}")

    lines += ["", "=== Self Check ==="]
    if bundle.self_check.is_valid:
        lines.append("All headline metrics within tolerance.")
    for d in bundle.self_check.discrepancies:
        lines.append(
            f"[WARN] {d.metric}: expected {d.expected:,.2f}, got {d.actual:,.2f} (off by {d.difference:,.2f})"
        )
    for warning in bundle.reasonableness_warnings:
        lines.append(f"[WARN] {warning}")

    return lines


def write_run_summary(bundle: DashboardBundle, billing_rows: int, payroll_rows: int,
                      report_path: Optional[Path], output_dir: Path) -> RunSummary:
    stamp = bundle.last_updated or datetime.now()
    summary = RunSummary(
        run_id=stamp.strftime("%Y%m%d_%H%M%S"),
        billing_rows=billing_rows,
        payroll_rows=payroll_rows,
        employees=len(bundle.employee_metrics),
        total_revenue=bundle.financial_metrics.total_revenue,
        total_payroll_cost=bundle.financial_metrics.total_payroll_cost,
        utilization_rate=bundle.financial_metrics.utilization_rate,
        profit_margin_vs_billable_staff=bundle.financial_metrics.profit_margin_vs_billable_staff,
        employee_matching_rate=bundle.data_quality.employee_matching_rate,
        data_quality_score=bundle.data_quality.overall_score,
        self_check_passed=bundle.self_check.is_valid,
        report_path=report_path,
    )

    summary_dict = asdict(summary)
    summary_dict["report_path"] = str(report_path) if report_path else None
    with (Path(output_dir) / "run_summary.json").open("w", encoding="utf-8") as f:
        json.dump(summary_dict, f, indent=2)
    return summary


# =========================
# CLI
# =========================

def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Reconcile a billing export against a payroll export and report revenue, cost and utilization."
    )
    parser.add_argument("billing", help="Path to billing file (CSV or Excel).")
    parser.add_argument("payroll", help="Path to payroll file (CSV or Excel).")
    parser.add_argument(
        "--config",
        default=CONFIG_NAME,
        help=f"Rules file in config/ (default: {CONFIG_NAME}).",
    )
    parser.add_argument(
        "--output-dir",
        default=str(DEFAULT_OUTPUT_DIR),
        help=f"Directory for the Excel report and run summary (default: {DEFAULT_OUTPUT_DIR}).",
    )
    parser.add_argument(
        "--exclude-void",
        action="store_true",
        help="Leave payroll rows marked void out of cost and hours.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    rules = load_rules(args.config)
    if args.exclude_void:
        rules = replace(rules, include_void_payroll=False)

    print("Running billing/payroll reconciliation...")
    billing = load_billing(Path(args.billing))
    payroll = load_payroll(Path(args.payroll))

    results = run_reconciliation_with_summary(billing, payroll, rules)
    if results["error"]:
        print("[ERROR] Reconciliation failed:")
        print(results["error"])
        return 1

    bundle = results["bundle"]
    output_dir = Path(args.output_dir)
    report_path = generate_excel_report(bundle, output_dir, rules)
    write_run_summary(bundle, len(billing.rows), len(payroll.rows), report_path, output_dir)

    print("\n" + "\n".join(console_lines(bundle)))
    print(f"\nExcel report written to: {report_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
