from dataclasses import replace
from pathlib import Path
import json
import sys

import pandas as pd

# Ensure src root (where main.py lives) is on PYTHONPATH
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from business_rules import DEFAULT_RULES  # noqa: E402
from generate_synthetic_data import generate_synthetic_data  # noqa: E402
from main import (  # noqa: E402
    ReconciliationSession,
    compute_bundle,
    console_lines,
    generate_excel_report,
    main,
    run_reconciliation,
    run_reconciliation_with_summary,
)
from models import BillingRow, IngestionResult, PayrollRow, RowFinding  # noqa: E402

RULES = replace(DEFAULT_RULES, expected_results=())

BILLING = [
    BillingRow("Smith, John", 97153, f"5/{day}/2025", 20.0, 1000.0, rate=50.0)
    for day in range(1, 6)
] + [
    BillingRow("Lee, Ann", 97153, "5/2/2025", 10.0, 500.0, rate=50.0),
]
PAYROLL = [
    PayrollRow("Smith, John", "5/2/2025", 120.0, "3,000.00"),
    PayrollRow("Seifeddine, Malak", "5/2/2025", 80.0, "2,000.00"),
]


def test_empty_inputs_give_zeroed_bundle():
    bundle = compute_bundle([], [], RULES)
    assert bundle.financial_metrics.total_revenue == 0.0
    assert bundle.financial_metrics.profit_margin == 0.0
    assert bundle.employee_metrics == ()
    assert bundle.top_opportunities == ()
    assert bundle.unmatched_employees == ()
    assert bundle.data_quality.overall_score == 0
    assert bundle.last_updated is None


def test_bundle_is_recomputed_identically():
    assert compute_bundle(BILLING, PAYROLL, RULES) == compute_bundle(BILLING, PAYROLL, RULES)


def test_bundle_contents():
    bundle = compute_bundle(BILLING, PAYROLL, RULES)

    assert [e.name for e in bundle.employee_metrics] == ["Smith, John", "Lee, Ann", "Seifeddine, Malak"]
    assert bundle.financial_metrics.hr_cost == 2000.0
    unmatched = {(u.source, u.name) for u in bundle.unmatched_employees}
    assert unmatched == {("billing", "Lee, Ann"), ("payroll", "Seifeddine, Malak")}
    assert bundle.data_quality.employee_matching_rate == 33


def test_unmatched_list_agrees_with_employee_flags():
    billing = [
        BillingRow("Smith, Christophe", 97153, "5/1/2025", 10.0, 500.0, rate=50.0),
        BillingRow("Smith, Christopher", 97153, "5/1/2025", 10.0, 500.0, rate=50.0),
    ]
    payroll = [PayrollRow("Smith, Christopher", "5/2/2025", 40.0, "800.00")]
    bundle = compute_bundle(billing, payroll, RULES)

    flags = {e.name: e.is_matched for e in bundle.employee_metrics}
    assert flags == {"Smith, Christophe": False, "Smith, Christopher": True}
    assert {(u.source, u.name) for u in bundle.unmatched_employees} == {("billing", "Smith, Christophe")}
    assert bundle.data_quality.employee_matching_rate == 50


def test_ingestion_findings_count_against_quality():
    finding = RowFinding(3, "Hours", "abc", "Hours is not a number", "warning")
    billing = IngestionResult(rows=tuple(BILLING), errors=(finding,))
    bundle = compute_bundle(billing, PAYROLL, RULES)
    billing_issues = [i for i in bundle.data_quality.issues if i.category == "billing"]
    assert [(i.type, i.count) for i in billing_issues] == [("warning", 1)]


def test_total_row_mismatch_is_a_quality_warning():
    billing = IngestionResult(rows=tuple(BILLING), reported_total_amount=6000.0, reported_total_hours=110.0)
    bundle = compute_bundle(billing, PAYROLL, RULES)
    billing_issues = [i for i in bundle.data_quality.issues if i.category == "billing"]
    assert [(i.type, i.count) for i in billing_issues] == [("warning", 1)]
    assert bundle.financial_metrics.total_revenue == 5500.0


def test_run_reconciliation_stamps_time():
    assert run_reconciliation(BILLING, PAYROLL, RULES).last_updated is not None


def test_summary_wrapper_never_raises():
    ok = run_reconciliation_with_summary(BILLING, PAYROLL, RULES)
    assert ok["error"] is None
    assert ok["bundle"] is not None

    failed = run_reconciliation_with_summary([None], PAYROLL, RULES)
    assert failed["bundle"] is None
    assert "Traceback" in failed["error"]


def test_session_keeps_previous_bundle_on_failure():
    session = ReconciliationSession(RULES)
    assert session.bundle is None

    session.load(BILLING, PAYROLL)
    first = session.bundle
    assert first is not None

    results = session.load([None], PAYROLL)
    assert results["error"] is not None
    assert session.bundle is first
    assert session.last_error == results["error"]


def test_excel_report_has_every_sheet(tmp_path: Path):
    empty = compute_bundle([], [], RULES)
    report = generate_excel_report(empty, tmp_path / "out", RULES)

    assert report.exists()
    sheets = pd.read_excel(report, sheet_name=None)
    assert set(sheets) == {"Summary", "Employees", "Opportunities", "Unmatched", "Data Quality", "Self Check"}
    assert list(sheets["Employees"].columns) == ["info"]

    full = compute_bundle(BILLING, PAYROLL, RULES)
    sheets = pd.read_excel(generate_excel_report(full, tmp_path / "full", RULES), sheet_name=None)
    assert len(sheets["Employees"]) == 3
    assert "action_items" in sheets["Opportunities"].columns


def test_console_lines_mention_opportunities_and_unmatched():
    text = "\n".join(console_lines(compute_bundle(BILLING, PAYROLL, RULES)))
    assert "=== Financial Summary ===" in text
    assert "Smith, John" in text
    assert "[billing] Lee, Ann" in text


def test_cli_on_synthetic_data(tmp_path: Path):
    billing_csv, payroll_csv = generate_synthetic_data(tmp_path / "raw", sessions_per_employee=10)
    out_dir = tmp_path / "processed"

    code = main([str(billing_csv), str(payroll_csv), "--output-dir", str(out_dir)])

    assert code == 0
    assert (out_dir / "reconciliation_report.xlsx").exists()
    summary = json.loads((out_dir / "run_summary.json").read_text())
    assert summary["employees"] == 9
    assert summary["total_revenue"] > 0
    # Every payroll spelling resolves to its billing counterpart; only HR is unmatched.
    assert summary["employee_matching_rate"] == 89
