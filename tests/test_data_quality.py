from dataclasses import replace
from pathlib import Path
import sys

# Ensure src root (where main.py lives) is on PYTHONPATH
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from data_quality import DataValidator, ValidationResult  # noqa: E402
from models import BillingRow, FinancialMetrics, IngestionResult, PayrollRow, RowFinding  # noqa: E402


def good_billing(**overrides):
    row = BillingRow(tech_name="Smith, John", code=97153, session_date="5/1/2025",
                     hours=2.0, price=120.0, rate=60.0)
    return replace(row, **overrides)


def good_payroll(**overrides):
    row = PayrollRow(name="Smith, John", check_date="5/2/2025", hours=40.0, total_expenses="861.20",
                     total_paid=800.0, tax_withheld=96.0, deductions=24.0, net_pay=680.0)
    return replace(row, **overrides)


def financial(**values):
    base = dict.fromkeys(FinancialMetrics.__dataclass_fields__, 0.0)
    base.update(values)
    return FinancialMetrics(**base)


def test_clean_billing_rows_are_valid():
    result = DataValidator().validate_billing_rows([good_billing(), good_billing(hours=1.0, price=60.0)])
    assert result.is_valid
    assert result.valid_records == 2
    assert result.warnings == ()


def test_billing_errors_and_warnings():
    rows = [
        good_billing(tech_name=""),
        good_billing(session_date="garbage"),
        good_billing(hours=-1.0),
        good_billing(price=None),
        good_billing(session_date="3/1/2025"),
        good_billing(hours=25.0, price=1500.0),
        good_billing(rate=75.0),
    ]
    result = DataValidator().validate_billing_rows(rows)

    assert result.invalid_records == 4
    assert result.valid_records == 3
    assert [e.message for e in result.errors] == [
        "Tech Name is required",
        "Invalid date format",
        "Hours must be a positive number",
        "Price must be a positive number",
    ]
    messages = [w.message for w in result.warnings]
    assert "Date outside Q2 Billing Period" in messages
    assert "Hours exceed 24 in a single day" in messages
    assert "Rate mismatch between calculated and recorded values" in messages
    assert all(w.severity == "warning" for w in result.warnings)


def test_payroll_errors_and_warnings():
    rows = [
        good_payroll(),
        good_payroll(name=" "),
        good_payroll(check_date=None),
        good_payroll(total_expenses="n/a"),
        good_payroll(total_expenses="(150.00)"),
        good_payroll(hours=90.0),
        good_payroll(net_pay=700.0),
        good_payroll(payment_details="VOID 1234"),
        good_payroll(check_date="4/1/2025"),
    ]
    result = DataValidator().validate_payroll_rows(rows)

    assert result.invalid_records == 3
    assert {e.field for e in result.errors} == {"Name", "Check Date", "Total Expenses"}
    messages = [w.message for w in result.warnings]
    assert "Negative expense (adjustment or reversal)" in messages
    assert "Hours exceed 80 in a pay period" in messages
    assert "Net pay calculation mismatch" in messages
    assert "Void payment detected" in messages
    assert "Date outside Q2 Payroll Period" in messages


def test_quality_scores_and_issues():
    finding = RowFinding(1, "Hours", "-1", "Hours must be a positive number", "error")
    billing = ValidationResult(errors=(finding,), valid_records=3, invalid_records=1)
    payroll = ValidationResult(valid_records=2)

    metrics = DataValidator().calculate_data_quality(billing, payroll, 80)
    assert metrics.billing_data_quality == 75
    assert metrics.payroll_data_quality == 100
    assert metrics.employee_matching_rate == 80
    assert metrics.overall_score == 85

    issues = {(i.category, i.type): i for i in metrics.issues}
    assert issues[("billing", "error")].impact == "high"
    assert issues[("matching", "warning")].impact == "medium"
    assert ("payroll", "error") not in issues


def test_quality_with_no_records_is_zero():
    metrics = DataValidator().calculate_data_quality(ValidationResult(), ValidationResult(), 0)
    assert metrics.billing_data_quality == 0
    assert metrics.overall_score == 0
    assert metrics.issues[-1].impact == "high"


def test_grades():
    validator = DataValidator()
    assert validator.get_data_quality_grade(97).grade == "A+"
    assert validator.get_data_quality_grade(90).grade == "A"
    assert validator.get_data_quality_grade(70).grade == "B"
    assert validator.get_data_quality_grade(10).grade == "C"


def test_employee_consistency():
    report = DataValidator().validate_employee_consistency(
        ["Smith, John", "SMITH,  John", "Seifeddine, Malak", "X1"],
        ["Lee, Ann", "Lee, Ann"],
    )
    assert report.duplicate_billing == ("Smith, John", "SMITH,  John")
    assert report.duplicate_payroll == ()
    assert report.suspicious_names == ("X1",)
    assert report.hr_staff_in_billing == ("Seifeddine, Malak",)


def test_reasonableness_warnings():
    validator = DataValidator()

    anomaly = validator.validate_financial_metrics(
        financial(total_revenue=1000.0, total_payroll_cost=500.0, utilization_rate=120.0,
                  profit_margin_vs_billable_staff=50.0)
    )
    assert anomaly.warnings == ("Utilization rate exceeds 100% (billing hours exceed payroll hours)",)

    empty = validator.validate_financial_metrics(financial())
    assert "Total revenue is zero or negative" in empty.warnings
    assert "Total payroll cost is zero or negative" in empty.warnings
    assert not empty.is_reasonable

    fine = validator.validate_financial_metrics(
        financial(total_revenue=1000.0, total_payroll_cost=500.0, utilization_rate=85.0,
                  profit_margin_vs_billable_staff=45.0)
    )
    assert fine.is_reasonable


def test_reported_totals_are_checked_against_rows():
    validator = DataValidator()
    rows = (good_billing(), good_billing(hours=1.0, price=60.0))

    assert validator.check_billing_totals(IngestionResult(rows=rows)) == ()
    assert validator.check_billing_totals(
        IngestionResult(rows=rows, reported_total_amount=180.0, reported_total_hours=3.0)
    ) == ()

    (finding,) = validator.check_billing_totals(
        IngestionResult(rows=rows, reported_total_amount=200.0, reported_total_hours=3.0)
    )
    assert finding.field == "Total Amount"
    assert finding.severity == "warning"
    assert finding.value == "Reported: 200.00, Rows: 180.00"

    payroll = (good_payroll(), good_payroll(total_expenses="(100.00)"))
    findings = validator.check_payroll_totals(
        IngestionResult(rows=payroll, reported_total_amount=761.20, reported_total_hours=90.0)
    )
    assert [f.field for f in findings] == ["Total Hours"]
