from dataclasses import replace
from pathlib import Path
import sys

import pytest

# Ensure src root (where main.py lives) is on PYTHONPATH
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from business_rules import DEFAULT_RULES, ExpectedResult  # noqa: E402
from metrics_engine import MetricsEngine, performance_tier  # noqa: E402
from models import BillingRow, EmployeeMetric, FinancialMetrics, PayrollRow  # noqa: E402

RULES = replace(DEFAULT_RULES, expected_results=())


def bill(name, hours, price, code=97153, day="5/1/2025"):
    return BillingRow(tech_name=name, code=code, session_date=day, hours=hours, price=price)


def pay(name, hours, cost, day="5/2/2025"):
    return PayrollRow(name=name, check_date=day, hours=hours, total_expenses=cost)


def employee(name, utilization, revenue_per_hour=50.0, payroll_hours=100.0, role="TECH", hr=False):
    billable = payroll_hours * utilization / 100
    return EmployeeMetric(
        name=name,
        billing_name=name,
        payroll_name=name,
        role=role,
        billable_hours=billable,
        payroll_hours=payroll_hours,
        non_billable_hours=max(0.0, payroll_hours - billable),
        revenue=billable * revenue_per_hour,
        payroll_cost=payroll_hours * 19,
        revenue_per_hour=revenue_per_hour,
        utilization_rate=utilization,
        profit_margin=0.0,
        performance_tier="good",
        potential_revenue=0.0,
        is_matched=True,
        is_hr_staff=hr,
    )


def test_single_employee_scenario():
    engine = MetricsEngine(RULES)
    result = engine.compute([bill("Smith, John", 100, 5000)], [pay("Smith, John", 120, 3000)])
    fm = result.financial_metrics

    assert fm.total_revenue == 5000.0
    assert fm.utilization_rate == pytest.approx(83.33, abs=0.1)
    assert fm.non_billable_hours == 20.0
    assert fm.non_billable_cost == pytest.approx(500.0)
    assert fm.comprehensive_profit_margin == pytest.approx(30.0)
    assert fm.profit_margin == pytest.approx(40.0)
    assert fm.revenue_per_billable_hour == 50.0

    (emp,) = result.employee_metrics
    assert emp.role == "TECH"
    assert emp.non_billable_hours == 20.0
    assert emp.performance_tier == "good"
    assert emp.potential_revenue == pytest.approx(5400.0)

    (opp,) = result.opportunities
    assert opp.potential_additional_hours == pytest.approx(8.0)
    assert opp.potential_additional_revenue == pytest.approx(400.0)
    assert opp.priority == "medium"


def test_payroll_only_employee():
    result = MetricsEngine(RULES).compute([], [pay("Doe, Jane", 40, 800)])
    fm = result.financial_metrics

    assert fm.total_revenue == 0.0
    assert fm.billable_staff_cost == 800.0
    assert fm.non_billable_cost == pytest.approx(800.0)
    assert fm.utilization_rate == 0.0
    assert fm.profit_margin == 0.0
    assert fm.profit_margin_vs_billable_staff == 0.0

    (emp,) = result.employee_metrics
    assert emp.profit_margin == -100.0
    assert emp.is_matched is False


def test_utilization_is_not_clamped():
    result = MetricsEngine(RULES).compute([bill("Smith, John", 120, 6000)], [pay("Smith, John", 100, 2000)])
    assert result.financial_metrics.utilization_rate == 120.0
    (emp,) = result.employee_metrics
    assert emp.utilization_rate == 120.0
    assert emp.non_billable_hours == 0.0
    assert emp.performance_tier == "excellent"


def test_hr_staff_cost_is_reported_separately():
    result = MetricsEngine(RULES).compute(
        [bill("Smith, John", 100, 5000)],
        [pay("Smith, John", 120, 3000), pay("Seifeddine, Malak", 80, 2000)],
    )
    fm = result.financial_metrics
    assert fm.total_payroll_cost == 5000.0
    assert fm.billable_staff_cost == 3000.0
    assert fm.hr_cost == 2000.0
    assert fm.billable_staff_hours == 120.0
    assert fm.hr_hours == 80.0
    assert fm.profit_margin_vs_billable_staff == pytest.approx(40.0)
    assert fm.profit_margin == 0.0

    hr = [e for e in result.employee_metrics if e.is_hr_staff]
    assert [e.name for e in hr] == ["Seifeddine, Malak"]
    assert all(o.employee_name != "Seifeddine, Malak" for o in result.opportunities)
    assert result.utilization_metrics.hr_hours == 80.0


def test_employees_sorted_by_revenue():
    result = MetricsEngine(RULES).compute(
        [bill("A, Ann", 10, 1000), bill("B, Bob", 10, 3000), bill("C, Cal", 10, 2000)],
        [pay("A, Ann", 10, 100), pay("B, Bob", 10, 100), pay("C, Cal", 10, 100)],
    )
    assert [e.name for e in result.employee_metrics] == ["B, Bob", "C, Cal", "A, Ann"]


def test_supervisor_tiers_use_margin():
    result = MetricsEngine(RULES).compute(
        [bill("Reyes, Marisol", 10, 1000, code=97155)],
        [pay("Reyes, Marisol", 10, 650)],
    )
    (emp,) = result.employee_metrics
    assert emp.role == "BCBA"
    assert emp.profit_margin == pytest.approx(35.0)
    assert emp.performance_tier == "good"
    # Revenue needed for the 60% target margin
    assert emp.potential_revenue == pytest.approx(1625.0)
    assert result.opportunities == ()
    assert result.utilization_metrics.average_profit_margin == pytest.approx(35.0)


def test_technician_utilization_view():
    result = MetricsEngine(RULES).compute(
        [bill("Smith, John", 80, 4000), bill("Reyes, Marisol", 10, 1000, code=97155)],
        [pay("Smith, John", 100, 1900), pay("Reyes, Marisol", 40, 1800)],
    )
    um = result.utilization_metrics
    assert um.billable_hours == 80.0
    assert um.total_payroll_hours == 100.0
    assert um.utilization_rate == 80.0
    assert um.performance_vs_benchmark == -10.0
    assert um.cost_of_non_billable_time == 20 * 19.0


def test_empty_inputs_give_zeroed_metrics():
    result = MetricsEngine(RULES).compute([], [])
    fm = result.financial_metrics
    assert fm.total_revenue == 0.0
    assert fm.utilization_rate == 0.0
    assert fm.profit_margin == 0.0
    assert fm.revenue_per_billable_hour == 0.0
    assert fm.non_billable_cost == 0.0
    assert result.employee_metrics == ()
    assert result.opportunities == ()
    assert result.self_check.is_valid


def test_opportunities_rank_by_revenue_and_keep_order_on_ties():
    engine = MetricsEngine(RULES)
    employees = [
        employee("First, Tie", 60.0),
        employee("Big, Gap", 20.0),
        employee("Second, Tie", 60.0),
        employee("Fine, Tech", 95.0),
        employee("Supervisor, One", 10.0, role="BCBA"),
        employee("Office, Staff", 10.0, hr=True),
    ]
    opportunities = engine.identify_improvement_opportunities(employees)
    assert [o.employee_name for o in opportunities] == ["Big, Gap", "First, Tie", "Second, Tie"]


def test_opportunity_priority_and_actions():
    engine = MetricsEngine(RULES)
    urgent = employee("Low, Util", 40.0, revenue_per_hour=100.0, payroll_hours=200.0)
    (opp,) = engine.identify_improvement_opportunities([urgent])
    # 200 * 0.9 - 80 = 100 hours at $100
    assert opp.potential_additional_revenue == pytest.approx(10000.0)
    assert opp.priority == "high"
    assert opp.action_items[0].startswith("URGENT")

    assert engine.action_items(employee("Great, Tech", 95.0, revenue_per_hour=80.0)) == (
        "Maintain current performance and monitor trends",
    )


def test_performance_tier_boundaries():
    tiers = DEFAULT_RULES.tech_tiers
    assert performance_tier(90.0, tiers) == "excellent"
    assert performance_tier(89.99, tiers) == "good"
    assert performance_tier(50.0, tiers) == "needs-improvement"
    assert performance_tier(49.9, tiers) == "critical"


def test_self_check_flags_out_of_tolerance_metrics():
    rules = replace(
        DEFAULT_RULES,
        expected_results=(
            ExpectedResult("total_revenue", "Total Revenue", 5000.0, 100.0),
            ExpectedResult("utilization_rate", "Utilization Rate", 90.0, 0.5),
        ),
    )
    result = MetricsEngine(rules).compute([bill("Smith, John", 100, 5050)], [pay("Smith, John", 120, 3000)])
    check = result.self_check
    assert not check.is_valid
    assert [d.metric for d in check.discrepancies] == ["Utilization Rate"]
    assert check.discrepancies[0].expected == 90.0


def test_validate_calculations_on_given_metrics():
    values = dict.fromkeys(FinancialMetrics.__dataclass_fields__, 0.0)
    values.update(total_revenue=723471.65, utilization_rate=92.5, non_billable_cost=19097.0,
                  profit_margin_vs_billable_staff=47.6)
    assert MetricsEngine().validate_calculations(FinancialMetrics(**values)).is_valid


def test_non_billable_cost_rates():
    assert MetricsEngine.non_billable_cost(20.0, 25.0) == 500.0
    assert MetricsEngine.non_billable_cost(0.0, 25.0) == 0.0


def test_recompute_is_identical():
    billing = [bill("Smith, John", 100, 5000), bill("Lee, Ann", 10, 500)]
    payroll = [pay("Smith, John", 120, 3000), pay("Seifeddine, Malak", 80, 2000)]
    engine = MetricsEngine(RULES)
    assert engine.compute(billing, payroll) == engine.compute(billing, payroll)


def test_non_billable_time_uses_configured_technician_rate():
    roles = dict(RULES.roles)
    roles["TECH"] = replace(roles["TECH"], hourly_rate=25.0)
    result = MetricsEngine(replace(RULES, roles=roles)).compute(
        [bill("Smith, John", 80, 4000)], [pay("Smith, John", 100, 1900)]
    )
    assert result.utilization_metrics.cost_of_non_billable_time == 20 * 25.0
