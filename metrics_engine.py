"""
Metrics engine: financial, utilization, per-employee and opportunity metrics.

All figures are derived from the in-window billing and payroll rows under
one BusinessRules value. Every ratio is zero-guarded; utilization above 100%
is reported as-is (it signals billing hours exceeding payroll hours) and
only logged.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from aggregation import build_employee_table, prepare_frames, split_payroll_totals
from business_rules import DEFAULT_RULES, BusinessRules, TierThresholds
from models import (
    BillingRow,
    Discrepancy,
    EmployeeMetric,
    FinancialMetrics,
    OpportunityMetric,
    PayrollRow,
    PerformanceTier,
    Priority,
    SelfCheckResult,
    UtilizationMetrics,
)
from roles import classify_role, hourly_rate

log = logging.getLogger(__name__)

# Action-item triggers for technicians below benchmark.
URGENT_UTILIZATION = 50.0
LOW_UTILIZATION = 70.0
NON_BILLABLE_SHARE = 0.2
LOW_REVENUE_PER_HOUR = 50.0

# Sentinel margin for an employee with cost but no revenue.
ALL_COST_MARGIN = -100.0


def pct(numerator: float, denominator: float) -> float:
    """numerator / denominator * 100, or 0 when the denominator is 0."""
    if denominator == 0:
        return 0.0
    return numerator * 100 / denominator


def ratio(numerator: float, denominator: float) -> float:
    if denominator == 0:
        return 0.0
    return numerator / denominator


def performance_tier(value: float, tiers: TierThresholds) -> PerformanceTier:
    if value >= tiers.excellent:
        return "excellent"
    if value >= tiers.good:
        return "good"
    if value >= tiers.needs_improvement:
        return "needs-improvement"
    return "critical"


@dataclass(frozen=True)
class EngineResult:
    financial_metrics: FinancialMetrics
    utilization_metrics: UtilizationMetrics
    employee_metrics: Tuple[EmployeeMetric, ...]
    opportunities: Tuple[OpportunityMetric, ...]
    self_check: SelfCheckResult
    # In-window source spellings, first-seen order.
    billing_names: Tuple[str, ...] = ()
    payroll_names: Tuple[str, ...] = ()


@dataclass(frozen=True)
class _Prepared:
    billing: pd.DataFrame
    payroll: pd.DataFrame
    employees: pd.DataFrame


class MetricsEngine:
    """
    Role-segmented calculation engine.

    Technicians are measured by utilization, supervisors (BCBA) by profit
    margin. HR staff are kept out of billable cost, utilization and
    opportunities but still count toward total payroll cost.
    """

    def __init__(self, rules: BusinessRules = DEFAULT_RULES):
        self.rules = rules

    # =========================
    # PREPARATION
    # =========================

    def _prepare(self, billing_rows: Iterable[BillingRow], payroll_rows: Iterable[PayrollRow]) -> _Prepared:
        billing, payroll = prepare_frames(billing_rows, payroll_rows, self.rules)
        employees = build_employee_table(billing, payroll, self.rules)
        return _Prepared(billing=billing, payroll=payroll, employees=employees)

    def compute(
        self,
        billing_rows: Iterable[BillingRow],
        payroll_rows: Iterable[PayrollRow],
    ) -> EngineResult:
        """Run every calculation once over the same prepared data."""
        data = self._prepare(billing_rows, payroll_rows)
        employees = self._employee_metrics(data.employees)
        financial = self._financial_metrics(data)
        utilization = self._utilization_metrics(data, employees)
        opportunities = self.identify_improvement_opportunities(employees)
        self_check = self.validate_calculations(financial)

        log.info(
            "Computed metrics for %d employee(s): revenue %.2f, utilization %.2f%%, %d opportunity(ies)",
            len(employees), financial.total_revenue, financial.utilization_rate, len(opportunities),
        )
        return EngineResult(
            financial_metrics=financial,
            utilization_metrics=utilization,
            employee_metrics=employees,
            opportunities=opportunities,
            self_check=self_check,
            billing_names=tuple(dict.fromkeys(data.billing.get("source_name", ()))),
            payroll_names=tuple(dict.fromkeys(data.payroll.get("source_name", ()))),
        )

    # =========================
    # FINANCIAL METRICS
    # =========================

    def calculate_financial_metrics(
        self,
        billing_rows: Iterable[BillingRow],
        payroll_rows: Iterable[PayrollRow],
    ) -> FinancialMetrics:
        return self._financial_metrics(self._prepare(billing_rows, payroll_rows))

    def _financial_metrics(self, data: _Prepared) -> FinancialMetrics:
        total_revenue = float(data.billing["amount"].sum()) if not data.billing.empty else 0.0
        total_billable_hours = float(data.billing["hours"].sum()) if not data.billing.empty else 0.0

        split = split_payroll_totals(data.payroll)
        billable_staff_cost = split["billable_cost"]
        billable_staff_hours = split["billable_hours"]
        hr_cost = split["hr_cost"]
        total_payroll_cost = billable_staff_cost + hr_cost

        gross_profit = total_revenue - total_payroll_cost
        net_profit = total_revenue - billable_staff_cost

        non_billable_hours = self.total_non_billable_hours(data.employees)
        non_billable_cost = self.non_billable_cost(
            non_billable_hours, ratio(billable_staff_cost, billable_staff_hours)
        )
        comprehensive_profit = total_revenue - billable_staff_cost - non_billable_cost

        utilization_rate = pct(total_billable_hours, billable_staff_hours)
        if utilization_rate > 100:
            log.warning(
                "Utilization %.2f%% exceeds 100%%: billing hours (%.2f) exceed billable payroll hours (%.2f)",
                utilization_rate, total_billable_hours, billable_staff_hours,
            )

        return FinancialMetrics(
            total_revenue=total_revenue,
            total_payroll_cost=total_payroll_cost,
            billable_staff_cost=billable_staff_cost,
            hr_cost=hr_cost,
            gross_profit=gross_profit,
            profit_margin=pct(gross_profit, total_revenue),
            net_profit=net_profit,
            profit_margin_vs_billable_staff=pct(net_profit, total_revenue),
            total_billable_hours=total_billable_hours,
            billable_staff_hours=billable_staff_hours,
            hr_hours=split["hr_hours"],
            utilization_rate=utilization_rate,
            revenue_per_billable_hour=ratio(total_revenue, total_billable_hours),
            non_billable_hours=non_billable_hours,
            non_billable_cost=non_billable_cost,
            comprehensive_profit=comprehensive_profit,
            comprehensive_profit_margin=pct(comprehensive_profit, total_revenue),
        )

    @staticmethod
    def total_non_billable_hours(employees: pd.DataFrame) -> float:
        """Per-employee max(0, payroll - billable), summed over non-HR staff."""
        if employees.empty:
            return 0.0
        staff = employees[~employees["is_hr"]]
        gap = np.maximum(0.0, staff["payroll_hours"].to_numpy(float) - staff["billable_hours"].to_numpy(float))
        return float(gap.sum())

    @staticmethod
    def non_billable_cost(non_billable_hours: float, hourly_rate: float) -> float:
        """
        Cost of non-billable time at a given rate.

        Financial metrics price it at the average billable-staff rate
        (billable cost / billable hours); the technician view prices it at
        the flat technician rate.
        """
        return non_billable_hours * hourly_rate

    # =========================
    # UTILIZATION (TECHNICIANS)
    # =========================

    def calculate_utilization_metrics(
        self,
        billing_rows: Iterable[BillingRow],
        payroll_rows: Iterable[PayrollRow],
        employee_metrics: Optional[Sequence[EmployeeMetric]] = None,
    ) -> UtilizationMetrics:
        data = self._prepare(billing_rows, payroll_rows)
        if employee_metrics is None:
            employee_metrics = self._employee_metrics(data.employees)
        return self._utilization_metrics(data, employee_metrics)

    def _utilization_metrics(self, data: _Prepared, employees: Sequence[EmployeeMetric]) -> UtilizationMetrics:
        techs = [e for e in employees if not e.is_hr_staff and e.role == "TECH"]
        supervisors = [e for e in employees if not e.is_hr_staff and e.role == "BCBA"]

        billable_hours = sum(e.billable_hours for e in techs)
        payroll_hours = sum(e.payroll_hours for e in techs)
        non_billable_hours = max(0.0, payroll_hours - billable_hours)
        utilization_rate = pct(billable_hours, payroll_hours)
        benchmark = self.rules.utilization_benchmark

        return UtilizationMetrics(
            utilization_rate=utilization_rate,
            billable_hours=billable_hours,
            total_payroll_hours=payroll_hours,
            non_billable_hours=non_billable_hours,
            hr_hours=split_payroll_totals(data.payroll)["hr_hours"],
            benchmark=benchmark,
            performance_vs_benchmark=utilization_rate - benchmark,
            cost_of_non_billable_time=self.non_billable_cost(non_billable_hours, hourly_rate("TECH", self.rules)),
            average_utilization_rate=ratio(sum(e.utilization_rate for e in techs), len(techs)),
            average_profit_margin=ratio(sum(e.profit_margin for e in supervisors), len(supervisors)),
        )

    # =========================
    # EMPLOYEE PERFORMANCE
    # =========================

    def analyze_employee_performance(
        self,
        billing_rows: Iterable[BillingRow],
        payroll_rows: Iterable[PayrollRow],
    ) -> Tuple[EmployeeMetric, ...]:
        """One metric per employee, highest revenue first."""
        return self._employee_metrics(self._prepare(billing_rows, payroll_rows).employees)

    def _employee_metrics(self, table: pd.DataFrame) -> Tuple[EmployeeMetric, ...]:
        if table.empty:
            return ()

        df = table.copy()
        billable = df["billable_hours"].to_numpy(float)
        payroll = df["payroll_hours"].to_numpy(float)
        revenue = df["revenue"].to_numpy(float)
        cost = df["payroll_cost"].to_numpy(float)
        zeros = np.zeros(len(df))

        df["role"] = df["codes"].map(lambda codes: classify_role(codes, self.rules))
        df["non_billable_hours"] = np.maximum(0.0, payroll - billable)
        df["utilization_rate"] = np.divide(billable * 100, payroll, out=zeros.copy(), where=payroll != 0)
        df["revenue_per_hour"] = np.divide(revenue, billable, out=zeros.copy(), where=billable != 0)
        margin = np.divide((revenue - cost) * 100, revenue, out=zeros.copy(), where=revenue > 0)
        df["profit_margin"] = np.select(
            [revenue > 0, cost > 0],
            [margin, np.full(len(df), ALL_COST_MARGIN)],
            default=0.0,
        )

        df = df.sort_values("revenue", ascending=False, kind="mergesort").reset_index(drop=True)

        out: List[EmployeeMetric] = []
        for row in df.itertuples(index=False):
            tier = self._tier(row.role, row.utilization_rate, row.profit_margin)
            out.append(
                EmployeeMetric(
                    name=row.name,
                    billing_name=row.billing_name,
                    payroll_name=row.payroll_name,
                    role=row.role,
                    billable_hours=float(row.billable_hours),
                    payroll_hours=float(row.payroll_hours),
                    non_billable_hours=float(row.non_billable_hours),
                    revenue=float(row.revenue),
                    payroll_cost=float(row.payroll_cost),
                    revenue_per_hour=float(row.revenue_per_hour),
                    utilization_rate=float(row.utilization_rate),
                    profit_margin=float(row.profit_margin),
                    performance_tier=tier,
                    potential_revenue=self._potential_revenue(row),
                    is_matched=bool(row.is_matched),
                    is_hr_staff=bool(row.is_hr),
                    department=row.department,
                )
            )
            if row.utilization_rate > 100:
                log.warning("%s: utilization %.2f%% exceeds 100%%", row.name, row.utilization_rate)
        return tuple(out)

    def _tier(self, role: str, utilization_rate: float, profit_margin: float) -> PerformanceTier:
        if role == "BCBA":
            return performance_tier(profit_margin, self.rules.bcba_tiers)
        return performance_tier(utilization_rate, self.rules.tech_tiers)

    def _potential_revenue(self, row) -> float:
        """Revenue at the utilization benchmark (TECH) or target margin (BCBA)."""
        if row.role == "BCBA":
            target = self.rules.bcba_target_profit_margin
            if row.profit_margin < target:
                return float(row.payroll_cost / (1 - target / 100))
            return float(row.revenue)

        target_hours = row.payroll_hours * self.rules.utilization_benchmark / 100
        return float(row.revenue + max(0.0, target_hours - row.billable_hours) * row.revenue_per_hour)

    # =========================
    # OPPORTUNITIES
    # =========================

    def identify_improvement_opportunities(
        self, employee_metrics: Sequence[EmployeeMetric]
    ) -> Tuple[OpportunityMetric, ...]:
        """
        Technicians below the utilization benchmark, most recoverable
        revenue first. Equal revenues keep the input order.
        """
        benchmark = self.rules.utilization_benchmark
        found: List[OpportunityMetric] = []

        for emp in employee_metrics:
            if emp.is_hr_staff or emp.role != "TECH":
                continue
            if emp.payroll_hours <= 0 or emp.utilization_rate >= benchmark:
                continue

            hours = emp.payroll_hours * benchmark / 100 - emp.billable_hours
            revenue = hours * emp.revenue_per_hour
            found.append(
                OpportunityMetric(
                    employee_name=emp.name,
                    current_utilization=emp.utilization_rate,
                    target_utilization=benchmark,
                    potential_additional_hours=hours,
                    potential_additional_revenue=revenue,
                    priority=self.opportunity_priority(emp, revenue),
                    action_items=self.action_items(emp),
                )
            )

        return tuple(sorted(found, key=lambda o: o.potential_additional_revenue, reverse=True))

    def opportunity_priority(self, emp: EmployeeMetric, potential_revenue: float) -> Priority:
        r = self.rules
        if (
            emp.utilization_rate < r.high_priority_max_utilization
            and potential_revenue > r.high_priority_min_revenue
            and emp.payroll_hours > r.high_priority_min_hours
        ):
            return "high"
        if emp.utilization_rate < r.utilization_benchmark or potential_revenue > r.medium_priority_min_revenue:
            return "medium"
        return "low"

    def action_items(self, emp: EmployeeMetric) -> Tuple[str, ...]:
        benchmark = self.rules.utilization_benchmark
        actions: List[str] = []

        if emp.utilization_rate < URGENT_UTILIZATION:
            actions.append("URGENT: Very low utilization - immediate intervention required")
            actions.append("Review caseload assignments and availability")
        if emp.utilization_rate < LOW_UTILIZATION:
            actions.append("Increase client sessions and case assignments")
            actions.append("Optimize scheduling to reduce downtime")
        if emp.utilization_rate < benchmark:
            actions.append(f"Target additional billable hours to reach {benchmark:g}% utilization")
            actions.append("Review non-billable activities and time allocation")
        if emp.non_billable_hours > emp.billable_hours * NON_BILLABLE_SHARE:
            actions.append("Reduce non-billable time - focus on direct service delivery")
            actions.append("Streamline administrative tasks and documentation")
        if emp.revenue_per_hour < LOW_REVENUE_PER_HOUR:
            actions.append("Consider higher-value service codes and client types")
            actions.append("Review rate optimization opportunities")

        if not actions:
            actions.append("Maintain current performance and monitor trends")
        return tuple(actions)

    # =========================
    # SELF-CHECK
    # =========================

    def validate_calculations(self, financial: FinancialMetrics) -> SelfCheckResult:
        """Compare headline figures against the rule set's expected results."""
        discrepancies: List[Discrepancy] = []
        for expected in self.rules.expected_results:
            actual = float(getattr(financial, expected.field))
            difference = abs(actual - expected.expected)
            if difference > expected.tolerance:
                discrepancies.append(
                    Discrepancy(
                        metric=expected.label,
                        expected=expected.expected,
                        actual=actual,
                        difference=difference,
                    )
                )
                log.warning(
                    "Self-check: %s expected %.2f, got %.2f (off by %.2f, tolerance %.2f)",
                    expected.label, expected.expected, actual, difference, expected.tolerance,
                )
        return SelfCheckResult(is_valid=not discrepancies, discrepancies=tuple(discrepancies))
