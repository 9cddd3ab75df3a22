"""
Row and metric types shared by the reconciliation pipeline.

Input rows arrive from the file-ingestion side already field-typed; every
derived metric is a frozen dataclass rebuilt from scratch on each load cycle.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Literal, Optional, Union

Role = Literal["TECH", "BCBA"]
PerformanceTier = Literal["excellent", "good", "needs-improvement", "critical"]
Priority = Literal["high", "medium", "low"]
Severity = Literal["error", "warning"]
Source = Literal["billing", "payroll"]

Cell = Union[str, float, int, date, datetime, None]


# =========================
# INPUT ROWS
# =========================

@dataclass(frozen=True)
class BillingRow:
    tech_name: str
    code: Optional[int]
    session_date: Cell
    hours: Optional[float]
    price: Optional[float]
    rate: Optional[float] = None
    client_name: str = ""
    location: str = ""


@dataclass(frozen=True)
class PayrollRow:
    name: str
    check_date: Cell
    hours: Optional[float]
    # Kept as delivered; "(1,234.56)" style cells are parsed by the aggregator.
    total_expenses: Cell
    department: str = ""
    pay_frequency: str = ""
    total_paid: Optional[float] = None
    tax_withheld: Optional[float] = None
    deductions: Optional[float] = None
    net_pay: Optional[float] = None
    payment_details: str = ""
    employer_liability: Optional[float] = None


@dataclass(frozen=True)
class RowFinding:
    row: int
    field: str
    value: str
    message: str
    severity: Severity


@dataclass(frozen=True)
class IngestionResult:
    """What the file-ingestion collaborator hands to the core for one source."""
    rows: tuple
    errors: tuple[RowFinding, ...] = ()
    # Figures printed on the export's own total row; None when it has none
    reported_total_amount: Optional[float] = None
    reported_total_hours: Optional[float] = None
    unique_employees: tuple[str, ...] = ()


# =========================
# DERIVED METRICS
# =========================

@dataclass(frozen=True)
class FinancialMetrics:
    total_revenue: float
    total_payroll_cost: float
    billable_staff_cost: float
    hr_cost: float
    gross_profit: float
    profit_margin: float
    net_profit: float
    profit_margin_vs_billable_staff: float
    total_billable_hours: float
    billable_staff_hours: float
    hr_hours: float
    utilization_rate: float
    revenue_per_billable_hour: float
    non_billable_hours: float
    non_billable_cost: float
    comprehensive_profit: float
    comprehensive_profit_margin: float


@dataclass(frozen=True)
class UtilizationMetrics:
    utilization_rate: float
    billable_hours: float
    total_payroll_hours: float
    non_billable_hours: float
    hr_hours: float
    benchmark: float
    performance_vs_benchmark: float
    cost_of_non_billable_time: float
    average_utilization_rate: float
    average_profit_margin: float


@dataclass(frozen=True)
class EmployeeMetric:
    name: str
    billing_name: str
    payroll_name: str
    role: Role
    billable_hours: float
    payroll_hours: float
    non_billable_hours: float
    revenue: float
    payroll_cost: float
    revenue_per_hour: float
    utilization_rate: float
    profit_margin: float
    performance_tier: PerformanceTier
    potential_revenue: float
    is_matched: bool
    is_hr_staff: bool
    department: str = ""


@dataclass(frozen=True)
class OpportunityMetric:
    employee_name: str
    current_utilization: float
    target_utilization: float
    potential_additional_hours: float
    potential_additional_revenue: float
    priority: Priority
    action_items: tuple[str, ...] = ()


@dataclass(frozen=True)
class UnmatchedEmployee:
    name: str
    source: Source
    reason: str
    suggested_matches: tuple[str, ...] = ()
    confidence: int = 0


@dataclass(frozen=True)
class DataQualityIssue:
    type: Literal["error", "warning", "info"]
    category: Literal["billing", "payroll", "matching", "calculation"]
    message: str
    count: int
    impact: Literal["high", "medium", "low"]


@dataclass(frozen=True)
class DataQualityMetrics:
    billing_data_quality: int
    payroll_data_quality: int
    employee_matching_rate: int
    overall_score: int
    issues: tuple[DataQualityIssue, ...] = ()


@dataclass(frozen=True)
class Discrepancy:
    metric: str
    expected: float
    actual: float
    difference: float


@dataclass(frozen=True)
class SelfCheckResult:
    is_valid: bool
    discrepancies: tuple[Discrepancy, ...] = ()


@dataclass(frozen=True)
class DashboardBundle:
    """Everything the presentation layer reads for one load cycle."""
    financial_metrics: FinancialMetrics
    utilization_metrics: UtilizationMetrics
    employee_metrics: tuple[EmployeeMetric, ...]
    top_opportunities: tuple[OpportunityMetric, ...]
    unmatched_employees: tuple[UnmatchedEmployee, ...]
    data_quality: DataQualityMetrics
    self_check: SelfCheckResult
    reasonableness_warnings: tuple[str, ...] = field(default_factory=tuple)
    last_updated: Optional[datetime] = None
