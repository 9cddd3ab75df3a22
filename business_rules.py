"""
Business rules for the billing/payroll reconciliation.

All date windows, name mappings, staff lists, role code sets, benchmarks,
tier thresholds and self-check expectations live in one immutable
BusinessRules value. Defaults reproduce the Q2 2025 rule set; a JSON file in
config/ can override any of them without touching the algorithms.
"""

import json
from dataclasses import dataclass, field, replace
from datetime import date
from functools import cached_property
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple


CONFIG_DIR = Path(__file__).resolve().parent / "config"
CONFIG_NAME = "q2_2025.json"


class RulesConfigError(ValueError):
    """A rules file is present but one of its values cannot be used."""


# =========================
# RULE VALUE TYPES
# =========================

@dataclass(frozen=True)
class DateWindow:
    start: date
    end: date
    label: str = ""

    def contains(self, day: date) -> bool:
        # Closed interval on calendar days.
        return self.start <= day <= self.end


@dataclass(frozen=True)
class RoleDefinition:
    role: str
    service_codes: frozenset
    hourly_rate: float


@dataclass(frozen=True)
class ExpectedResult:
    """One headline figure the self-check compares against."""
    field: str
    label: str
    expected: float
    tolerance: float


@dataclass(frozen=True)
class TierThresholds:
    excellent: float
    good: float
    needs_improvement: float


# =========================
# Q2 2025 DEFAULTS
# =========================

Q2_BILLING_WINDOW = DateWindow(date(2025, 3, 31), date(2025, 6, 27), "Q2 Billing Period")

# Employees are paid two weeks after the work period, so the check-date
# window trails the billing window.
Q2_PAYROLL_CHECK_WINDOW = DateWindow(date(2025, 4, 18), date(2025, 7, 11), "Q2 Payroll Period")

# PAYROLL NAME -> BILLING NAME
EMPLOYEE_NAME_MAPPING = {
    "Francis, Keeaira": "Francis, Keearia",
    "Gallegos Labrado, Maritza": "Labrado, Maritza Gallegos",
    "Gallegos Labrado, Marit": "Labrado, Maritza Gallegos",
    "Wilcox, Breann R": "Wilcox, BreAnn",
    "Clegg, Charmisha M": "Clegg, Charmisha",
    "Hammound, Tarek": "Hammoud, Ricky",
}

HR_STAFF = ("Seifeddine, Malak",)

EMPLOYEE_ROLES = {
    # Direct 1:1 and group treatment delivered by a technician.
    "TECH": RoleDefinition("TECH", frozenset({97153, 97154}), 19.0),
    # Assessment, protocol modification and family guidance by a supervisor.
    "BCBA": RoleDefinition("BCBA", frozenset({97151, 97152, 97155, 97156, 97157, 97158}), 45.0),
}

UTILIZATION_BENCHMARK = 90.0
PROFIT_MARGIN_BENCHMARK = 35.0
BCBA_TARGET_PROFIT_MARGIN = 60.0

TECH_TIER_THRESHOLDS = TierThresholds(excellent=90.0, good=80.0, needs_improvement=50.0)
BCBA_TIER_THRESHOLDS = TierThresholds(excellent=40.0, good=30.0, needs_improvement=20.0)

EXPECTED_RESULTS = (
    ExpectedResult("total_revenue", "Total Revenue", 723471.65, 100.0),
    ExpectedResult("utilization_rate", "Utilization Rate", 92.5, 0.5),
    ExpectedResult("non_billable_cost", "Non-Billable Cost", 19097.0, 100.0),
    ExpectedResult("profit_margin_vs_billable_staff", "Profit Margin", 47.6, 1.0),
)

# Data quality grade cut-offs: A+ / A / B, anything lower is C.
DATA_QUALITY_THRESHOLDS = (95.0, 85.0, 70.0)


# =========================
# RULE SET
# =========================

@dataclass(frozen=True)
class BusinessRules:
    billing_window: DateWindow = Q2_BILLING_WINDOW
    payroll_window: DateWindow = Q2_PAYROLL_CHECK_WINDOW
    name_mapping: Mapping[str, str] = field(default_factory=lambda: dict(EMPLOYEE_NAME_MAPPING))
    hr_staff: Tuple[str, ...] = HR_STAFF
    roles: Mapping[str, RoleDefinition] = field(default_factory=lambda: dict(EMPLOYEE_ROLES))
    utilization_benchmark: float = UTILIZATION_BENCHMARK
    profit_margin_benchmark: float = PROFIT_MARGIN_BENCHMARK
    bcba_target_profit_margin: float = BCBA_TARGET_PROFIT_MARGIN
    tech_tiers: TierThresholds = TECH_TIER_THRESHOLDS
    bcba_tiers: TierThresholds = BCBA_TIER_THRESHOLDS
    high_priority_max_utilization: float = 50.0
    high_priority_min_revenue: float = 5000.0
    high_priority_min_hours: float = 100.0
    medium_priority_min_revenue: float = 2500.0
    fuzzy_candidate_threshold: int = 70
    fuzzy_validation_threshold: int = 85
    auto_match_confidence: int = 95
    matching_rate_warning: float = 90.0
    matching_rate_critical: float = 70.0
    include_void_payroll: bool = True
    expected_results: Tuple[ExpectedResult, ...] = EXPECTED_RESULTS
    data_quality_thresholds: Tuple[float, float, float] = DATA_QUALITY_THRESHOLDS

    def __post_init__(self):
        # Read-only views so a shared rule set cannot be edited in place.
        object.__setattr__(self, "name_mapping", MappingProxyType(dict(self.name_mapping)))
        object.__setattr__(self, "roles", MappingProxyType(dict(self.roles)))
        object.__setattr__(self, "hr_staff", tuple(self.hr_staff))
        for role in ("TECH", "BCBA"):
            if role not in self.roles:
                raise RulesConfigError(f"Role definition for '{role}' is required")

    @cached_property
    def normalized_name_mapping(self) -> Dict[str, str]:
        from employee_mapping import normalize_name

        return {normalize_name(k): v for k, v in self.name_mapping.items()}

    @cached_property
    def normalized_hr_staff(self) -> frozenset:
        from employee_mapping import normalize_name

        return frozenset(normalize_name(n) for n in self.hr_staff)

    @property
    def tech(self) -> RoleDefinition:
        return self.roles["TECH"]

    @property
    def bcba(self) -> RoleDefinition:
        return self.roles["BCBA"]


DEFAULT_RULES = BusinessRules()


# =========================
# LOADING
# =========================

def _parse_date(value: Any, key: str) -> date:
    try:
        return date.fromisoformat(str(value))
    except ValueError as e:
        raise RulesConfigError(f"{key}: expected YYYY-MM-DD, got {value!r}") from e


def _parse_window(raw: dict, key: str, base: DateWindow) -> DateWindow:
    if not isinstance(raw, dict):
        raise RulesConfigError(f"{key}: expected an object with start/end")
    start = _parse_date(raw.get("start", base.start.isoformat()), f"{key}.start")
    end = _parse_date(raw.get("end", base.end.isoformat()), f"{key}.end")
    if end < start:
        raise RulesConfigError(f"{key}: end {end} is before start {start}")
    return DateWindow(start, end, raw.get("label", base.label))


def _parse_tiers(raw: dict, key: str) -> TierThresholds:
    try:
        return TierThresholds(
            excellent=float(raw["excellent"]),
            good=float(raw["good"]),
            needs_improvement=float(raw["needs_improvement"]),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise RulesConfigError(f"{key}: expected excellent/good/needs_improvement numbers") from e


def rules_from_dict(cfg: dict, base: BusinessRules = DEFAULT_RULES) -> BusinessRules:
    """
    Overlay a parsed JSON config onto a base rule set.

    Keys that are absent keep the base value. Scalar keys use the
    BusinessRules field names; structured keys are:
      - billing_window / payroll_window: {"start", "end", "label"}
      - roles: {"TECH": {"service_codes": [...], "hourly_rate": 19}, ...}
      - tech_tiers / bcba_tiers: {"excellent", "good", "needs_improvement"}
      - expected_results: [{"field", "label", "expected", "tolerance"}, ...]
    """
    updates: Dict[str, Any] = {}

    if "billing_window" in cfg:
        updates["billing_window"] = _parse_window(cfg["billing_window"], "billing_window", base.billing_window)
    if "payroll_window" in cfg:
        updates["payroll_window"] = _parse_window(cfg["payroll_window"], "payroll_window", base.payroll_window)

    if "name_mapping" in cfg:
        mapping = cfg["name_mapping"]
        if not isinstance(mapping, dict):
            raise RulesConfigError("name_mapping: expected an object of payroll name -> billing name")
        updates["name_mapping"] = {str(k): str(v) for k, v in mapping.items()}

    if "hr_staff" in cfg:
        updates["hr_staff"] = tuple(str(n) for n in cfg["hr_staff"])

    if "roles" in cfg:
        roles = dict(base.roles)
        for role, raw in cfg["roles"].items():
            current = roles.get(role)
            try:
                codes = raw.get("service_codes", sorted(current.service_codes) if current else [])
                rate = raw.get("hourly_rate", current.hourly_rate if current else 0.0)
                roles[role] = RoleDefinition(role, frozenset(int(c) for c in codes), float(rate))
            except (AttributeError, TypeError, ValueError) as e:
                raise RulesConfigError(f"roles.{role}: expected service_codes list and hourly_rate") from e
        updates["roles"] = roles

    if "tech_tiers" in cfg:
        updates["tech_tiers"] = _parse_tiers(cfg["tech_tiers"], "tech_tiers")
    if "bcba_tiers" in cfg:
        updates["bcba_tiers"] = _parse_tiers(cfg["bcba_tiers"], "bcba_tiers")

    if "expected_results" in cfg:
        known = set(_financial_fields())
        expected = []
        for item in cfg["expected_results"]:
            try:
                result = ExpectedResult(
                    field=str(item["field"]),
                    label=str(item.get("label", item["field"])),
                    expected=float(item["expected"]),
                    tolerance=float(item["tolerance"]),
                )
            except (KeyError, TypeError, ValueError) as e:
                raise RulesConfigError(f"expected_results: bad entry {item!r}") from e
            if result.field not in known:
                raise RulesConfigError(f"expected_results: unknown metric field '{result.field}'")
            expected.append(result)
        updates["expected_results"] = tuple(expected)

    if "data_quality_thresholds" in cfg:
        values = tuple(float(v) for v in cfg["data_quality_thresholds"])
        if len(values) != 3:
            raise RulesConfigError("data_quality_thresholds: expected three numbers")
        updates["data_quality_thresholds"] = values

    scalar_fields = {
        "utilization_benchmark": float,
        "profit_margin_benchmark": float,
        "bcba_target_profit_margin": float,
        "high_priority_max_utilization": float,
        "high_priority_min_revenue": float,
        "high_priority_min_hours": float,
        "medium_priority_min_revenue": float,
        "fuzzy_candidate_threshold": int,
        "fuzzy_validation_threshold": int,
        "auto_match_confidence": int,
        "matching_rate_warning": float,
        "matching_rate_critical": float,
        "include_void_payroll": bool,
    }
    for key, cast in scalar_fields.items():
        if key in cfg:
            try:
                updates[key] = cast(cfg[key])
            except (TypeError, ValueError) as e:
                raise RulesConfigError(f"{key}: cannot use {cfg[key]!r}") from e

    target = updates.get("bcba_target_profit_margin", base.bcba_target_profit_margin)
    if not 0 <= target < 100:
        raise RulesConfigError(f"bcba_target_profit_margin: must be at least 0 and below 100, got {target}")

    return replace(base, **updates)


def _financial_fields() -> Tuple[str, ...]:
    from dataclasses import fields

    from models import FinancialMetrics

    return tuple(f.name for f in fields(FinancialMetrics))


def load_rules(config_name: str = CONFIG_NAME, config_dir: Optional[Path] = None) -> BusinessRules:
    """Load config/<config_name> (".json" optional) on top of the defaults."""
    if not config_name.endswith(".json"):
        config_name = f"{config_name}.json"
    path = (config_dir or CONFIG_DIR) / config_name
    if not path.exists():
        raise FileNotFoundError(f"Rules file not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        try:
            cfg = json.load(f)
        except json.JSONDecodeError as e:
            raise RulesConfigError(f"{path}: invalid JSON ({e})") from e
    if not isinstance(cfg, dict):
        raise RulesConfigError(f"{path}: top level must be an object")
    return rules_from_dict(cfg)
