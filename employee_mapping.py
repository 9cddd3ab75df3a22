"""
Employee identity matching between the billing and payroll systems.

Provides name normalization, the exact payroll -> billing mapping table,
and a fuzzy matcher built from an ordered chain of named strategies
(edit distance plus last/first-name structure) with confidence scoring.
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from rapidfuzz.distance import Levenshtein

from business_rules import DEFAULT_RULES, BusinessRules
from models import UnmatchedEmployee

log = logging.getLogger(__name__)


def round_half_up(value: float) -> int:
    """Round .5 upward, the way the dashboard figures were always rounded."""
    return int(math.floor(value + 0.5))


# =========================
# NORMALIZATION
# =========================

_SPECIAL_CHARS = re.compile(r"[^\w\s,]", re.ASCII)
_WHITESPACE = re.compile(r"\s+")
_COMMA_SPACING = re.compile(r",\s*")


def normalize_name(name: Optional[str]) -> str:
    """
    Canonical comparison form: lower-case, trimmed, punctuation removed
    (commas kept), whitespace collapsed and ", " comma spacing.

    Idempotent: normalize_name(normalize_name(x)) == normalize_name(x).
    """
    if not name:
        return ""
    out = str(name).lower().strip()
    out = _SPECIAL_CHARS.sub("", out)
    out = _WHITESPACE.sub(" ", out)
    out = _COMMA_SPACING.sub(", ", out)
    return out.strip()


def apply_exact_mapping(name: str, rules: BusinessRules = DEFAULT_RULES) -> str:
    """
    Map a payroll spelling to its billing spelling.

    The raw name is looked up first, then its normalized form; names that
    are not in the table come back unchanged.
    """
    if name in rules.name_mapping:
        return rules.name_mapping[name]
    return rules.normalized_name_mapping.get(normalize_name(name), name)


def has_exact_mapping(name: str, rules: BusinessRules = DEFAULT_RULES) -> bool:
    return name in rules.name_mapping or normalize_name(name) in rules.normalized_name_mapping


def is_hr_staff(name: str, rules: BusinessRules = DEFAULT_RULES) -> bool:
    """HR staff are excluded from billable utilization and cost."""
    hr = rules.normalized_hr_staff
    return normalize_name(name) in hr or normalize_name(apply_exact_mapping(name, rules)) in hr


# =========================
# SIMILARITY
# =========================

def calculate_name_similarity(name1: str, name2: str) -> int:
    """Normalized Levenshtein similarity, 0 to 100."""
    if not name1 or not name2:
        return 0

    norm1 = normalize_name(name1)
    norm2 = normalize_name(name2)
    if norm1 == norm2:
        return 100

    max_length = max(len(norm1), len(norm2))
    if max_length == 0:
        return 0

    distance = Levenshtein.distance(norm1, norm2)
    return round_half_up((1 - distance / max_length) * 100)


@dataclass(frozen=True)
class NameParts:
    first: str
    last: str
    middle: str = ""


def extract_name_parts(full_name: str) -> NameParts:
    """
    Split a name into first / middle / last.

    "Last, First Middle" when a comma is present, otherwise
    "First [Middle ...] Last".
    """
    normalized = normalize_name(full_name)

    if "," in normalized:
        pieces = normalized.split(",")
        last = pieces[0].strip()
        rest = pieces[1].strip() if len(pieces) > 1 else ""
        tokens = rest.split()
        return NameParts(
            first=tokens[0] if tokens else "",
            last=last,
            middle=" ".join(tokens[1:]),
        )

    tokens = normalized.split()
    if not tokens:
        return NameParts(first="", last="")
    if len(tokens) == 1:
        return NameParts(first=tokens[0], last="")
    if len(tokens) == 2:
        return NameParts(first=tokens[0], last=tokens[1])
    return NameParts(first=tokens[0], last=tokens[-1], middle=" ".join(tokens[1:-1]))


# =========================
# MATCH STRATEGIES
# =========================

@dataclass(frozen=True)
class NameComparison:
    """Everything a strategy needs about one target/candidate pair."""
    full_similarity: int
    last_similarity: int
    first_similarity: int
    exact_last: bool
    first_initial: bool

    @classmethod
    def build(cls, target: str, candidate: str) -> "NameComparison":
        t = extract_name_parts(target)
        c = extract_name_parts(candidate)
        return cls(
            full_similarity=calculate_name_similarity(target, candidate),
            last_similarity=calculate_name_similarity(t.last, c.last),
            first_similarity=calculate_name_similarity(t.first, c.first),
            exact_last=bool(t.last) and t.last == c.last,
            first_initial=t.first[:1] == c.first[:1],
        )


StrategyResult = Optional[Tuple[float, str]]


@dataclass(frozen=True)
class MatchStrategy:
    name: str
    reason: str
    score: Callable[[NameComparison], Optional[float]]

    def evaluate(self, cmp: NameComparison) -> StrategyResult:
        confidence = self.score(cmp)
        if confidence is None:
            return None
        return confidence, self.reason


def _last_and_initial(cmp: NameComparison) -> Optional[float]:
    if cmp.exact_last and cmp.first_initial:
        return max(85.0, (cmp.last_similarity + cmp.first_similarity) / 2)
    return None


def _last_only(cmp: NameComparison) -> Optional[float]:
    if cmp.exact_last:
        return max(75.0, float(cmp.last_similarity))
    return None


def _high_full_name(cmp: NameComparison) -> Optional[float]:
    if cmp.full_similarity >= 90:
        return float(cmp.full_similarity)
    return None


def _strong_last_partial_first(cmp: NameComparison) -> Optional[float]:
    if cmp.last_similarity >= 80 and cmp.first_similarity >= 60:
        return cmp.last_similarity * 0.7 + cmp.first_similarity * 0.3
    return None


def _general(cmp: NameComparison) -> Optional[float]:
    return float(cmp.full_similarity)


# Evaluated in order; the first strategy that applies sets the confidence.
MATCH_STRATEGIES: Tuple[MatchStrategy, ...] = (
    MatchStrategy("last_name_first_initial", "Exact last name + first initial match", _last_and_initial),
    MatchStrategy("last_name", "Exact last name match", _last_only),
    MatchStrategy("full_name", "High full name similarity", _high_full_name),
    MatchStrategy("last_name_partial_first", "Strong last name + partial first name match", _strong_last_partial_first),
    MatchStrategy("general", "General name similarity", _general),
)


def score_candidate(
    target: str,
    candidate: str,
    strategies: Sequence[MatchStrategy] = MATCH_STRATEGIES,
) -> Tuple[float, str]:
    cmp = NameComparison.build(target, candidate)
    for strategy in strategies:
        result = strategy.evaluate(cmp)
        if result is not None:
            return result
    return 0.0, "No strategy applied"


# =========================
# MATCHING
# =========================

@dataclass(frozen=True)
class FuzzyMatch:
    name: str
    confidence: int
    reason: str


@dataclass(frozen=True)
class EmployeeMappingResult:
    fuzzy_matches: Tuple[FuzzyMatch, ...]
    confidence: int
    should_auto_match: bool
    exact_match: Optional[str] = None


def find_employee_matches(
    target_name: str,
    candidate_names: Sequence[str],
    threshold: Optional[int] = None,
    rules: BusinessRules = DEFAULT_RULES,
) -> EmployeeMappingResult:
    """
    Match one name against a list of candidates.

    A name in the exact-mapping table is resolved immediately (confidence
    100) and never scored. Otherwise every candidate is scored through the
    strategy chain; candidates at or above threshold are kept, highest
    confidence first. Auto-matching requires a single surviving candidate
    at auto_match_confidence or better: several near-matches stay
    unresolved for a human to decide.
    """
    if threshold is None:
        threshold = rules.fuzzy_candidate_threshold

    if has_exact_mapping(target_name, rules):
        return EmployeeMappingResult(
            fuzzy_matches=(),
            confidence=100,
            should_auto_match=True,
            exact_match=apply_exact_mapping(target_name, rules),
        )

    matches: List[FuzzyMatch] = []
    for candidate in candidate_names:
        confidence, reason = score_candidate(target_name, candidate)
        if confidence >= threshold:
            matches.append(FuzzyMatch(candidate, round_half_up(confidence), reason))

    # sorted() is stable, so equal confidences keep candidate order.
    matches = sorted(matches, key=lambda m: m.confidence, reverse=True)
    top = matches[0].confidence if matches else 0

    return EmployeeMappingResult(
        fuzzy_matches=tuple(matches),
        confidence=top,
        should_auto_match=top >= rules.auto_match_confidence and len(matches) == 1,
    )


def get_all_unique_employees(
    billing_names: Sequence[str],
    payroll_names: Sequence[str],
    rules: BusinessRules = DEFAULT_RULES,
) -> List[str]:
    """Sorted roster across both systems, payroll spellings mapped to billing ones."""
    names = {apply_exact_mapping(n, rules) for n in billing_names}
    names.update(apply_exact_mapping(n, rules) for n in payroll_names)
    return sorted(names)


def resolve_payroll_identities(
    payroll_names: Sequence[str],
    billing_names: Sequence[str],
    rules: BusinessRules = DEFAULT_RULES,
) -> Dict[str, str]:
    """
    Promote payroll-only names onto billing-only names by fuzzy match.

    Both inputs are canonical (already exact-mapped) display names with no
    counterpart on the other side. Returns {payroll name: billing name} for
    every unambiguous auto-match; each billing name is claimed at most once.
    """
    available = list(billing_names)
    promoted: Dict[str, str] = {}

    for payroll_name in payroll_names:
        if not available:
            break
        result = find_employee_matches(
            payroll_name, available, rules.fuzzy_validation_threshold, rules
        )
        if result.exact_match is not None:
            continue
        if result.should_auto_match:
            billing_name = result.fuzzy_matches[0].name
            promoted[payroll_name] = billing_name
            available.remove(billing_name)
            log.debug(
                "Promoted payroll name %r onto billing name %r (confidence %d)",
                payroll_name, billing_name, result.confidence,
            )
        elif len(result.fuzzy_matches) > 1:
            log.warning(
                "Ambiguous match for %r: %s",
                payroll_name, ", ".join(m.name for m in result.fuzzy_matches),
            )

    return promoted


# =========================
# MATCHING VALIDATION
# =========================

@dataclass(frozen=True)
class MatchingSummary:
    total_billing_employees: int
    total_payroll_employees: int
    matched_employees: int
    unmatched_billing: Tuple[str, ...]
    unmatched_payroll: Tuple[str, ...]
    matching_rate: int


def validate_employee_matching(
    billing_names: Sequence[str],
    payroll_names: Sequence[str],
    rules: BusinessRules = DEFAULT_RULES,
) -> MatchingSummary:
    """
    Pair up the two rosters.

    Each billing name is exact-mapped and looked up among the (also
    exact-mapped) payroll names. Direct pairs are settled first; the
    billing names left over are then fuzzy matched at the validation
    threshold against payroll names no one has claimed, and only an
    auto-match counts. A payroll name is claimed at most once. The
    matching rate is matched identities over all distinct identities
    (matched pairs plus both unmatched residuals).
    """
    billing_names = list(dict.fromkeys(billing_names))
    payroll_names = list(dict.fromkeys(payroll_names))

    payroll_index: Dict[str, str] = {}
    for name in payroll_names:
        payroll_index.setdefault(normalize_name(apply_exact_mapping(name, rules)), name)

    matched_billing = set()
    matched_payroll = set()

    leftover = []
    for billing_name in billing_names:
        direct = payroll_index.get(normalize_name(apply_exact_mapping(billing_name, rules)))
        if direct is None or direct in matched_payroll:
            leftover.append(billing_name)
            continue
        matched_billing.add(billing_name)
        matched_payroll.add(direct)

    for billing_name in leftover:
        remaining = [n for n in payroll_names if n not in matched_payroll]
        if not remaining:
            break
        mapped = apply_exact_mapping(billing_name, rules)
        result = find_employee_matches(mapped, remaining, rules.fuzzy_validation_threshold, rules)
        if result.should_auto_match and result.fuzzy_matches:
            matched_billing.add(billing_name)
            matched_payroll.add(result.fuzzy_matches[0].name)

    unmatched_billing = tuple(n for n in billing_names if n not in matched_billing)
    unmatched_payroll = tuple(n for n in payroll_names if n not in matched_payroll)

    total_unique = len(matched_billing) + len(unmatched_billing) + len(unmatched_payroll)
    rate = (len(matched_billing) / total_unique) * 100 if total_unique > 0 else 0.0

    return MatchingSummary(
        total_billing_employees=len(billing_names),
        total_payroll_employees=len(payroll_names),
        matched_employees=len(matched_billing),
        unmatched_billing=unmatched_billing,
        unmatched_payroll=unmatched_payroll,
        matching_rate=round_half_up(rate),
    )


def diagnose_unmatched(
    summary: MatchingSummary,
    rules: BusinessRules = DEFAULT_RULES,
) -> Tuple[UnmatchedEmployee, ...]:
    """
    Describe every unmatched name with the candidates a reviewer should look at.

    Candidates come from the other source's unmatched names at the
    candidate threshold. Several candidates are reported as ambiguous and
    are never resolved automatically.
    """
    out: List[UnmatchedEmployee] = []
    sides = (
        ("billing", summary.unmatched_billing, summary.unmatched_payroll, "payroll"),
        ("payroll", summary.unmatched_payroll, summary.unmatched_billing, "billing"),
    )
    for source, names, others, other_label in sides:
        for name in names:
            target = apply_exact_mapping(name, rules)
            result = find_employee_matches(target, others, rules.fuzzy_candidate_threshold, rules)
            suggestions = tuple(m.name for m in result.fuzzy_matches)

            if len(suggestions) > 1:
                reason = f"Ambiguous: {len(suggestions)} possible {other_label} matches"
            elif suggestions:
                reason = f"Possible {other_label} match below auto-match confidence"
            else:
                reason = f"No matching {other_label} record found"

            out.append(
                UnmatchedEmployee(
                    name=name,
                    source=source,
                    reason=reason,
                    suggested_matches=suggestions,
                    confidence=result.confidence if suggestions else 0,
                )
            )
    return tuple(out)
