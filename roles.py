"""Technician / supervisor classification from billed service codes."""

from collections import Counter
from typing import Iterable

from business_rules import DEFAULT_RULES, BusinessRules
from models import Role


def classify_role(codes: Iterable[int], rules: BusinessRules = DEFAULT_RULES) -> Role:
    """
    Classify an employee from the service code of each of their billing rows.

    Only technician codes -> TECH, only supervisor codes -> BCBA; when both
    appear the role with more rows wins and a tie goes to TECH. Codes in
    neither set are ignored; no recognised rows at all -> TECH.
    """
    tech_codes = rules.tech.service_codes
    bcba_codes = rules.bcba.service_codes

    counts = Counter()
    for code in codes:
        if code in tech_codes:
            counts["TECH"] += 1
        elif code in bcba_codes:
            counts["BCBA"] += 1

    if counts["BCBA"] > counts["TECH"]:
        return "BCBA"
    return "TECH"


def hourly_rate(role: Role, rules: BusinessRules = DEFAULT_RULES) -> float:
    return rules.roles[role].hourly_rate
