from __future__ import annotations
import math
from typing import Optional, Tuple, Union

from libs.common.models import IndicatorSnapshot, Rule, RuleGroup, NUMERIC_FIELDS, STRING_FIELDS


NUMERIC_OPERATORS = (">", "<", ">=", "<=", "=", "between")


def parse_number(raw: str) -> Optional[float]:
    # parsing strict: "12abc" ou "" -> None, jamais d'exception
    try:
        v = float(str(raw).strip())
    except (TypeError, ValueError):
        return None
    if math.isnan(v):
        return None
    return v


def parse_between(raw: str) -> Optional[Tuple[float, float]]:
    """`"a, b"` -> (a, b); anything other than exactly two numeric tokens -> None."""
    parts = str(raw).split(",")
    if len(parts) != 2:
        return None
    lo, hi = parse_number(parts[0]), parse_number(parts[1])
    if lo is None or hi is None:
        return None
    return lo, hi


def evaluate_rule(rule: Rule, snapshot: IndicatorSnapshot) -> bool:
    if rule.field in NUMERIC_FIELDS:
        current = float(getattr(snapshot, rule.field))
        op = rule.operator
        if op == "between":
            rng = parse_between(rule.value)
            if rng is None:
                return False
            return rng[0] <= current <= rng[1]
        target = parse_number(rule.value)
        if target is None:
            return False
        if op == ">":
            return current > target
        if op == "<":
            return current < target
        if op == ">=":
            return current >= target
        if op == "<=":
            return current <= target
        if op == "=":
            return current == target
        return False

    if rule.field in STRING_FIELDS:
        if rule.operator != "=":
            return False
        return getattr(snapshot, rule.field) == rule.value

    return False


def evaluate(node: Union[RuleGroup, Rule, None], snapshot: IndicatorSnapshot) -> bool:
    """Evaluate a rule tree against one snapshot.

    AND needs every child true, OR needs one; an empty group is false for both.
    Unknown fields, operators and malformed values count as a non-match.
    """
    if node is None:
        return False
    if isinstance(node, Rule):
        return evaluate_rule(node, snapshot)
    if not node.rules:
        return False
    if node.combinator == "and":
        return all(evaluate(child, snapshot) for child in node.rules)
    return any(evaluate(child, snapshot) for child in node.rules)
