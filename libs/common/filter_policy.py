from __future__ import annotations
from typing import Any, Dict, List, Optional

from libs.common.models import Rule, RuleGroup, NUMERIC_FIELDS, STRING_FIELDS
from libs.common.rules import parse_number, parse_between


def _numeric_condition(operator: str, value: str) -> Optional[List[dict]]:
    if operator == "between":
        rng = parse_between(value)
        if rng is None:
            return None
        return [{"numeric": [">=", rng[0], "<=", rng[1]]}]
    if operator not in (">", "<", ">=", "<=", "="):
        return None
    num = parse_number(value)
    if num is None:
        return None
    return [{"numeric": [operator, num]}]


def compile_filter_policy(pair: str, query: Optional[RuleGroup] = None) -> Dict[str, Any]:
    """Routing descriptor for one bot action.

    Always pins the pair. Only leaf rules directly under an AND root are
    lifted; nested groups and OR roots are left to the evaluator, so the
    descriptor can only let through more snapshots than the rule tree accepts.
    """
    policy: Dict[str, Any] = {"pair": [pair]}
    if query is None or query.combinator != "and":
        return policy

    for child in query.rules:
        if not isinstance(child, Rule):
            continue
        if child.field in NUMERIC_FIELDS:
            cond = _numeric_condition(child.operator, child.value)
            if cond:
                policy[child.field] = cond
        elif child.field in STRING_FIELDS and child.operator == "=":
            policy[child.field] = [child.value]
    return policy


def _numeric_ok(bounds: list, value: Any) -> bool:
    try:
        v = float(value)
    except (TypeError, ValueError):
        return False
    for i in range(0, len(bounds) - 1, 2):
        op, bound = bounds[i], float(bounds[i + 1])
        if op == ">" and not v > bound:
            return False
        if op == "<" and not v < bound:
            return False
        if op == ">=" and not v >= bound:
            return False
        if op == "<=" and not v <= bound:
            return False
        if op == "=" and not v == bound:
            return False
    return True


def policy_matches(policy: Dict[str, Any], attributes: Dict[str, Any]) -> bool:
    """Local stand-in for broker-side filtering: every key must match one of its conditions."""
    for key, conditions in policy.items():
        if key not in attributes:
            return False
        value = attributes[key]
        ok = False
        for cond in conditions:
            if isinstance(cond, dict) and "numeric" in cond:
                ok = _numeric_ok(cond["numeric"], value)
            else:
                ok = str(value) == str(cond)
            if ok:
                break
        if not ok:
            return False
    return True
