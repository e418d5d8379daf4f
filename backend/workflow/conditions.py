"""Single-condition predicates for conditional steps.

A condition is either a lone value (usually one ``{{ }}`` token) tested
for truthiness, or a comparison:

    {"left": "{{ fresh.length }}", "operator": "greaterThan", "right": 0}

Both sides are interpolated before the operator is applied. For the
unary operators (exists, notExists, isEmpty, isNotEmpty) a left side
that points at a missing key reads as ``None`` instead of failing.
"""

from typing import Any

from core.exceptions import UnresolvedReferenceError, ValidationError
from workflow.interpolation import BindingEnvironment, interpolate


def _number(value: Any) -> float:
    if isinstance(value, bool):
        raise TypeError("booleans are not numbers")
    return float(value)


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, dict, tuple)):
        return len(value) == 0
    return False


def _contains(container: Any, item: Any) -> bool:
    if isinstance(container, str):
        return str(item) in container
    if isinstance(container, dict):
        return item in container
    if isinstance(container, (list, tuple)):
        return item in container
    return False


OPERATORS = {
    "equals": lambda l, r: l == r,
    "notEquals": lambda l, r: l != r,
    "greaterThan": lambda l, r: _number(l) > _number(r),
    "greaterThanOrEqual": lambda l, r: _number(l) >= _number(r),
    "lessThan": lambda l, r: _number(l) < _number(r),
    "lessThanOrEqual": lambda l, r: _number(l) <= _number(r),
    "contains": _contains,
    "notContains": lambda l, r: not _contains(l, r),
    "exists": lambda l, r: l is not None,
    "notExists": lambda l, r: l is None,
    "isEmpty": lambda l, r: _is_empty(l),
    "isNotEmpty": lambda l, r: not _is_empty(l),
}

OPERATOR_ALIASES = {
    "==": "equals",
    "eq": "equals",
    "!=": "notEquals",
    "ne": "notEquals",
    ">": "greaterThan",
    "gt": "greaterThan",
    ">=": "greaterThanOrEqual",
    "gte": "greaterThanOrEqual",
    "<": "lessThan",
    "lt": "lessThan",
    "<=": "lessThanOrEqual",
    "lte": "lessThanOrEqual",
}

UNARY_OPERATORS = {"exists", "notExists", "isEmpty", "isNotEmpty"}


def is_comparison(condition: Any) -> bool:
    return isinstance(condition, dict) and "operator" in condition


def operator_name(condition: dict) -> str:
    raw = str(condition.get("operator", ""))
    return OPERATOR_ALIASES.get(raw, raw)


def check_condition(condition: Any) -> list[str]:
    """Static problems with a condition's shape."""
    if condition is None:
        return ["condition is required"]
    if not is_comparison(condition):
        return []
    problems = []
    op = operator_name(condition)
    if op not in OPERATORS:
        problems.append(f"unknown operator '{condition.get('operator')}'")
    if "left" not in condition:
        problems.append("condition needs 'left'")
    if op in OPERATORS and op not in UNARY_OPERATORS and "right" not in condition:
        problems.append(f"operator '{op}' needs 'right'")
    return problems


def evaluate_condition(condition: Any, env: BindingEnvironment) -> bool:
    """Evaluate a condition once against the binding environment."""
    problems = check_condition(condition)
    if problems:
        raise ValidationError(issues=problems)

    if not is_comparison(condition):
        value = interpolate(condition, env)
        if isinstance(value, str):
            return value.strip().lower() not in ("", "false", "0", "null", "none")
        return bool(value) and not _is_empty(value)

    op = operator_name(condition)
    try:
        left = interpolate(condition.get("left"), env)
    except UnresolvedReferenceError:
        if op not in UNARY_OPERATORS:
            raise
        left = None
    right = interpolate(condition.get("right"), env)
    try:
        return bool(OPERATORS[op](left, right))
    except (TypeError, ValueError) as e:
        raise ValueError(
            f"cannot apply '{operator_name(condition)}' to {left!r} and {right!r}: {e}"
        ) from e
