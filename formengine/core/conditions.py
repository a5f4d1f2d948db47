"""
Conditions - Condition tree evaluation and field visibility

Responsibilities:
- Evaluate JSON condition trees (all / any / not / field leaves / lineItems)
- Decide field visibility from showWhen / hideWhen
- Provide value lookup contexts for top-level and row scope

Design principles:
- Pure functions over an explicit value context (no engine state)
- Never raises on malformed input: a malformed tree is "not evaluable",
  which evaluate() reports as False and visibility treats as "no effect"
- Unknown operators are logged and ignored, never guessed at

Condition grammar:
    {"all": [cond, ...]}                  empty list is True
    {"any": [cond, ...]}                  empty list is False
    {"not": cond}
    {"fieldId": "f", <operators>}         operators are ANDed
        equals: value | [values]          any actual value matches any expected
        notEquals: value | [values]       no actual value matches
        equalsField: "otherField"         actual values overlap other field's
        notEmpty: true | false
        greaterThan / lessThan: number    any numeric actual value passes
    {"lineItems": {"groupId": "g", "when": cond, "match": "any" | "all"}}
"""

import logging
from typing import Any, Dict, List, Optional

from formengine.utils.helpers import as_list, is_empty_value, to_number, to_text

logger = logging.getLogger(__name__)

LEAF_OPERATORS = ('equals', 'notEquals', 'equalsField', 'notEmpty', 'greaterThan', 'lessThan')


# ============================================================================
# Value contexts
# ============================================================================

class FormContext:
    """
    Top-level value lookup.

    Args:
        values: Top-level field values
        line_items: Group key -> rows (used by lineItems clauses)
    """

    def __init__(self, values: Optional[Dict[str, Any]] = None, line_items: Optional[Dict[str, list]] = None):
        self.values = values or {}
        self.line_items = line_items or {}

    def get_value(self, field_id: str) -> Any:
        return self.values.get(field_id)

    def get_line_value(self, row_id: str, field_id: str) -> Any:
        return None

    def get_rows(self, group_key: str) -> list:
        return list(self.line_items.get(group_key, []))


class RowContext(FormContext):
    """
    Row-scoped value lookup.

    get_value() resolves parent rows first (innermost first), then the
    top-level form. get_line_value() reads the current row, or another
    row of the same group by id.
    """

    def __init__(
        self,
        values: Optional[Dict[str, Any]],
        line_items: Optional[Dict[str, list]],
        group_key: str,
        row_id: str,
        row_values: Optional[Dict[str, Any]],
        parent_values: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(values, line_items)
        self.group_key = group_key
        self.row_id = row_id
        self.row_values = row_values or {}
        self.parent_values = parent_values or []

    def get_value(self, field_id: str) -> Any:
        for scope in self.parent_values:
            candidate = scope.get(field_id)
            if not is_empty_value(candidate):
                return candidate
        return self.values.get(field_id)

    def get_line_value(self, row_id: str, field_id: str) -> Any:
        if row_id == self.row_id:
            return self.row_values.get(field_id)
        for row in self.line_items.get(self.group_key, []):
            if row.id == row_id:
                return row.values.get(field_id)
        return None


# ============================================================================
# Public API
# ============================================================================

def evaluate(condition: Optional[dict], ctx: FormContext, row_id: Optional[str] = None) -> bool:
    """
    Evaluate a condition tree.

    Args:
        condition: Condition dict (None or {} is vacuously true)
        ctx: Value lookup context
        row_id: Row to resolve leaf fields against first

    Returns:
        bool: True only when the condition is well-formed and holds
    """
    return _evaluate(condition, ctx, row_id) is True


def should_hide_field(visibility: Optional[dict], ctx: FormContext, row_id: Optional[str] = None) -> bool:
    """
    Decide whether a field is hidden.

    showWhen false hides the field; hideWhen true hides it. A malformed
    condition never hides a field.

    Args:
        visibility: {'showWhen': cond} and/or {'hideWhen': cond}
        ctx: Value lookup context
        row_id: Row id when the field lives inside a repeating group
    """
    if not visibility or not isinstance(visibility, dict):
        return False

    show_when = visibility.get('showWhen')
    if show_when is not None:
        shown = _evaluate(show_when, ctx, row_id)
        if shown is False:
            return True

    hide_when = visibility.get('hideWhen')
    if hide_when is not None:
        hidden = _evaluate(hide_when, ctx, row_id)
        if hidden is True:
            return True

    return False


def lookup_value(ctx: FormContext, field_id: str, row_id: Optional[str] = None) -> Any:
    """Row value first (when non-empty), then the context's field lookup."""
    if row_id:
        direct = ctx.get_line_value(row_id, field_id)
        if not is_empty_value(direct):
            return direct
    return ctx.get_value(field_id)


# ============================================================================
# Evaluation
# ============================================================================

def _evaluate(condition: Any, ctx: FormContext, row_id: Optional[str]) -> Optional[bool]:
    """
    Tri-state evaluation: True, False, or None when not evaluable.
    """
    if condition is None:
        return True
    if not isinstance(condition, dict):
        logger.warning(f"Condition is not an object: {condition!r}")
        return None
    if not condition:
        return True  # Empty condition is vacuously true

    # Logical operators
    if "all" in condition:
        children = condition["all"]
        if not isinstance(children, list):
            logger.warning("Condition 'all' must be a list")
            return None
        results = [_evaluate(sub, ctx, row_id) for sub in children]
        if any(r is False for r in results):
            return False
        if any(r is None for r in results):
            return None
        return True  # Empty all = vacuous truth

    if "any" in condition:
        children = condition["any"]
        if not isinstance(children, list):
            logger.warning("Condition 'any' must be a list")
            return None
        results = [_evaluate(sub, ctx, row_id) for sub in children]
        if any(r is True for r in results):
            return True
        if any(r is None for r in results):
            return None
        return False  # Empty any = no conditions met

    if "not" in condition:
        inner = _evaluate(condition["not"], ctx, row_id)
        if inner is None:
            return None
        return not inner

    if "lineItems" in condition:
        return _evaluate_line_items(condition["lineItems"], ctx)

    if "fieldId" in condition:
        return _evaluate_leaf(condition, ctx, row_id)

    # Unknown operator
    logger.warning(f"Unknown condition operator: {list(condition.keys())}")
    return None


def _evaluate_leaf(leaf: dict, ctx: FormContext, row_id: Optional[str]) -> Optional[bool]:
    field_id = leaf.get("fieldId")
    if not isinstance(field_id, str) or not field_id:
        logger.warning(f"Condition leaf has no usable fieldId: {leaf!r}")
        return None

    unknown = [key for key in leaf if key != "fieldId" and key not in LEAF_OPERATORS]
    if unknown:
        logger.warning(f"Unknown condition operator(s) on '{field_id}': {unknown}")
        return None

    operators = [key for key in LEAF_OPERATORS if key in leaf]
    if not operators:
        logger.warning(f"Condition leaf on '{field_id}' has no operator")
        return None

    actual = as_list(lookup_value(ctx, field_id, row_id))
    actual = [v for v in actual if not is_empty_value(v)]

    for operator in operators:
        expected = leaf[operator]

        if operator == "equals":
            if not _any_match(actual, as_list(expected)):
                return False

        elif operator == "notEquals":
            if _any_match(actual, as_list(expected)):
                return False

        elif operator == "equalsField":
            if not isinstance(expected, str):
                return None
            other = as_list(lookup_value(ctx, expected, row_id))
            if not _any_match(actual, [v for v in other if not is_empty_value(v)]):
                return False

        elif operator == "notEmpty":
            if bool(expected) != bool(actual):
                return False

        elif operator in ("greaterThan", "lessThan"):
            threshold = to_number(expected)
            if threshold is None:
                logger.warning(f"Non-numeric {operator} threshold on '{field_id}': {expected!r}")
                return None
            numbers = [n for n in (to_number(v) for v in actual) if n is not None]
            if operator == "greaterThan":
                passed = any(n > threshold for n in numbers)
            else:
                passed = any(n < threshold for n in numbers)
            if not passed:
                return False

    return True


def _evaluate_line_items(clause: Any, ctx: FormContext) -> Optional[bool]:
    """
    {"groupId": g, "when": cond, "match": "any" | "all"} over the rows of g.
    """
    if not isinstance(clause, dict) or not isinstance(clause.get("groupId"), str):
        logger.warning(f"Malformed lineItems clause: {clause!r}")
        return None

    group_key = clause["groupId"]
    match = clause.get("match", "any")
    when = clause.get("when")
    rows = ctx.get_rows(group_key)

    results = []
    for row in rows:
        row_ctx = RowContext(ctx.values, ctx.line_items, group_key, row.id, row.values)
        results.append(_evaluate(when, row_ctx, row.id))

    if any(r is None for r in results):
        return None
    if match == "all":
        return bool(rows) and all(results)
    return any(results)


def _any_match(actual: list, expected: list) -> bool:
    expected_text = {to_text(v) for v in expected}
    return any(to_text(v) in expected_text for v in actual)
