"""
Validation - Conditional rules and whole-form validation

Responsibilities:
- Run conditional validation rules (when -> then) for a phase
- Check required fields, required groups, row bounds and duplicate rows
- Report every failure as a structured ValidationError with a flat path

Design principles:
- Hidden fields are never validated; a hidden group hides all its rows
- Required checks always run; rule phases only gate conditional rules
- The change phase runs 'change' and 'both' rules; the submit phase
  runs every rule
- Never raises on data shape problems
"""

import logging
from collections import Counter
from typing import Any, Callable, Dict, List, Optional, Sequence

from formengine.contracts import (
    FIELD_LINE_ITEM_GROUP,
    PHASE_BOTH,
    PHASE_SUBMIT,
    FormDefinition,
    LineItemGroupConfig,
    LineItemRowState,
    RuleThen,
    ValidationError,
    ValidationRule,
)
from formengine.core.conditions import FormContext, RowContext, evaluate, lookup_value, should_hide_field
from formengine.core.line_items import build_subgroup_key, is_empty_row, row_field_path
from formengine.utils.helpers import as_list, is_empty_value, to_number, to_text
from formengine.utils.i18n import default_message, resolve_localized_string

logger = logging.getLogger(__name__)


class ValidationContext:
    """
    Everything a rule run needs.

    Args:
        scope: Value context the rules' conditions evaluate against
        language: Message language
        phase: 'change' or 'submit'
        is_hidden: field_id -> hidden?, for the rules' target fields
        row_id: Row the rules belong to (None at top level)
        path_for: field_id -> error path
    """

    def __init__(
        self,
        scope: FormContext,
        language: Optional[str] = None,
        phase: str = PHASE_SUBMIT,
        is_hidden: Optional[Callable[[str], bool]] = None,
        row_id: Optional[str] = None,
        path_for: Optional[Callable[[str], str]] = None,
        group_key: Optional[str] = None,
    ):
        self.scope = scope
        self.language = language
        self.phase = phase
        self.is_hidden = is_hidden
        self.row_id = row_id
        self.path_for = path_for or (lambda field_id: field_id)
        self.group_key = group_key

    def get_value(self, field_id: str) -> Any:
        return lookup_value(self.scope, field_id, self.row_id)


# ============================================================================
# Public API
# ============================================================================

def rule_applies_to_phase(rule: ValidationRule, phase: str) -> bool:
    rule_phase = rule.phase or PHASE_BOTH
    if phase == PHASE_SUBMIT:
        return True
    return rule_phase in (PHASE_BOTH, phase)


def check_rule(
    value: Any,
    then: RuleThen,
    language: Optional[str] = None,
    message: Any = None,
    get_value: Optional[Callable[[str], Any]] = None,
) -> Optional[str]:
    """
    Check one rule's constraints against the target value.

    Returns:
        The error message, or None when the value satisfies every
        constraint. A RuleThen without constraints always fails.
    """
    custom = resolve_localized_string(message, language) if message else ''

    if not then.has_constraints:
        return custom or default_message('invalid', language)

    if then.required and is_empty_value(value):
        return custom or default_message('required', language)

    if is_empty_value(value):
        return None  # Only 'required' constrains an empty value

    lower = then.min
    upper = then.max
    if get_value is not None:
        if then.min_field_id:
            lower = to_number(get_value(then.min_field_id))
        if then.max_field_id:
            upper = to_number(get_value(then.max_field_id))

    if lower is not None or upper is not None:
        numbers = [to_number(v) for v in as_list(value)]
        numbers = [n for n in numbers if n is not None]
        if lower is not None and any(n < lower for n in numbers):
            return custom or default_message('min', language, min=_fmt(lower))
        if upper is not None and any(n > upper for n in numbers):
            return custom or default_message('max', language, max=_fmt(upper))

    texts = [to_text(v) for v in as_list(value)]
    if then.allowed:
        allowed = {to_text(v) for v in then.allowed}
        if any(t not in allowed for t in texts):
            return custom or default_message('allowed', language, values=', '.join(then.allowed))
    if then.disallowed:
        disallowed = {to_text(v) for v in then.disallowed}
        if any(t in disallowed for t in texts):
            return custom or default_message('disallowed', language, values=', '.join(then.disallowed))

    return None


def validate_rules(rules: Sequence[ValidationRule], ctx: ValidationContext) -> List[ValidationError]:
    """
    Run conditional rules; one error per violated rule.

    A rule is skipped when its phase does not apply, its `when` does not
    hold, or its target field is hidden.
    """
    errors = []
    for rule in rules:
        if not rule_applies_to_phase(rule, ctx.phase):
            continue
        if not evaluate(rule.when, ctx.scope, ctx.row_id):
            continue

        target = rule.then.field_id
        if ctx.is_hidden is not None and ctx.is_hidden(target):
            continue

        message = check_rule(ctx.get_value(target), rule.then, ctx.language, rule.message, ctx.get_value)
        if message:
            errors.append(ValidationError(
                field_id=target,
                message=message,
                path=ctx.path_for(target),
                kind='rule',
                group_key=ctx.group_key,
                row_id=ctx.row_id,
            ))
    return errors


def validate_form(
    definition: FormDefinition,
    values: Dict[str, Any],
    line_items: Dict[str, List[LineItemRowState]],
    phase: str = PHASE_SUBMIT,
    language: Optional[str] = None,
) -> List[ValidationError]:
    """
    Validate the whole form.

    Args:
        definition: Form definition
        values: Top-level values
        line_items: Group key -> rows
        phase: 'change' or 'submit'
        language: Message language

    Returns:
        Every validation error, in question order
    """
    language = language or definition.default_language
    top = FormContext(values, line_items)
    errors: List[ValidationError] = []

    def top_hidden(field_id: str) -> bool:
        question = definition.question(field_id)
        return question is not None and should_hide_field(question.visibility, top)

    for question in definition.questions:
        hidden = should_hide_field(question.visibility, top)

        if question.validation_rules:
            errors.extend(validate_rules(
                question.validation_rules,
                ValidationContext(top, language, phase, is_hidden=top_hidden),
            ))

        if hidden:
            continue

        if question.type == FIELD_LINE_ITEM_GROUP and question.line_item_config is not None:
            rows = line_items.get(question.id, [])
            if question.required and not any(not is_empty_row(row) for row in rows):
                errors.append(_required_error(question.id, question.id, question.required_message, language))
            errors.extend(_validate_group(
                question.line_item_config, question.id, rows, values, line_items, [], phase, language, top_hidden,
            ))
            continue

        if question.required and is_empty_value(values.get(question.id)):
            errors.append(_required_error(question.id, question.id, question.required_message, language))

    logger.debug(f"Validation ({phase}) found {len(errors)} error(s)")
    return errors


# ============================================================================
# Groups
# ============================================================================

def _validate_group(
    config: LineItemGroupConfig,
    group_key: str,
    rows: List[LineItemRowState],
    values: Dict[str, Any],
    line_items: Dict[str, List[LineItemRowState]],
    parent_values: List[Dict[str, Any]],
    phase: str,
    language: Optional[str],
    top_hidden: Callable[[str], bool],
) -> List[ValidationError]:
    errors: List[ValidationError] = []
    field_ids = {f.id for f in config.fields}

    for row in rows:
        scope = RowContext(values, line_items, group_key, row.id, row.values, parent_values)

        def row_hidden(field_id: str, _scope=scope, _row=row) -> bool:
            row_field = config.get_field(field_id)
            if row_field is None:
                return top_hidden(field_id)
            return should_hide_field(row_field.visibility, _scope, _row.id)

        def path_for(field_id: str, _row=row) -> str:
            if field_id in field_ids:
                return row_field_path(group_key, field_id, _row.id)
            return field_id

        for row_field in config.fields:
            if row_field.validation_rules:
                errors.extend(validate_rules(
                    row_field.validation_rules,
                    ValidationContext(scope, language, phase, row_hidden, row.id, path_for, group_key),
                ))

            if row_hidden(row_field.id):
                continue
            if row_field.required and is_empty_value(row.values.get(row_field.id)):
                errors.append(_required_error(
                    row_field.id,
                    row_field_path(group_key, row_field.id, row.id),
                    row_field.required_message,
                    language,
                    group_key,
                    row.id,
                ))

        for sub in config.sub_groups:
            sub_key = build_subgroup_key(group_key, row.id, sub.id)
            errors.extend(_validate_group(
                sub, sub_key, line_items.get(sub_key, []), values, line_items,
                [row.values] + parent_values, phase, language, top_hidden,
            ))

    errors.extend(_check_row_bounds(config, group_key, rows, language))
    errors.extend(_check_dedup(config, group_key, rows, language))
    return errors


def _check_row_bounds(config, group_key, rows, language) -> List[ValidationError]:
    errors = []
    filled = [row for row in rows if not is_empty_row(row)]
    if config.min_rows is not None and len(filled) < config.min_rows:
        errors.append(ValidationError(
            field_id=group_key,
            message=default_message('min_rows', language, min=config.min_rows),
            path=group_key,
            kind='min_rows',
            group_key=group_key,
        ))
    if config.max_rows is not None and len(rows) > config.max_rows:
        errors.append(ValidationError(
            field_id=group_key,
            message=default_message('max_rows', language, max=config.max_rows),
            path=group_key,
            kind='max_rows',
            group_key=group_key,
        ))
    return errors


def _check_dedup(config, group_key, rows, language) -> List[ValidationError]:
    """Every row sharing a non-empty key with another row is an error."""
    errors = []
    for rule in config.dedup_rules:
        if not rule.fields:
            continue
        keyed = []
        for row in rows:
            parts = [row.values.get(f) for f in rule.fields]
            if any(is_empty_value(p) for p in parts):
                continue
            keyed.append((tuple(to_text(p).lower() for p in parts), row))
        counts = Counter(key for key, _ in keyed)
        for key, row in keyed:
            if counts[key] > 1:
                message = resolve_localized_string(rule.message, language) or default_message('duplicate', language)
                errors.append(ValidationError(
                    field_id=rule.fields[0],
                    message=message,
                    path=row_field_path(group_key, rule.fields[0], row.id),
                    kind='duplicate',
                    group_key=group_key,
                    row_id=row.id,
                ))
    return errors


def _required_error(field_id, path, custom_message, language, group_key=None, row_id=None) -> ValidationError:
    message = resolve_localized_string(custom_message, language) if custom_message else ''
    return ValidationError(
        field_id=field_id,
        message=message or default_message('required', language),
        path=path,
        kind='required',
        group_key=group_key,
        row_id=row_id,
    )


def _fmt(number: float) -> str:
    return str(int(number)) if float(number).is_integer() else str(number)
