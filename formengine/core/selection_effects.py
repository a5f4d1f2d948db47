"""
Selection Effects - Dispatch a field's declared effects to row capabilities

Responsibilities:
- Decide, per effect, whether a value change populates, retracts, clears
  or deletes rows in a target group
- Resolve preset references ($row.X, $top.X, $value) into row values
- Scope every effect to a context id so the same field in two rows never
  touches the other row's results

Design principles:
- Stateless: all state lives behind the capabilities the caller supplies
- A partially filled row counts as "no value", which retracts instead of
  populating
- Retraction is keyed by (context id, effect id); nothing else is touched

Usage:
    outcomes = dispatch(field, value, capabilities, EffectOptions(top_values=values))
"""

import logging
from dataclasses import dataclass, field as dataclass_field, replace
from typing import Any, Dict, List, Optional, Protocol, Tuple

from formengine.contracts import (
    EFFECT_ADD_LINE_ITEMS,
    EFFECT_CLEAR_LINE_ITEMS,
    EFFECT_DELETE_LINE_ITEMS,
    QuestionDefinition,
    SelectionEffect,
)
from formengine.core.conditions import FormContext, RowContext, evaluate
from formengine.core.line_items import build_line_context_id
from formengine.utils.helpers import as_list, is_empty_value, to_text

logger = logging.getLogger(__name__)

GLOBAL_CONTEXT_ID = '__global__'
ROW_REF_PREFIX = '$row.'
TOP_REF_PREFIX = '$top.'
VALUE_REF = '$value'


class EffectCapabilities(Protocol):
    """What the dispatcher may do to rows."""

    def add_row_to_group(self, group_id: str, preset: Optional[Dict[str, Any]] = None,
                         meta: Optional[Dict[str, Any]] = None) -> Optional[str]:
        ...

    def clear_group(self, group_id: str, context_id: Optional[str] = None,
                    effect_id: Optional[str] = None) -> int:
        ...


@dataclass(frozen=True)
class LineItemScope:
    """The row a field lives in, when the changed field is a row field."""
    group_key: str
    row_id: str
    row_values: Dict[str, Any] = dataclass_field(default_factory=dict)
    parent_values: Tuple[Dict[str, Any], ...] = ()


@dataclass(frozen=True)
class EffectOptions:
    """
    Dispatch options.

    Attributes:
        context_id: Explicit context id; defaults to the row's line context
            id, or GLOBAL_CONTEXT_ID at top level
        top_values: Top-level values (for $top.X and `when` conditions)
        line_item: Row scope of the changed field
        force_context_reset: Retract every populate effect of this context
            (row removal, invalidated dependency)
    """
    context_id: Optional[str] = None
    top_values: Dict[str, Any] = dataclass_field(default_factory=dict)
    line_item: Optional[LineItemScope] = None
    force_context_reset: bool = False


@dataclass(frozen=True)
class EffectOutcome:
    """What one effect did: 'populate', 'retract', 'clear', 'delete' or 'skip'."""
    effect_id: str
    action: str
    group_id: str
    row_id: Optional[str] = None
    removed: int = 0


# ============================================================================
# Public API
# ============================================================================

def dispatch(
    question: QuestionDefinition,
    new_value: Any,
    capabilities: EffectCapabilities,
    opts: Optional[EffectOptions] = None,
) -> List[EffectOutcome]:
    """
    Run every selection effect declared on a field.

    Args:
        question: Field whose value changed
        new_value: Its new value
        capabilities: Row operations (add_row_to_group / clear_group)
        opts: Context, scope and reset options

    Returns:
        One EffectOutcome per declared effect, in declaration order

    Raises:
        TypeError: If capabilities lacks a required operation
    """
    if not question.selection_effects:
        return []

    _validate_capabilities(capabilities)
    opts = opts or EffectOptions()
    context_id = resolve_context_id(question.id, opts)
    scope = _condition_scope(opts)

    outcomes = []
    for index, effect in enumerate(question.selection_effects):
        effect_id = effect.id or f"{question.id}#{index}"
        value = effective_value(effect, new_value, opts)
        matched = value is not None and applies(effect, value)
        if matched and effect.when is not None:
            matched = evaluate(effect.when, scope, opts.line_item.row_id if opts.line_item else None)

        logger.debug(
            f"Effect {effect_id} ({effect.type}) on {question.id}: "
            f"value={value!r} matched={matched} context={context_id}"
        )

        if effect.type == EFFECT_ADD_LINE_ITEMS:
            if matched:
                preset = resolve_preset(effect.preset, value, opts)
                row_id = capabilities.add_row_to_group(
                    effect.group_id, preset, {'context_id': context_id, 'effect_id': effect_id},
                )
                action = 'populate' if row_id else 'skip'
                outcomes.append(EffectOutcome(effect_id, action, effect.group_id, row_id=row_id))
            else:
                removed = capabilities.clear_group(effect.group_id, context_id=context_id, effect_id=effect_id)
                outcomes.append(EffectOutcome(effect_id, 'retract', effect.group_id, removed=removed))

        elif effect.type == EFFECT_CLEAR_LINE_ITEMS:
            if matched:
                removed = capabilities.clear_group(effect.group_id)
                outcomes.append(EffectOutcome(effect_id, 'clear', effect.group_id, removed=removed))
            else:
                outcomes.append(EffectOutcome(effect_id, 'skip', effect.group_id))

        elif effect.type == EFFECT_DELETE_LINE_ITEMS:
            if matched:
                target = effect.target_effect_id or effect_id
                removed = capabilities.clear_group(effect.group_id, effect_id=target)
                outcomes.append(EffectOutcome(effect_id, 'delete', effect.group_id, removed=removed))
            else:
                outcomes.append(EffectOutcome(effect_id, 'skip', effect.group_id))

        else:
            logger.warning(f"Unknown selection effect type on {question.id}: {effect.type}")
            outcomes.append(EffectOutcome(effect_id, 'skip', effect.group_id))

    return outcomes


def resolve_context_id(field_id: str, opts: EffectOptions) -> str:
    if opts.context_id:
        return opts.context_id
    if opts.line_item is not None:
        return build_line_context_id(opts.line_item.group_key, opts.line_item.row_id, field_id)
    return GLOBAL_CONTEXT_ID


def applies(effect: SelectionEffect, value: Any) -> bool:
    """Any non-empty value matches when trigger_values is empty."""
    values = [v for v in as_list(value) if not is_empty_value(v)]
    if not values:
        return False
    if not effect.trigger_values:
        return True
    triggers = {to_text(t) for t in effect.trigger_values}
    return any(to_text(v) in triggers for v in values)


def effective_value(effect: SelectionEffect, new_value: Any, opts: EffectOptions) -> Any:
    """
    The value the effect sees: None on forced reset, for an empty value,
    or while the triggering row is incomplete.
    """
    if opts.force_context_reset or is_empty_value(new_value):
        return None
    if not is_row_complete(effect, opts):
        return None
    return new_value


def is_row_complete(effect: SelectionEffect, opts: EffectOptions) -> bool:
    """
    Every field the effect depends on is filled: its depends_on fields
    and every '$row.' field its preset reads.
    """
    required = effect_dependencies(effect)

    if opts.line_item is not None:
        source = opts.line_item.row_values
    else:
        source = opts.top_values

    missing = [f for f in required if is_empty_value(source.get(f))]
    if missing:
        logger.debug(f"Row incomplete for effect {effect.id or effect.group_id}: missing {missing}")
        return False
    return True


def effect_dependencies(effect: SelectionEffect) -> List[str]:
    """Fields a row must fill before the effect populates."""
    required = list(effect.depends_on)
    for raw in effect.preset.values():
        if isinstance(raw, str) and raw.startswith(ROW_REF_PREFIX):
            required.append(raw[len(ROW_REF_PREFIX):])
    return required


def dependent_effects(question: QuestionDefinition, field_id: str) -> Optional[QuestionDefinition]:
    """
    The question narrowed to the effects that depend on field_id, or None.

    Used to re-run an effect when another field of its row changes, so a
    row that becomes complete populates and one that becomes incomplete
    retracts.
    """
    if question.id == field_id:
        return None
    effects = tuple(
        replace(effect, id=effect.id or f"{question.id}#{index}")
        for index, effect in enumerate(question.selection_effects)
        if field_id in effect_dependencies(effect)
    )
    if not effects:
        return None
    return replace(question, selection_effects=effects)


def resolve_preset(preset: Dict[str, Any], value: Any, opts: EffectOptions) -> Dict[str, Any]:
    """Replace $row.X, $top.X and $value references; unresolved references are dropped."""
    row_values = opts.line_item.row_values if opts.line_item else {}
    resolved = {}
    for key, raw in (preset or {}).items():
        if raw == VALUE_REF:
            candidate = value
        elif isinstance(raw, str) and raw.startswith(ROW_REF_PREFIX):
            candidate = row_values.get(raw[len(ROW_REF_PREFIX):])
        elif isinstance(raw, str) and raw.startswith(TOP_REF_PREFIX):
            candidate = opts.top_values.get(raw[len(TOP_REF_PREFIX):])
        else:
            candidate = raw
        if candidate is None:
            continue
        resolved[key] = candidate
    return resolved


# ============================================================================
# Internals
# ============================================================================

def _condition_scope(opts: EffectOptions) -> FormContext:
    if opts.line_item is None:
        return FormContext(opts.top_values)
    li = opts.line_item
    return RowContext(opts.top_values, {}, li.group_key, li.row_id, li.row_values, list(li.parent_values))


def _validate_capabilities(capabilities: Any) -> None:
    required_methods = ['add_row_to_group', 'clear_group']
    for method_name in required_methods:
        if not hasattr(capabilities, method_name) or not callable(getattr(capabilities, method_name)):
            raise TypeError(f"Effect capabilities missing required method: {method_name}")
