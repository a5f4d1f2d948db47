"""
Reconciler - Auto-add row maintenance for repeating groups

Responsibilities:
- Compute the desired anchor values of an auto-add group instance from its
  dependency values and the anchor's allowed options
- Diff the desired set against the current rows: keep and normalize
  matching auto rows, drop stale ones, append missing ones
- Walk every auto-add target: top-level groups and one sub-group instance
  per parent row
- Re-run value maps whenever a pass changed rows

Design principles:
- Deterministic: the only source of new ids is the injected generator
- Manual rows and rows owned by another context are never touched
- Identical inputs produce identical context ids, so a repeat pass is a no-op
- Unchanged rows keep their object identity; `changed` is computed from it

Territory:
    A row belongs to a target when its context id starts with
    '__autoAddMode__:{targetKey}:', or when it is an auto row with no
    context id and no selection-effect id (rows loaded from a record).
"""

import logging
import math
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from formengine.contracts import (
    ADD_MODE_AUTO,
    FormDefinition,
    LineItemGroupConfig,
    LineItemRowState,
    OptionSet,
    QuestionDefinition,
)
from formengine.core.line_items import (
    ROW_ID_KEY,
    ROW_PARENT_GROUP_ID_KEY,
    ROW_PARENT_ROW_ID_KEY,
    ROW_SELECTION_EFFECT_ID_KEY,
    ROW_SOURCE_KEY,
    SOURCE_AUTO,
    LineItems,
    build_subgroup_key,
    is_auto_row,
    parse_subgroup_key,
    selector_value_for,
)
from formengine.core.options import (
    build_localized_options,
    compute_allowed_options,
    resolve_option_set,
    to_dependency_value,
)
from formengine.core.value_maps import apply_value_maps_to_form
from formengine.utils.helpers import as_list, is_empty_value, to_text
from formengine.utils.i18n import DEFAULT_LANGUAGE

logger = logging.getLogger(__name__)

AUTO_CONTEXT_PREFIX = '__autoAddMode__'


@dataclass(frozen=True)
class AutoDesired:
    """Desired anchor values for one target; valid=False means tear down."""
    valid: bool
    desired: Tuple[str, ...]
    dependency_values: Tuple[Any, ...]


@dataclass(frozen=True)
class ReconcileResult:
    """Rows after one target's diff, and whether anything changed."""
    rows: List[LineItemRowState]
    changed: bool
    context_id: str


@dataclass(frozen=True)
class AutoAddResult:
    """
    Outcome of reconciling every auto-add target.

    Attributes:
        values: Top-level values (value maps re-applied when rows changed)
        line_items: Rows per group key
        signatures: Target key -> signature of the inputs last reconciled
        changed: Whether any target's rows (or derived values) changed
        changed_targets: Keys of the targets whose rows changed
    """
    values: Dict[str, Any]
    line_items: LineItems
    signatures: Dict[str, str]
    changed: bool
    changed_targets: Tuple[str, ...] = ()


# ============================================================================
# Public API
# ============================================================================

def is_valid_dependency_value(raw: Any) -> bool:
    """Finite numbers (0 included), booleans and non-blank strings are valid."""
    if raw is None:
        return False
    if isinstance(raw, bool):
        return True
    if isinstance(raw, (int, float)):
        return math.isfinite(raw)
    if isinstance(raw, str):
        return raw.strip() != ''
    if isinstance(raw, (list, tuple)):
        return any(is_valid_dependency_value(v) for v in raw)
    return True


def normalize_anchor_key(raw: Any) -> str:
    for value in as_list(raw):
        if not is_empty_value(value):
            return to_text(value)
    return ''


def build_auto_prefix(target_key: str) -> str:
    return f"{AUTO_CONTEXT_PREFIX}:{target_key}:"


def build_auto_context_id(target_key: str, dependency_values: Sequence[Any]) -> str:
    serialized = [to_dependency_value(v) or '' for v in dependency_values]
    return build_auto_prefix(target_key) + '||'.join(serialized)


def compute_auto_desired(
    anchor_field: QuestionDefinition,
    dependency_values: Sequence[Any],
    option_set: Optional[OptionSet],
    language: Optional[str] = None,
    default_language: str = DEFAULT_LANGUAGE,
) -> AutoDesired:
    """
    Desired anchor values for a target.

    Args:
        anchor_field: The group's anchor field
        dependency_values: Raw values of anchor_field.option_filter.depends_on
        option_set: Base options of the anchor field
        language: Label language (affects order only for alphabetical sort)

    Returns:
        AutoDesired; invalid (and empty) when the anchor has no dependencies
        or any dependency value is missing
    """
    deps = tuple(dependency_values)
    option_filter = anchor_field.option_filter
    if option_filter is None or not option_filter.depends_on:
        return AutoDesired(valid=False, desired=(), dependency_values=deps)
    if not deps or not all(is_valid_dependency_value(v) for v in deps):
        return AutoDesired(valid=False, desired=(), dependency_values=deps)

    allowed = compute_allowed_options(option_filter, option_set, [to_dependency_value(v) for v in deps])
    items = build_localized_options(option_set, allowed, language, default_language, sort=anchor_field.option_sort)

    desired: List[str] = []
    for item in items:
        if item.value and item.value not in desired:
            desired.append(item.value)
    return AutoDesired(valid=True, desired=tuple(desired), dependency_values=deps)


def reconcile_auto_rows(
    current_rows: Sequence[LineItemRowState],
    target_key: str,
    anchor_field_id: str,
    desired: Sequence[str],
    dependency_values: Sequence[Any],
    id_generator: Callable[[str], str],
    id_prefix: Optional[str] = None,
    selector_id: Optional[str] = None,
    selector_value: Any = None,
) -> ReconcileResult:
    """
    Diff one target's rows against its desired anchor values.

    Rows outside this target's territory pass through untouched and keep
    their position. Matched rows are normalized (anchor, provenance,
    selector backfill, context id) and replaced only if that changed
    them. New rows are appended in desired order.
    """
    prefix = build_auto_prefix(target_key)
    context_id = build_auto_context_id(target_key, dependency_values)
    parsed = parse_subgroup_key(target_key)
    parent_group_key, parent_row_id = (parsed[0], parsed[1]) if parsed else (None, None)

    desired_set = set(desired)
    matched = set()
    next_rows: List[LineItemRowState] = []

    for row in current_rows:
        if not _in_territory(row, prefix):
            next_rows.append(row)
            continue

        key = normalize_anchor_key(row.values.get(anchor_field_id))
        if not key or key not in desired_set or key in matched:
            logger.debug(f"Dropping auto row {row.id} ({key or 'no anchor'}) from {target_key}")
            continue
        matched.add(key)

        values = dict(row.values)
        values[anchor_field_id] = key
        values[ROW_SOURCE_KEY] = SOURCE_AUTO
        _fill_selector(values, selector_id, selector_value)
        _fill_parent(values, parent_group_key, parent_row_id)

        if values == row.values and row.effect_context_id == context_id and row.auto_generated is True:
            next_rows.append(row)
        else:
            logger.debug(f"Normalized auto row {row.id} in {target_key}")
            next_rows.append(replace(
                row,
                values=values,
                auto_generated=True,
                effect_context_id=context_id,
                parent_id=parent_row_id or row.parent_id,
                parent_group_id=parent_group_key or row.parent_group_id,
            ))

    for value in desired:
        if value in matched:
            continue
        matched.add(value)
        row_id = id_generator(id_prefix or target_key)
        values = {anchor_field_id: value, ROW_SOURCE_KEY: SOURCE_AUTO, ROW_ID_KEY: row_id}
        _fill_selector(values, selector_id, selector_value)
        _fill_parent(values, parent_group_key, parent_row_id)
        next_rows.append(LineItemRowState(
            id=row_id,
            values=values,
            auto_generated=True,
            effect_context_id=context_id,
            parent_id=parent_row_id,
            parent_group_id=parent_group_key,
        ))

    changed = len(next_rows) != len(current_rows) or any(
        a is not b for a, b in zip(next_rows, current_rows)
    )
    return ReconcileResult(rows=next_rows, changed=changed, context_id=context_id)


def reconcile_auto_groups(
    definition: FormDefinition,
    values: Dict[str, Any],
    line_items: LineItems,
    id_generator: Callable[[str], str],
    option_sets: Optional[Dict[str, OptionSet]] = None,
    language: Optional[str] = None,
    subgroup_selectors: Optional[Dict[str, Any]] = None,
    previous_signatures: Optional[Dict[str, str]] = None,
) -> AutoAddResult:
    """
    Reconcile every auto-add target of the form.

    A target is only re-diffed when its signature (context id plus
    desired values) differs from previous_signatures, so a row the user
    removed is not recreated until the target's inputs change. Pass
    previous_signatures=None to force every target.

    Returns:
        AutoAddResult
    """
    walker = _AutoAddWalker(
        definition, values, line_items, id_generator,
        option_sets or {}, language, subgroup_selectors or {}, previous_signatures,
    )
    for question in definition.line_item_groups():
        walker.visit(question.line_item_config, question.id, [])

    if not walker.changed_targets:
        return AutoAddResult(values, line_items, walker.signatures, False)

    new_values, new_line_items, _ = apply_value_maps_to_form(definition, values, walker.line_items)
    return AutoAddResult(
        new_values, new_line_items, walker.signatures, True, tuple(walker.changed_targets),
    )


# ============================================================================
# Internals
# ============================================================================

class _AutoAddWalker:
    """Visits auto-add targets depth-first, parents before their sub-groups."""

    def __init__(self, definition, values, line_items, id_generator, option_sets,
                 language, subgroup_selectors, previous_signatures):
        self.definition = definition
        self.values = values
        self.line_items = line_items
        self.id_generator = id_generator
        self.option_sets = option_sets
        self.language = language
        self.subgroup_selectors = subgroup_selectors
        self.previous = previous_signatures
        self.signatures: Dict[str, str] = {}
        self.changed_targets: List[str] = []

    def visit(self, config: LineItemGroupConfig, group_key: str, parent_chain: List[Dict[str, Any]]) -> None:
        if config.add_mode == ADD_MODE_AUTO:
            self._reconcile_target(config, group_key, parent_chain)

        for row in list(self.line_items.get(group_key, [])):
            for sub in config.sub_groups:
                self.visit(sub, build_subgroup_key(group_key, row.id, sub.id), [row.values] + parent_chain)

    def _reconcile_target(self, config, target_key, parent_chain) -> None:
        anchor = config.anchor_field
        if anchor is None:
            logger.warning(f"Auto-add group {target_key} has no anchor field")
            return

        option_set = resolve_option_set(anchor, self.option_sets, target_key, config.id)
        if option_set is None and anchor.data_source is not None:
            logger.warning(f"Options for anchor {anchor.id} of {target_key} not loaded yet; skipping")
            return

        selector_value = selector_value_for(config, target_key, self.values, self.subgroup_selectors)
        selector_id = config.section_selector.id if config.section_selector else None

        def get_dependency(dep_id):
            if selector_id and dep_id == selector_id:
                return selector_value
            for scope in parent_chain:
                if not is_empty_value(scope.get(dep_id)):
                    return scope.get(dep_id)
            return self.values.get(dep_id)

        dep_ids = anchor.option_filter.depends_on if anchor.option_filter else ()
        deps = [get_dependency(dep_id) for dep_id in dep_ids]
        desired = compute_auto_desired(
            anchor, deps, option_set, self.language, self.definition.default_language,
        )
        context_id = build_auto_context_id(target_key, deps)
        signature = f"{context_id}##{'|'.join(desired.desired)}"
        self.signatures[target_key] = signature

        if self.previous is not None and self.previous.get(target_key) == signature:
            return

        logger.debug(f"Dependencies for {target_key}: {deps} (valid={desired.valid})")
        result = reconcile_auto_rows(
            self.line_items.get(target_key, []),
            target_key,
            anchor.id,
            desired.desired,
            deps,
            self.id_generator,
            id_prefix=config.id,
            selector_id=selector_id,
            selector_value=selector_value,
        )
        if not result.changed:
            return

        self.line_items = dict(self.line_items)
        self.line_items[target_key] = result.rows
        self.changed_targets.append(target_key)
        logger.info(
            f"Reconciled {target_key}: desired={len(desired.desired)} "
            f"rows={len(result.rows)} context={result.context_id}"
        )


def _in_territory(row: LineItemRowState, prefix: str) -> bool:
    context_id = row.effect_context_id
    if context_id:
        return context_id.startswith(prefix)
    return is_auto_row(row) and not row.values.get(ROW_SELECTION_EFFECT_ID_KEY)


def _fill_selector(values: Dict[str, Any], selector_id: Optional[str], selector_value: Any) -> None:
    if selector_id and is_empty_value(values.get(selector_id)) and not is_empty_value(selector_value):
        values[selector_id] = selector_value


def _fill_parent(values: Dict[str, Any], parent_group_key: Optional[str], parent_row_id: Optional[str]) -> None:
    if parent_row_id:
        values[ROW_PARENT_ROW_ID_KEY] = parent_row_id
        values[ROW_PARENT_GROUP_ID_KEY] = parent_group_key
