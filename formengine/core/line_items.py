"""
Line Items - Repeating group rows, keys and row-level capabilities

Responsibilities:
- Own the reserved row metadata keys and the group / context key formats
- Resolve group keys (top-level and sub-group instances) to their config
- Seed rows from a stored record and export rows back to record shape
- Cascade row removal into sub-group instances
- Implement the add / clear capabilities selection effects call into

Design principles:
- Rows are never mutated; changed rows are replaced with new objects
- Unchanged rows keep their identity
- Manual rows are never removed by clear operations

Key formats:
    sub-group instance:  '{parentGroupKey}::{parentRowId}::{subGroupId}'
    line context id:     '{groupKey}::{rowId}::{fieldId}'
    row field path:      '{groupKey}__{fieldId}__{rowId}'
"""

import logging
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from formengine.contracts import (
    ADD_MODE_MANUAL,
    FIELD_LINE_ITEM_GROUP,
    FormDefinition,
    LineItemGroupConfig,
    LineItemRowState,
)
from formengine.core.options import (
    compute_allowed_options,
    dependency_values_for,
    resolve_option_set,
)
from formengine.utils.helpers import is_empty_value, to_text

logger = logging.getLogger(__name__)

ROW_SOURCE_KEY = '__ckRowSource'
ROW_SELECTION_EFFECT_ID_KEY = '__ckSelectionEffectId'
ROW_PARENT_ROW_ID_KEY = '__ckParentRowId'
ROW_PARENT_GROUP_ID_KEY = '__ckParentGroupId'
ROW_ID_KEY = '__ckRowId'

RESERVED_PREFIX = '__ck'
SOURCE_AUTO = 'auto'
SOURCE_MANUAL = 'manual'

SUBGROUP_SEPARATOR = '::'

LineItems = Dict[str, List[LineItemRowState]]


# ============================================================================
# Keys
# ============================================================================

def build_subgroup_key(parent_group_key: str, parent_row_id: str, sub_group_id: str) -> str:
    return f"{parent_group_key}{SUBGROUP_SEPARATOR}{parent_row_id}{SUBGROUP_SEPARATOR}{sub_group_id}"


def parse_subgroup_key(key: str) -> Optional[Tuple[str, str, str]]:
    """(parent group key, parent row id, sub-group id), or None for a top-level key."""
    if not key or SUBGROUP_SEPARATOR not in key:
        return None
    parts = key.rsplit(SUBGROUP_SEPARATOR, 2)
    if len(parts) != 3 or not all(parts):
        return None
    return parts[0], parts[1], parts[2]


def build_line_context_id(group_key: str, row_id: str, field_id: Optional[str] = None) -> str:
    return f"{group_key}{SUBGROUP_SEPARATOR}{row_id}{SUBGROUP_SEPARATOR}{field_id or 'field'}"


def row_field_path(group_key: str, field_id: str, row_id: str) -> str:
    return f"{group_key}__{field_id}__{row_id}"


def group_definition_id(group_key: str) -> str:
    """Definition id of a group key ('items::r1::parts' -> 'parts')."""
    parsed = parse_subgroup_key(group_key)
    return parsed[2] if parsed else group_key


# ============================================================================
# Row predicates
# ============================================================================

def is_auto_row(row: LineItemRowState) -> bool:
    if row.auto_generated is not None:
        return bool(row.auto_generated)
    return row.values.get(ROW_SOURCE_KEY) == SOURCE_AUTO


def is_empty_row(row: LineItemRowState) -> bool:
    """True when every non-reserved value is empty."""
    return all(
        is_empty_value(value)
        for key, value in row.values.items()
        if not key.startswith(RESERVED_PREFIX)
    )


def user_values(row_values: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in row_values.items() if not k.startswith(RESERVED_PREFIX)}


# ============================================================================
# Group resolution
# ============================================================================

def resolve_group_config(definition: FormDefinition, group_key: str) -> Optional[LineItemGroupConfig]:
    """Config for a top-level group id or a sub-group instance key."""
    parsed = parse_subgroup_key(group_key)
    if parsed is None:
        question = definition.question(group_key)
        if question is None or question.type != FIELD_LINE_ITEM_GROUP:
            return None
        return question.line_item_config

    parent_key, _row_id, sub_group_id = parsed
    parent = resolve_group_config(definition, parent_key)
    if parent is None:
        return None
    return parent.sub_group(sub_group_id)


def resolve_target_group_key(
    definition: FormDefinition,
    target_group_id: str,
    source_group_key: Optional[str] = None,
    source_row_id: Optional[str] = None,
) -> Optional[str]:
    """
    Group key an effect targets.

    A top-level group id is its own key. A sub-group id resolves to the
    instance under the triggering row, or to the triggering row's own
    group instance when the effect targets its own sub-group.
    """
    question = definition.question(target_group_id)
    if question is not None and question.type == FIELD_LINE_ITEM_GROUP:
        return target_group_id

    if source_group_key:
        if source_row_id:
            source_config = resolve_group_config(definition, source_group_key)
            if source_config is not None and source_config.sub_group(target_group_id) is not None:
                return build_subgroup_key(source_group_key, source_row_id, target_group_id)
        if group_definition_id(source_group_key) == target_group_id:
            return source_group_key

    return None


def selector_value_for(
    config: LineItemGroupConfig,
    group_key: str,
    values: Dict[str, Any],
    subgroup_selectors: Optional[Dict[str, Any]] = None,
) -> Any:
    """Current section-selector value of a group instance."""
    if config.section_selector is None:
        return None
    if parse_subgroup_key(group_key) is not None:
        return (subgroup_selectors or {}).get(group_key)
    return values.get(config.section_selector.id)


def find_row(line_items: LineItems, group_key: str, row_id: str) -> Optional[LineItemRowState]:
    for row in line_items.get(group_key, []):
        if row.id == row_id:
            return row
    return None


def parent_row_values(line_items: LineItems, group_key: str) -> List[Dict[str, Any]]:
    """Values of the parent rows of a group instance, innermost first."""
    chain = []
    parsed = parse_subgroup_key(group_key)
    while parsed is not None:
        parent_key, parent_row_id, _ = parsed
        parent = find_row(line_items, parent_key, parent_row_id)
        if parent is not None:
            chain.append(parent.values)
        parsed = parse_subgroup_key(parent_key)
    return chain


# ============================================================================
# Removal
# ============================================================================

def cascade_remove_rows(
    line_items: LineItems,
    group_key: str,
    row_ids: List[str],
) -> Tuple[LineItems, List[Tuple[str, str]]]:
    """
    Remove rows and every sub-group instance below them.

    Returns:
        (new line items, removed (group key, row id) pairs)
    """
    if not row_ids:
        return line_items, []

    targets = set(row_ids)
    result = dict(line_items)
    removed: List[Tuple[str, str]] = []

    rows = result.get(group_key, [])
    kept = [row for row in rows if row.id not in targets]
    removed.extend((group_key, row.id) for row in rows if row.id in targets)
    result[group_key] = kept

    for row_id in targets:
        prefix = f"{group_key}{SUBGROUP_SEPARATOR}{row_id}{SUBGROUP_SEPARATOR}"
        for key in [k for k in result if k.startswith(prefix)]:
            removed.extend((key, row.id) for row in result[key])
            del result[key]

    return result, removed


# ============================================================================
# Record seeding and export
# ============================================================================

def build_initial_line_items(
    definition: FormDefinition,
    record_values: Optional[Dict[str, Any]],
    id_generator: Callable[[str], str],
) -> LineItems:
    """
    Rows for every group from a stored record.

    Stored row ids are kept. Manual groups without stored rows are seeded
    with min_rows empty rows.
    """
    record_values = record_values or {}
    line_items: LineItems = {}
    for question in definition.line_item_groups():
        _seed_group(
            question.line_item_config, question.id, record_values.get(question.id),
            line_items, id_generator, None,
        )
    return line_items


def _seed_group(config, group_key, stored, line_items, id_generator, parent):
    rows = []
    stored_rows = stored if isinstance(stored, list) else []
    sub_ids = {sub.id for sub in config.sub_groups}

    for stored_row in stored_rows:
        if not isinstance(stored_row, dict):
            continue
        row_id = stored_row.get(ROW_ID_KEY) or stored_row.get('id') or id_generator(config.id)
        values = {k: v for k, v in stored_row.items() if k not in sub_ids and k != 'id'}
        values[ROW_ID_KEY] = row_id
        row = LineItemRowState(
            id=row_id,
            values=values,
            auto_generated=values.get(ROW_SOURCE_KEY) == SOURCE_AUTO,
            parent_id=parent[1] if parent else None,
            parent_group_id=parent[0] if parent else None,
        )
        rows.append(row)
        for sub in config.sub_groups:
            _seed_group(
                sub, build_subgroup_key(group_key, row_id, sub.id), stored_row.get(sub.id),
                line_items, id_generator, (group_key, row_id),
            )

    if not rows and config.add_mode == ADD_MODE_MANUAL and config.min_rows:
        for _ in range(config.min_rows):
            row_id = id_generator(config.id)
            rows.append(LineItemRowState(
                id=row_id,
                values={ROW_ID_KEY: row_id, ROW_SOURCE_KEY: SOURCE_MANUAL},
                auto_generated=False,
                parent_id=parent[1] if parent else None,
                parent_group_id=parent[0] if parent else None,
            ))

    line_items[group_key] = rows


def export_line_items(definition: FormDefinition, line_items: LineItems) -> Dict[str, List[Dict[str, Any]]]:
    """Nested record shape: group id -> rows, sub-group rows nested by sub-group id."""
    record = {}
    for question in definition.line_item_groups():
        record[question.id] = _export_group(question.line_item_config, question.id, line_items)
    return record


def _export_group(config, group_key, line_items):
    exported = []
    for row in line_items.get(group_key, []):
        entry = dict(row.values)
        entry[ROW_ID_KEY] = row.id
        for sub in config.sub_groups:
            entry[sub.id] = _export_group(sub, build_subgroup_key(group_key, row.id, sub.id), line_items)
        exported.append(entry)
    return exported


def row_to_json(row: LineItemRowState) -> Dict[str, Any]:
    return {
        'id': row.id,
        'values': dict(row.values),
        'autoGenerated': row.auto_generated,
        'effectContextId': row.effect_context_id,
        'parentId': row.parent_id,
        'parentGroupId': row.parent_group_id,
    }


def row_from_json(data: Dict[str, Any]) -> LineItemRowState:
    return LineItemRowState(
        id=data['id'],
        values=dict(data.get('values') or {}),
        auto_generated=data.get('autoGenerated'),
        effect_context_id=data.get('effectContextId'),
        parent_id=data.get('parentId'),
        parent_group_id=data.get('parentGroupId'),
    )


# ============================================================================
# Capabilities for selection effects
# ============================================================================

class LineItemRowCapabilities:
    """
    Row add / clear operations over a working copy of the line items.

    The dispatcher in core.selection_effects calls into this object; the
    engine reads `line_items` and `changed` afterwards.

    Args:
        definition: Form definition
        values: Top-level values
        line_items: Current rows (not modified; a working copy is kept)
        id_generator: prefix -> new row id
        source_group_key / source_row_id: Row that triggered the effect
        subgroup_selectors: Sub-group instance key -> selector value
        option_sets: Loaded option sets keyed by option_key()
    """

    def __init__(
        self,
        definition: FormDefinition,
        values: Dict[str, Any],
        line_items: LineItems,
        id_generator: Callable[[str], str],
        source_group_key: Optional[str] = None,
        source_row_id: Optional[str] = None,
        subgroup_selectors: Optional[Dict[str, Any]] = None,
        option_sets: Optional[Dict[str, Any]] = None,
    ):
        self.definition = definition
        self.values = values
        self.line_items: LineItems = dict(line_items)
        self.id_generator = id_generator
        self.source_group_key = source_group_key
        self.source_row_id = source_row_id
        self.subgroup_selectors = subgroup_selectors or {}
        self.option_sets = option_sets or {}
        self.changed = False

    def add_row_to_group(
        self,
        group_id: str,
        preset: Optional[Dict[str, Any]] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """
        Upsert the row owned by (meta['context_id'], meta['effect_id']).

        Returns:
            Row id, or None when the target group is unknown or the preset
            violates a target field's option filter
        """
        target_key = resolve_target_group_key(
            self.definition, group_id, self.source_group_key, self.source_row_id,
        )
        config = resolve_group_config(self.definition, target_key) if target_key else None
        if config is None:
            logger.warning(f"Selection effect targets unknown group: {group_id}")
            return None

        preset = dict(preset or {})
        meta = meta or {}
        if not self._preset_allowed(config, target_key, preset):
            logger.info(f"Preset for {target_key} rejected by option filter: {preset}")
            return None

        context_id = meta.get('context_id')
        effect_id = meta.get('effect_id')
        parsed = parse_subgroup_key(target_key)
        parent_group_id, parent_id = (parsed[0], parsed[1]) if parsed else (None, None)

        row_values = dict(preset)
        row_values[ROW_SOURCE_KEY] = SOURCE_AUTO
        if effect_id:
            row_values[ROW_SELECTION_EFFECT_ID_KEY] = effect_id
        if parent_id:
            row_values[ROW_PARENT_ROW_ID_KEY] = parent_id
            row_values[ROW_PARENT_GROUP_ID_KEY] = parent_group_id
        if config.section_selector is not None and config.section_selector.id not in row_values:
            selector_value = selector_value_for(config, target_key, self.values, self.subgroup_selectors)
            if not is_empty_value(selector_value):
                row_values[config.section_selector.id] = selector_value

        rows = list(self.line_items.get(target_key, []))
        for index, row in enumerate(rows):
            if context_id is None or row.effect_context_id != context_id:
                continue
            if row.values.get(ROW_SELECTION_EFFECT_ID_KEY) != effect_id:
                continue
            merged = {**row.values, **row_values}
            if merged == row.values and row.auto_generated:
                return row.id
            rows[index] = replace(row, values=merged, auto_generated=True)
            self._commit(target_key, rows)
            logger.debug(f"Updated effect row {row.id} in {target_key}")
            return row.id

        row_id = self.id_generator(config.id)
        row_values[ROW_ID_KEY] = row_id
        new_row = LineItemRowState(
            id=row_id,
            values=row_values,
            auto_generated=True,
            effect_context_id=context_id,
            parent_id=parent_id,
            parent_group_id=parent_group_id,
        )
        insert_at = len(rows)
        if target_key == self.source_group_key and self.source_row_id:
            for index, row in enumerate(rows):
                if row.id == self.source_row_id:
                    insert_at = index + 1
        rows.insert(insert_at, new_row)
        self._commit(target_key, rows)
        logger.debug(f"Added effect row {row_id} to {target_key}")
        return row_id

    def clear_group(
        self,
        group_id: str,
        context_id: Optional[str] = None,
        effect_id: Optional[str] = None,
    ) -> int:
        """
        Remove auto rows of a group, optionally only those of one context
        and/or one effect id. Sub-group instances of removed rows go too.

        Returns:
            Number of rows removed from the target group
        """
        target_key = resolve_target_group_key(
            self.definition, group_id, self.source_group_key, self.source_row_id,
        )
        if target_key is None:
            logger.warning(f"Selection effect targets unknown group: {group_id}")
            return 0

        doomed = []
        for row in self.line_items.get(target_key, []):
            if not is_auto_row(row):
                continue
            if context_id is not None and row.effect_context_id != context_id:
                continue
            if effect_id is not None and row.values.get(ROW_SELECTION_EFFECT_ID_KEY) != effect_id:
                continue
            doomed.append(row.id)

        if not doomed:
            return 0

        self.line_items, removed = cascade_remove_rows(self.line_items, target_key, doomed)
        self.changed = True
        logger.info(f"Removed {len(doomed)} row(s) from {target_key} ({len(removed)} including sub-rows)")
        return len(doomed)

    def _commit(self, group_key: str, rows: List[LineItemRowState]) -> None:
        self.line_items[group_key] = rows
        self.changed = True

    def _preset_allowed(self, config: LineItemGroupConfig, group_key: str, preset: Dict[str, Any]) -> bool:
        parent_values = parent_row_values(self.line_items, group_key)

        def get_value(field_id):
            if not is_empty_value(preset.get(field_id)):
                return preset.get(field_id)
            for scope in parent_values:
                if not is_empty_value(scope.get(field_id)):
                    return scope.get(field_id)
            return self.values.get(field_id)

        for row_field in config.fields:
            value = preset.get(row_field.id)
            if row_field.option_filter is None or is_empty_value(value):
                continue
            option_set = resolve_option_set(row_field, self.option_sets, group_key, config.id)
            if option_set is None:
                continue  # No options yet; nothing to check against
            allowed = compute_allowed_options(
                row_field.option_filter, option_set, dependency_values_for(row_field.option_filter, get_value),
            )
            candidates = value if isinstance(value, list) else [value]
            if any(to_text(v) not in allowed for v in candidates):
                return False
        return True

