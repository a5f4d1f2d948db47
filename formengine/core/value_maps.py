"""
Value Maps - Derived field values

Responsibilities:
- Resolve a field's derived value from other fields (lookup / copy / addDays)
- Apply derived values to top-level fields and to every row of every
  group instance, resolving references row -> parent row -> top level

Design principles:
- Pure functions; results are new dicts / rows only where something changed
- Unchanged rows keep their object identity (callers compare with `is`)
"""

import logging
from dataclasses import replace
from datetime import date, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from formengine.contracts import FormDefinition, LineItemGroupConfig, ValueMapConfig
from formengine.core.line_items import LineItems, build_subgroup_key
from formengine.core.options import COMPOSITE_SEPARATOR, WILDCARD_KEY, to_dependency_value
from formengine.utils.helpers import is_empty_value

logger = logging.getLogger(__name__)


def resolve_value_map_value(value_map: ValueMapConfig, get_field_value: Callable[[str], Any]) -> Any:
    """
    Derived value for one field.

    lookup: comma-joined, de-duplicated allow-list of the first matching
    key among composite 'v1||v2', each dependency value, then '*'.
    copy: the first dependency's value.
    addDays: first dependency as ISO date plus offset_days.

    Returns:
        The derived value ('' when nothing resolves)
    """
    if not value_map.depends_on:
        return ''

    if value_map.op == 'copy':
        value = get_field_value(value_map.depends_on[0])
        return '' if value is None else value

    if value_map.op == 'addDays':
        return _add_days(get_field_value(value_map.depends_on[0]), value_map.offset_days)

    if value_map.op != 'lookup':
        logger.warning(f"Unknown value map op: {value_map.op}")
        return ''

    deps = [to_dependency_value(get_field_value(dep)) or '' for dep in value_map.depends_on]
    candidates = []
    if len(deps) > 1:
        candidates.append(COMPOSITE_SEPARATOR.join(deps))
    candidates.extend(d for d in deps if d)
    candidates.append(WILDCARD_KEY)

    for key in candidates:
        if key in value_map.option_map:
            unique = []
            for value in value_map.option_map[key]:
                if value not in unique:
                    unique.append(value)
            return ', '.join(unique)
    return ''


def scoped_getter(
    row_values: Optional[Dict[str, Any]],
    parent_values: List[Dict[str, Any]],
    top_values: Dict[str, Any],
) -> Callable[[str], Any]:
    """Lookup that checks the row, then parent rows (innermost first), then the top level."""
    scopes = ([row_values] if row_values is not None else []) + list(parent_values)

    def get_field_value(field_id: str) -> Any:
        for scope in scopes:
            if field_id in scope and not is_empty_value(scope[field_id]):
                return scope[field_id]
        return top_values.get(field_id)

    return get_field_value


def apply_value_maps_to_form(
    definition: FormDefinition,
    values: Dict[str, Any],
    line_items: LineItems,
) -> Tuple[Dict[str, Any], LineItems, bool]:
    """
    Apply every value map in the form.

    Returns:
        (values, line_items, changed). Unchanged inputs are returned as-is.
    """
    new_values = values
    for question in definition.questions:
        if question.value_map is None:
            continue
        derived = resolve_value_map_value(question.value_map, scoped_getter(None, [], new_values))
        if not _same(new_values.get(question.id), derived):
            if new_values is values:
                new_values = dict(values)
            new_values[question.id] = derived

    new_line_items = line_items
    for question in definition.line_item_groups():
        new_line_items = _apply_to_group(
            question.line_item_config, question.id, new_values, new_line_items, [],
        )

    changed = new_values is not values or new_line_items is not line_items
    if changed:
        logger.debug("Value maps updated derived fields")
    return new_values, new_line_items, changed


def _apply_to_group(
    config: LineItemGroupConfig,
    group_key: str,
    top_values: Dict[str, Any],
    line_items: LineItems,
    parent_values: List[Dict[str, Any]],
) -> LineItems:
    mapped_fields = [f for f in config.fields if f.value_map is not None]
    rows = line_items.get(group_key, [])
    updated = list(rows)
    dirty = False

    if mapped_fields:
        for index, row in enumerate(rows):
            next_values = row.values
            for row_field in mapped_fields:
                getter = scoped_getter(next_values, parent_values, top_values)
                derived = resolve_value_map_value(row_field.value_map, getter)
                if not _same(next_values.get(row_field.id), derived):
                    if next_values is row.values:
                        next_values = dict(row.values)
                    next_values[row_field.id] = derived
            if next_values is not row.values:
                updated[index] = replace(row, values=next_values)
                dirty = True

    result = line_items
    if dirty:
        result = dict(line_items)
        result[group_key] = updated

    for row in updated:
        for sub in config.sub_groups:
            result = _apply_to_group(
                sub, build_subgroup_key(group_key, row.id, sub.id), top_values, result,
                [row.values] + parent_values,
            )
    return result


def _add_days(raw: Any, offset_days: int) -> str:
    if is_empty_value(raw):
        return ''
    try:
        start = date.fromisoformat(str(raw).strip()[:10])
    except ValueError:
        return ''
    return (start + timedelta(days=offset_days)).isoformat()


def _same(current: Any, derived: Any) -> bool:
    if is_empty_value(current) and is_empty_value(derived):
        return True
    return current == derived
