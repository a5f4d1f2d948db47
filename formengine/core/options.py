"""
Options - Dependency-driven option filtering and localization

Responsibilities:
- Compute the allowed option values of a field from its optionFilter and
  the current dependency values
- Build the localized, sorted, de-duplicated option list for display
- Turn externally loaded rows into OptionSets

Design principles:
- Pure functions (no state, no I/O)
- Allowed values always come back in the option set's declared order
- A missing option set means "no options yet", never an error
- Fetching options is the caller's job; this module only converts
"""

import logging
import re
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence

from formengine.contracts import (
    SORT_ALPHABETICAL,
    OptionFilter,
    OptionItem,
    OptionSet,
)
from formengine.utils.helpers import as_list, is_empty_value, to_text
from formengine.utils.i18n import DEFAULT_LANGUAGE, normalize_language

logger = logging.getLogger(__name__)

COMPOSITE_SEPARATOR = '||'
MULTI_VALUE_SEPARATOR = '|'
WILDCARD_KEY = '*'
OPTION_VALUE_KEY = '__ckOptionValue'
PREFERRED_VALUE_KEYS = ('value', 'id', 'code', 'key', 'label', 'name')
DEFAULT_TOKEN_SPLIT = re.compile(r'[,;\n]')


class OptionSourceLoader(Protocol):
    """Fetches option rows for a data-source descriptor."""

    def fetch(self, source: Dict[str, Any], language: str) -> Optional[List[Dict[str, Any]]]:
        ...


# ============================================================================
# Public API
# ============================================================================

def to_dependency_value(raw: Any) -> Optional[str]:
    """
    Normalize a dependency value for option-map lookup.

    Multi-select values are joined with '|'; empty values become None.
    """
    if isinstance(raw, (list, tuple)):
        parts = [to_text(v) for v in raw if not is_empty_value(v)]
        return MULTI_VALUE_SEPARATOR.join(parts) if parts else None
    if is_empty_value(raw):
        return None
    return to_text(raw)


def dependency_values_for(option_filter: OptionFilter, get_value: Callable[[str], Any]) -> List[Optional[str]]:
    """Normalized dependency values, one per depends_on entry."""
    return [to_dependency_value(get_value(dep)) for dep in option_filter.depends_on]


def compute_allowed_options(
    option_filter: Optional[OptionFilter],
    option_set: Optional[OptionSet],
    dependency_values: Sequence[Optional[str]],
) -> List[str]:
    """
    Allowed option values for a field.

    Args:
        option_filter: The field's optionFilter (None = no filtering)
        option_set: Base options (None = no options yet)
        dependency_values: Normalized values of option_filter.depends_on

    Returns:
        Allowed values in the base set's declared order. Options that no
        allow-list mentions stay allowed unless the filter is exclusive.
    """
    base = list(option_set.values) if option_set else []
    if option_filter is None:
        return base

    deps = [to_text(v) if v is not None else '' for v in dependency_values]

    if option_filter.bypass_values:
        bypass = {to_text(v) for v in option_filter.bypass_values}
        tokens = {token for dep in deps for token in _split_multi(dep)}
        if tokens & bypass:
            return base

    if option_filter.data_source_field:
        return _allowed_from_data_source(option_filter, option_set, deps)

    if not option_filter.option_map:
        return base

    matched = _match_option_map(option_filter.option_map, deps, option_filter.match_mode)
    allowed = set(matched or [])

    if not option_filter.exclusive:
        mentioned = {v for values in option_filter.option_map.values() for v in values}
        allowed.update(v for v in base if v not in mentioned)

    return [v for v in base if v in allowed]


def build_localized_options(
    option_set: Optional[OptionSet],
    allowed_values: Optional[Iterable[Any]],
    language: Optional[str],
    default_language: str = DEFAULT_LANGUAGE,
    sort: Optional[str] = None,
) -> List[OptionItem]:
    """
    Localized option list.

    Items follow the base set's declared order, filtered to allowed_values
    and de-duplicated by value. Allowed values the base set does not know
    (e.g. a kept selection) are appended with the value as label.
    sort='alphabetical' orders by label, case-insensitively.
    """
    values = list(option_set.values) if option_set else []
    if allowed_values is None:
        allowed = list(values)
    else:
        allowed = [to_text(v) for v in allowed_values if not is_empty_value(v)]
    allowed_set = set(allowed)

    lang = normalize_language(language, default_language)
    tooltips = option_set.tooltips if option_set else {}

    items: List[OptionItem] = []
    seen = set()
    for index, value in enumerate(values):
        if value not in allowed_set or value in seen:
            continue
        seen.add(value)
        label = _label_at(option_set, index, lang, default_language) or value
        items.append(OptionItem(value=value, label=label, tooltip=tooltips.get(value)))

    for value in allowed:
        if value in seen:
            continue
        seen.add(value)
        items.append(OptionItem(value=value, label=value, tooltip=tooltips.get(value)))

    if sort == SORT_ALPHABETICAL:
        items = sorted(items, key=lambda item: item.label.casefold())
    return items


def with_current_selection(allowed: List[str], current_value: Any) -> List[str]:
    """Append current selection(s) missing from allowed so they stay visible."""
    result = list(allowed)
    for value in as_list(current_value):
        if is_empty_value(value):
            continue
        text = to_text(value)
        if text not in result:
            result.append(text)
    return result


def option_set_from_items(
    items: Optional[List[Dict[str, Any]]],
    mapping: Optional[Dict[str, str]] = None,
    tooltip_field: Optional[str] = None,
) -> Optional[OptionSet]:
    """
    Convert externally loaded rows into an OptionSet.

    Args:
        items: Rows (dicts) or bare values
        mapping: Column names for 'value' and per-language labels, e.g.
            {'value': 'code', 'en': 'name_en', 'fr': 'name_fr'}
        tooltip_field: Column holding the tooltip text

    Returns:
        OptionSet, or None when there are no usable rows
    """
    if not items:
        return None

    mapping = mapping or {}
    value_key = mapping.get('value')
    label_keys = {normalize_language(k): v for k, v in mapping.items() if k != 'value'}
    if not label_keys:
        label_keys = {DEFAULT_LANGUAGE: 'label'}

    values: List[str] = []
    labels: Dict[str, List[str]] = {lang: [] for lang in label_keys}
    tooltips: Dict[str, str] = {}
    raw: List[Dict[str, Any]] = []

    for item in items:
        if isinstance(item, dict):
            value = item.get(_value_column(item, value_key))
        else:
            value, item = item, {'value': item}
        if is_empty_value(value):
            continue
        text = to_text(value)
        if text in values:
            continue
        values.append(text)
        for lang, column in label_keys.items():
            label = item.get(column)
            labels[lang].append('' if label is None else str(label))
        if tooltip_field and item.get(tooltip_field):
            tooltips[text] = str(item[tooltip_field])
        raw.append(dict(item, **{OPTION_VALUE_KEY: text}))

    if not values:
        return None

    return OptionSet(
        values=tuple(values),
        labels={lang: tuple(l) for lang, l in labels.items()},
        tooltips=tooltips,
        raw=tuple(raw),
    )


def load_options_from_source(
    source: Dict[str, Any],
    language: str,
    loader: OptionSourceLoader,
) -> Optional[OptionSet]:
    """
    Fetch and convert options for a data-source descriptor.

    Loader failures are logged and reported as "no options yet".
    """
    try:
        items = loader.fetch(source, language)
    except (OSError, ValueError, KeyError) as e:
        logger.warning(f"Option source {source.get('id', source)!r} failed to load: {e}")
        return None

    return option_set_from_items(
        items,
        mapping=source.get('mapping'),
        tooltip_field=source.get('tooltipField'),
    )


# ============================================================================
# Option map matching
# ============================================================================

def _match_option_map(
    option_map: Dict[str, Sequence[str]],
    deps: List[str],
    match_mode: str,
) -> Optional[List[str]]:
    """
    Allow-list for the dependency values, or None when no key matches.

    Single multi-select dependency: the full joined key wins; otherwise
    per-value lists are intersected ('and') or unioned ('or').
    Several dependencies: composite 'v1||v2' key, then each single value,
    then '*'.
    """
    if len(deps) == 1 and MULTI_VALUE_SEPARATOR in deps[0]:
        joined = deps[0]
        if joined in option_map:
            return list(option_map[joined])
        parts = _split_multi(joined)
        if match_mode == 'or':
            return _union(option_map, parts)
        acc: Optional[List[str]] = None
        for part in parts:
            nxt = list(option_map.get(part, option_map.get(WILDCARD_KEY, [])))
            acc = nxt if acc is None else [v for v in acc if v in nxt]
        return acc

    non_empty = [d for d in deps if d]
    if match_mode == 'or':
        tokens = [t for d in non_empty for t in _split_multi(d)]
        return _union(option_map, tokens)

    candidates = []
    if len(deps) > 1:
        candidates.append(COMPOSITE_SEPARATOR.join(deps))
    candidates.extend(non_empty)
    candidates.append(WILDCARD_KEY)

    for key in candidates:
        if key in option_map:
            return list(option_map[key])
    return None


def _union(option_map: Dict[str, Sequence[str]], keys: List[str]) -> Optional[List[str]]:
    result: List[str] = []
    found = False
    for key in keys:
        if key in option_map:
            found = True
            for value in option_map[key]:
                if value not in result:
                    result.append(value)
    if not found:
        if WILDCARD_KEY in option_map:
            return list(option_map[WILDCARD_KEY])
        return None
    return result


def _split_multi(value: str) -> List[str]:
    return [part.strip() for part in value.split(MULTI_VALUE_SEPARATOR) if part.strip()]


def _allowed_from_data_source(
    option_filter: OptionFilter,
    option_set: Optional[OptionSet],
    deps: List[str],
) -> List[str]:
    """
    Filter on a column of the option set's raw rows.

    A row is kept when its column tokens contain the dependency tokens
    (all of them for 'and', any for 'or'). No dependency tokens means no
    filtering.
    """
    base = list(option_set.values) if option_set else []
    tokens = [t for d in deps for t in _split_multi(d)]
    if not tokens or option_set is None:
        return base

    column = option_filter.data_source_field
    delimiter = option_filter.data_source_delimiter
    allowed = set()
    for row in option_set.raw:
        cell = row.get(column)
        if isinstance(cell, (list, tuple)):
            row_tokens = {to_text(v) for v in cell}
        elif is_empty_value(cell):
            row_tokens = set()
        elif delimiter:
            row_tokens = {part.strip() for part in str(cell).split(delimiter) if part.strip()}
        else:
            row_tokens = {part.strip() for part in DEFAULT_TOKEN_SPLIT.split(str(cell)) if part.strip()}

        if option_filter.match_mode == 'or':
            keep = any(t in row_tokens for t in tokens)
        else:
            keep = all(t in row_tokens for t in tokens)
        if keep:
            allowed.add(row.get(OPTION_VALUE_KEY) or to_text(row.get('value')))

    return [v for v in base if v in allowed]


def _label_at(option_set: Optional[OptionSet], index: int, lang: str, default_language: str) -> str:
    if option_set is None:
        return ''
    for code in (lang, default_language):
        labels = option_set.labels.get(code)
        if labels and index < len(labels) and labels[index]:
            return labels[index]
    return ''


def option_key(field_id: str, group_key: Optional[str] = None) -> str:
    """Key of a loaded option set: field id, or '{groupKey}.{fieldId}' inside a group."""
    return f"{group_key}.{field_id}" if group_key else field_id


def resolve_option_set(
    field: Any,
    option_sets: Optional[Dict[str, OptionSet]],
    group_key: Optional[str] = None,
    group_id: Optional[str] = None,
) -> Optional[OptionSet]:
    """
    Option set for a field: loaded for this group instance, loaded for the
    group definition, loaded for the bare field id, then inline options.
    """
    option_sets = option_sets or {}
    for key in (option_key(field.id, group_key), option_key(field.id, group_id), field.id):
        if key in option_sets:
            return option_sets[key]
    return field.options


def _value_column(item: Dict[str, Any], explicit: Optional[str]) -> Optional[str]:
    """Explicit mapping, then a preferred key, then the first string column."""
    if explicit and explicit in item:
        return explicit
    for key in PREFERRED_VALUE_KEYS:
        if not is_empty_value(item.get(key)):
            return key
    for key, value in item.items():
        if isinstance(value, str) and value.strip():
            return key
    return None
