"""
Definition Loader - Parse and check a JSON form definition

Responsibilities:
- Load a form definition file
- Check its structure and cross-references, reporting every problem at once
- Convert the JSON into the frozen contracts in formengine.contracts

Design principles:
- Structural errors are raised here, at load time, and nowhere else
- Condition trees are kept as JSON; the evaluator degrades on bad ones
- Unknown keys are ignored
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from formengine.contracts import (
    ADD_MODE_AUTO,
    ADD_MODE_MANUAL,
    ADD_MODE_OVERLAY,
    ADD_MODES,
    EFFECT_DELETE_LINE_ITEMS,
    EFFECT_TYPES,
    FIELD_LINE_ITEM_GROUP,
    FIELD_TYPES,
    PHASE_BOTH,
    PHASES,
    SORT_ALPHABETICAL,
    SORT_SOURCE,
    DedupRule,
    FormDefinition,
    LineItemGroupConfig,
    OptionFilter,
    OptionSet,
    QuestionDefinition,
    RuleThen,
    SectionSelector,
    SelectionEffect,
    ValidationRule,
    ValueMapConfig,
)
from formengine.utils.helpers import as_list, is_empty_value, to_text
from formengine.utils.i18n import DEFAULT_LANGUAGE, normalize_language

logger = logging.getLogger(__name__)

VALUE_MAP_OPS = ('lookup', 'copy', 'addDays')


# ============================================================================
# Public API
# ============================================================================

def load_definition(definition_path: str) -> FormDefinition:
    """
    Load a form definition from a JSON file.

    Args:
        definition_path: Path to the definition JSON

    Returns:
        FormDefinition

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the definition fails structural validation
    """
    path = Path(definition_path)
    if not path.exists():
        raise FileNotFoundError(f"Form definition not found: {definition_path}")

    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)

    definition = parse_definition(data)
    logger.info(f"Form definition loaded from {path.name} with {len(definition.questions)} questions")
    return definition


def parse_definition(data: Dict[str, Any]) -> FormDefinition:
    """
    Validate and convert a definition dict.

    Raises:
        ValueError: If validation fails (message lists every problem)
    """
    errors = validate_definition(data)
    if errors:
        raise ValueError("Form definition validation failed:\n  - " + "\n  - ".join(errors))

    languages = tuple(normalize_language(l) for l in data.get('languages') or [DEFAULT_LANGUAGE])
    default_language = normalize_language(data.get('defaultLanguage'), languages[0])

    questions = tuple(_parse_question(q, default_language) for q in data['questions'])
    return FormDefinition(
        questions=questions,
        languages=languages,
        default_language=default_language,
        title=data.get('title'),
    )


def parse_option_set(raw: Any, default_language: str = DEFAULT_LANGUAGE) -> Optional[OptionSet]:
    """
    Convert the accepted option shapes into an OptionSet.

    Accepted:
        ["a", "b"]
        [{"value": "a", "label": {"en": "A", "fr": "A fr"}, "tooltip": "..."}]
        {"en": ["A", "B"], "fr": [...], "tooltips": {...}}   values = default language list
        {"values": ["a", "b"], "labels": {"en": [...]}, "tooltips": {...}}
    """
    if raw is None:
        return None

    if isinstance(raw, list):
        values, labels, tooltips = [], {}, {}
        for index, item in enumerate(raw):
            if isinstance(item, dict):
                value = to_text(item.get('value'))
                if not value:
                    continue
                label = item.get('label')
                if isinstance(label, dict):
                    for lang, text in label.items():
                        labels.setdefault(normalize_language(lang), {})[len(values)] = text
                elif label is not None:
                    labels.setdefault(default_language, {})[len(values)] = str(label)
                if item.get('tooltip'):
                    tooltips[value] = str(item['tooltip'])
            else:
                value = to_text(item)
                if not value:
                    continue
            values.append(value)
        aligned = {
            lang: tuple(str(by_index.get(i, '') or '') for i in range(len(values)))
            for lang, by_index in labels.items()
        }
        return OptionSet(values=tuple(values), labels=aligned, tooltips=tooltips)

    if isinstance(raw, dict):
        tooltips = {str(k): str(v) for k, v in (raw.get('tooltips') or {}).items()}
        if 'values' in raw:
            values = tuple(to_text(v) for v in raw['values'])
            labels = {
                normalize_language(lang): tuple(str(l) for l in lang_labels)
                for lang, lang_labels in (raw.get('labels') or {}).items()
            }
            return OptionSet(values=values, labels=labels, tooltips=tooltips)

        lists = {
            normalize_language(lang): list(items)
            for lang, items in raw.items()
            if lang != 'tooltips' and isinstance(items, list)
        }
        base = lists.get(default_language) or lists.get(DEFAULT_LANGUAGE) or next(iter(lists.values()), [])
        values = tuple(to_text(v) for v in base)
        labels = {lang: tuple(str(v) for v in items) for lang, items in lists.items()}
        return OptionSet(values=values, labels=labels, tooltips=tooltips)

    return None


# ============================================================================
# Structural validation
# ============================================================================

def validate_definition(data: Any) -> List[str]:
    """
    Collect every structural problem.

    Checks:
    - questions list exists and every question has a unique id and a known type
    - groups have fields with unique ids and a known addMode
    - auto / overlay groups name an existing anchor field; auto anchors
      declare optionFilter.dependsOn
    - sub-groups nest one level only
    - selection effects have a known type and target an existing group
    - validation rules name a target field; phases are known
    - value maps have dependsOn and a known op
    """
    errors: List[str] = []

    if not isinstance(data, dict):
        return ["Form definition must be a JSON object"]

    questions = data.get('questions')
    if not isinstance(questions, list) or not questions:
        return ["Missing 'questions' in form definition"]

    group_ids = _collect_group_ids(questions)
    seen_ids: Set[str] = set()

    for i, question in enumerate(questions):
        if not isinstance(question, dict) or not question.get('id'):
            errors.append(f"Question at index {i} missing 'id'")
            continue

        q_id = question['id']
        if q_id in seen_ids:
            errors.append(f"Duplicate question id '{q_id}'")
        seen_ids.add(q_id)

        q_type = question.get('type')
        if q_type not in FIELD_TYPES:
            errors.append(f"Question '{q_id}' has unknown type '{q_type}'")

        _check_field(question, q_id, group_ids, errors)

        if q_type == FIELD_LINE_ITEM_GROUP:
            config = question.get('lineItemConfig')
            if not isinstance(config, dict):
                errors.append(f"Group '{q_id}' missing 'lineItemConfig'")
                continue
            _check_group(config, q_id, group_ids, errors, depth=0)

    return errors


def _collect_group_ids(questions: List[Any]) -> Set[str]:
    ids = set()
    for question in questions:
        if not isinstance(question, dict) or question.get('type') != FIELD_LINE_ITEM_GROUP:
            continue
        ids.add(question.get('id'))
        config = question.get('lineItemConfig') or {}
        for sub in config.get('subGroups') or []:
            if isinstance(sub, dict) and sub.get('id'):
                ids.add(sub['id'])
    return ids


def _check_group(config: Dict[str, Any], group_id: str, group_ids: Set[str], errors: List[str], depth: int) -> None:
    fields = config.get('fields')
    if not isinstance(fields, list) or not fields:
        errors.append(f"Group '{group_id}' has no fields")
        fields = []

    field_ids = set()
    for i, field in enumerate(fields):
        if not isinstance(field, dict) or not field.get('id'):
            errors.append(f"Field at index {i} in group '{group_id}' missing 'id'")
            continue
        if field['id'] in field_ids:
            errors.append(f"Duplicate field id '{field['id']}' in group '{group_id}'")
        field_ids.add(field['id'])
        if field.get('type') == FIELD_LINE_ITEM_GROUP:
            errors.append(f"Field '{field['id']}' in group '{group_id}' cannot be a group; use subGroups")
        elif field.get('type') not in FIELD_TYPES:
            errors.append(f"Field '{field['id']}' in group '{group_id}' has unknown type '{field.get('type')}'")
        _check_field(field, f"{group_id}.{field['id']}", group_ids, errors)

    add_mode = config.get('addMode', ADD_MODE_MANUAL)
    if add_mode not in ADD_MODES:
        errors.append(f"Group '{group_id}' has unknown addMode '{add_mode}'")

    if add_mode in (ADD_MODE_AUTO, ADD_MODE_OVERLAY):
        anchor_id = config.get('anchorFieldId')
        anchor = next((f for f in fields if isinstance(f, dict) and f.get('id') == anchor_id), None)
        if not anchor_id:
            errors.append(f"Group '{group_id}' with addMode '{add_mode}' missing 'anchorFieldId'")
        elif anchor is None:
            errors.append(f"Group '{group_id}' anchorFieldId '{anchor_id}' is not one of its fields")
        elif add_mode == ADD_MODE_AUTO and not as_list((anchor.get('optionFilter') or {}).get('dependsOn')):
            errors.append(f"Auto-add anchor '{group_id}.{anchor_id}' must declare optionFilter.dependsOn")

    for key in ('minRows', 'maxRows'):
        bound = config.get(key)
        if bound is not None and (not isinstance(bound, int) or isinstance(bound, bool) or bound < 0):
            errors.append(f"Group '{group_id}' {key} must be a non-negative integer")

    for rule in config.get('dedupRules') or []:
        if not isinstance(rule, dict) or not as_list(rule.get('fields')):
            errors.append(f"Dedup rule in group '{group_id}' missing 'fields'")
            continue
        for field_id in as_list(rule.get('fields')):
            if field_id not in field_ids:
                errors.append(f"Dedup rule in group '{group_id}' references unknown field '{field_id}'")

    selector = config.get('sectionSelector')
    if selector is not None and (not isinstance(selector, dict) or not selector.get('id')):
        errors.append(f"Group '{group_id}' sectionSelector missing 'id'")

    for sub in config.get('subGroups') or []:
        if not isinstance(sub, dict) or not sub.get('id'):
            errors.append(f"Sub-group in group '{group_id}' missing 'id'")
            continue
        if depth >= 1:
            errors.append(f"Sub-group '{sub['id']}' nests deeper than one level")
            continue
        _check_group(sub, sub['id'], group_ids, errors, depth + 1)


def _check_field(field: Dict[str, Any], label: str, group_ids: Set[str], errors: List[str]) -> None:
    for i, effect in enumerate(field.get('selectionEffects') or []):
        if not isinstance(effect, dict):
            errors.append(f"Selection effect {i} on '{label}' is not an object")
            continue
        if effect.get('type') not in EFFECT_TYPES:
            errors.append(f"Selection effect {i} on '{label}' has unknown type '{effect.get('type')}'")
        if effect.get('groupId') not in group_ids:
            errors.append(f"Selection effect {i} on '{label}' targets unknown group '{effect.get('groupId')}'")

    for i, rule in enumerate(field.get('validationRules') or []):
        if not isinstance(rule, dict) or not isinstance(rule.get('then'), dict) or not rule['then'].get('fieldId'):
            errors.append(f"Validation rule {i} on '{label}' missing 'then.fieldId'")
            continue
        phase = rule.get('phase', PHASE_BOTH)
        if phase not in PHASES:
            errors.append(f"Validation rule {i} on '{label}' has unknown phase '{phase}'")

    value_map = field.get('valueMap')
    if value_map is not None:
        if not isinstance(value_map, dict) or not as_list(value_map.get('dependsOn')):
            errors.append(f"Value map on '{label}' missing 'dependsOn'")
        elif value_map.get('op', 'lookup') not in VALUE_MAP_OPS:
            errors.append(f"Value map on '{label}' has unknown op '{value_map.get('op')}'")

    option_filter = field.get('optionFilter')
    if option_filter is not None:
        if not isinstance(option_filter, dict) or not as_list(option_filter.get('dependsOn')):
            errors.append(f"Option filter on '{label}' missing 'dependsOn'")
        elif option_filter.get('matchMode', 'and') not in ('and', 'or'):
            errors.append(f"Option filter on '{label}' has unknown matchMode '{option_filter.get('matchMode')}'")

    sort = field.get('optionSort', SORT_SOURCE)
    if sort not in (SORT_SOURCE, SORT_ALPHABETICAL):
        errors.append(f"Field '{label}' has unknown optionSort '{sort}'")


# ============================================================================
# Conversion
# ============================================================================

def _parse_question(raw: Dict[str, Any], default_language: str) -> QuestionDefinition:
    field_id = raw['id']
    config = None
    if raw.get('type') == FIELD_LINE_ITEM_GROUP:
        config = _parse_group(raw['lineItemConfig'], field_id, default_language)

    return QuestionDefinition(
        id=field_id,
        type=raw.get('type'),
        label=raw.get('label'),
        required=bool(raw.get('required', False)),
        visibility=raw.get('visibility'),
        option_filter=_parse_option_filter(raw.get('optionFilter')),
        options=parse_option_set(raw.get('options'), default_language),
        option_sort=raw.get('optionSort', SORT_SOURCE),
        data_source=raw.get('dataSource'),
        validation_rules=tuple(_parse_rule(r) for r in raw.get('validationRules') or []),
        selection_effects=tuple(
            _parse_effect(e, field_id, i) for i, e in enumerate(raw.get('selectionEffects') or [])
        ),
        value_map=_parse_value_map(raw.get('valueMap')),
        line_item_config=config,
        required_message=raw.get('requiredMessage'),
    )


def _parse_group(raw: Dict[str, Any], group_id: str, default_language: str) -> LineItemGroupConfig:
    selector = None
    raw_selector = raw.get('sectionSelector')
    if raw_selector:
        selector = SectionSelector(
            id=raw_selector['id'],
            label=raw_selector.get('label'),
            options=parse_option_set(raw_selector.get('options'), default_language),
        )

    return LineItemGroupConfig(
        id=group_id,
        fields=tuple(_parse_question(f, default_language) for f in raw.get('fields') or []),
        add_mode=raw.get('addMode', ADD_MODE_MANUAL),
        anchor_field_id=raw.get('anchorFieldId'),
        section_selector=selector,
        sub_groups=tuple(_parse_group(s, s['id'], default_language) for s in raw.get('subGroups') or []),
        min_rows=raw.get('minRows'),
        max_rows=raw.get('maxRows'),
        dedup_rules=tuple(
            DedupRule(fields=tuple(as_list(r.get('fields'))), message=r.get('message'))
            for r in raw.get('dedupRules') or []
        ),
        label=raw.get('label'),
    )


def _parse_option_filter(raw: Optional[Dict[str, Any]]) -> Optional[OptionFilter]:
    if not raw:
        return None
    return OptionFilter(
        depends_on=tuple(as_list(raw.get('dependsOn'))),
        option_map=_parse_option_map(raw.get('optionMap')),
        match_mode=raw.get('matchMode', 'and'),
        exclusive=bool(raw.get('exclusive', False)),
        bypass_values=tuple(to_text(v) for v in as_list(raw.get('bypassValues'))),
        data_source_field=raw.get('dataSourceField'),
        data_source_delimiter=raw.get('dataSourceDelimiter'),
    )


def _parse_value_map(raw: Optional[Dict[str, Any]]) -> Optional[ValueMapConfig]:
    if not raw:
        return None
    return ValueMapConfig(
        depends_on=tuple(as_list(raw.get('dependsOn'))),
        option_map=_parse_option_map(raw.get('optionMap')),
        op=raw.get('op', 'lookup'),
        offset_days=int(raw.get('offsetDays', 0) or 0),
    )


def _parse_option_map(raw: Optional[Dict[str, Any]]) -> Dict[str, tuple]:
    return {
        str(key): tuple(to_text(v) for v in as_list(values) if not is_empty_value(v))
        for key, values in (raw or {}).items()
    }


def _parse_rule(raw: Dict[str, Any]) -> ValidationRule:
    then = raw['then']
    return ValidationRule(
        when=raw.get('when') or {},
        then=RuleThen(
            field_id=then['fieldId'],
            required=bool(then.get('required', False)),
            min=then.get('min'),
            max=then.get('max'),
            min_field_id=then.get('minFieldId'),
            max_field_id=then.get('maxFieldId'),
            allowed=tuple(to_text(v) for v in as_list(then.get('allowed'))),
            disallowed=tuple(to_text(v) for v in as_list(then.get('disallowed'))),
        ),
        message=raw.get('message'),
        phase=raw.get('phase', PHASE_BOTH),
    )


def _parse_effect(raw: Dict[str, Any], field_id: str, index: int) -> SelectionEffect:
    effect_type = raw['type']
    return SelectionEffect(
        type=effect_type,
        group_id=raw['groupId'],
        id=raw.get('id') or f"{field_id}#{index}",
        preset=dict(raw.get('preset') or {}),
        trigger_values=tuple(to_text(v) for v in as_list(raw.get('triggerValues'))),
        when=raw.get('when'),
        depends_on=tuple(as_list(raw.get('dependsOn'))),
        target_effect_id=raw.get('targetEffectId') if effect_type == EFFECT_DELETE_LINE_ITEMS else None,
    )
