"""
Semantic contracts for the dynamic form engine.

This module defines immutable data structures that serve as contracts
between modules. These are NOT validators - they define shape and
semantics without enforcing rules. Shape checks live in the definition
loader, which is the only place that turns raw JSON into these types.

Design principles:
- Frozen dataclasses (immutable after creation)
- No validation logic (contracts, not validators)
- No dependencies on other modules
- Condition trees stay as plain JSON dicts (evaluated by core.conditions)

Contents:
- OptionSet / OptionItem: Option values, per-language labels, tooltips
- OptionFilter / ValueMapConfig: Dependency-driven option and value rules
- RuleThen / ValidationRule: Conditional validation rules
- SelectionEffect: Row-creating side effect of a selection
- DedupRule / SectionSelector / LineItemGroupConfig: Repeating group config
- QuestionDefinition / FormDefinition: The declarative form
- LineItemRowState: One row of a repeating group
- ValidationError: One structured validation failure

Usage:
    from formengine.contracts import FormDefinition, LineItemRowState
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple


# ============================================================================
# Field types and modes
# ============================================================================

FIELD_TEXT = 'TEXT'
FIELD_PARAGRAPH = 'PARAGRAPH'
FIELD_NUMBER = 'NUMBER'
FIELD_DATE = 'DATE'
FIELD_CHOICE = 'CHOICE'
FIELD_CHECKBOX = 'CHECKBOX'
FIELD_FILE_UPLOAD = 'FILE_UPLOAD'
FIELD_LINE_ITEM_GROUP = 'LINE_ITEM_GROUP'

FIELD_TYPES = frozenset({
    FIELD_TEXT, FIELD_PARAGRAPH, FIELD_NUMBER, FIELD_DATE,
    FIELD_CHOICE, FIELD_CHECKBOX, FIELD_FILE_UPLOAD, FIELD_LINE_ITEM_GROUP,
})

ADD_MODE_MANUAL = 'manual'
ADD_MODE_OVERLAY = 'overlay'
ADD_MODE_AUTO = 'auto'
ADD_MODES = frozenset({ADD_MODE_MANUAL, ADD_MODE_OVERLAY, ADD_MODE_AUTO})

PHASE_CHANGE = 'change'
PHASE_SUBMIT = 'submit'
PHASE_BOTH = 'both'
PHASES = frozenset({PHASE_CHANGE, PHASE_SUBMIT, PHASE_BOTH})

EFFECT_ADD_LINE_ITEMS = 'addLineItems'
EFFECT_CLEAR_LINE_ITEMS = 'clearLineItems'
EFFECT_DELETE_LINE_ITEMS = 'deleteLineItems'
EFFECT_TYPES = frozenset({
    EFFECT_ADD_LINE_ITEMS, EFFECT_CLEAR_LINE_ITEMS, EFFECT_DELETE_LINE_ITEMS,
})

SORT_SOURCE = 'source'
SORT_ALPHABETICAL = 'alphabetical'


# ============================================================================
# Options
# ============================================================================

@dataclass(frozen=True)
class OptionSet:
    """
    Option values with per-language labels.

    `values` are the canonical (language-independent) option values in
    declared order. `labels` maps a lower-case language code to a tuple of
    labels aligned index-for-index with `values`; a missing or empty label
    falls back to the default language and then to the value itself.

    Attributes:
        values: Canonical option values, declared order
        labels: language -> labels aligned with values
        tooltips: value -> tooltip text
        raw: Source rows the set was built from (used by data-source filters)
    """
    values: Tuple[str, ...] = ()
    labels: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    tooltips: Dict[str, str] = field(default_factory=dict)
    raw: Tuple[Dict[str, Any], ...] = ()


@dataclass(frozen=True)
class OptionItem:
    """One presentable option: canonical value, localized label, tooltip."""
    value: str
    label: str
    tooltip: Optional[str] = None


@dataclass(frozen=True)
class OptionFilter:
    """
    Narrows a field's options based on other fields' values.

    Attributes:
        depends_on: Controlling field ids (one or many)
        option_map: Dependency key -> allowed option values. Keys are a
            single value, a '||'-joined composite of several dependency
            values, or '*' as the fallback.
        match_mode: 'and' intersects per-value allow-lists of a
            multi-select dependency, 'or' unions them
        exclusive: When True, options not mentioned in any allow-list are
            excluded instead of always allowed
        bypass_values: Dependency values that disable filtering entirely
        data_source_field: Column of the option set's raw rows to filter on
        data_source_delimiter: Splits data_source_field cells into tokens
    """
    depends_on: Tuple[str, ...]
    option_map: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    match_mode: str = 'and'
    exclusive: bool = False
    bypass_values: Tuple[str, ...] = ()
    data_source_field: Optional[str] = None
    data_source_delimiter: Optional[str] = None


@dataclass(frozen=True)
class ValueMapConfig:
    """
    Derived value of a read-only field.

    op='lookup' resolves dependency values through option_map (same key
    rules as OptionFilter). op='copy' copies the first dependency.
    op='addDays' adds offset_days to the first dependency parsed as an
    ISO date.
    """
    depends_on: Tuple[str, ...]
    option_map: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    op: str = 'lookup'
    offset_days: int = 0


# ============================================================================
# Validation
# ============================================================================

@dataclass(frozen=True)
class RuleThen:
    """
    Constraints applied to the target field when a rule's `when` matches.

    A RuleThen with no constraints at all means "this combination is
    invalid" and always yields the rule's message.
    """
    field_id: str
    required: bool = False
    min: Optional[float] = None
    max: Optional[float] = None
    min_field_id: Optional[str] = None
    max_field_id: Optional[str] = None
    allowed: Tuple[str, ...] = ()
    disallowed: Tuple[str, ...] = ()

    @property
    def has_constraints(self) -> bool:
        return bool(
            self.required
            or self.min is not None
            or self.max is not None
            or self.min_field_id
            or self.max_field_id
            or self.allowed
            or self.disallowed
        )


@dataclass(frozen=True)
class ValidationRule:
    """
    Conditional rule: when `when` holds, `then` must be satisfied.

    Attributes:
        when: Condition tree (JSON dict)
        then: Constraints on the target field
        message: Plain string or language -> string dict
        phase: 'change', 'submit' or 'both'
    """
    when: Dict[str, Any]
    then: RuleThen
    message: Any = None
    phase: str = PHASE_BOTH


@dataclass(frozen=True)
class ValidationError:
    """
    One structured validation failure.

    `path` is the flat error key: the field id for top-level fields and
    '{groupKey}__{fieldId}__{rowId}' for fields inside a row.
    """
    field_id: str
    message: str
    path: str
    kind: str = 'rule'
    group_key: Optional[str] = None
    row_id: Optional[str] = None


# ============================================================================
# Selection effects and repeating groups
# ============================================================================

@dataclass(frozen=True)
class SelectionEffect:
    """
    Side effect fired when the owning field's value changes.

    Attributes:
        type: addLineItems, clearLineItems or deleteLineItems
        group_id: Target group (top-level or sub-group definition id)
        id: Stable effect id; defaults to '{fieldId}#{index}' at load time
        preset: Row values for addLineItems. Strings may reference
            '$row.<field>', '$top.<field>' or '$value'.
        trigger_values: Values that fire the effect; empty means any
            non-empty value
        when: Optional extra condition gate
        depends_on: Row fields that must be non-empty before the effect
            is allowed to populate
        target_effect_id: deleteLineItems only; rows created by this
            effect id are removed
    """
    type: str
    group_id: str
    id: str = ''
    preset: Dict[str, Any] = field(default_factory=dict)
    trigger_values: Tuple[str, ...] = ()
    when: Optional[Dict[str, Any]] = None
    depends_on: Tuple[str, ...] = ()
    target_effect_id: Optional[str] = None


@dataclass(frozen=True)
class DedupRule:
    """Rows of a group must not repeat the same combination of `fields`."""
    fields: Tuple[str, ...]
    message: Any = None


@dataclass(frozen=True)
class SectionSelector:
    """Group-level selector whose value rows inherit."""
    id: str
    label: Any = None
    options: Optional[OptionSet] = None


@dataclass(frozen=True)
class LineItemGroupConfig:
    """
    Configuration of a repeating group (top-level group or sub-group).

    Attributes:
        id: Group id (question id for top-level groups)
        fields: Row fields, in order
        add_mode: 'manual', 'overlay' or 'auto'
        anchor_field_id: Field whose option values drive auto rows
        section_selector: Optional group-level selector
        sub_groups: Nested groups, one set per parent row
        min_rows / max_rows: Row count bounds checked at validation
        dedup_rules: Duplicate-row rules
    """
    id: str
    fields: Tuple['QuestionDefinition', ...] = ()
    add_mode: str = ADD_MODE_MANUAL
    anchor_field_id: Optional[str] = None
    section_selector: Optional[SectionSelector] = None
    sub_groups: Tuple['LineItemGroupConfig', ...] = ()
    min_rows: Optional[int] = None
    max_rows: Optional[int] = None
    dedup_rules: Tuple[DedupRule, ...] = ()
    label: Any = None

    def get_field(self, field_id: str) -> Optional['QuestionDefinition']:
        for candidate in self.fields:
            if candidate.id == field_id:
                return candidate
        return None

    def sub_group(self, sub_group_id: str) -> Optional['LineItemGroupConfig']:
        for candidate in self.sub_groups:
            if candidate.id == sub_group_id:
                return candidate
        return None

    @property
    def anchor_field(self) -> Optional['QuestionDefinition']:
        if not self.anchor_field_id:
            return None
        return self.get_field(self.anchor_field_id)


# ============================================================================
# Form definition
# ============================================================================

@dataclass(frozen=True)
class QuestionDefinition:
    """
    One field of the form. Row fields of a group use the same shape.

    Attributes:
        id: Field id, unique within its scope
        type: One of FIELD_TYPES
        label: Plain string or language -> string dict
        required: Field must be non-empty when visible
        visibility: {'showWhen': cond} and/or {'hideWhen': cond}
        option_filter: Dependency-driven option narrowing
        options: Inline option set (data-sourced fields get theirs later)
        option_sort: 'source' or 'alphabetical'
        data_source: Opaque descriptor for externally loaded options
        validation_rules: Conditional rules owned by this field
        selection_effects: Effects fired when this field changes
        value_map: Derived-value config for read-only fields
        line_item_config: Group config (LINE_ITEM_GROUP only)
        required_message: Overrides the default "required" message
    """
    id: str
    type: str
    label: Any = None
    required: bool = False
    visibility: Optional[Dict[str, Any]] = None
    option_filter: Optional[OptionFilter] = None
    options: Optional[OptionSet] = None
    option_sort: str = SORT_SOURCE
    data_source: Optional[Dict[str, Any]] = None
    validation_rules: Tuple[ValidationRule, ...] = ()
    selection_effects: Tuple[SelectionEffect, ...] = ()
    value_map: Optional[ValueMapConfig] = None
    line_item_config: Optional[LineItemGroupConfig] = None
    required_message: Any = None


@dataclass(frozen=True)
class FormDefinition:
    """Ordered questions plus language settings."""
    questions: Tuple[QuestionDefinition, ...]
    languages: Tuple[str, ...] = ('en',)
    default_language: str = 'en'
    title: Any = None

    def question(self, question_id: str) -> Optional[QuestionDefinition]:
        for candidate in self.questions:
            if candidate.id == question_id:
                return candidate
        return None

    def line_item_groups(self) -> Tuple[QuestionDefinition, ...]:
        return tuple(
            q for q in self.questions
            if q.type == FIELD_LINE_ITEM_GROUP and q.line_item_config is not None
        )


# ============================================================================
# Row state
# ============================================================================

@dataclass(frozen=True)
class LineItemRowState:
    """
    One row of a repeating group.

    Rows are replaced, never mutated: an unchanged row keeps its object
    identity across engine passes, which is how callers detect change.

    Attributes:
        id: Stable row id
        values: Field values plus reserved '__ck*' metadata keys
        auto_generated: True for rows the engine created
        effect_context_id: Context that created the row (auto territory
            or selection-effect context)
        parent_id: Parent row id for sub-group rows
        parent_group_id: Parent group key for sub-group rows
    """
    id: str
    values: Dict[str, Any] = field(default_factory=dict)
    auto_generated: Optional[bool] = None
    effect_context_id: Optional[str] = None
    parent_id: Optional[str] = None
    parent_group_id: Optional[str] = None
