"""
Form Engine - Event orchestration over form state snapshots (Functional Core)

Responsibilities:
- Apply one external event (command) to a FormState snapshot
- Run the fixed-order pass: write value, selection effects, auto-add
  reconciliation, value maps
- Re-run effects whose row completeness depends on the changed field
- Keep effects in step with auto rows the reconciler creates or drops
- Bound the reconcile / value-map loop and report non-convergence
- Build the presentation view (hidden fields, options, rows)
- Run whole-form validation and produce the record to submit

Design principles:
- Ephemeral per event (definition and option sets cached, state external)
- handle() transforms state deterministically given the id generator
- Illegal commands are returned as IllegalCommand, never raised
- Thin orchestration layer (rules live in the core modules)
"""

import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from formengine.commands import (
    AddRow,
    FormState,
    LoadForm,
    OptionsArrived,
    RemoveRow,
    SetSubgroupSelector,
    SetValue,
    SubmitForm,
    ValidateForm,
)
from formengine.contracts import (
    ADD_MODE_AUTO,
    FIELD_CHECKBOX,
    FIELD_CHOICE,
    FIELD_LINE_ITEM_GROUP,
    PHASE_SUBMIT,
    PHASES,
    FormDefinition,
    LineItemGroupConfig,
    LineItemRowState,
    OptionItem,
    QuestionDefinition,
)
from formengine.core.conditions import FormContext, RowContext, should_hide_field
from formengine.core.line_items import (
    ROW_ID_KEY,
    ROW_PARENT_GROUP_ID_KEY,
    ROW_PARENT_ROW_ID_KEY,
    ROW_SOURCE_KEY,
    SOURCE_MANUAL,
    LineItemRowCapabilities,
    build_initial_line_items,
    build_subgroup_key,
    cascade_remove_rows,
    export_line_items,
    find_row,
    is_auto_row,
    parent_row_values,
    parse_subgroup_key,
    resolve_group_config,
    row_field_path,
    selector_value_for,
)
from formengine.core.options import (
    build_localized_options,
    compute_allowed_options,
    dependency_values_for,
    option_key,
    resolve_option_set,
    with_current_selection,
)
from formengine.core.reconciler import reconcile_auto_groups
from formengine.core.selection_effects import (
    EffectOptions,
    EffectOutcome,
    LineItemScope,
    dependent_effects,
    dispatch,
)
from formengine.core.validation import validate_form
from formengine.core.value_maps import apply_value_maps_to_form, scoped_getter
from formengine.results import EventResult, FormView, IllegalCommand, SubmitResult, ValidationResult
from formengine.utils.helpers import generate_row_id, is_empty_value
from formengine.utils.i18n import normalize_language

logger = logging.getLogger(__name__)

OPTION_FIELD_TYPES = (FIELD_CHOICE, FIELD_CHECKBOX)


class ConvergenceError(RuntimeError):
    """The reconcile / value-map loop was still changing after MAX_PASSES."""


@dataclass(frozen=True)
class SettlePass:
    """State after one reconcile, row-effect and value-map pass."""
    values: Dict[str, Any]
    line_items: Dict[str, List[LineItemRowState]]
    selectors: Dict[str, Any]
    signatures: Dict[str, str]
    changed: bool
    reconciled: Tuple[str, ...] = ()
    effects: Tuple[EffectOutcome, ...] = ()


class FormEngine:
    """
    Drives one form definition.

    Functional core design:
    - Ephemeral per event (definition and option sets cached, state external)
    - handle() returns a new FormState; the input snapshot is never mutated
    - No implicit state accumulation besides loaded option sets
    """

    # Reconcile / value-map passes per event; a change on the last pass
    # means the definition does not converge
    MAX_PASSES = 2

    def __init__(
        self,
        definition: FormDefinition,
        option_sets: Optional[Dict[str, Any]] = None,
        id_generator: Optional[Callable[[str], str]] = None,
        language: Optional[str] = None,
        strict: bool = False,
    ):
        """
        Args:
            definition: Parsed form definition
            option_sets: Loaded option sets keyed by options.option_key()
            id_generator: prefix -> new row id (default: short uuid)
            language: Label / message language (default: definition's)
            strict: Raise ConvergenceError instead of logging it

        Raises:
            TypeError: If definition or id_generator has the wrong type
        """
        if not isinstance(definition, FormDefinition):
            raise TypeError("definition must be a FormDefinition")
        if id_generator is not None and not callable(id_generator):
            raise TypeError("id_generator must be callable")

        self.definition = definition
        self.option_sets = dict(option_sets or {})
        self.id_generator = id_generator or generate_row_id
        self.language = normalize_language(language, definition.default_language)
        self.strict = strict

        logger.info(
            f"Form engine initialized: {len(definition.questions)} questions, "
            f"{len(definition.line_item_groups())} groups, language={self.language}"
        )

    # =========================================================================
    # Public API
    # =========================================================================

    def handle(self, command, state: Optional[FormState] = None):
        """
        Apply one command.

        Args:
            command: One of the formengine.commands types
            state: Current snapshot (None only for LoadForm)

        Returns:
            EventResult, ValidationResult, SubmitResult or IllegalCommand

        Raises:
            TypeError: If command is not a known command type
        """
        command_type = type(command).__name__

        if isinstance(command, LoadForm):
            return self._load(command)

        if state is None:
            return IllegalCommand("No form state; send LoadForm first", command_type)

        if isinstance(command, SetValue):
            return self._set_value(command, state)
        if isinstance(command, AddRow):
            return self._add_row(command, state)
        if isinstance(command, RemoveRow):
            return self._remove_row(command, state)
        if isinstance(command, SetSubgroupSelector):
            return self._set_subgroup_selector(command, state)
        if isinstance(command, OptionsArrived):
            return self._options_arrived(command, state)
        if isinstance(command, ValidateForm):
            return self.validate(state, command.phase)
        if isinstance(command, SubmitForm):
            return self._submit(state)

        logger.warning(f"Unknown command type: {command_type}")
        raise TypeError(f"Unknown command type: {command_type}")

    def start(self, record_values: Optional[Dict[str, Any]] = None) -> EventResult:
        return self._load(LoadForm(record_values=record_values))

    def validate(self, state: FormState, phase: str = PHASE_SUBMIT):
        if phase not in PHASES:
            return IllegalCommand(f"Unknown validation phase: {phase}", 'ValidateForm')
        errors = validate_form(self.definition, state.values, state.line_items, phase, self.language)
        logger.info(f"Validation ({phase}): {len(errors)} error(s)")
        return ValidationResult(errors=tuple(errors), phase=phase)

    def describe(self, state: FormState, language: Optional[str] = None) -> FormView:
        """
        Presentation view of a snapshot.

        Hidden paths and option lists cover top-level fields, section
        selectors and every row field of every group instance. Option lists
        keep the current selection even when it is no longer allowed.
        """
        language = normalize_language(language, self.language)
        top = FormContext(state.values, state.line_items)
        hidden = set()
        options: Dict[str, List[OptionItem]] = {}

        for question in self.definition.questions:
            if should_hide_field(question.visibility, top):
                hidden.add(question.id)

            if question.type in OPTION_FIELD_TYPES:
                options[question.id] = self._field_options(
                    question, None, None, top.get_value, state.values.get(question.id), language,
                )

            config = question.line_item_config
            if question.type == FIELD_LINE_ITEM_GROUP and config is not None:
                selector = config.section_selector
                if selector is not None and selector.options is not None:
                    options[selector.id] = build_localized_options(
                        selector.options,
                        with_current_selection(list(selector.options.values), state.values.get(selector.id)),
                        language,
                        self.definition.default_language,
                    )
                self._describe_group(config, question.id, state, [], hidden, options, language)

        return FormView(
            hidden=frozenset(hidden),
            options=options,
            rows={key: list(rows) for key, rows in state.line_items.items()},
            values=dict(state.values),
        )

    # =========================================================================
    # Command handlers
    # =========================================================================

    def _load(self, command: LoadForm) -> EventResult:
        record = dict(command.record_values or {})
        group_ids = {q.id for q in self.definition.line_item_groups()}
        values = {k: v for k, v in record.items() if k not in group_ids}
        line_items = build_initial_line_items(self.definition, record, self.id_generator)

        initial = FormState(values=values, line_items=line_items)
        result = self._settle(initial, values, line_items, {}, {})
        logger.info(
            f"Form loaded: {len(values)} values, "
            f"{sum(len(rows) for rows in result.state.line_items.values())} rows"
        )
        return result

    def _set_value(self, command: SetValue, state: FormState):
        if command.group_key is None:
            return self._set_top_value(command, state)
        return self._set_row_value(command, state)

    def _set_top_value(self, command: SetValue, state: FormState):
        question = self.definition.question(command.field_id)
        if question is None and command.field_id not in self._top_selector_ids():
            return IllegalCommand(f"Unknown field: {command.field_id}", 'SetValue')
        if question is not None and question.type == FIELD_LINE_ITEM_GROUP:
            return IllegalCommand(f"{command.field_id} is a group; use AddRow / RemoveRow", 'SetValue')

        values = dict(state.values)
        values[command.field_id] = command.value
        line_items = state.line_items
        effects: List[EffectOutcome] = []

        if question is not None and question.selection_effects:
            capabilities = self._capabilities(values, line_items, state.subgroup_selectors)
            effects.extend(dispatch(question, command.value, capabilities, EffectOptions(top_values=values)))
            if capabilities.changed:
                line_items = capabilities.line_items

        # Effects of other fields that need this one to populate
        for other in self.definition.questions:
            narrowed = dependent_effects(other, command.field_id)
            if narrowed is None:
                continue
            capabilities = self._capabilities(values, line_items, state.subgroup_selectors)
            effects.extend(dispatch(narrowed, values.get(other.id), capabilities, EffectOptions(top_values=values)))
            if capabilities.changed:
                line_items = capabilities.line_items

        debug = {'effects': effects} if effects else {}
        return self._settle(state, values, line_items, state.subgroup_selectors, debug)

    def _set_row_value(self, command: SetValue, state: FormState):
        config = resolve_group_config(self.definition, command.group_key)
        if config is None:
            return IllegalCommand(f"Unknown group: {command.group_key}", 'SetValue')
        row = find_row(state.line_items, command.group_key, command.row_id)
        if row is None:
            return IllegalCommand(f"Unknown row {command.row_id} in {command.group_key}", 'SetValue')

        row_field = config.get_field(command.field_id)
        selector_id = config.section_selector.id if config.section_selector else None
        if row_field is None and command.field_id != selector_id:
            return IllegalCommand(f"Unknown field {command.field_id} in {command.group_key}", 'SetValue')
        if config.add_mode == ADD_MODE_AUTO and command.field_id == config.anchor_field_id and is_auto_row(row):
            return IllegalCommand(
                f"{command.field_id} identifies auto row {row.id} in {command.group_key}; remove the row instead",
                'SetValue',
            )

        new_row = replace(row, values={**row.values, command.field_id: command.value})
        line_items = self._replace_row(state.line_items, command.group_key, new_row)
        scope = LineItemScope(
            group_key=command.group_key,
            row_id=row.id,
            row_values=new_row.values,
            parent_values=tuple(parent_row_values(line_items, command.group_key)),
        )
        effects: List[EffectOutcome] = []

        if row_field is not None and row_field.selection_effects:
            capabilities = self._capabilities(
                state.values, line_items, state.subgroup_selectors, command.group_key, row.id,
            )
            effects.extend(dispatch(
                row_field, command.value, capabilities,
                EffectOptions(top_values=state.values, line_item=scope),
            ))
            if capabilities.changed:
                line_items = capabilities.line_items

        # Same row: effects that need this field before they populate
        for other in config.fields:
            narrowed = dependent_effects(other, command.field_id)
            if narrowed is None:
                continue
            capabilities = self._capabilities(
                state.values, line_items, state.subgroup_selectors, command.group_key, row.id,
            )
            effects.extend(dispatch(
                narrowed, new_row.values.get(other.id), capabilities,
                EffectOptions(top_values=state.values, line_item=scope),
            ))
            if capabilities.changed:
                line_items = capabilities.line_items

        debug = {'effects': effects} if effects else {}
        return self._settle(state, state.values, line_items, state.subgroup_selectors, debug)

    def _add_row(self, command: AddRow, state: FormState):
        config = resolve_group_config(self.definition, command.group_key)
        if config is None:
            return IllegalCommand(f"Unknown group: {command.group_key}", 'AddRow')

        parsed = parse_subgroup_key(command.group_key)
        if parsed is not None and find_row(state.line_items, parsed[0], parsed[1]) is None:
            return IllegalCommand(f"Parent row {parsed[1]} of {command.group_key} does not exist", 'AddRow')

        rows = state.rows(command.group_key)
        if config.max_rows is not None and len(rows) >= config.max_rows:
            return IllegalCommand(f"{command.group_key} already has {config.max_rows} row(s)", 'AddRow')

        row_id = self.id_generator(config.id)
        values = dict(command.preset or {})
        values[ROW_ID_KEY] = row_id
        values[ROW_SOURCE_KEY] = SOURCE_MANUAL
        if parsed is not None:
            values[ROW_PARENT_ROW_ID_KEY] = parsed[1]
            values[ROW_PARENT_GROUP_ID_KEY] = parsed[0]
        if config.section_selector is not None and is_empty_value(values.get(config.section_selector.id)):
            selector_value = selector_value_for(config, command.group_key, state.values, state.subgroup_selectors)
            if not is_empty_value(selector_value):
                values[config.section_selector.id] = selector_value

        row = LineItemRowState(
            id=row_id,
            values=values,
            auto_generated=False,
            parent_id=parsed[1] if parsed else None,
            parent_group_id=parsed[0] if parsed else None,
        )
        line_items = dict(state.line_items)
        line_items[command.group_key] = rows + [row]
        logger.info(f"Added row {row_id} to {command.group_key}")

        # Preset values behave like values the user set on the new row
        line_items, effects = self._fire_row_effects(
            config, command.group_key, row, state.values, line_items, state.subgroup_selectors,
        )

        debug = {'row_id': row_id}
        if effects:
            debug['effects'] = effects
        return self._settle(state, state.values, line_items, state.subgroup_selectors, debug)

    def _remove_row(self, command: RemoveRow, state: FormState):
        config = resolve_group_config(self.definition, command.group_key)
        if config is None:
            return IllegalCommand(f"Unknown group: {command.group_key}", 'RemoveRow')
        row = find_row(state.line_items, command.group_key, command.row_id)
        if row is None:
            return IllegalCommand(f"Unknown row {command.row_id} in {command.group_key}", 'RemoveRow')

        line_items = self._retract_row_effects(
            config, command.group_key, row, state.values, state.line_items, state.subgroup_selectors,
        )
        line_items, removed = cascade_remove_rows(line_items, command.group_key, [row.id])

        prefix = f"{command.group_key}::{row.id}::"
        selectors = {k: v for k, v in state.subgroup_selectors.items() if not k.startswith(prefix)}

        logger.info(f"Removed row {row.id} from {command.group_key} ({len(removed)} row(s) in total)")
        return self._settle(state, state.values, line_items, selectors, {'removed': removed})

    def _set_subgroup_selector(self, command: SetSubgroupSelector, state: FormState):
        parsed = parse_subgroup_key(command.group_key)
        config = resolve_group_config(self.definition, command.group_key) if parsed else None
        if config is None or config.section_selector is None:
            return IllegalCommand(f"{command.group_key} is not a sub-group with a selector", 'SetSubgroupSelector')
        if find_row(state.line_items, parsed[0], parsed[1]) is None:
            return IllegalCommand(f"Parent row {parsed[1]} of {command.group_key} does not exist", 'SetSubgroupSelector')

        selectors = dict(state.subgroup_selectors)
        selectors[command.group_key] = command.value
        return self._settle(state, state.values, state.line_items, selectors, {})

    def _options_arrived(self, command: OptionsArrived, state: FormState) -> EventResult:
        key = option_key(command.field_id, command.group_key)
        self.option_sets[key] = command.option_set
        logger.info(f"Options arrived for {key}: {len(command.option_set.values)} value(s)")
        return self._settle(state, state.values, state.line_items, state.subgroup_selectors, {'option_key': key})

    def _submit(self, state: FormState) -> SubmitResult:
        result = self.validate(state, PHASE_SUBMIT)
        if result.errors:
            logger.info(f"Submit blocked by {len(result.errors)} error(s)")
            return SubmitResult(valid=False, errors=result.errors, record={})

        record = dict(state.values)
        record.update(export_line_items(self.definition, state.line_items))
        logger.info("Submit validated")
        return SubmitResult(valid=True, errors=(), record=record)

    # =========================================================================
    # Fixed-point settle loop
    # =========================================================================

    def _settle(self, state, values, line_items, selectors, debug) -> EventResult:
        """
        Run reconcile, row effects and value maps until nothing changes, at
        most MAX_PASSES. When the last pass still changed something, one more
        pass is computed and discarded: the result counts as converged only
        if that pass would change nothing.

        Raises:
            ConvergenceError: In strict mode, when the form did not converge
        """
        signatures = state.auto_signatures
        reconciled: List[str] = []
        effects: List[EffectOutcome] = []
        passes = 0
        converged = False

        for _ in range(self.MAX_PASSES):
            passes += 1
            settled = self._settle_pass(values, line_items, selectors, signatures)
            values, line_items = settled.values, settled.line_items
            selectors, signatures = settled.selectors, settled.signatures
            reconciled.extend(settled.reconciled)
            effects.extend(settled.effects)
            if not settled.changed:
                converged = True
                break

        if not converged:
            converged = not self._settle_pass(values, line_items, selectors, signatures).changed

        if not converged:
            logger.error(f"Form did not converge after {self.MAX_PASSES} passes; check value maps and auto-add groups")
            if self.strict:
                raise ConvergenceError(f"Form did not converge after {self.MAX_PASSES} passes")

        changed = (
            values != state.values
            or line_items is not state.line_items
            or selectors != state.subgroup_selectors
        )
        new_state = FormState(
            values=values,
            line_items=line_items,
            subgroup_selectors=dict(selectors),
            auto_signatures=dict(signatures),
            event_count=state.event_count + 1,
        )
        debug = dict(debug)
        if reconciled:
            debug['reconciled'] = reconciled
        if effects:
            debug['auto_row_effects'] = effects
        return EventResult(state=new_state, changed=changed, converged=converged, passes=passes, debug=debug)

    def _settle_pass(self, values, line_items, selectors, signatures) -> SettlePass:
        auto = reconcile_auto_groups(
            self.definition, values, line_items, self.id_generator,
            self.option_sets, self.language, selectors, signatures,
        )
        synced = auto.line_items
        effects: List[EffectOutcome] = []
        for target_key in auto.changed_targets:
            synced, selectors = self._sync_auto_row_effects(
                target_key, line_items.get(target_key, []), auto.values, synced, selectors, effects,
            )

        new_values, new_line_items, mapped = apply_value_maps_to_form(self.definition, auto.values, synced)
        return SettlePass(
            values=new_values,
            line_items=new_line_items,
            selectors=selectors,
            signatures=auto.signatures,
            changed=auto.changed or mapped or synced is not auto.line_items,
            reconciled=tuple(auto.changed_targets),
            effects=tuple(effects),
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _capabilities(self, values, line_items, selectors, source_group_key=None, source_row_id=None):
        return LineItemRowCapabilities(
            self.definition,
            values,
            line_items,
            self.id_generator,
            source_group_key=source_group_key,
            source_row_id=source_row_id,
            subgroup_selectors=selectors,
            option_sets=self.option_sets,
        )

    def _fire_row_effects(self, config: LineItemGroupConfig, group_key: str, row: LineItemRowState,
                          values, line_items, selectors, force_context_reset=False):
        """
        Dispatch the effects of every filled field of a row.

        Returns:
            (line items, effect outcomes)
        """
        outcomes: List[EffectOutcome] = []
        for row_field in config.fields:
            if not row_field.selection_effects:
                continue
            value = row.values.get(row_field.id)
            if not force_context_reset and is_empty_value(value):
                continue
            capabilities = self._capabilities(values, line_items, selectors, group_key, row.id)
            scope = LineItemScope(group_key, row.id, row.values, tuple(parent_row_values(line_items, group_key)))
            outcomes.extend(dispatch(
                row_field, value, capabilities,
                EffectOptions(top_values=values, line_item=scope, force_context_reset=force_context_reset),
            ))
            if capabilities.changed:
                line_items = capabilities.line_items
        return line_items, outcomes

    def _retract_row_effects(self, config: LineItemGroupConfig, group_key: str, row: LineItemRowState,
                             values, line_items, selectors):
        """Fire every effect of the row (and its sub-rows) in reset mode."""
        line_items, _ = self._fire_row_effects(
            config, group_key, row, values, line_items, selectors, force_context_reset=True,
        )
        for sub in config.sub_groups:
            sub_key = build_subgroup_key(group_key, row.id, sub.id)
            for sub_row in list(line_items.get(sub_key, [])):
                line_items = self._retract_row_effects(sub, sub_key, sub_row, values, line_items, selectors)
        return line_items

    def _sync_auto_row_effects(self, target_key, previous_rows, values, line_items, selectors, effects):
        """
        Keep selection effects in step with a reconciled auto target.

        Rows the reconciler dropped retract their effects and lose their
        sub-group instances; rows it created fire their effects like a
        preset on AddRow.

        Returns:
            (line items, subgroup selectors)
        """
        config = resolve_group_config(self.definition, target_key)
        if config is None:
            return line_items, selectors

        current_ids = {row.id for row in line_items.get(target_key, [])}
        previous_ids = {row.id for row in previous_rows}

        dropped = [row for row in previous_rows if row.id not in current_ids]
        for row in dropped:
            line_items = self._retract_row_effects(config, target_key, row, values, line_items, selectors)
        if dropped:
            prefixes = tuple(f"{target_key}::{row.id}::" for row in dropped)
            if any(key.startswith(prefixes) for key in line_items):
                line_items, removed = cascade_remove_rows(line_items, target_key, [row.id for row in dropped])
                logger.info(f"Dropped sub-groups of reconciled rows in {target_key}: {len(removed)} row(s)")
            selectors = {k: v for k, v in selectors.items() if not k.startswith(prefixes)}

        for row in list(line_items.get(target_key, [])):
            if row.id in previous_ids:
                continue
            line_items, outcomes = self._fire_row_effects(config, target_key, row, values, line_items, selectors)
            effects.extend(outcomes)
        return line_items, selectors

    def _describe_group(self, config, group_key, state, parent_chain, hidden, options, language):
        for row in state.line_items.get(group_key, []):
            scope = RowContext(state.values, state.line_items, group_key, row.id, row.values, parent_chain)
            selector_id = config.section_selector.id if config.section_selector else None
            selector_value = selector_value_for(config, group_key, state.values, state.subgroup_selectors)
            getter = scoped_getter(row.values, parent_chain, state.values)

            def get_value(field_id, _getter=getter):
                if selector_id and field_id == selector_id and not is_empty_value(selector_value):
                    return selector_value
                return _getter(field_id)

            for row_field in config.fields:
                path = row_field_path(group_key, row_field.id, row.id)
                if should_hide_field(row_field.visibility, scope, row.id):
                    hidden.add(path)
                if row_field.type in OPTION_FIELD_TYPES:
                    options[path] = self._field_options(
                        row_field, group_key, config.id, get_value, row.values.get(row_field.id), language,
                    )

            for sub in config.sub_groups:
                self._describe_group(
                    sub, build_subgroup_key(group_key, row.id, sub.id), state,
                    [row.values] + parent_chain, hidden, options, language,
                )

    def _field_options(self, question: QuestionDefinition, group_key, group_id, get_value, current, language):
        option_set = resolve_option_set(question, self.option_sets, group_key, group_id)
        deps = dependency_values_for(question.option_filter, get_value) if question.option_filter else []
        allowed = compute_allowed_options(question.option_filter, option_set, deps)
        return build_localized_options(
            option_set,
            with_current_selection(allowed, current),
            language,
            self.definition.default_language,
            sort=question.option_sort,
        )

    def _replace_row(self, line_items, group_key, new_row):
        result = dict(line_items)
        result[group_key] = [new_row if r.id == new_row.id else r for r in line_items.get(group_key, [])]
        return result

    def _top_selector_ids(self):
        return {
            q.line_item_config.section_selector.id
            for q in self.definition.line_item_groups()
            if q.line_item_config.section_selector is not None
        }
