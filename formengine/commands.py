"""
Command types for FormEngine control flow.

Commands are the ONLY public interface to FormEngine.handle().
One command per external event; state goes in, state comes out.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import copy

from formengine.contracts import LineItemRowState, OptionSet
from formengine.core.line_items import row_from_json, row_to_json


@dataclass(frozen=True)
class FormState:
    """
    Snapshot of one form session.

    Rules:
    - Only FormEngine builds new snapshots
    - Immutable after creation; rows are never mutated in place
    - Serializable to/from JSON

    Attributes:
        values: Top-level field values
        line_items: Group key -> rows (sub-group instances included)
        subgroup_selectors: Sub-group instance key -> selector value
        auto_signatures: Auto-add target key -> inputs last reconciled
        event_count: Number of events applied
    """
    values: Dict[str, Any] = field(default_factory=dict)
    line_items: Dict[str, List[LineItemRowState]] = field(default_factory=dict)
    subgroup_selectors: Dict[str, Any] = field(default_factory=dict)
    auto_signatures: Dict[str, str] = field(default_factory=dict)
    event_count: int = 0

    def rows(self, group_key: str) -> List[LineItemRowState]:
        return list(self.line_items.get(group_key, []))

    def to_json(self) -> dict:
        """
        Serialize to JSON-safe dict (deep copy).

        Returns:
            dict: Deep copy of the snapshot
        """
        return {
            'values': copy.deepcopy(self.values),
            'line_items': {
                key: [row_to_json(row) for row in rows]
                for key, rows in self.line_items.items()
            },
            'subgroup_selectors': copy.deepcopy(self.subgroup_selectors),
            'auto_signatures': dict(self.auto_signatures),
            'event_count': self.event_count,
        }

    @staticmethod
    def from_json(data: dict) -> "FormState":
        """
        Deserialize from JSON dict.

        Deep copies so no external reference can mutate the snapshot.

        Args:
            data: Raw state dict from JSON

        Returns:
            FormState
        """
        data = copy.deepcopy(data or {})
        return FormState(
            values=data.get('values') or {},
            line_items={
                key: [row_from_json(row) for row in rows]
                for key, rows in (data.get('line_items') or {}).items()
            },
            subgroup_selectors=data.get('subgroup_selectors') or {},
            auto_signatures=data.get('auto_signatures') or {},
            event_count=data.get('event_count', 0),
        )


# Command types

@dataclass(frozen=True)
class LoadForm:
    """
    Initialize a form session, optionally from a stored record.

    No state parameter - the engine creates the initial state.
    Returns: EventResult with the initial state.
    """
    record_values: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class SetValue:
    """
    Set one field's value.

    group_key/row_id address a row field; omit both for top-level fields.
    Returns: EventResult, or IllegalCommand for an unknown field or row.
    """
    field_id: str
    value: Any
    group_key: Optional[str] = None
    row_id: Optional[str] = None


@dataclass(frozen=True)
class AddRow:
    """
    Add a manual row to a group instance.

    Returns: EventResult, or IllegalCommand for an unknown group or when
    maxRows is reached.
    """
    group_key: str
    preset: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class RemoveRow:
    """
    Remove a row (and its sub-group rows), retracting its effects first.

    Returns: EventResult, or IllegalCommand for an unknown group or row.
    """
    group_key: str
    row_id: str


@dataclass(frozen=True)
class SetSubgroupSelector:
    """Set the section-selector value of one sub-group instance."""
    group_key: str
    value: Any


@dataclass(frozen=True)
class OptionsArrived:
    """
    An externally loaded option set became available.

    group_key scopes the set to one group instance; omit for top-level
    fields or for every instance of a group field (use the group id).
    """
    field_id: str
    option_set: OptionSet
    group_key: Optional[str] = None


@dataclass(frozen=True)
class ValidateForm:
    """
    Validate the whole form for a phase ('change' or 'submit').

    Returns: ValidationResult
    """
    phase: str = 'submit'


@dataclass(frozen=True)
class SubmitForm:
    """
    Final validation sweep plus the record to store when valid.

    Returns: SubmitResult
    """
    pass


# Type alias for all commands
Command = LoadForm | SetValue | AddRow | RemoveRow | SetSubgroupSelector | OptionsArrived | ValidateForm | SubmitForm


def command_from_json(data: Dict[str, Any]) -> Command:
    """
    Build a command from its JSON form {'type': 'SetValue', ...}.

    Raises:
        ValueError: Unknown command type
        KeyError: Missing required field
    """
    from formengine.core.definition_loader import parse_option_set

    command_type = data.get('type')
    if command_type == 'LoadForm':
        return LoadForm(record_values=data.get('record_values'))
    if command_type == 'SetValue':
        return SetValue(
            field_id=data['field_id'],
            value=data.get('value'),
            group_key=data.get('group_key'),
            row_id=data.get('row_id'),
        )
    if command_type == 'AddRow':
        return AddRow(group_key=data['group_key'], preset=data.get('preset'))
    if command_type == 'RemoveRow':
        return RemoveRow(group_key=data['group_key'], row_id=data['row_id'])
    if command_type == 'SetSubgroupSelector':
        return SetSubgroupSelector(group_key=data['group_key'], value=data.get('value'))
    if command_type == 'OptionsArrived':
        option_set = parse_option_set(data['option_set'])
        if option_set is None:
            raise ValueError("OptionsArrived requires an option set")
        return OptionsArrived(field_id=data['field_id'], option_set=option_set, group_key=data.get('group_key'))
    if command_type == 'ValidateForm':
        return ValidateForm(phase=data.get('phase', 'submit'))
    if command_type == 'SubmitForm':
        return SubmitForm()
    raise ValueError(f"Unknown command type: {command_type}")
