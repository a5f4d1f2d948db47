"""
Result types returned by FormEngine.handle()

These are the ONLY return types from the command handler.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from formengine.commands import FormState
from formengine.contracts import LineItemRowState, OptionItem, ValidationError


@dataclass(frozen=True)
class EventResult:
    """
    Successful event processing result.

    Returned by: LoadForm, SetValue, AddRow, RemoveRow,
    SetSubgroupSelector, OptionsArrived

    Attributes:
        state: New snapshot (the input snapshot when nothing changed)
        changed: Whether values or rows changed
        converged: False when the pass loop hit its cap while still changing
        passes: Reconcile / value-map passes run
        debug: Effect outcomes, reconciled targets, etc.
    """
    state: FormState
    changed: bool
    converged: bool = True
    passes: int = 0
    debug: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ValidationResult:
    """
    Returned by: ValidateForm

    Attributes:
        errors: Every validation error
        phase: Phase validated
    """
    errors: Tuple[ValidationError, ...]
    phase: str

    @property
    def valid(self) -> bool:
        return not self.errors

    def by_path(self) -> Dict[str, str]:
        """Error path -> first message for that path."""
        result: Dict[str, str] = {}
        for error in self.errors:
            result.setdefault(error.path, error.message)
        return result


@dataclass(frozen=True)
class SubmitResult:
    """
    Returned by: SubmitForm

    Attributes:
        valid: True when the submit-phase sweep found no errors
        errors: Every validation error
        record: Values plus nested rows, ready for storage (empty if invalid)
    """
    valid: bool
    errors: Tuple[ValidationError, ...]
    record: Dict[str, Any]


@dataclass(frozen=True)
class IllegalCommand:
    """
    Command rejected by the engine for the current state.

    Examples:
    - SetValue for a field the form does not define
    - RemoveRow for a row that does not exist
    - AddRow beyond a group's maxRows

    Attributes:
        reason: Human-readable explanation
        command_type: Name of rejected command type
    """
    reason: str
    command_type: str


@dataclass(frozen=True)
class FormView:
    """
    What the presentation layer paints.

    Attributes:
        hidden: Paths of hidden fields (field id, or row field path)
        options: Path -> localized options (current selection included)
        rows: Group key -> rows
        values: Top-level values
    """
    hidden: frozenset
    options: Dict[str, List[OptionItem]]
    rows: Dict[str, List[LineItemRowState]]
    values: Dict[str, Any]
