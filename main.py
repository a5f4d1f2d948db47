"""
Console Test Harness for FormEngine (Functional Core)

Simple console loop to drive handle() before going through Flask.

Commands:
    set <field> <value>                     top-level value
    set <groupKey> <rowId> <field> <value>  row value
    add <groupKey>                          manual row
    remove <groupKey> <rowId>
    show
    validate [change|submit]
    submit
    quit
"""

import json
import logging
import os
import sys

from formengine.commands import AddRow, LoadForm, RemoveRow, SetValue, SubmitForm, ValidateForm
from formengine.core.definition_loader import load_definition
from formengine.core.form_engine import FormEngine
from formengine.core.line_items import user_values
from formengine.results import IllegalCommand
from formengine.utils.helpers import generate_submission_filename

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

DEFAULT_DEFINITION = "data/meal_production_form.json"
OUTPUT_DIR = "outputs/submissions"


def print_separator(char="=", length=60):
    """Print a separator line"""
    print(char * length)


def parse_value(raw):
    """JSON literal when it parses (numbers, lists), else the raw text"""
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def print_state(engine, state):
    """Print values, rows and hidden fields"""
    view = engine.describe(state)
    print("\nValues:")
    for field_id, value in sorted(state.values.items()):
        marker = " (hidden)" if field_id in view.hidden else ""
        print(f"  {field_id} = {value!r}{marker}")

    print("\nRows:")
    for group_key, rows in state.line_items.items():
        print(f"  [{group_key}] {len(rows)} row(s)")
        for row in rows:
            origin = "auto" if row.auto_generated else "manual"
            print(f"    {row.id} ({origin}): {user_values(row.values)}")

    if view.hidden:
        print(f"\nHidden: {', '.join(sorted(view.hidden))}")
    print()


def print_errors(errors):
    if not errors:
        print("No validation errors.\n")
        return
    print(f"{len(errors)} validation error(s):")
    for error in errors:
        print(f"  - {error.path}: {error.message}")
    print()


def build_command(tokens):
    """Console tokens -> command, or None for an unknown command"""
    name = tokens[0].lower()

    if name == 'set' and len(tokens) == 3:
        return SetValue(field_id=tokens[1], value=parse_value(tokens[2]))
    if name == 'set' and len(tokens) >= 5:
        return SetValue(
            field_id=tokens[3],
            value=parse_value(" ".join(tokens[4:])),
            group_key=tokens[1],
            row_id=tokens[2],
        )
    if name == 'add' and len(tokens) == 2:
        return AddRow(group_key=tokens[1])
    if name == 'remove' and len(tokens) == 3:
        return RemoveRow(group_key=tokens[1], row_id=tokens[2])
    if name == 'validate':
        return ValidateForm(phase=tokens[1] if len(tokens) > 1 else 'submit')
    return None


def save_submission(record):
    os.makedirs(OUTPUT_DIR, exist_ok=True)
    path = os.path.join(OUTPUT_DIR, generate_submission_filename())
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(record, f, indent=2, ensure_ascii=False)
    return path


def main():
    """Run console test"""
    definition_path = sys.argv[1] if len(sys.argv) > 1 else DEFAULT_DEFINITION

    print_separator()
    print("FORM ENGINE - CONSOLE TEST")
    print_separator()

    try:
        engine = FormEngine(load_definition(definition_path))
        result = engine.handle(LoadForm())
    except (OSError, ValueError) as e:
        print(f"\nFailed to initialize: {e}")
        return 1

    # State is external - we hold it in this loop
    state = result.state
    print(f"\nLoaded {definition_path}")
    print("Type 'show' to see the form, 'quit' to exit\n")

    while True:
        try:
            user_input = input("> ").strip()
            if not user_input:
                continue

            tokens = user_input.split()
            name = tokens[0].lower()

            if name in ('quit', 'exit', 'stop'):
                break

            if name == 'show':
                print_state(engine, state)
                continue

            if name == 'submit':
                submit = engine.handle(SubmitForm(), state)
                if not submit.valid:
                    print_errors(submit.errors)
                    continue
                print(f"Submission saved: {save_submission(submit.record)}\n")
                break

            command = build_command(tokens)
            if command is None:
                print(f"Unknown command: {user_input}\n")
                continue

            result = engine.handle(command, state)
            if isinstance(result, IllegalCommand):
                print(f"Rejected: {result.reason}\n")
            elif isinstance(command, ValidateForm):
                print_errors(result.errors)
            else:
                state = result.state
                if not result.converged:
                    print("WARNING: form did not settle; check the definition")
                print(f"[Event {state.event_count}, changed={result.changed}, passes={result.passes}]\n")

        except KeyboardInterrupt:
            print("\n\nSession interrupted by user (Ctrl+C)")
            break

        except EOFError:
            break

    print_separator()
    print("Console test complete")
    print_separator()
    return 0


if __name__ == '__main__':
    sys.exit(main())
