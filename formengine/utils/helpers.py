"""
Utility helpers for the dynamic form engine

Row id generation and small value predicates shared by the core modules.
"""

import uuid
from datetime import datetime


def generate_row_id(prefix="row", short=True):
    """
    Generate unique row identifier

    Args:
        prefix (str): Id prefix, usually the group id
        short (bool): If True, use an 8-char hex suffix. If False, full UUID.

    Returns:
        str: Row ID

    Examples:
        >>> generate_row_id('ingredients')
        'ingredients_a3f7e2b9'
    """
    full_id = uuid.uuid4().hex
    suffix = full_id[:8] if short else full_id
    return f"{prefix}_{suffix}"


class SequentialRowIds:
    """
    Deterministic row id generator.

    Yields '{prefix}_1', '{prefix}_2', ... with one counter shared by all
    prefixes. Inject into FormEngine for reproducible runs and tests.
    """

    def __init__(self, start=1):
        self._next = start

    def __call__(self, prefix="row"):
        row_id = f"{prefix}_{self._next}"
        self._next += 1
        return row_id


def generate_submission_filename(prefix="submission", extension="json"):
    """
    Generate timestamped filename with unique ID

    Format: {prefix}_{YYYYMMDD_HHMMSS}_{short_uuid}.{extension}

    Examples:
        >>> generate_submission_filename()
        'submission_20251126_153045_a3f7e2b9.json'
    """
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    short_id = uuid.uuid4().hex[:8]
    return f"{prefix}_{timestamp}_{short_id}.{extension}"


def is_empty_value(value):
    """
    True for None, blank strings and empty lists.

    Numbers (including 0) and booleans (including False) are values.
    """
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ''
    if isinstance(value, (list, tuple, set, frozenset)):
        return len(value) == 0
    return False


def as_list(value):
    """Wrap a scalar in a list; lists and tuples are copied; None is []."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def to_text(value):
    """String form used for option keys and comparisons."""
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'true' if value else 'false'
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def to_number(value):
    """Parse value as float; None when it is not numeric."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return float(text)
        except ValueError:
            return None
    return None
