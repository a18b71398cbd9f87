"""JSON text column helpers shared by the models."""

import json


def load_json(value, default=None):
    """Parse a JSON text column, returning default for empty or corrupt values."""
    if value is None:
        return default
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except (json.JSONDecodeError, TypeError):
        return default


def dump_json(value) -> str:
    """Serialize a value for a JSON text column."""
    return json.dumps(value, default=str, sort_keys=True)
