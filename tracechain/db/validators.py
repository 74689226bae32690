"""Reusable SQLAlchemy validators for the TraceChain registry."""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

JsonType = dict[str, "JsonType"] | list["JsonType"] | str | int | float | bool | None


def to_jsonable(value: Any) -> JsonType:
    """Convert complex types to JSON-serializable format.

    Handles enums, datetime, date, Decimal, UUID, dict, and list types.

    Args:
        value: The value to convert

    Returns:
        JSON-serializable value
    """
    if value is None:
        return None

    if isinstance(value, Enum):
        return value.value

    if isinstance(value, (str, int, float, bool)):
        return value

    if isinstance(value, (datetime, date)):
        return value.isoformat()

    if isinstance(value, Decimal):
        return str(value)

    if isinstance(value, uuid.UUID):
        return str(value)

    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}

    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]

    return str(value)


def validate_json_payload(_key: str, value: Any) -> Any:
    """Convert complex types to JSON-serializable format.

    This validator handles datetime and enum objects in JSON columns,
    converting them to plain values for storage.

    Args:
        _key: The field name being validated (unused, required by SQLAlchemy)
        value: The value to validate

    Returns:
        JSON-serializable value
    """
    return to_jsonable(value)


def validate_string_list(_key: str, value: list[str] | tuple[str, ...] | None) -> list[str]:
    """Normalize a list-of-strings column (entity attributes) to a plain list."""
    if value is None:
        return []
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        raise ValueError(f"Expected a list of strings, got {type(value).__name__}")
    return [str(item) for item in value]
