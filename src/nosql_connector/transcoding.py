"""Value codecs shared by the adapters' ``to_db`` / ``from_db`` hooks."""

from __future__ import annotations

import json
from datetime import date, datetime, timezone
from typing import Any

from nosql_connector.exceptions import QueryError
from nosql_connector.schema import PropertyType

# Marker written for missing values on backends without a native null.
EMPTY_MARKER = ""


def encode_date(value: Any) -> Any:
    """Serialize a date value to a canonical ISO-8601 string.

    Aware datetimes are normalised to UTC with a ``Z`` suffix and microsecond
    precision; naive datetimes keep their wall-clock value without an offset.
    Strings and ``None`` pass through; numbers are read as epoch seconds.
    """
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.isoformat(timespec="microseconds")
        return value.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")
    if isinstance(value, date):
        return value.isoformat()
    raise QueryError(operation="to_db", detail=f"Cannot encode {type(value).__name__} as a date.")


def decode_date(value: Any) -> Any:
    """Parse a canonical timestamp string back to a ``datetime``.

    Unparseable strings are returned unchanged.
    """
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str):
        text = value[:-1] + "+00:00" if value.endswith("Z") else value
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            return value
    return value


def decode_number(value: Any) -> Any:
    if not isinstance(value, str):
        return value
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        return value


def decode_boolean(value: Any) -> Any:
    if isinstance(value, str):
        return value in ("true", "1")
    return value


def encode_structure(value: Any) -> str:
    """JSON-encode *value*; strings too, so reads can parse every stored value."""
    return json.dumps(value, default=str)


def decode_structure(value: Any) -> Any:
    """Attempt a structural (JSON) parse, falling back to the raw value."""
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError:
        return value


def encode_flat(property_type: PropertyType | None, value: Any) -> str:
    """Encode one value for a flat string-only store (no native types or null)."""
    if value is None:
        return EMPTY_MARKER
    if property_type == PropertyType.DATE:
        return encode_date(value)
    if property_type == PropertyType.NUMBER:
        return str(value)
    if property_type == PropertyType.BOOLEAN:
        return "true" if value else "false"
    if property_type == PropertyType.TEXT:
        return value if isinstance(value, str) else str(value)
    return encode_structure(value)


def decode_flat(property_type: PropertyType | None, value: Any) -> Any:
    """Inverse of :func:`encode_flat`."""
    if value is None or value == EMPTY_MARKER:
        return None
    if property_type == PropertyType.DATE:
        return decode_date(value)
    if property_type == PropertyType.NUMBER:
        return decode_number(value)
    if property_type == PropertyType.BOOLEAN:
        return decode_boolean(value)
    if property_type == PropertyType.TEXT:
        return value
    return decode_structure(value)
