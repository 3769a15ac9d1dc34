"""
Canonical key extraction
"""

from typing import Any, Mapping, Optional

from cdc_sink.errors import MalformedEvent
from cdc_sink.events import CanonicalKey, TableSchema


def extract_key(key_schema: TableSchema, key_payload: Mapping[str, Any],
                destination: Optional[str] = None) -> CanonicalKey:
    """
    Build the canonical key from a decoded key struct

    Values are taken in the field order declared by the key schema, so
    single and composite keys are handled the same way.

    Args:
        key_schema: Declared key fields
        key_payload: Key values, already converted to their declared types
        destination: Event destination (for error messages)

    Returns:
        CanonicalKey

    Raises:
        MalformedEvent: If the schema declares no fields, or a declared key
            field is missing or null
    """
    if not key_schema.fields:
        raise MalformedEvent("key schema declares no fields", destination)

    values = []
    for field in key_schema.fields:
        if field.name not in key_payload:
            raise MalformedEvent(f"key field '{field.name}' missing from key payload", destination)
        value = key_payload[field.name]
        if value is None:
            raise MalformedEvent(f"key field '{field.name}' is null", destination)
        values.append(value)

    return CanonicalKey(
        columns=key_schema.field_names(),
        values=tuple(values),
        types=tuple(f.type for f in key_schema.fields),
    )


def key_from_row(key_schema: TableSchema, row: Mapping[str, Any]) -> CanonicalKey:
    """
    Read the key columns back out of a stored row

    Table stores use this to report which keys they currently hold.
    """
    return CanonicalKey(
        columns=key_schema.field_names(),
        values=tuple(row.get(f.name) for f in key_schema.fields),
        types=tuple(f.type for f in key_schema.fields),
    )
