"""
Change event decoding

Parses Debezium JSON key/value documents ({"schema": ..., "payload": ...})
into typed DecodedEvents. Two value shapes are accepted:

- flattened rows (ExtractNewRecordState), which already carry the audit
  columns (__op, __table, __lsn, __source_ts_ms, __deleted)
- the raw change envelope (before/after/op/source), which is flattened here
  into the same row shape
"""

import base64
import binascii
import json
import logging
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from cdc_sink.errors import MalformedEvent
from cdc_sink.events import (
    AuditColumns, CanonicalKey, ChangeEvent, DecodedEvent, Operation,
    SchemaField, TableSchema, SUPPORTED_TYPES, INTEGER_TYPES, FLOAT_TYPES,
)
from cdc_sink.keys import extract_key

logger = logging.getLogger(__name__)


def _load_document(raw: Union[str, bytes], part: str, destination: str) -> Tuple[Any, Any]:
    """Parse a JSON document and split it into (schema, payload)"""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode('utf-8')
        except UnicodeDecodeError as e:
            raise MalformedEvent(f"{part} is not valid UTF-8: {e}", destination) from e

    try:
        document = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise MalformedEvent(f"{part} is not valid JSON: {e}", destination) from e

    if not isinstance(document, dict) or 'schema' not in document or 'payload' not in document:
        raise MalformedEvent(f"{part} must be a schema+payload document", destination)

    return document['schema'], document['payload']


def parse_schema(schema: Any, destination: Optional[str] = None) -> TableSchema:
    """
    Parse a Kafka Connect struct schema into a TableSchema

    Only flat structs of primitive fields are accepted.

    Raises:
        MalformedEvent: If the schema is not a struct of supported primitives
    """
    if not isinstance(schema, dict) or schema.get('type') != 'struct':
        raise MalformedEvent("schema must be a struct", destination)

    declarations = schema.get('fields')
    if not isinstance(declarations, list):
        raise MalformedEvent("struct schema has no field list", destination)

    fields = []
    seen = set()
    for decl in declarations:
        if not isinstance(decl, dict) or not isinstance(decl.get('field'), str):
            raise MalformedEvent(f"invalid field declaration: {decl!r}", destination)

        name = decl['field']
        field_type = decl.get('type')
        if field_type not in SUPPORTED_TYPES:
            raise MalformedEvent(f"field '{name}' has unsupported type {field_type!r}", destination)
        if name in seen:
            raise MalformedEvent(f"field '{name}' declared twice", destination)

        seen.add(name)
        fields.append(SchemaField(name=name, type=field_type, optional=bool(decl.get('optional', False))))

    return TableSchema(tuple(fields))


def convert_value(field: SchemaField, value: Any, destination: Optional[str] = None) -> Any:
    """
    Validate a payload value against its declared type

    Returns the value as str, int, float, bool, bytes or None.
    """
    if value is None:
        if not field.optional:
            raise MalformedEvent(f"non-optional field '{field.name}' is null or missing", destination)
        return None

    field_type = field.type

    if field_type in INTEGER_TYPES:
        if isinstance(value, bool) or not isinstance(value, int):
            raise MalformedEvent(f"field '{field.name}' expects {field_type}, got {value!r}", destination)
        return value

    if field_type in FLOAT_TYPES:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise MalformedEvent(f"field '{field.name}' expects {field_type}, got {value!r}", destination)
        return float(value)

    if field_type == 'boolean':
        if not isinstance(value, bool):
            raise MalformedEvent(f"field '{field.name}' expects boolean, got {value!r}", destination)
        return value

    if field_type == 'string':
        if not isinstance(value, str):
            raise MalformedEvent(f"field '{field.name}' expects string, got {value!r}", destination)
        return value

    # bytes: Debezium sends these base64-encoded
    if not isinstance(value, str):
        raise MalformedEvent(f"field '{field.name}' expects base64 bytes, got {value!r}", destination)
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedEvent(f"field '{field.name}' is not valid base64: {e}", destination) from e


def convert_payload(schema: TableSchema, payload: Any, destination: Optional[str] = None) -> Dict[str, Any]:
    """Validate a payload struct against its schema and return a typed row"""
    if not isinstance(payload, dict):
        raise MalformedEvent("payload must be a struct", destination)

    undeclared = [name for name in payload if schema.get(name) is None]
    if undeclared:
        raise MalformedEvent(f"payload has undeclared field(s): {', '.join(undeclared)}", destination)

    return {field.name: convert_value(field, payload.get(field.name), destination)
            for field in schema.fields}


def parse_deleted_flag(value: Any) -> bool:
    """Read the __deleted audit column, sent as "true"/"false" or a boolean"""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == 'true'
    return False


class ChangeEventDecoder:
    """Decodes raw change events into DecodedEvents"""

    def __init__(self, audit_columns: Optional[AuditColumns] = None):
        """
        Args:
            audit_columns: Audit column names (defaults to the Debezium unwrap names)
        """
        self.audit = audit_columns or AuditColumns()

    def decode(self, event: ChangeEvent, arrival_index: int = 0) -> DecodedEvent:
        """
        Decode one change event

        Args:
            event: Raw event
            arrival_index: Position of the event in its batch

        Returns:
            DecodedEvent

        Raises:
            MalformedEvent: If the event cannot be decoded
        """
        destination = event.destination
        if event.value is None:
            raise MalformedEvent("event has no value (tombstone)", destination)

        value_schema, value_payload = _load_document(event.value, 'value', destination)

        if self._is_envelope(value_payload):
            schema, row = self._flatten_envelope(value_schema, value_payload, destination)
        else:
            schema = parse_schema(value_schema, destination)
            row = convert_payload(schema, value_payload, destination)

        key = self._decode_key(event.key, destination) if event.key is not None else None
        if key is not None:
            for column in key.columns:
                if schema.get(column) is None:
                    raise MalformedEvent(f"key field '{column}' is not a column of the row", destination)

        operation = self._read_operation(row, destination)
        timestamp = self._read_timestamp(row, destination)
        position = row.get(self.audit.position)
        if isinstance(position, bool) or (position is not None and not isinstance(position, int)):
            raise MalformedEvent(f"{self.audit.position} must be an integer, got {position!r}", destination)

        return DecodedEvent(
            destination=destination,
            key=key,
            row=row,
            operation=operation,
            timestamp=timestamp,
            deleted=parse_deleted_flag(row.get(self.audit.deleted)),
            schema=schema,
            position=position,
            arrival_index=arrival_index,
        )

    def _decode_key(self, raw_key: Union[str, bytes], destination: str) -> CanonicalKey:
        key_schema, key_payload = _load_document(raw_key, 'key', destination)
        schema = parse_schema(key_schema, destination)

        if not isinstance(key_payload, dict):
            raise MalformedEvent("key payload must be a struct", destination)
        missing = [f.name for f in schema.fields if f.name not in key_payload]
        if missing:
            raise MalformedEvent(f"key field(s) missing from key payload: {', '.join(missing)}", destination)

        return extract_key(schema, convert_payload(schema, key_payload, destination), destination)

    def _read_operation(self, row: Mapping[str, Any], destination: str) -> Operation:
        code = row.get(self.audit.op)
        if code is None:
            raise MalformedEvent(f"missing operation column {self.audit.op}", destination)
        try:
            return Operation.from_code(code)
        except ValueError as e:
            raise MalformedEvent(str(e), destination) from e

    def _read_timestamp(self, row: Mapping[str, Any], destination: str) -> int:
        timestamp = row.get(self.audit.timestamp)
        if isinstance(timestamp, bool) or not isinstance(timestamp, int):
            raise MalformedEvent(
                f"missing or non-integer timestamp column {self.audit.timestamp}: {timestamp!r}", destination
            )
        return timestamp

    def _is_envelope(self, payload: Any) -> bool:
        return (isinstance(payload, dict)
                and 'op' in payload
                and ('after' in payload or 'before' in payload)
                and self.audit.op not in payload)

    def _flatten_envelope(self, schema: Any, payload: Dict[str, Any],
                          destination: str) -> Tuple[TableSchema, Dict[str, Any]]:
        """
        Turn a before/after envelope into a flattened row with audit columns

        Deletes carry the before image; everything else the after image.
        """
        operation_code = payload.get('op')
        image_name = 'before' if operation_code == 'd' else 'after'
        image = payload.get(image_name)
        if image is None:
            raise MalformedEvent(f"envelope for op {operation_code!r} has no {image_name} image", destination)

        image_schema = None
        if isinstance(schema, dict):
            for decl in schema.get('fields') or []:
                if isinstance(decl, dict) and decl.get('field') == image_name:
                    image_schema = decl
                    break
        if image_schema is None:
            raise MalformedEvent(f"envelope schema does not declare {image_name}", destination)

        row_schema = parse_schema(image_schema, destination)
        row = convert_payload(row_schema, image, destination)

        source = payload.get('source') or {}
        if not isinstance(source, dict):
            raise MalformedEvent("envelope source must be a struct", destination)

        position = source.get('lsn')
        if position is None:
            position = source.get('scn')
        # Debezium may send large SCNs as strings
        if isinstance(position, str):
            try:
                position = int(position)
            except ValueError as e:
                raise MalformedEvent(f"source position is not numeric: {position!r}", destination) from e

        audit_values = {
            self.audit.op: operation_code,
            self.audit.table: source.get('table'),
            self.audit.position: position,
            self.audit.timestamp: source.get('ts_ms', payload.get('ts_ms')),
            self.audit.deleted: 'true' if operation_code == 'd' else 'false',
        }
        audit_fields = (
            SchemaField(self.audit.op, 'string', True),
            SchemaField(self.audit.table, 'string', True),
            SchemaField(self.audit.position, 'int64', True),
            SchemaField(self.audit.timestamp, 'int64', True),
            SchemaField(self.audit.deleted, 'string', True),
        )

        for name in audit_values:
            if name in row:
                raise MalformedEvent(f"row column '{name}' collides with an audit column", destination)
        row.update(audit_values)

        return TableSchema(row_schema.fields + audit_fields), row
