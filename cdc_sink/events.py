"""
Data model for CDC batch processing

ChangeEvent is the raw notification handed to the sink. DecodedEvent is its
typed form after decoding; both are immutable and live only for the duration
of one batch.
"""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple, Union

# Debezium primitive types accepted in key and value schemas
SUPPORTED_TYPES = (
    'int8', 'int16', 'int32', 'int64',
    'float32', 'float64',
    'boolean', 'string', 'bytes',
)

INTEGER_TYPES = ('int8', 'int16', 'int32', 'int64')
FLOAT_TYPES = ('float32', 'float64')

# Key values compare by type family so a widened key column keeps its identity
KEY_TYPE_FAMILIES = {
    **{t: 'int64' for t in INTEGER_TYPES},
    **{t: 'float64' for t in FLOAT_TYPES},
}


class Operation(Enum):
    """Debezium operation codes"""

    CREATE = 'c'
    READ = 'r'
    UPDATE = 'u'
    DELETE = 'd'

    @classmethod
    def from_code(cls, code: str) -> 'Operation':
        """
        Look up an operation by its single-letter code

        Raises:
            ValueError: If the code is not one of c, r, u, d
        """
        for operation in cls:
            if operation.value == code:
                return operation
        raise ValueError(f"Unknown operation code: {code!r}")


# Tie-break ranking for events sharing a source timestamp.
# A later lifecycle stage always outranks an earlier one.
OPERATION_PRIORITY = {
    Operation.CREATE: 1,
    Operation.READ: 2,
    Operation.UPDATE: 3,
    Operation.DELETE: 4,
}


@dataclass(frozen=True)
class SchemaField:
    name: str
    type: str
    optional: bool = True


@dataclass(frozen=True)
class TableSchema:
    """Ordered column declarations of a row or key struct"""

    fields: Tuple[SchemaField, ...] = ()

    def field_names(self) -> Tuple[str, ...]:
        return tuple(f.name for f in self.fields)

    def get(self, name: str) -> Optional[SchemaField]:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def as_dict(self) -> Dict[str, str]:
        """Column name -> type name"""
        return {f.name: f.type for f in self.fields}

    def __len__(self) -> int:
        return len(self.fields)


@dataclass(frozen=True)
class CanonicalKey:
    """
    Primary key of one logical row

    Equality covers column names, values and declared types together, so a
    composite key always compares as a unit and `1` declared as int32 never
    equals `True` declared as boolean.

    Integer and float types are recorded by family (int64, float64), so
    `1` declared as int32 equals `1` declared as int64.
    """

    columns: Tuple[str, ...]
    values: Tuple[Any, ...]
    types: Tuple[str, ...]

    def __post_init__(self):
        object.__setattr__(self, 'types', tuple(KEY_TYPE_FAMILIES.get(t, t) for t in self.types))

    def as_dict(self) -> Dict[str, Any]:
        return dict(zip(self.columns, self.values))

    def __str__(self) -> str:
        return ", ".join(f"{c}={v}" for c, v in zip(self.columns, self.values))


@dataclass(frozen=True)
class AuditColumns:
    """Names of the audit columns embedded in every row"""

    op: str = '__op'
    table: str = '__table'
    position: str = '__lsn'
    timestamp: str = '__source_ts_ms'
    deleted: str = '__deleted'

    @classmethod
    def from_config(cls, config: Optional[Dict[str, str]]) -> 'AuditColumns':
        return cls(**(config or {}))

    def names(self) -> Tuple[str, ...]:
        return (self.op, self.table, self.position, self.timestamp, self.deleted)


@dataclass(frozen=True)
class ChangeEvent:
    """One raw notification: opaque key, opaque value and destination"""

    key: Optional[Union[str, bytes]]
    value: Optional[Union[str, bytes]]
    destination: str

    @classmethod
    def from_kafka_message(cls, topic: str, key: Optional[Union[str, bytes]],
                           value: Optional[Union[str, bytes]]) -> 'ChangeEvent':
        """Build an event from a Kafka record; the topic is the destination"""
        return cls(key=key, value=value, destination=topic)

    @property
    def is_tombstone(self) -> bool:
        return self.value is None


@dataclass(frozen=True)
class DecodedEvent:
    destination: str
    key: Optional[CanonicalKey]
    row: Mapping[str, Any]
    operation: Operation
    timestamp: int
    deleted: bool
    schema: TableSchema
    position: Optional[int] = None
    arrival_index: int = 0

    def __post_init__(self):
        object.__setattr__(self, 'row', MappingProxyType(dict(self.row)))

    @property
    def is_delete(self) -> bool:
        return self.operation is Operation.DELETE

    @property
    def priority(self) -> int:
        return OPERATION_PRIORITY[self.operation]
