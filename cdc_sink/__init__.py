"""
CDC sink: applies Debezium change batches to Iceberg tables
"""

from .consumer import BatchResult, ChangeConsumer, RejectedEvent
from .errors import CDCSinkError, CommitFailure, MalformedEvent, SchemaConflict
from .events import AuditColumns, CanonicalKey, ChangeEvent, DecodedEvent, Operation, OPERATION_PRIORITY

__all__ = [
    'AuditColumns',
    'BatchResult',
    'CanonicalKey',
    'CDCSinkError',
    'ChangeConsumer',
    'ChangeEvent',
    'CommitFailure',
    'DecodedEvent',
    'MalformedEvent',
    'Operation',
    'OPERATION_PRIORITY',
    'RejectedEvent',
    'SchemaConflict',
]
