"""
Row-set resolution

Turns the deduplicated winners of one table into the sets the committer
applies: rows to upsert, keys to delete and (for keyless tables or append
mode) rows to append.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from cdc_sink.events import AuditColumns, CanonicalKey, DecodedEvent, SchemaField, TableSchema

logger = logging.getLogger(__name__)


@dataclass
class ResolvedBatch:
    """Everything the committer needs for one destination table"""

    table_name: str
    schema: TableSchema = field(default_factory=TableSchema)
    key_schema: Optional[TableSchema] = None
    rows_to_upsert: Dict[CanonicalKey, Dict[str, Any]] = field(default_factory=dict)
    keys_to_delete: Set[CanonicalKey] = field(default_factory=set)
    rows_to_append: List[Dict[str, Any]] = field(default_factory=list)
    events_in: int = 0
    flag_mismatches: int = 0

    @property
    def is_empty(self) -> bool:
        return not (self.rows_to_upsert or self.keys_to_delete or self.rows_to_append)

    @property
    def superseded(self) -> int:
        """Events dropped by deduplication"""
        return self.events_in - len(self.rows_to_upsert) - len(self.keys_to_delete) - len(self.rows_to_append)


def key_schema_of(key: CanonicalKey) -> TableSchema:
    return TableSchema(tuple(SchemaField(c, t, False) for c, t in zip(key.columns, key.types)))


class RowSetResolver:
    """Classifies winning events as upserts or deletes"""

    def __init__(self, audit_columns: Optional[AuditColumns] = None, keep_deletes: bool = False):
        """
        Args:
            audit_columns: Audit column names
            keep_deletes: Write delete winners as soft-deleted rows instead of removing them
        """
        self.audit = audit_columns or AuditColumns()
        self.keep_deletes = keep_deletes

    def resolve(self, table_name: str, winners: Mapping[CanonicalKey, DecodedEvent],
                schema: TableSchema, events_in: Optional[int] = None) -> ResolvedBatch:
        """
        Partition winners into rows_to_upsert and keys_to_delete

        Each key has exactly one winner, so the two partitions are disjoint.

        Args:
            table_name: Destination table
            winners: Deduplicated events, one per key
            schema: Merged row schema of the sub-batch
            events_in: Number of events before deduplication
        """
        resolved = ResolvedBatch(
            table_name=table_name,
            schema=schema,
            events_in=len(winners) if events_in is None else events_in,
        )

        for key, event in winners.items():
            if resolved.key_schema is None:
                resolved.key_schema = key_schema_of(key)

            if event.deleted != event.is_delete:
                # operation code drives resolution
                resolved.flag_mismatches += 1
                logger.warning(f"{table_name}: key ({key}) has op={event.operation.value} "
                               f"but {self.audit.deleted}={event.row.get(self.audit.deleted)!r}; "
                               f"using the operation code")

            if event.is_delete and not self.keep_deletes:
                resolved.keys_to_delete.add(key)
            elif event.is_delete:
                row = dict(event.row)
                if schema.get(self.audit.deleted) is not None:
                    row[self.audit.deleted] = self._deleted_value(schema)
                resolved.rows_to_upsert[key] = row
            else:
                resolved.rows_to_upsert[key] = dict(event.row)

        return resolved

    def resolve_appends(self, table_name: str, events: Iterable[DecodedEvent],
                        schema: TableSchema) -> ResolvedBatch:
        """Every event becomes an appended row (keyless tables, append mode)"""
        rows = [dict(event.row) for event in events]
        return ResolvedBatch(table_name=table_name, schema=schema, rows_to_append=rows, events_in=len(rows))

    def _deleted_value(self, schema: TableSchema) -> Any:
        if schema.get(self.audit.deleted).type == 'boolean':
            return True
        return 'true'
