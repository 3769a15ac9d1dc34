"""
Base table store class
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Mapping, Optional, Set

from cdc_sink.events import CanonicalKey, TableSchema
from cdc_sink.schema_evolution import SchemaEvolutionManager

logger = logging.getLogger(__name__)


def apply_changes(rows: Mapping[CanonicalKey, Dict[str, Any]],
                  rows_to_upsert: Mapping[CanonicalKey, Dict[str, Any]],
                  keys_to_delete: Iterable[CanonicalKey]) -> Dict[CanonicalKey, Dict[str, Any]]:
    """
    Compute the key-addressed table state after one resolved batch

    Every upserted key ends up holding exactly its payload, every deleted key
    is absent and all other rows are untouched. The input is not modified, and
    applying the same changes to the result returns an equal state.

    Args:
        rows: Current rows by key
        rows_to_upsert: Rows to insert or replace
        keys_to_delete: Keys to remove (absent keys are ignored)

    Returns:
        dict: New rows by key
    """
    new_rows = dict(rows)
    for key in keys_to_delete:
        new_rows.pop(key, None)
    for key, row in rows_to_upsert.items():
        new_rows[key] = dict(row)
    return new_rows


class BaseTableStore(ABC):
    """
    Handle to one destination table

    The sink only needs to read which keys exist, create or evolve the
    schema, and commit upserts, deletes and appends as one atomic change.
    """

    def __init__(self, table_name: str):
        self.table_name = table_name

    @abstractmethod
    def table_exists(self) -> bool:
        """Whether the table has been created"""
        pass

    @abstractmethod
    def current_schema(self) -> Optional[TableSchema]:
        """Current table schema, or None if the table does not exist"""
        pass

    @abstractmethod
    def create_table(self, schema: TableSchema) -> None:
        """Create the table with the given schema"""
        pass

    @abstractmethod
    def evolve_schema(self, schema: TableSchema) -> None:
        """Widen the table to the given (already validated) schema"""
        pass

    @abstractmethod
    def read_current_keys(self, key_schema: TableSchema) -> Set[CanonicalKey]:
        """Keys of all rows currently in the table"""
        pass

    @abstractmethod
    def commit(self, rows_to_upsert: Mapping[CanonicalKey, Dict[str, Any]],
               keys_to_delete: Iterable[CanonicalKey],
               rows_to_append: Iterable[Dict[str, Any]] = ()) -> None:
        """
        Apply upserts, deletes and appends as a single atomic change

        Either all changes become visible or none do.
        """
        pass

    def ensure_schema(self, schema: TableSchema, evolution: SchemaEvolutionManager) -> TableSchema:
        """
        Make the table ready to receive rows of the given schema

        Creates the table on first write; otherwise validates the schema
        against the table and applies safe evolutions.

        Returns:
            TableSchema: Schema of the table after this call

        Raises:
            SchemaConflict: If the schema cannot be evolved
        """
        if not self.table_exists():
            logger.info(f"{self.table_name}: Creating table with {len(schema)} columns")
            self.create_table(schema)
            return schema

        current = self.current_schema()
        evolved = evolution.evolve(self.table_name, current, schema)
        if evolved != current:
            self.evolve_schema(evolved)
        return evolved
