"""
In-memory table store

Holds table state in process memory. Used by the test suite and for dry runs
of the sink without a Spark cluster.
"""

import logging
from threading import Lock
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from cdc_sink.events import CanonicalKey, TableSchema
from cdc_sink.stores.base_store import BaseTableStore, apply_changes

logger = logging.getLogger(__name__)


class InMemoryTableStore(BaseTableStore):
    """Key-addressed table held in a dict; commits swap in a new state"""

    def __init__(self, table_name: str):
        super().__init__(table_name)
        self._schema: Optional[TableSchema] = None
        self._rows: Dict[CanonicalKey, Dict[str, Any]] = {}
        self._appended: List[Dict[str, Any]] = []
        self._lock = Lock()
        self.commit_count = 0

    def table_exists(self) -> bool:
        return self._schema is not None

    def current_schema(self) -> Optional[TableSchema]:
        return self._schema

    def create_table(self, schema: TableSchema) -> None:
        self._schema = schema

    def evolve_schema(self, schema: TableSchema) -> None:
        logger.info(f"{self.table_name}: Schema evolved to {len(schema)} columns")
        self._schema = schema

    def read_current_keys(self, key_schema: TableSchema) -> Set[CanonicalKey]:
        return set(self._rows)

    def commit(self, rows_to_upsert: Mapping[CanonicalKey, Dict[str, Any]],
               keys_to_delete: Iterable[CanonicalKey],
               rows_to_append: Iterable[Dict[str, Any]] = ()) -> None:
        # build the complete new state first so a failure leaves the old one in place
        new_rows = apply_changes(self._rows, rows_to_upsert, keys_to_delete)
        new_appended = self._appended + [dict(row) for row in rows_to_append]

        with self._lock:
            self._rows = new_rows
            self._appended = new_appended
            self.commit_count += 1

    def rows(self) -> Dict[CanonicalKey, Dict[str, Any]]:
        """Snapshot of the key-addressed rows"""
        return {key: dict(row) for key, row in self._rows.items()}

    def all_rows(self) -> List[Dict[str, Any]]:
        """Every row in the table, keyed rows first"""
        return [dict(row) for row in self._rows.values()] + [dict(row) for row in self._appended]

    def where(self, **conditions) -> List[Dict[str, Any]]:
        """Rows whose columns equal all the given values"""
        return [row for row in self.all_rows()
                if all(row.get(column) == value for column, value in conditions.items())]

    def count(self) -> int:
        return len(self._rows) + len(self._appended)


class InMemoryCatalog:
    """Named collection of in-memory tables, created on first use"""

    def __init__(self):
        self._tables: Dict[str, InMemoryTableStore] = {}
        self._lock = Lock()

    def get_store(self, table_name: str) -> InMemoryTableStore:
        with self._lock:
            if table_name not in self._tables:
                self._tables[table_name] = InMemoryTableStore(table_name)
            return self._tables[table_name]

    def list_tables(self) -> List[str]:
        return sorted(name for name, store in self._tables.items() if store.table_exists())

    def __call__(self, table_name: str) -> InMemoryTableStore:
        return self.get_store(table_name)
