"""
Table committer

Applies a ResolvedBatch to its destination table: creates or evolves the
schema, then commits upserts, deletes and appends as one atomic store
change. Store failures are retried with exponential backoff; schema
conflicts are not.
"""

import time
import logging
from threading import Lock
from typing import Any, Callable, Dict, Mapping

from cdc_sink.errors import CommitFailure, SchemaConflict
from cdc_sink.events import CanonicalKey
from cdc_sink.resolver import ResolvedBatch
from cdc_sink.schema_evolution import SchemaEvolutionManager
from cdc_sink.stores.base_store import BaseTableStore, apply_changes

logger = logging.getLogger(__name__)


def apply_resolved_batch(state: Mapping[CanonicalKey, Dict[str, Any]],
                         resolved: ResolvedBatch) -> Dict[CanonicalKey, Dict[str, Any]]:
    """
    Pure form of a commit: old key-addressed state in, new state out

    Appended rows are not key-addressed and are not part of this state.
    """
    return apply_changes(state, resolved.rows_to_upsert, resolved.keys_to_delete)


class TableCommitter:
    """Commits resolved batches, serializing commits per destination table"""

    def __init__(self, store_factory: Callable[[str], BaseTableStore],
                 evolution: SchemaEvolutionManager = None,
                 max_retries: int = 3, retry_backoff: float = 2,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Args:
            store_factory: Maps a table name to its store handle
            evolution: Schema evolution policy (defaults to permissive)
            max_retries: Retries after the first failed attempt
            retry_backoff: Base of the exponential backoff, in seconds
            sleep: Sleep function (replaceable in tests)
        """
        self.store_factory = store_factory
        self.evolution = evolution or SchemaEvolutionManager()
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.sleep = sleep
        self._table_locks: Dict[str, Lock] = {}
        self._locks_guard = Lock()

    def _lock_for(self, table_name: str) -> Lock:
        with self._locks_guard:
            if table_name not in self._table_locks:
                self._table_locks[table_name] = Lock()
            return self._table_locks[table_name]

    def commit(self, resolved: ResolvedBatch) -> Dict[str, int]:
        """
        Apply one resolved batch to its table

        Returns:
            dict: {'upserted': int, 'deleted': int, 'appended': int, 'attempts': int}

        Raises:
            SchemaConflict: Incoming schema cannot be written (not retried)
            CommitFailure: Store still failing after max_retries retries
        """
        table_name = resolved.table_name
        stats = {
            'upserted': len(resolved.rows_to_upsert),
            'deleted': len(resolved.keys_to_delete),
            'appended': len(resolved.rows_to_append),
            'attempts': 0
        }

        if resolved.is_empty:
            logger.debug(f"{table_name}: Nothing to commit")
            return stats

        for attempt in range(self.max_retries + 1):
            stats['attempts'] = attempt + 1
            try:
                with self._lock_for(table_name):
                    store = self.store_factory(table_name)
                    store.ensure_schema(resolved.schema, self.evolution)
                    store.commit(resolved.rows_to_upsert, resolved.keys_to_delete, resolved.rows_to_append)

                logger.info(f"{table_name}: Committed {stats['upserted']} upserts, {stats['deleted']} deletes, "
                            f"{stats['appended']} appends")
                return stats

            except SchemaConflict:
                raise

            except Exception as e:
                error_msg = str(e)

                if attempt < self.max_retries:
                    wait_time = self.retry_backoff ** attempt
                    logger.warning(f"{table_name}: Attempt {attempt + 1}/{self.max_retries + 1} failed: {error_msg}")
                    logger.warning(f"{table_name}: -- Retrying in {wait_time} seconds...")
                    self.sleep(wait_time)
                else:
                    logger.error(f"{table_name}: FAILED after {self.max_retries + 1} attempts - {error_msg}")
                    raise CommitFailure(table_name, attempt + 1, e) from e
