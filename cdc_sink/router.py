"""
Batch routing

Splits a decoded batch by destination table and runs each sub-batch through
deduplication, resolution and commit. Tables are independent: they may be
committed in parallel, and a failure in one never touches another.
"""

import re
import logging
import contextvars
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Iterable, List, Optional, Tuple

from cdc_sink.committer import TableCommitter
from cdc_sink.deduplicator import BatchDeduplicator
from cdc_sink.events import DecodedEvent
from cdc_sink.resolver import ResolvedBatch, RowSetResolver
from cdc_sink.schema_evolution import SchemaEvolutionManager

logger = logging.getLogger(__name__)


class TableNameMapper:
    """
    Maps event destinations to table names

    destination -> regexp rewrite -> '.' replaced by '_' -> prefixed
    e.g. 'testc.inventory.customers' -> 'testc_inventory_customers'
    """

    def __init__(self, table_prefix: str = '', destination_regexp: str = '',
                 destination_regexp_replace: str = ''):
        self.table_prefix = table_prefix or ''
        self.destination_regexp = re.compile(destination_regexp) if destination_regexp else None
        self.destination_regexp_replace = destination_regexp_replace or ''

    def __call__(self, destination: str) -> str:
        name = destination
        if self.destination_regexp is not None:
            name = self.destination_regexp.sub(self.destination_regexp_replace, name)
        return f"{self.table_prefix}{name.replace('.', '_')}"


class BatchRouter:
    """Routes decoded events to per-table dedup/resolve/commit pipelines"""

    def __init__(self, committer: TableCommitter,
                 deduplicator: Optional[BatchDeduplicator] = None,
                 resolver: Optional[RowSetResolver] = None,
                 evolution: Optional[SchemaEvolutionManager] = None,
                 table_name_mapper: Optional[TableNameMapper] = None,
                 upsert: bool = True, parallel_workers: int = 1):
        """
        Args:
            committer: Table committer
            deduplicator: Per-key winner selection
            resolver: Upsert/delete classification
            evolution: Used to merge the row schemas of a sub-batch
            table_name_mapper: Destination -> table name mapping
            upsert: Deduplicate and upsert by key; when False every event is appended
            parallel_workers: Number of tables committed concurrently
        """
        self.committer = committer
        self.deduplicator = deduplicator or BatchDeduplicator()
        self.resolver = resolver or RowSetResolver()
        self.evolution = evolution or committer.evolution
        self.table_name_mapper = table_name_mapper or TableNameMapper()
        self.upsert = upsert
        self.parallel_workers = parallel_workers

    def split(self, events: Iterable[DecodedEvent]) -> Dict[str, List[DecodedEvent]]:
        """Group events by table name, keeping arrival order within each group"""
        sub_batches: Dict[str, List[DecodedEvent]] = {}
        for event in events:
            sub_batches.setdefault(self.table_name_mapper(event.destination), []).append(event)
        return sub_batches

    def resolve(self, table_name: str, events: List[DecodedEvent]) -> ResolvedBatch:
        """Deduplicate and resolve one sub-batch (pure, no store access)"""
        schema = self.evolution.merge_batch_schemas(table_name, (e.schema for e in events))

        if not self.upsert:
            return self.resolver.resolve_appends(table_name, events, schema)

        keyed = [e for e in events if e.key is not None]
        keyless = [e for e in events if e.key is None]
        if keyless:
            logger.info(f"{table_name}: {len(keyless)} event(s) without a primary key will be appended")

        winners = self.deduplicator.deduplicate(keyed)
        resolved = self.resolver.resolve(table_name, winners, schema, events_in=len(keyed))
        resolved.rows_to_append.extend(dict(e.row) for e in keyless)
        resolved.events_in += len(keyless)
        return resolved

    def process_table(self, table_name: str, events: List[DecodedEvent]) -> Dict[str, int]:
        """Run one sub-batch through resolve and commit"""
        resolved = self.resolve(table_name, events)
        stats = self.committer.commit(resolved)
        return {
            'events': len(events),
            'superseded': resolved.superseded,
            'flag_mismatches': resolved.flag_mismatches,
            **stats
        }

    def route(self, events: Iterable[DecodedEvent]) -> Tuple[Dict[str, Dict[str, int]], Dict[str, Exception]]:
        """
        Process every sub-batch and wait for all of them

        Returns:
            tuple: (committed: table -> stats, failed: table -> exception)
        """
        sub_batches = self.split(events)
        committed: Dict[str, Dict[str, int]] = {}
        failed: Dict[str, Exception] = {}

        if self.parallel_workers == 1 or len(sub_batches) <= 1:
            for table_name, table_events in sub_batches.items():
                try:
                    committed[table_name] = self.process_table(table_name, table_events)
                except Exception as e:
                    logger.error(f"{table_name}: Sub-batch failed: {e}")
                    failed[table_name] = e
            return committed, failed

        with ThreadPoolExecutor(max_workers=self.parallel_workers, thread_name_prefix='cdc-commit') as executor:
            # copy_context carries the batch correlation ID into worker threads
            futures = {
                executor.submit(contextvars.copy_context().run, self.process_table, table_name, table_events): table_name
                for table_name, table_events in sub_batches.items()
            }

            for future in as_completed(futures):
                table_name = futures[future]
                try:
                    committed[table_name] = future.result()
                except Exception as e:
                    logger.error(f"{table_name}: Sub-batch failed: {e}")
                    failed[table_name] = e

        return committed, failed
