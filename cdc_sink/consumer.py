"""
CDC batch consumer

Entry point of the sink. One call to handle_batch takes a raw batch of change
events through decoding, per-table routing and commit, then reports the
outcome to the acknowledgement callback exactly once.
"""

import time
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from cdc_sink.committer import TableCommitter
from cdc_sink.config_loader import build_sink_config, get_sink_config
from cdc_sink.correlation import with_correlation_id
from cdc_sink.decoder import ChangeEventDecoder
from cdc_sink.deduplicator import BatchDeduplicator
from cdc_sink.errors import MalformedEvent
from cdc_sink.events import AuditColumns, ChangeEvent, DecodedEvent
from cdc_sink.monitoring import MetricsCollector, StructuredLogger
from cdc_sink.resolver import RowSetResolver
from cdc_sink.router import BatchRouter, TableNameMapper
from cdc_sink.schema_evolution import SchemaEvolutionManager
from cdc_sink.stores import get_store_factory

logger = logging.getLogger(__name__)

JOB_NAME = 'cdc_sink'


@dataclass(frozen=True)
class RejectedEvent:
    """A raw event that failed to decode"""

    index: int
    destination: str
    reason: str
    outcome: str  # 'batch_failed' or 'dropped'


@dataclass
class BatchResult:
    """Outcome of one handle_batch call, handed to the acknowledgement callback"""

    batch_id: str
    events_received: int = 0
    tombstones_skipped: int = 0
    committed_tables: Dict[str, Dict[str, int]] = field(default_factory=dict)
    failed_tables: Dict[str, Exception] = field(default_factory=dict)
    rejected_events: List[RejectedEvent] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def acknowledged(self) -> bool:
        """True when every table committed and no rejected event failed the batch"""
        if self.failed_tables:
            return False
        return not any(r.outcome == 'batch_failed' for r in self.rejected_events)


class ChangeConsumer:
    """
    Applies batches of Debezium change events to destination tables

    Usage:
        consumer = ChangeConsumer(InMemoryCatalog(), {'malformed_event_policy': 'skip'})
        consumer.handle_batch(events, committer=lambda result: ...)
    """

    def __init__(self, store_factory: Callable[[str], Any],
                 sink_config: Optional[Dict[str, Any]] = None,
                 sink_name: str = 'default',
                 metrics: Optional[MetricsCollector] = None,
                 structured_logger: Optional[StructuredLogger] = None,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Args:
            store_factory: Maps a table name to its table store
            sink_config: Sink section (defaults are filled in and validated)
            sink_name: Sink name, used in metrics and config errors
            metrics: Metrics collector (created from the config if omitted)
            structured_logger: Structured event logger
            sleep: Sleep function used between commit retries
        """
        config = build_sink_config(sink_name, sink_config or {})
        self.config = config
        self.sink_name = sink_name
        self.malformed_event_policy = config['malformed_event_policy']

        audit = AuditColumns.from_config(config['audit_columns'])
        evolution = SchemaEvolutionManager.from_policy(config['schema_evolution'])
        commit_config = config['commit']

        self.decoder = ChangeEventDecoder(audit)
        self.table_committer = TableCommitter(
            store_factory,
            evolution=evolution,
            max_retries=commit_config['max_retries'],
            retry_backoff=commit_config['retry_backoff'],
            sleep=sleep
        )
        self.router = BatchRouter(
            self.table_committer,
            deduplicator=BatchDeduplicator(),
            resolver=RowSetResolver(audit, keep_deletes=config['upsert']['keep_deletes']),
            evolution=evolution,
            table_name_mapper=TableNameMapper(
                config['table_prefix'],
                config['destination_regexp'],
                config['destination_regexp_replace']
            ),
            upsert=config['upsert']['enabled'],
            parallel_workers=commit_config['parallel_workers']
        )

        self.metrics = metrics or MetricsCollector(
            job_name=JOB_NAME, sink_name=sink_name,
            enable_cloudwatch=config['metrics']['enable_cloudwatch']
        )
        self.structured_logger = structured_logger or StructuredLogger(job_name=JOB_NAME, sink_name=sink_name)

    @classmethod
    def from_config(cls, sink_name: str, spark=None, store_factory=None, **kwargs) -> 'ChangeConsumer':
        """
        Build a consumer for a sink defined in CONFIG_DIR/sinks.yaml

        Args:
            sink_name: Sink name from sinks.yaml
            spark: SparkSession (required for the iceberg table store)
            store_factory: Overrides the table store named in the config
        """
        sink_config = get_sink_config(sink_name)
        if store_factory is None:
            store_factory = get_store_factory(
                sink_config['table_store'],
                spark=spark,
                namespace=sink_config['iceberg_namespace'],
                catalog_name=sink_config['catalog_name']
            )
        return cls(store_factory, sink_config, sink_name=sink_name, **kwargs)

    def handle_batch(self, events: Iterable[ChangeEvent],
                     committer: Callable[[BatchResult], None],
                     batch_id: Optional[str] = None) -> BatchResult:
        """
        Process one batch and acknowledge it

        Tombstones are skipped. Malformed events either fail the whole batch
        (nothing is committed) or are dropped, depending on
        malformed_event_policy. Each destination table commits or fails on
        its own; the committer callback is invoked exactly once, after every
        table has finished.

        Args:
            events: Raw change events, in arrival order
            committer: Acknowledgement callback, receives the BatchResult
            batch_id: Correlation ID for the batch (generated if omitted)

        Returns:
            BatchResult: The same object passed to the committer
        """
        events = list(events)

        with with_correlation_id(batch_id) as cid:
            start_time = time.time()
            result = BatchResult(batch_id=cid, events_received=len(events))
            logger.info(f"Processing batch {cid} with {len(events)} events")

            decoded = self._decode_all(events, result)

            if result.rejected_events and self.malformed_event_policy == 'fail_batch':
                logger.error(f"Batch {cid}: {len(result.rejected_events)} malformed event(s), "
                             f"nothing committed")
            else:
                result.committed_tables, result.failed_tables = self.router.route(decoded)

            result.duration_seconds = time.time() - start_time
            self._report(result)

            committer(result)
            return result

    def _decode_all(self, events: List[ChangeEvent], result: BatchResult) -> List[DecodedEvent]:
        outcome = 'batch_failed' if self.malformed_event_policy == 'fail_batch' else 'dropped'
        decoded = []

        for index, event in enumerate(events):
            if event.is_tombstone:
                result.tombstones_skipped += 1
                continue
            try:
                decoded.append(self.decoder.decode(event, arrival_index=index))
            except MalformedEvent as e:
                logger.error(f"{event.destination}: Malformed event at index {index} ({outcome}): {e.reason}")
                result.rejected_events.append(RejectedEvent(index, event.destination, e.reason, outcome))

        if result.tombstones_skipped:
            logger.debug(f"Skipped {result.tombstones_skipped} tombstone(s)")
        return decoded

    def _report(self, result: BatchResult):
        """Emit batch metrics and the structured completion event"""
        self.metrics.emit_counter('cdc_events_received', count=result.events_received)
        self.metrics.emit_counter('cdc_events_rejected', count=len(result.rejected_events))
        self.metrics.emit_counter('cdc_tombstones_skipped', count=result.tombstones_skipped)
        self.metrics.emit_duration('cdc_batch_processing_time', result.duration_seconds)

        for table_name, stats in result.committed_tables.items():
            dimensions = {'TableName': table_name}
            self.metrics.emit_counter('cdc_rows_upserted', count=stats['upserted'], dimensions=dimensions)
            self.metrics.emit_counter('cdc_rows_deleted', count=stats['deleted'], dimensions=dimensions)
            self.metrics.emit_counter('cdc_rows_appended', count=stats['appended'], dimensions=dimensions)
            self.metrics.emit_success('cdc_table_commit', dimensions=dimensions)

        for table_name, error in result.failed_tables.items():
            self.metrics.emit_failure('cdc_table_commit', error_type=type(error).__name__,
                                      dimensions={'TableName': table_name})
            self.structured_logger.log_table_failure(table_name, str(error),
                                                     {'error_type': type(error).__name__})

        self.structured_logger.log_batch_complete(result.batch_id, {
            'events_received': result.events_received,
            'tombstones_skipped': result.tombstones_skipped,
            'events_rejected': len(result.rejected_events),
            'tables_committed': sorted(result.committed_tables),
            'tables_failed': sorted(result.failed_tables),
            'acknowledged': result.acknowledged,
            'batch_duration_seconds': result.duration_seconds,
            'metrics': self.metrics.flush_summary()['metrics']
        })

        logger.info(f"Batch {result.batch_id}: {len(result.committed_tables)} table(s) committed, "
                    f"{len(result.failed_tables)} failed, {len(result.rejected_events)} rejected, "
                    f"acknowledged={result.acknowledged}")
