"""
End-to-end tests for ChangeConsumer.handle_batch

Runs batches of Debezium events through decode, routing, dedup, resolve and
commit into the in-memory table store, including the full upsert/delete
sequence of the reference sink tests.
"""

import json
import logging

import pytest

from cdc_sink.consumer import BatchResult
from cdc_sink.errors import CommitFailure, SchemaConflict
from cdc_sink.events import ChangeEvent

from tests.builders import (
    CUSTOMERS, CUSTOMERS_COMPOSITE_TABLE, CUSTOMERS_TABLE,
    composite_event, customer_event, envelope_event, keyless_event,
)


def rows_by_id(catalog, table=CUSTOMERS_TABLE):
    return {row['id']: row for row in catalog(table).all_rows()}


def malformed_event(destination=CUSTOMERS):
    return ChangeEvent(key=None, value='{"schema": ', destination=destination)


class TestUpsertDeleteSequence:
    """The reference upsert test: five batches against one table"""

    def test_full_sequence(self, consumer, catalog, acks):
        consumer.handle_batch([
            customer_event(1, 'c', 1),
            customer_event(2, 'c', 1),
            customer_event(3, 'c', 1),
        ], acks)
        assert catalog(CUSTOMERS_TABLE).count() == 3

        consumer.handle_batch([
            customer_event(1, 'r', 1),
            customer_event(2, 'd', 1),
            customer_event(3, 'u', 1, first_name='UpdatednameV1'),
            customer_event(4, 'c', 1),
        ], acks)
        rows = rows_by_id(catalog)
        assert sorted(rows) == [1, 3, 4]
        assert rows[3]['first_name'] == 'UpdatednameV1'
        assert rows[1]['__op'] == 'r'

        consumer.handle_batch([
            customer_event(3, 'r', 1, first_name='UpdatednameV2'),
            customer_event(3, 'u', 2, first_name='UpdatednameV3'),
            customer_event(3, 'u', 3, first_name='UpdatednameV4'),
            customer_event(4, 'u', 4),
            customer_event(4, 'u', 5),
            customer_event(4, 'd', 6),
            customer_event(5, 'd', 7),
            customer_event(6, 'r', 8),
            customer_event(6, 'r', 9),
            customer_event(6, 'u', 10),
            customer_event(6, 'u', 11, first_name='Updatedname-6-V1'),
        ], acks)
        rows = rows_by_id(catalog)
        assert sorted(rows) == [1, 3, 6]
        assert rows[3]['first_name'] == 'UpdatednameV4'
        assert rows[3]['__op'] == 'u'
        assert rows[6]['first_name'] == 'Updatedname-6-V1'
        assert rows[6]['__op'] == 'u'

        consumer.handle_batch([
            customer_event(3, 'd', 1, first_name='UpdatednameV5'),
            customer_event(3, 'u', 1, first_name='UpdatednameV6'),
            customer_event(6, 'c', 1, first_name='Updatedname-6-V2'),
            customer_event(6, 'r', 1, first_name='Updatedname-6-V3'),
        ], acks)
        rows = rows_by_id(catalog)
        assert sorted(rows) == [1, 6]
        assert rows[6]['first_name'] == 'Updatedname-6-V3'
        assert rows[6]['__op'] == 'r'

        consumer.handle_batch([
            customer_event(7, 'u', 1),
            customer_event(7, 'd', 2),
            customer_event(7, 'r', 3),
            customer_event(7, 'u', 4, first_name='Updatedname-7-V1'),
        ], acks)
        rows = rows_by_id(catalog)
        assert sorted(rows) == [1, 6, 7]
        assert rows[7]['first_name'] == 'Updatedname-7-V1'
        assert rows[7]['__op'] == 'u'

        assert len(acks.results) == 5
        assert all(result.acknowledged for result in acks.results)

    def test_latest_update_wins(self, consumer, catalog, acks):
        consumer.handle_batch([
            customer_event(3, 'r', 1, first_name='V1'),
            customer_event(3, 'u', 2, first_name='V2'),
            customer_event(3, 'u', 3, first_name='V3'),
        ], acks)
        assert rows_by_id(catalog)[3]['first_name'] == 'V3'

    def test_reversed_arrival_same_result(self, make_consumer, catalog, acks):
        events = [
            customer_event(3, 'r', 1, first_name='V1'),
            customer_event(3, 'u', 2, first_name='V2'),
            customer_event(3, 'u', 3, first_name='V3'),
            customer_event(4, 'c', 1),
            customer_event(4, 'd', 2),
        ]
        make_consumer().handle_batch(list(reversed(events)), acks)

        rows = rows_by_id(catalog)
        assert sorted(rows) == [3]
        assert rows[3]['first_name'] == 'V3'

    def test_redelivery_is_idempotent(self, consumer, catalog, acks):
        events = [customer_event(1, 'c', 1), customer_event(2, 'c', 1), customer_event(2, 'd', 2)]

        consumer.handle_batch(events, acks)
        first = catalog(CUSTOMERS_TABLE).rows()
        consumer.handle_batch(events, acks)

        assert catalog(CUSTOMERS_TABLE).rows() == first


class TestCompositeKeys:

    def test_composite_key_sequence(self, consumer, catalog, acks):
        consumer.handle_batch([
            composite_event(1, 'user1', 'c', 1),
            composite_event(1, 'user2', 'c', 1),
            composite_event(1, 'user1', 'u', 2),
            composite_event(1, 'user1', 'r', 3),
        ], acks)

        store = catalog(CUSTOMERS_COMPOSITE_TABLE)
        assert store.count() == 2
        assert store.where(first_name='user1')[0]['__op'] == 'r'
        assert store.where(first_name='user2')[0]['__op'] == 'c'

        consumer.handle_batch([
            composite_event(1, 'user1', 'u', 2),
            composite_event(1, 'user1', 'r', 3),
            composite_event(1, 'user1', 'd', 3),
            composite_event(1, 'user2', 'd', 1),
        ], acks)

        assert store.count() == 0


class TestBatchResult:

    def test_committer_called_once_with_result(self, consumer, acks):
        result = consumer.handle_batch([customer_event(1, 'c', 1)], acks, batch_id='batch-1')

        assert acks.results == [result]
        assert isinstance(result, BatchResult)
        assert result.batch_id == 'batch-1'
        assert result.events_received == 1
        assert result.acknowledged
        assert result.committed_tables[CUSTOMERS_TABLE]['upserted'] == 1

    def test_empty_batch_acknowledged(self, consumer, acks):
        result = consumer.handle_batch([], acks)

        assert acks.results == [result]
        assert result.acknowledged
        assert result.committed_tables == {}

    def test_tombstones_skipped(self, consumer, catalog, acks):
        result = consumer.handle_batch([
            customer_event(1, 'c', 1),
            customer_event(1, 'd', 2),
            ChangeEvent(key=customer_event(1, 'd', 2).key, value=None, destination=CUSTOMERS),
        ], acks)

        assert result.tombstones_skipped == 1
        assert not result.rejected_events
        assert result.acknowledged
        assert catalog(CUSTOMERS_TABLE).count() == 0

    def test_generated_batch_id(self, consumer, acks):
        result = consumer.handle_batch([customer_event(1, 'c', 1)], acks)
        assert result.batch_id

    def test_metrics_flushed_every_batch(self, consumer, acks, caplog):
        with caplog.at_level(logging.INFO, logger='cdc_sink.monitoring'):
            for ts in range(1, 21):
                consumer.handle_batch([customer_event(1, 'u', ts)], acks)

        assert consumer.metrics.metrics_buffer == []
        events = [json.loads(r.getMessage()[len('EVENT: '):]) for r in caplog.records
                  if r.getMessage().startswith('EVENT: ')]
        last = events[-1]
        assert last['event_type'] == 'cdc_batch_complete'
        assert last['details']['metrics']['cdc_events_received'] == {'count': 1, 'sum': 1.0, 'min': 1.0, 'max': 1.0}

    def test_stats_report_superseded_events(self, consumer, acks):
        result = consumer.handle_batch([
            customer_event(4, 'u', 4),
            customer_event(4, 'u', 5),
            customer_event(4, 'd', 6),
        ], acks)
        stats = result.committed_tables[CUSTOMERS_TABLE]

        assert stats['events'] == 3
        assert stats['superseded'] == 2
        assert stats['deleted'] == 1


class TestMalformedEventPolicy:

    def test_fail_batch_commits_nothing(self, consumer, catalog, acks):
        result = consumer.handle_batch([
            customer_event(1, 'c', 1),
            malformed_event(),
            customer_event(2, 'c', 1, destination='testc.inventory.orders'),
        ], acks)

        assert not result.acknowledged
        assert result.committed_tables == {}
        assert len(result.rejected_events) == 1
        rejected = result.rejected_events[0]
        assert rejected.index == 1
        assert rejected.destination == CUSTOMERS
        assert rejected.outcome == 'batch_failed'
        assert 'not valid JSON' in rejected.reason
        assert catalog.list_tables() == []
        assert acks.results == [result]

    def test_skip_drops_event(self, make_consumer, catalog, acks):
        consumer = make_consumer(malformed_event_policy='skip')
        result = consumer.handle_batch([
            customer_event(1, 'c', 1),
            malformed_event(),
            customer_event(2, 'c', 1),
        ], acks)

        assert result.acknowledged
        assert result.rejected_events[0].outcome == 'dropped'
        assert sorted(rows_by_id(catalog)) == [1, 2]


class TestFailureIsolation:

    def test_schema_conflict_isolated_to_table(self, consumer, catalog, acks):
        consumer.handle_batch([customer_event(1, 'c', 1)], acks)

        conflicting = ChangeEvent(
            key=json.dumps({'schema': {'type': 'struct', 'fields': [{'field': 'id', 'type': 'string'}]},
                            'payload': {'id': 'one'}}),
            value=json.dumps({
                'schema': {'type': 'struct', 'fields': [
                    {'field': 'id', 'type': 'string'},
                    {'field': 'first_name', 'type': 'string'},
                    {'field': 'last_name', 'type': 'string'},
                    {'field': 'email', 'type': 'string'},
                    {'field': '__op', 'type': 'string', 'optional': True},
                    {'field': '__source_ts_ms', 'type': 'int64', 'optional': True},
                ]},
                'payload': {'id': 'one', 'first_name': 'x', 'last_name': 'y', 'email': 'z',
                            '__op': 'c', '__source_ts_ms': 5},
            }),
            destination=CUSTOMERS,
        )
        result = consumer.handle_batch([
            conflicting,
            customer_event(10, 'c', 1, destination='testc.inventory.orders'),
        ], acks)

        assert not result.acknowledged
        assert isinstance(result.failed_tables[CUSTOMERS_TABLE], SchemaConflict)
        assert 'testc_inventory_orders' in result.committed_tables
        assert sorted(rows_by_id(catalog)) == [1]
        assert sorted(rows_by_id(catalog, 'testc_inventory_orders')) == [10]

    def test_commit_failure_after_retries(self, make_consumer, catalog, sleeps, acks):
        consumer = make_consumer(commit={'max_retries': 2, 'retry_backoff': 2})

        def broken_commit(*args, **kwargs):
            raise IOError("S3 throttled")

        catalog('testc_inventory_orders').commit = broken_commit
        result = consumer.handle_batch([
            customer_event(1, 'c', 1),
            customer_event(10, 'c', 1, destination='testc.inventory.orders'),
        ], acks)

        failure = result.failed_tables['testc_inventory_orders']
        assert isinstance(failure, CommitFailure)
        assert failure.attempts == 3
        assert sleeps == [1, 2]
        assert CUSTOMERS_TABLE in result.committed_tables
        assert not result.acknowledged
        assert len(acks.results) == 1

    def test_parallel_tables(self, make_consumer, catalog, acks):
        consumer = make_consumer(commit={'parallel_workers': 4})
        destinations = [f'testc.inventory.table{i}' for i in range(6)]
        events = [customer_event(i, 'c', 1, destination=d) for d in destinations for i in range(3)]

        result = consumer.handle_batch(events, acks)

        assert result.acknowledged
        assert len(result.committed_tables) == 6
        assert catalog.list_tables() == sorted(d.replace('.', '_') for d in destinations)
        assert all(catalog(d.replace('.', '_')).count() == 3 for d in destinations)
        assert len(acks.results) == 1


class TestSinkOptions:

    def test_table_naming(self, make_consumer, catalog, acks):
        consumer = make_consumer(table_prefix='cdc_', destination_regexp=r'^testc\.',
                                 destination_regexp_replace='')
        result = consumer.handle_batch([customer_event(1, 'c', 1)], acks)

        assert list(result.committed_tables) == ['cdc_inventory_customers_upsert']
        assert catalog('cdc_inventory_customers_upsert').count() == 1

    def test_keep_deletes(self, make_consumer, catalog, acks):
        consumer = make_consumer(upsert={'keep_deletes': True})
        consumer.handle_batch([customer_event(1, 'c', 1), customer_event(2, 'c', 1)], acks)
        consumer.handle_batch([customer_event(2, 'd', 2)], acks)

        rows = rows_by_id(catalog)
        assert sorted(rows) == [1, 2]
        assert rows[2]['__deleted'] == 'true'
        assert rows[2]['__op'] == 'd'

    def test_append_mode(self, make_consumer, catalog, acks):
        consumer = make_consumer(upsert={'enabled': False})
        consumer.handle_batch([customer_event(1, 'c', 1), customer_event(1, 'u', 2), customer_event(1, 'd', 3)], acks)

        store = catalog(CUSTOMERS_TABLE)
        assert store.count() == 3
        assert [row['__op'] for row in store.all_rows()] == ['c', 'u', 'd']

    def test_keyless_table_appends(self, consumer, catalog, acks):
        consumer.handle_batch([keyless_event(1, 'c', 1), keyless_event(1, 'u', 2)], acks)
        assert catalog('testc_inventory_audit_log').count() == 2

    def test_raw_envelope_events(self, consumer, catalog, acks):
        consumer.handle_batch([
            envelope_event(5, 'c', 1000, first_name='Created'),
            envelope_event(5, 'u', 2000, first_name='Updated'),
            envelope_event(6, 'c', 1000),
            envelope_event(6, 'd', 3000),
        ], acks)

        rows = rows_by_id(catalog, 'pg_inventory_customers')
        assert sorted(rows) == [5]
        assert rows[5]['first_name'] == 'Updated'
        assert rows[5]['__source_ts_ms'] == 2000

    def test_schema_evolves_with_new_column(self, consumer, catalog, acks):
        consumer.handle_batch([customer_event(1, 'c', 1)], acks)

        event = customer_event(2, 'c', 2)
        value = json.loads(event.value)
        value['schema']['fields'].append({'field': 'phone', 'type': 'string', 'optional': True})
        value['payload']['phone'] = '555-0100'
        result = consumer.handle_batch([ChangeEvent(event.key, json.dumps(value), CUSTOMERS)], acks)

        assert result.acknowledged
        assert 'phone' in catalog(CUSTOMERS_TABLE).current_schema().field_names()
        assert rows_by_id(catalog)[2]['phone'] == '555-0100'

    def test_widened_key_column_deletes_stored_row(self, consumer, catalog, acks):
        consumer.handle_batch([customer_event(1, 'c', 1)], acks)
        result = consumer.handle_batch([customer_event(1, 'd', 2, id_type='int64')], acks)

        assert result.acknowledged
        assert catalog(CUSTOMERS_TABLE).current_schema().get('id').type == 'int64'
        assert rows_by_id(catalog) == {}

    def test_mixed_key_widths_in_one_batch_are_one_row(self, consumer, catalog, acks):
        result = consumer.handle_batch([
            customer_event(1, 'c', 1, first_name='Narrow'),
            customer_event(1, 'u', 2, first_name='Wide', id_type='int64'),
        ], acks)

        assert result.acknowledged
        assert catalog(CUSTOMERS_TABLE).count() == 1
        assert rows_by_id(catalog)[1]['first_name'] == 'Wide'

    def test_invalid_config_rejected(self, make_consumer):
        with pytest.raises(ValueError, match="malformed_event_policy"):
            make_consumer(malformed_event_policy='ignore')
