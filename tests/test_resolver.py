"""
Tests for upsert/delete classification of deduplicated winners
"""

from cdc_sink.deduplicator import BatchDeduplicator
from cdc_sink.resolver import RowSetResolver

from tests.builders import CUSTOMERS_TABLE, customer_event


def resolve(decoder, raw_events, resolver=None):
    events = [decoder.decode(e, arrival_index=i) for i, e in enumerate(raw_events)]
    winners = BatchDeduplicator().deduplicate(events)
    return (resolver or RowSetResolver()).resolve(CUSTOMERS_TABLE, winners, events[0].schema,
                                                 events_in=len(events))


class TestRowSetResolver:

    def test_partitions_upserts_and_deletes(self, decoder):
        resolved = resolve(decoder, [
            customer_event(1, 'r', 1),
            customer_event(2, 'd', 1),
            customer_event(3, 'u', 1, first_name='UpdatednameV1'),
            customer_event(4, 'c', 1),
        ])

        assert sorted(k.values[0] for k in resolved.rows_to_upsert) == [1, 3, 4]
        assert [k.values[0] for k in resolved.keys_to_delete] == [2]
        assert not set(resolved.rows_to_upsert) & resolved.keys_to_delete
        assert resolved.key_schema.field_names() == ('id',)

    def test_counts_superseded_events(self, decoder):
        resolved = resolve(decoder, [
            customer_event(4, 'u', 4),
            customer_event(4, 'u', 5),
            customer_event(4, 'd', 6),
        ])

        assert resolved.events_in == 3
        assert resolved.superseded == 2
        assert len(resolved.keys_to_delete) == 1

    def test_upsert_payload_is_full_row(self, decoder):
        resolved = resolve(decoder, [customer_event(7, 'u', 4, first_name='Updatedname-7-V1')])
        row = next(iter(resolved.rows_to_upsert.values()))

        assert row['first_name'] == 'Updatedname-7-V1'
        assert row['__op'] == 'u'
        assert row['__source_ts_ms'] == 4

    def test_operation_code_wins_over_deleted_flag(self, decoder):
        resolved = resolve(decoder, [customer_event(1, 'u', 1, deleted='true')])

        assert resolved.flag_mismatches == 1
        assert len(resolved.rows_to_upsert) == 1
        assert not resolved.keys_to_delete

    def test_keep_deletes_writes_soft_deleted_row(self, decoder):
        resolved = resolve(decoder, [customer_event(2, 'd', 1)], RowSetResolver(keep_deletes=True))

        assert not resolved.keys_to_delete
        row = next(iter(resolved.rows_to_upsert.values()))
        assert row['__op'] == 'd'
        assert row['__deleted'] == 'true'

    def test_empty_batch(self):
        resolved = RowSetResolver().resolve(CUSTOMERS_TABLE, {}, schema=None)
        assert resolved.is_empty
        assert resolved.superseded == 0

    def test_resolve_appends_keeps_every_event(self, decoder):
        events = [decoder.decode(customer_event(1, 'c', 1)), decoder.decode(customer_event(1, 'u', 2))]
        resolved = RowSetResolver().resolve_appends(CUSTOMERS_TABLE, events, events[0].schema)

        assert len(resolved.rows_to_append) == 2
        assert not resolved.rows_to_upsert
        assert resolved.superseded == 0
