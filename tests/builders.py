"""
Debezium event builders shared by the test modules

Events mirror what Debezium's ExtractNewRecordState transform emits for an
inventory.customers table: a key struct and a flattened value struct with
the __op, __table, __lsn, __source_ts_ms and __deleted audit columns.
"""

import json

from cdc_sink.events import ChangeEvent

CUSTOMERS = 'testc.inventory.customers_upsert'
CUSTOMERS_COMPOSITE = 'testc.inventory.customers_upsert_compositekey'

CUSTOMERS_TABLE = 'testc_inventory_customers_upsert'
CUSTOMERS_COMPOSITE_TABLE = 'testc_inventory_customers_upsert_compositekey'

CUSTOMER_FIELDS = [
    ('id', 'int32', False),
    ('first_name', 'string', False),
    ('last_name', 'string', False),
    ('email', 'string', False),
]

AUDIT_FIELDS = [
    ('__op', 'string', True),
    ('__table', 'string', True),
    ('__lsn', 'int64', True),
    ('__source_ts_ms', 'int64', True),
    ('__deleted', 'string', True),
]


def struct_schema(fields):
    return {
        'type': 'struct',
        'fields': [{'field': name, 'type': type_name, 'optional': optional}
                   for name, type_name, optional in fields]
    }


def document(fields, payload):
    return json.dumps({'schema': struct_schema(fields), 'payload': payload})


def customer_row(id, op, ts, first_name='Sally', lsn=None, deleted=None):
    return {
        'id': id,
        'first_name': first_name,
        'last_name': 'Thomas',
        'email': f'customer{id}@example.com',
        '__op': op,
        '__table': 'customers',
        '__lsn': lsn,
        '__source_ts_ms': ts,
        '__deleted': deleted if deleted is not None else ('true' if op == 'd' else 'false'),
    }


def customer_event(id, op, ts, first_name='Sally', destination=CUSTOMERS, lsn=None, deleted=None,
                   id_type='int32'):
    """Flattened customers event keyed by id"""
    fields = [('id', id_type, False)] + CUSTOMER_FIELDS[1:]
    return ChangeEvent(
        key=document([('id', id_type, False)], {'id': id}),
        value=document(fields + AUDIT_FIELDS, customer_row(id, op, ts, first_name, lsn, deleted)),
        destination=destination,
    )


def composite_event(id, first_name, op, ts, destination=CUSTOMERS_COMPOSITE):
    """Flattened customers event keyed by (id, first_name)"""
    return ChangeEvent(
        key=document([('id', 'int32', False), ('first_name', 'string', False)],
                     {'id': id, 'first_name': first_name}),
        value=document(CUSTOMER_FIELDS + AUDIT_FIELDS, customer_row(id, op, ts, first_name)),
        destination=destination,
    )


def keyless_event(id, op, ts, destination='testc.inventory.audit_log'):
    return ChangeEvent(
        key=None,
        value=document(CUSTOMER_FIELDS + AUDIT_FIELDS, customer_row(id, op, ts)),
        destination=destination,
    )


def envelope_event(id, op, ts_ms, first_name='Sally', lsn=1000, destination='pg.inventory.customers'):
    """Raw Debezium change envelope (no unwrap transform)"""
    image = {'id': id, 'first_name': first_name, 'last_name': 'Thomas', 'email': f'customer{id}@example.com'}
    image_schema = dict(struct_schema(CUSTOMER_FIELDS), field='before', optional=True)
    value = {
        'schema': {
            'type': 'struct',
            'fields': [
                image_schema,
                dict(image_schema, field='after'),
                {'field': 'source', 'type': 'struct', 'fields': []},
                {'field': 'op', 'type': 'string', 'optional': False},
                {'field': 'ts_ms', 'type': 'int64', 'optional': True},
            ]
        },
        'payload': {
            'before': image if op in ('u', 'd') else None,
            'after': None if op == 'd' else image,
            'source': {'table': 'customers', 'lsn': lsn, 'ts_ms': ts_ms},
            'op': op,
            'ts_ms': ts_ms + 5,
        }
    }
    return ChangeEvent(
        key=document([('id', 'int32', False)], {'id': id}),
        value=json.dumps(value),
        destination=destination,
    )
