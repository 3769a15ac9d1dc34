"""
Shared fixtures for the CDC sink test suite
"""

import pytest

from cdc_sink.consumer import ChangeConsumer
from cdc_sink.decoder import ChangeEventDecoder
from cdc_sink.stores.memory_store import InMemoryCatalog


class AckRecorder:
    """Acknowledgement callback that records every BatchResult it receives"""

    def __init__(self):
        self.results = []

    def __call__(self, result):
        self.results.append(result)


@pytest.fixture
def catalog():
    return InMemoryCatalog()


@pytest.fixture
def acks():
    return AckRecorder()


@pytest.fixture
def sleeps():
    """Records backoff waits instead of sleeping"""
    return []


@pytest.fixture
def make_consumer(catalog, sleeps):
    """Build a ChangeConsumer over the in-memory catalog with optional config overrides"""

    def _make(**sink_config):
        sink_config.setdefault('table_store', 'memory')
        return ChangeConsumer(catalog, sink_config, sink_name='test', sleep=sleeps.append)

    return _make


@pytest.fixture
def consumer(make_consumer):
    return make_consumer()


@pytest.fixture
def decoder():
    return ChangeEventDecoder()
