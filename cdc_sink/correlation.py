"""
Correlation IDs for CDC batches

Every batch handled by the sink runs under one correlation ID, so all log
lines of a batch (including those from commit worker threads) can be tied
together across Kafka, Spark and Iceberg.
"""

import uuid
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

# Thread-safe context variable for correlation ID
correlation_id: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)


def generate_correlation_id() -> str:
    """
    Generate a unique correlation ID for request tracing.

    Returns:
        str: UUID-based correlation ID
    """
    return str(uuid.uuid4())


def get_correlation_id() -> Optional[str]:
    """Correlation ID of the current batch, or None outside a batch"""
    return correlation_id.get()


@contextmanager
def with_correlation_id(cid: Optional[str] = None) -> Iterator[str]:
    """
    Context manager for scoped correlation ID.

    Args:
        cid: Optional correlation ID. If None, generates new ID.

    Example:
        >>> with with_correlation_id('batch-42') as cid:
        >>>     consumer.handle_batch(...)  # every log line carries batch-42
        >>> # previous correlation ID is restored on exit
    """
    token = correlation_id.set(cid or generate_correlation_id())
    try:
        yield correlation_id.get()
    finally:
        correlation_id.reset(token)


class CorrelationIdFilter(logging.Filter):
    """
    Adds the current correlation ID to log records as %(correlation_id)s

    Attach to handlers so records from every logger get the attribute.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id.get() or '-'
        return True
