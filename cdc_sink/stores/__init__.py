"""
Table store factory
"""

from .base_store import BaseTableStore, apply_changes
from .memory_store import InMemoryCatalog, InMemoryTableStore


def get_store_factory(kind, spark=None, namespace=None, catalog_name=None):
    """
    Factory function to get a table store factory for a store kind

    Args:
        kind: 'iceberg' or 'memory'
        spark: SparkSession (iceberg only)
        namespace: Iceberg namespace (iceberg only)
        catalog_name: Iceberg catalog name (iceberg only, defaults to CATALOG_NAME env var)

    Returns:
        Callable mapping a table name to a BaseTableStore
    """

    if kind == 'memory':
        return InMemoryCatalog()

    if kind == 'iceberg':
        if spark is None or not namespace:
            raise ValueError("The iceberg table store requires a SparkSession and a namespace")
        from .iceberg_store import IcebergTableManager
        return IcebergTableManager(spark, namespace, catalog_name)

    raise ValueError(f"Unsupported table store: {kind}. Supported: ['iceberg', 'memory']")


__all__ = ['get_store_factory', 'apply_changes', 'BaseTableStore', 'InMemoryCatalog', 'InMemoryTableStore']
