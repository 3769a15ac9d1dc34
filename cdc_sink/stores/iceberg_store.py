"""
Iceberg table store
Applies resolved CDC batches to Iceberg tables through Spark SQL
"""

import os
import uuid
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from pyspark.sql import SparkSession
from pyspark.sql.types import (
    StructType, StructField, IntegerType, LongType, FloatType, DoubleType, StringType, BinaryType, BooleanType
)

from cdc_sink.events import CanonicalKey, SchemaField, TableSchema
from cdc_sink.keys import key_from_row
from cdc_sink.stores.base_store import BaseTableStore

logger = logging.getLogger(__name__)

# Column that tells the MERGE whether a source row is an upsert or a delete
ACTION_COLUMN = '_cdc_action'

# Iceberg has no 8/16-bit integers; they are stored as int
SPARK_TYPES = {
    'int8': IntegerType,
    'int16': IntegerType,
    'int32': IntegerType,
    'int64': LongType,
    'float32': FloatType,
    'float64': DoubleType,
    'boolean': BooleanType,
    'string': StringType,
    'bytes': BinaryType,
}

SOURCE_TYPES = {
    'ByteType': 'int32',
    'ShortType': 'int32',
    'IntegerType': 'int32',
    'LongType': 'int64',
    'FloatType': 'float32',
    'DoubleType': 'float64',
    'BooleanType': 'boolean',
    'StringType': 'string',
    'BinaryType': 'bytes',
}


def to_spark_schema(schema: TableSchema) -> StructType:
    """Convert a TableSchema to a Spark StructType"""
    return StructType([
        StructField(f.name, SPARK_TYPES[f.type](), f.optional)
        for f in schema.fields
    ])


def from_spark_schema(struct: StructType) -> TableSchema:
    """
    Convert a Spark StructType back to a TableSchema

    Raises:
        ValueError: If the table holds a column type the sink does not write
    """
    fields = []
    for field in struct.fields:
        type_name = type(field.dataType).__name__
        if type_name not in SOURCE_TYPES:
            raise ValueError(f"Unsupported column type {field.dataType} for column {field.name}")
        fields.append(SchemaField(field.name, SOURCE_TYPES[type_name], field.nullable))
    return TableSchema(tuple(fields))


def _quote(column: str) -> str:
    return f"`{column.replace('`', '``')}`"


class IcebergTableManager:
    """Resolves sink table names to Iceberg tables and hands out stores"""

    def __init__(self, spark: SparkSession, namespace: str, catalog_name: Optional[str] = None):
        """
        Initialize IcebergTableManager

        Args:
            spark: SparkSession instance
            namespace: Iceberg namespace (e.g., 'bronze.inventory')
            catalog_name: Iceberg catalog name (defaults to CATALOG_NAME env var)

        Raises:
            ValueError: If catalog_name is not provided and CATALOG_NAME env var is not set
        """
        self.spark = spark
        self.namespace = namespace

        if catalog_name is None:
            catalog_name = os.environ.get('CATALOG_NAME')
            if not catalog_name:
                raise ValueError("CATALOG_NAME environment variable must be set")

        self.catalog_name = catalog_name

    def get_full_table_name(self, table_name: str) -> str:
        """
        Build fully qualified Iceberg table name

        Returns:
            Fully qualified table name (e.g., 'local.bronze.inventory.customers')
        """
        return f"{self.catalog_name}.{self.namespace}.{table_name}"

    def get_store(self, table_name: str) -> 'IcebergTableStore':
        return IcebergTableStore(self.spark, self.get_full_table_name(table_name))

    def __call__(self, table_name: str) -> 'IcebergTableStore':
        return self.get_store(table_name)


class IcebergTableStore(BaseTableStore):
    """
    One Iceberg table

    Upserts, deletes and appends of a batch go out as a single MERGE INTO,
    which Iceberg commits as one snapshot. A batch holding only appends is
    written with a plain append.
    """

    def __init__(self, spark: SparkSession, full_table_name: str):
        super().__init__(full_table_name)
        self.spark = spark

    def table_exists(self) -> bool:
        try:
            self.spark.table(self.table_name)
            return True
        except Exception:
            return False

    def current_schema(self) -> Optional[TableSchema]:
        if not self.table_exists():
            return None
        return from_spark_schema(self.spark.table(self.table_name).schema)

    def create_table(self, schema: TableSchema) -> None:
        logger.info(f"Creating table {self.table_name}")
        empty_df = self.spark.createDataFrame([], to_spark_schema(schema))
        empty_df.writeTo(self.table_name).using("iceberg").create()
        logger.info(f"Created table {self.table_name} with {len(schema)} columns")

    def evolve_schema(self, schema: TableSchema) -> None:
        current = self.current_schema().as_dict()

        for field in schema.fields:
            spark_type = SPARK_TYPES[field.type]().simpleString()
            if field.name not in current:
                self.spark.sql(f"ALTER TABLE {self.table_name} ADD COLUMNS ({_quote(field.name)} {spark_type})")
                logger.info(f"{self.table_name}: Added column {field.name} ({spark_type})")
            elif SPARK_TYPES[current[field.name]] is not SPARK_TYPES[field.type]:
                self.spark.sql(f"ALTER TABLE {self.table_name} ALTER COLUMN {_quote(field.name)} TYPE {spark_type}")
                logger.info(f"{self.table_name}: Promoted column {field.name} to {spark_type}")

    def read_current_keys(self, key_schema: TableSchema) -> Set[CanonicalKey]:
        key_columns = [_quote(name) for name in key_schema.field_names()]
        rows = self.spark.table(self.table_name).selectExpr(*key_columns).collect()
        return {key_from_row(key_schema, row.asDict()) for row in rows}

    def commit(self, rows_to_upsert: Mapping[CanonicalKey, Dict[str, Any]],
               keys_to_delete: Iterable[CanonicalKey],
               rows_to_append: Iterable[Dict[str, Any]] = ()) -> None:
        keys_to_delete = list(keys_to_delete)
        rows_to_append = list(rows_to_append)
        schema = self.current_schema()
        columns = schema.field_names()

        if not rows_to_upsert and not keys_to_delete:
            if rows_to_append:
                df = self.spark.createDataFrame(
                    [tuple(row.get(c) for c in columns) for row in rows_to_append],
                    schema=to_spark_schema(schema)
                )
                df.writeTo(self.table_name).append()
                logger.debug(f"{self.table_name}: Appended {len(rows_to_append)} rows")
            return

        source_rows = [tuple(row.get(c) for c in columns) + ('upsert',) for row in rows_to_upsert.values()]
        for key in keys_to_delete:
            key_values = key.as_dict()
            source_rows.append(tuple(key_values.get(c) for c in columns) + ('delete',))
        source_rows.extend(tuple(row.get(c) for c in columns) + ('append',) for row in rows_to_append)

        source_schema = StructType(
            [StructField(f.name, SPARK_TYPES[f.type](), True) for f in schema.fields]
            + [StructField(ACTION_COLUMN, StringType(), False)]
        )
        df = self.spark.createDataFrame(source_rows, schema=source_schema)

        key_columns = self._key_columns(rows_to_upsert, keys_to_delete)
        view_name = f"cdc_changes_{uuid.uuid4().hex}"
        df.createOrReplaceTempView(view_name)
        try:
            self.spark.sql(self.build_merge_sql(view_name, key_columns, columns))
        finally:
            self.spark.catalog.dropTempView(view_name)

        logger.debug(f"{self.table_name}: MERGE applied {len(rows_to_upsert)} upserts, {len(keys_to_delete)} deletes, "
                     f"{len(rows_to_append)} appends")

    @staticmethod
    def _key_columns(rows_to_upsert: Mapping[CanonicalKey, Any], keys_to_delete: List[CanonicalKey]):
        for key in list(rows_to_upsert) + keys_to_delete:
            return key.columns
        return ()

    def build_merge_sql(self, view_name: str, key_columns: Iterable[str], columns: Iterable[str]) -> str:
        """
        Build the MERGE INTO statement for one batch

        Deletes are matched first so a deleted key is never updated with the
        delete payload. Appended rows never match and are always inserted.
        """
        columns = list(columns)
        on_conditions = " AND ".join(
            [f"source.{ACTION_COLUMN} <> 'append'"]
            + [f"target.{_quote(c)} = source.{_quote(c)}" for c in key_columns]
        )
        update_set = ", ".join(f"target.{_quote(c)} = source.{_quote(c)}" for c in columns)
        insert_columns = ", ".join(_quote(c) for c in columns)
        insert_values = ", ".join(f"source.{_quote(c)}" for c in columns)

        return f"""
            MERGE INTO {self.table_name} target
            USING {view_name} source
            ON {on_conditions}
            WHEN MATCHED AND source.{ACTION_COLUMN} = 'delete' THEN DELETE
            WHEN MATCHED THEN UPDATE SET {update_set}
            WHEN NOT MATCHED AND source.{ACTION_COLUMN} IN ('upsert', 'append') THEN INSERT ({insert_columns}) VALUES ({insert_values})
        """
