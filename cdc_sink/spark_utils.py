"""
Spark session utilities for the CDC sink
Builds the SparkSession the Iceberg table store and the Kafka streaming job run on
Supports local development, Databricks, and S3/MinIO object storage
"""

import os
import logging
from pathlib import Path
from typing import Optional, Dict
from pyspark.sql import SparkSession

logger = logging.getLogger(__name__)


class SparkSessionFactory:
    """Factory for creating Spark sessions with Iceberg (and optionally Kafka/S3) configured"""

    # Default JAR paths relative to project root
    DEFAULT_JAR_DIR = Path(__file__).parent.parent / 'jars'

    ICEBERG_JAR = 'iceberg-spark-runtime.jar'

    # Maven coordinates, used when the job reads from Kafka or writes to S3
    KAFKA_PACKAGE = 'org.apache.spark:spark-sql-kafka-0-10_2.12:3.5.0'
    HADOOP_AWS_PACKAGE = 'org.apache.hadoop:hadoop-aws:3.3.4'

    @staticmethod
    def is_databricks_environment() -> bool:
        return 'DATABRICKS_RUNTIME_VERSION' in os.environ

    @classmethod
    def session_config(cls,
                       catalog_name: str,
                       warehouse_path: str,
                       catalog_type: str = 'hadoop',
                       enable_kafka: bool = False,
                       s3_config: Optional[Dict[str, str]] = None,
                       jar_dir: Optional[Path] = None,
                       local_mode: bool = True) -> Dict[str, str]:
        """
        Spark configuration for a sink session

        Args:
            catalog_name: Iceberg catalog name
            warehouse_path: Iceberg warehouse location (local path, s3a://, ...)
            catalog_type: Iceberg catalog type ('hadoop', 'hive', 'rest', ...)
            enable_kafka: Add the Spark Kafka source package
            s3_config: S3/MinIO settings: endpoint, access_key, secret_key, path_style_access
            jar_dir: Directory holding the Iceberg runtime JAR (default: PROJECT_ROOT/jars)
            local_mode: Bind the driver to localhost

        Returns:
            dict: Spark config key -> value
        """
        config = {
            'spark.sql.extensions': 'org.apache.iceberg.spark.extensions.IcebergSparkSessionExtensions',
            f'spark.sql.catalog.{catalog_name}': 'org.apache.iceberg.spark.SparkCatalog',
            f'spark.sql.catalog.{catalog_name}.type': catalog_type,
            f'spark.sql.catalog.{catalog_name}.warehouse': warehouse_path,
            'spark.sql.adaptive.enabled': 'true',
            'spark.sql.adaptive.coalescePartitions.enabled': 'true',
            'spark.network.timeout': '600s',
            'spark.executor.heartbeatInterval': '60s',
        }

        iceberg_jar = (jar_dir or cls.DEFAULT_JAR_DIR) / cls.ICEBERG_JAR
        if iceberg_jar.exists():
            config['spark.jars'] = str(iceberg_jar)
            config['spark.driver.extraClassPath'] = str(iceberg_jar)
            config['spark.executor.extraClassPath'] = str(iceberg_jar)
        else:
            logger.debug(f"{iceberg_jar} not found, expecting the Iceberg runtime on the classpath")

        packages = []
        if enable_kafka:
            packages.append(cls.KAFKA_PACKAGE)
        if s3_config:
            packages.append(cls.HADOOP_AWS_PACKAGE)
            config.update(cls._s3_config(s3_config))
        if packages:
            config['spark.jars.packages'] = ",".join(packages)

        if local_mode:
            config['spark.driver.bindAddress'] = '127.0.0.1'
            config['spark.driver.host'] = 'localhost'

        return config

    @staticmethod
    def _s3_config(s3_config: Dict[str, str]) -> Dict[str, str]:
        """S3A settings for MinIO or AWS S3"""
        config = {
            'spark.hadoop.fs.s3a.impl': 'org.apache.hadoop.fs.s3a.S3AFileSystem',
            # Path style access (required for MinIO, optional for AWS S3)
            'spark.hadoop.fs.s3a.path.style.access': str(s3_config.get('path_style_access', 'true')),
            'spark.hadoop.fs.s3a.attempts.maximum': '3',
        }
        if 'endpoint' in s3_config:
            config['spark.hadoop.fs.s3a.endpoint'] = s3_config['endpoint']
        if 'access_key' in s3_config:
            config['spark.hadoop.fs.s3a.access.key'] = s3_config['access_key']
        if 'secret_key' in s3_config:
            config['spark.hadoop.fs.s3a.secret.key'] = s3_config['secret_key']
        return config

    @classmethod
    def create(cls, app_name: str, catalog_name: Optional[str] = None, **kwargs) -> SparkSession:
        """
        Create a Spark session for the sink

        On Databricks the existing session is returned as-is (the workspace
        catalog is already configured). Elsewhere the catalog name defaults to
        CATALOG_NAME and the warehouse to WAREHOUSE_PATH.

        Raises:
            ValueError: If required environment variables are missing
        """
        if cls.is_databricks_environment():
            logger.info("Databricks runtime detected, using the active Spark session")
            return SparkSession.builder.appName(app_name).getOrCreate()

        catalog_name = catalog_name or cls._get_required_env('CATALOG_NAME')
        warehouse_path = kwargs.pop('warehouse_path', None) or cls._get_required_env('WAREHOUSE_PATH')

        builder = SparkSession.builder.appName(app_name)
        for key, value in cls.session_config(catalog_name, warehouse_path, **kwargs).items():
            builder = builder.config(key, value)

        logger.info(f"Creating Spark session {app_name} (catalog: {catalog_name})")
        return builder.getOrCreate()

    @staticmethod
    def _get_required_env(var_name: str) -> str:
        """Get required environment variable or raise error"""
        value = os.environ.get(var_name)
        if not value:
            raise ValueError(f"{var_name} environment variable must be set")
        return value
