"""
Tests for Spark session configuration
"""

from unittest.mock import MagicMock, patch

import pytest

from cdc_sink.spark_utils import SparkSessionFactory


class TestSessionConfig:

    def test_iceberg_catalog(self, tmp_path):
        config = SparkSessionFactory.session_config('local', '/data/warehouse', jar_dir=tmp_path)

        assert config['spark.sql.extensions'] == \
            'org.apache.iceberg.spark.extensions.IcebergSparkSessionExtensions'
        assert config['spark.sql.catalog.local'] == 'org.apache.iceberg.spark.SparkCatalog'
        assert config['spark.sql.catalog.local.type'] == 'hadoop'
        assert config['spark.sql.catalog.local.warehouse'] == '/data/warehouse'
        assert 'spark.jars' not in config
        assert 'spark.jars.packages' not in config

    def test_iceberg_jar_added_when_present(self, tmp_path):
        (tmp_path / SparkSessionFactory.ICEBERG_JAR).write_bytes(b'')
        config = SparkSessionFactory.session_config('local', '/wh', jar_dir=tmp_path)

        assert config['spark.jars'] == str(tmp_path / SparkSessionFactory.ICEBERG_JAR)

    def test_kafka_and_s3(self, tmp_path):
        config = SparkSessionFactory.session_config(
            'lake', 's3a://warehouse', enable_kafka=True, jar_dir=tmp_path, local_mode=False,
            s3_config={'endpoint': 'http://minio:9000', 'access_key': 'a', 'secret_key': 's'}
        )

        assert config['spark.jars.packages'] == \
            f"{SparkSessionFactory.KAFKA_PACKAGE},{SparkSessionFactory.HADOOP_AWS_PACKAGE}"
        assert config['spark.hadoop.fs.s3a.endpoint'] == 'http://minio:9000'
        assert config['spark.hadoop.fs.s3a.path.style.access'] == 'true'
        assert 'spark.driver.bindAddress' not in config


class TestCreate:

    def test_requires_environment(self, monkeypatch):
        monkeypatch.delenv('DATABRICKS_RUNTIME_VERSION', raising=False)
        monkeypatch.delenv('CATALOG_NAME', raising=False)
        with pytest.raises(ValueError, match="CATALOG_NAME"):
            SparkSessionFactory.create('test')

    def test_builder_configured(self, monkeypatch, tmp_path):
        monkeypatch.delenv('DATABRICKS_RUNTIME_VERSION', raising=False)
        monkeypatch.setenv('WAREHOUSE_PATH', '/wh')

        builder = MagicMock()
        builder.appName.return_value = builder
        builder.config.return_value = builder
        with patch('cdc_sink.spark_utils.SparkSession') as session_cls:
            session_cls.builder = builder
            spark = SparkSessionFactory.create('CDC-Sink-test', catalog_name='local', jar_dir=tmp_path)

        assert spark is builder.getOrCreate.return_value
        builder.config.assert_any_call('spark.sql.catalog.local.warehouse', '/wh')

    def test_databricks_uses_active_session(self, monkeypatch):
        monkeypatch.setenv('DATABRICKS_RUNTIME_VERSION', '14.3')
        with patch('cdc_sink.spark_utils.SparkSession') as session_cls:
            spark = SparkSessionFactory.create('CDC-Sink-test')

        assert spark is session_cls.builder.appName.return_value.getOrCreate.return_value
        session_cls.builder.appName.return_value.config.assert_not_called()
