#!/usr/bin/env python3
"""
CDC Kafka to Iceberg Sink
Consumes Debezium CDC events from Kafka and applies them to Iceberg tables

Each Spark micro-batch is handed to ChangeConsumer.handle_batch. A batch
that is not fully acknowledged fails the streaming query, so its Kafka
offsets are not checkpointed and the batch is redelivered on restart.
"""

import sys
import os
import argparse
import logging
from pathlib import Path

from pyspark.sql import SparkSession

from cdc_sink.config_loader import get_sink_config, get_kafka_config
from cdc_sink.consumer import BatchResult, ChangeConsumer
from cdc_sink.correlation import CorrelationIdFilter
from cdc_sink.events import ChangeEvent
from cdc_sink.monitoring import StructuredLogger
from cdc_sink.spark_utils import SparkSessionFactory

# Auto-detect project root
PROJECT_ROOT = Path(__file__).parent.parent.absolute()

# Configure logging
# For Databricks: use StreamHandler only (logs captured by driver)
# For local dev: add FileHandler if LOG_DIR is set
handlers = [logging.StreamHandler()]

log_dir_env = os.environ.get('LOG_DIR')
if log_dir_env:
    log_dir = Path(log_dir_env)
    log_dir.mkdir(exist_ok=True, parents=True)
    handlers.append(logging.FileHandler(log_dir / 'cdc_sink.log'))

for handler in handlers:
    handler.addFilter(CorrelationIdFilter())

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - [%(threadName)s] - [%(correlation_id)s] - %(name)s - %(levelname)s - %(message)s',
    handlers=handlers
)
logger = logging.getLogger(__name__)


class BatchNotAcknowledged(RuntimeError):
    """Raised inside foreachBatch so Spark does not commit the batch offsets"""


def acknowledge(result: BatchResult):
    """Acknowledgement callback: fail the micro-batch unless every table committed"""
    if result.acknowledged:
        return

    reasons = [f"{table}: {error}" for table, error in result.failed_tables.items()]
    reasons += [f"event {r.index} ({r.destination}): {r.reason}"
                for r in result.rejected_events if r.outcome == 'batch_failed']
    raise BatchNotAcknowledged(f"Batch {result.batch_id} not acknowledged - " + "; ".join(reasons))


def to_change_events(batch_df):
    """Collect a Kafka micro-batch as ChangeEvents, in offset order per partition"""
    rows = batch_df.selectExpr(
        "topic",
        "CAST(key AS STRING) AS key",
        "CAST(value AS STRING) AS value"
    ).collect()
    return [ChangeEvent.from_kafka_message(row['topic'], row['key'], row['value']) for row in rows]


def start_stream(spark: SparkSession, consumer: ChangeConsumer, sink_name: str,
                 sink_config: dict, kafka_config: dict, batch_size: int = 1000):
    """
    Start the streaming query that feeds Kafka micro-batches to the consumer

    Args:
        spark: SparkSession
        consumer: Configured ChangeConsumer
        sink_name: Sink name (used in batch IDs and the checkpoint path)
        sink_config: Sink configuration
        kafka_config: Kafka cluster configuration
        batch_size: Maximum number of Kafka messages per micro-batch
    """
    kafka_settings = sink_config['kafka']
    topic_pattern = kafka_settings['topic_pattern']
    if not topic_pattern:
        raise ValueError(f"Sink '{sink_name}': 'kafka.topic_pattern' must be set for the streaming job")

    logger.info(f"Subscribing to Kafka topics: {topic_pattern}")

    kafka_df = spark.readStream \
        .format("kafka") \
        .option("kafka.bootstrap.servers", kafka_config['bootstrap_servers']) \
        .option("subscribePattern", topic_pattern) \
        .option("startingOffsets", kafka_settings['starting_offsets']) \
        .option("maxOffsetsPerTrigger", batch_size) \
        .load()

    def process_batch(batch_df, batch_id):
        """Process each micro-batch"""
        if batch_df.isEmpty():
            return

        events = to_change_events(batch_df)
        consumer.handle_batch(events, committer=acknowledge, batch_id=f"{sink_name}-{batch_id}")

    # Use CHECKPOINT_PATH env var (supports s3://, dbfs://, file://)
    # Falls back to local path for development
    checkpoint_base = os.environ.get('CHECKPOINT_PATH', str(PROJECT_ROOT / 'checkpoints'))
    checkpoint_dir = f"{checkpoint_base}/{sink_name}"

    logger.info(f"Using checkpoint location: {checkpoint_dir}")

    query = kafka_df.writeStream \
        .foreachBatch(process_batch) \
        .option("checkpointLocation", checkpoint_dir) \
        .trigger(processingTime="10 seconds") \
        .start()

    return query


def run_cdc_sink(sink_name: str, batch_size: int = 1000):
    """
    Main CDC sink function

    Args:
        sink_name: Sink name from sinks.yaml
        batch_size: Messages per batch
    """

    logger.info("="*80)
    logger.info(f"Starting CDC Sink: {sink_name}")
    logger.info("="*80)

    sink_config = get_sink_config(sink_name)
    kafka_config = get_kafka_config(sink_config['kafka']['cluster'])

    logger.info(f"Target namespace: {sink_config['iceberg_namespace']}")
    logger.info(f"Kafka bootstrap: {kafka_config['bootstrap_servers']}")

    structured_logger = StructuredLogger(job_name='cdc_sink', sink_name=sink_name)
    structured_logger.log_job_start({'batch_size': batch_size, 'table_store': sink_config['table_store']})

    spark = SparkSessionFactory.create(
        f"CDC-Sink-{sink_name}",
        catalog_name=sink_config['catalog_name'],
        enable_kafka=True
    )

    try:
        consumer = ChangeConsumer.from_config(sink_name, spark=spark, structured_logger=structured_logger)
        query = start_stream(spark, consumer, sink_name, sink_config, kafka_config, batch_size)

        logger.info("CDC Sink started. Press Ctrl+C to stop.")
        query.awaitTermination()

    except KeyboardInterrupt:
        logger.info("Shutting down CDC Sink...")

    except Exception as e:
        structured_logger.log_job_failure(str(e), {'error_type': type(e).__name__})
        raise

    finally:
        spark.stop()
        logger.info("CDC Sink stopped.")


def main():
    parser = argparse.ArgumentParser(
        description='CDC Kafka to Iceberg Sink'
    )
    parser.add_argument(
        '--sink',
        required=True,
        help='Sink name from sinks.yaml (e.g., inventory)'
    )
    parser.add_argument(
        '--batch-size',
        type=int,
        default=1000,
        help='Number of messages to process per batch (default: 1000)'
    )

    args = parser.parse_args()

    try:
        run_cdc_sink(args.sink, args.batch_size)
    except Exception as e:
        logger.exception(f"CDC Sink failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
