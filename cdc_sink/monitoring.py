"""
Monitoring and metrics collection for the CDC sink
Supports CloudWatch (AWS) and structured JSON logging
"""

import logging
import json
from datetime import datetime, timezone
from typing import Dict, Optional, Any

logger = logging.getLogger(__name__)

CLOUDWATCH_NAMESPACE = 'CDC/Sink'


class MetricsCollector:
    """
    Collects and emits metrics for CDC batches

    Supports:
    - CloudWatch metrics (when enabled, boto3 installed and AWS credentials configured)
    - Structured JSON logging for downstream analysis
    - Per-batch summary of the metrics emitted since the last flush
    """

    def __init__(self, job_name: str, sink_name: str, enable_cloudwatch: bool = False):
        """
        Initialize metrics collector

        Args:
            job_name: Name of the job (e.g., 'cdc_sink')
            sink_name: Sink identifier from sinks.yaml
            enable_cloudwatch: Attempt to use CloudWatch if available
        """
        self.job_name = job_name
        self.sink_name = sink_name
        self.enable_cloudwatch = enable_cloudwatch
        self.cloudwatch_client = None
        self.metrics_buffer = []

        if enable_cloudwatch:
            try:
                import boto3
                self.cloudwatch_client = boto3.client('cloudwatch')
                logger.info("CloudWatch metrics enabled")
            except ImportError:
                logger.warning("boto3 not available - CloudWatch metrics disabled (pip install boto3)")
            except Exception as e:
                logger.warning(f"CloudWatch client initialization failed: {e} - metrics will be logged only")

    def emit_metric(self, metric_name: str, value: float, unit: str = 'Count',
                    dimensions: Optional[Dict[str, str]] = None):
        """
        Emit a metric to CloudWatch and structured logs

        Args:
            metric_name: Metric name (e.g., 'cdc_rows_upserted')
            value: Metric value
            unit: CloudWatch unit (Count, Seconds, Count/Second, etc.)
            dimensions: Additional dimensions for the metric
        """
        timestamp = datetime.now(timezone.utc)

        metric_dimensions = {
            'JobName': self.job_name,
            'SinkName': self.sink_name
        }
        if dimensions:
            metric_dimensions.update(dimensions)

        metric_data = {
            'timestamp': timestamp.isoformat(),
            'metric_name': metric_name,
            'value': value,
            'unit': unit,
            'dimensions': metric_dimensions
        }
        self.metrics_buffer.append(metric_data)

        logger.info(f"METRIC: {json.dumps(metric_data)}")

        if self.cloudwatch_client:
            try:
                self.cloudwatch_client.put_metric_data(
                    Namespace=CLOUDWATCH_NAMESPACE,
                    MetricData=[{
                        'MetricName': metric_name,
                        'Value': value,
                        'Unit': unit,
                        'Timestamp': timestamp,
                        'Dimensions': [
                            {'Name': k, 'Value': str(v)}
                            for k, v in metric_dimensions.items()
                        ]
                    }]
                )
            except Exception as e:
                logger.warning(f"Failed to send metric to CloudWatch: {e}")

    def emit_counter(self, metric_name: str, count: int = 1,
                     dimensions: Optional[Dict[str, str]] = None):
        """Emit a counter metric"""
        self.emit_metric(metric_name, float(count), unit='Count', dimensions=dimensions)

    def emit_duration(self, metric_name: str, duration_seconds: float,
                      dimensions: Optional[Dict[str, str]] = None):
        """Emit a duration metric"""
        self.emit_metric(metric_name, duration_seconds, unit='Seconds', dimensions=dimensions)

    def emit_success(self, operation_name: str, dimensions: Optional[Dict[str, str]] = None):
        self.emit_counter(f"{operation_name}_success", count=1, dimensions=dimensions)

    def emit_failure(self, operation_name: str, error_type: str = 'Unknown',
                     dimensions: Optional[Dict[str, str]] = None):
        failure_dimensions = dict(dimensions or {})
        failure_dimensions['ErrorType'] = error_type
        self.emit_counter(f"{operation_name}_failure", count=1, dimensions=failure_dimensions)

    def flush_summary(self) -> Dict[str, Any]:
        """
        Summarize the metrics emitted since the last flush and clear the buffer

        The consumer flushes once per batch, so the buffer never holds more
        than one batch worth of metrics.

        Returns:
            dict: Metrics summary, aggregated by metric name
        """
        buffered, self.metrics_buffer = self.metrics_buffer, []
        summary = {
            'total_metrics': len(buffered),
            'cloudwatch_enabled': self.cloudwatch_client is not None
        }

        by_metric = {}
        for metric in buffered:
            name = metric['metric_name']
            if name not in by_metric:
                by_metric[name] = {
                    'count': 0,
                    'sum': 0.0,
                    'min': float('inf'),
                    'max': float('-inf')
                }

            value = metric['value']
            by_metric[name]['count'] += 1
            by_metric[name]['sum'] += value
            by_metric[name]['min'] = min(by_metric[name]['min'], value)
            by_metric[name]['max'] = max(by_metric[name]['max'], value)

        summary['metrics'] = by_metric
        return summary


class StructuredLogger:
    """
    Structured logging for CDC sink events
    Emits JSON-formatted log lines for downstream analysis
    """

    def __init__(self, job_name: str, sink_name: str):
        self.job_name = job_name
        self.sink_name = sink_name
        self.logger = logging.getLogger(__name__)

    def log_event(self, event_type: str, details: Dict[str, Any],
                  level: str = 'INFO', table_name: Optional[str] = None):
        """
        Log a structured event

        Args:
            event_type: Event type (e.g., 'cdc_batch_complete', 'table_commit_failure')
            details: Event details
            level: Log level (INFO, WARNING, ERROR)
            table_name: Optional table name
        """
        event = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'job_name': self.job_name,
            'sink_name': self.sink_name,
            'event_type': event_type,
            'details': details
        }

        if table_name:
            event['table_name'] = table_name

        log_line = f"EVENT: {json.dumps(event, default=str)}"

        if level == 'WARNING':
            self.logger.warning(log_line)
        elif level == 'ERROR':
            self.logger.error(log_line)
        else:
            self.logger.info(log_line)

    def log_table_failure(self, table_name: str, error: str, details: Optional[Dict] = None):
        """Log a table sub-batch that failed to commit"""
        event_details = {
            'error': error,
            **(details or {})
        }
        self.log_event('table_commit_failure', event_details,
                       level='ERROR', table_name=table_name)

    def log_batch_complete(self, batch_id: str, details: Optional[Dict] = None):
        """Log the outcome of one batch"""
        self.log_event('cdc_batch_complete', {'batch_id': batch_id, **(details or {})})

    def log_job_start(self, details: Optional[Dict] = None):
        self.log_event('job_start', details or {})

    def log_job_failure(self, error: str, details: Optional[Dict] = None):
        event_details = {
            'error': error,
            **(details or {})
        }
        self.log_event('job_failure', event_details, level='ERROR')
