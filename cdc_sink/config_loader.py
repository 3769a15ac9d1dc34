import copy
import yaml
import os
import re
from typing import Dict, Any

# Sink settings used when a sink section leaves them out
DEFAULT_SINK_CONFIG = {
    'catalog_name': None,
    'iceberg_namespace': None,
    'table_prefix': '',
    'destination_regexp': '',
    'destination_regexp_replace': '',
    'table_store': 'iceberg',
    'malformed_event_policy': 'fail_batch',
    'schema_evolution': 'permissive',
    'upsert': {
        'enabled': True,
        'keep_deletes': False
    },
    'audit_columns': {
        'op': '__op',
        'table': '__table',
        'position': '__lsn',
        'timestamp': '__source_ts_ms',
        'deleted': '__deleted'
    },
    'commit': {
        'max_retries': 3,
        'retry_backoff': 2,
        'parallel_workers': 1
    },
    'metrics': {
        'enable_cloudwatch': False
    },
    'kafka': {
        'cluster': 'primary',
        'topic_pattern': None,
        'starting_offsets': 'earliest'
    }
}

TABLE_STORES = ['iceberg', 'memory']
MALFORMED_EVENT_POLICIES = ['fail_batch', 'skip']
SCHEMA_EVOLUTION_POLICIES = ['permissive', 'strict', 'additive_only']


def _substitute_env_vars(config: Any) -> Any:
    """
    Recursively substitute environment variables in config
    Supports ${ENV_VAR_NAME} or ${ENV_VAR_NAME:default_value} syntax
    """
    if isinstance(config, dict):
        return {key: _substitute_env_vars(value) for key, value in config.items()}
    elif isinstance(config, list):
        return [_substitute_env_vars(item) for item in config]
    elif isinstance(config, str):
        # Match ${VAR} or ${VAR:default}
        pattern = r'\$\{([^}:]+)(?::([^}]*))?\}'

        def replace_env_var(match):
            var_name = match.group(1)
            default_value = match.group(2)

            value = os.environ.get(var_name)
            if value is None:
                if default_value is not None:
                    return default_value
                else:
                    raise ValueError(
                        f"Environment variable '{var_name}' not found and no default provided. "
                        f"Set the variable or provide a default with ${{VAR:default}}"
                    )
            return value

        return re.sub(pattern, replace_env_var, config)
    else:
        return config

def load_config_raw(config_file: str) -> Dict[str, Any]:
    """Load YAML configuration file without environment variable substitution"""
    with open(config_file, 'r') as f:
        return yaml.safe_load(f)

def load_config(config_file: str) -> Dict[str, Any]:
    """Load YAML configuration file with environment variable substitution"""
    config = load_config_raw(config_file)
    return _substitute_env_vars(config)

def _config_dir() -> str:
    config_dir = os.environ.get('CONFIG_DIR')
    if not config_dir:
        raise ValueError("CONFIG_DIR environment variable must be set")
    return config_dir

def _merge_defaults(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Deep-merge overrides onto a copy of defaults; nested sections merge key by key"""
    merged = copy.deepcopy(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge_defaults(merged[key], value)
        else:
            merged[key] = value
    return merged


def _validate_section(sink_name: str, sink_config: Dict[str, Any], section: str) -> Dict[str, Any]:
    value = sink_config[section]
    if not isinstance(value, dict):
        raise ValueError(
            f"Sink '{sink_name}': '{section}' must be a dictionary, got {type(value).__name__}"
        )
    return value


def _validate_choices(sink_name: str, sink_config: Dict[str, Any]) -> None:
    """
    Validate the enumerated settings

    Ensures:
    - table_store is one of: iceberg, memory
    - malformed_event_policy is one of: fail_batch, skip
    - schema_evolution is one of: permissive, strict, additive_only
    """
    choices = {
        'table_store': TABLE_STORES,
        'malformed_event_policy': MALFORMED_EVENT_POLICIES,
        'schema_evolution': SCHEMA_EVOLUTION_POLICIES,
    }
    for key, valid_options in choices.items():
        if sink_config[key] not in valid_options:
            raise ValueError(
                f"Sink '{sink_name}': '{key}' must be one of {valid_options}, got '{sink_config[key]}'"
            )


def _validate_table_naming(sink_name: str, sink_config: Dict[str, Any]) -> None:
    """
    Validate destination -> table name settings

    Ensures:
    - table_prefix, destination_regexp and destination_regexp_replace are strings
    - destination_regexp compiles
    """
    for key in ('table_prefix', 'destination_regexp', 'destination_regexp_replace'):
        value = sink_config[key]
        if value is None:
            sink_config[key] = ''
        elif not isinstance(value, str):
            raise ValueError(
                f"Sink '{sink_name}': '{key}' must be a string, got {type(value).__name__}"
            )

    if sink_config['destination_regexp']:
        try:
            re.compile(sink_config['destination_regexp'])
        except re.error as e:
            raise ValueError(
                f"Sink '{sink_name}': 'destination_regexp' is not a valid regular expression: {e}"
            ) from e


def _validate_upsert_config(sink_name: str, sink_config: Dict[str, Any]) -> None:
    """
    Validate upsert configuration section

    Ensures:
    - upsert is a dictionary
    - enabled and keep_deletes are booleans
    """
    upsert = _validate_section(sink_name, sink_config, 'upsert')

    for key in ('enabled', 'keep_deletes'):
        if not isinstance(upsert[key], bool):
            raise ValueError(
                f"Sink '{sink_name}': 'upsert.{key}' must be a boolean, got {type(upsert[key]).__name__}"
            )


def _validate_audit_columns(sink_name: str, sink_config: Dict[str, Any]) -> None:
    """
    Validate audit_columns configuration section

    Ensures:
    - audit_columns only names op, table, position, timestamp, deleted
    - each column name is a non-empty string
    - column names are distinct
    """
    audit_columns = _validate_section(sink_name, sink_config, 'audit_columns')

    unknown = set(audit_columns) - set(DEFAULT_SINK_CONFIG['audit_columns'])
    if unknown:
        raise ValueError(
            f"Sink '{sink_name}': unknown audit column setting(s): {', '.join(sorted(unknown))}"
        )

    for key, column in audit_columns.items():
        if not isinstance(column, str) or not column:
            raise ValueError(
                f"Sink '{sink_name}': 'audit_columns.{key}' must be a non-empty string, got {column!r}"
            )

    if len(set(audit_columns.values())) != len(audit_columns):
        raise ValueError(f"Sink '{sink_name}': audit column names must be distinct")


def _validate_commit_config(sink_name: str, sink_config: Dict[str, Any]) -> None:
    """
    Validate commit configuration section

    Ensures:
    - commit is a dictionary
    - max_retries is a non-negative integer
    - retry_backoff is a positive number
    - parallel_workers is a positive integer (tables committed concurrently)
    """
    commit = _validate_section(sink_name, sink_config, 'commit')

    retries = commit['max_retries']
    if isinstance(retries, bool) or not isinstance(retries, int) or retries < 0:
        raise ValueError(
            f"Sink '{sink_name}': 'max_retries' must be a non-negative integer, got {retries}"
        )

    backoff = commit['retry_backoff']
    if isinstance(backoff, bool) or not isinstance(backoff, (int, float)) or backoff <= 0:
        raise ValueError(
            f"Sink '{sink_name}': 'retry_backoff' must be a positive number, got {backoff}"
        )

    workers = commit['parallel_workers']
    if isinstance(workers, bool) or not isinstance(workers, int) or workers <= 0:
        raise ValueError(
            f"Sink '{sink_name}': 'parallel_workers' must be a positive integer, got {workers}"
        )


def _validate_metrics_config(sink_name: str, sink_config: Dict[str, Any]) -> None:
    metrics = _validate_section(sink_name, sink_config, 'metrics')

    # ${ENABLE_CLOUDWATCH:false} substitutes to a string
    if str(metrics['enable_cloudwatch']).lower() in ('true', 'false'):
        metrics['enable_cloudwatch'] = str(metrics['enable_cloudwatch']).lower() == 'true'
    if not isinstance(metrics['enable_cloudwatch'], bool):
        raise ValueError(
            f"Sink '{sink_name}': 'metrics.enable_cloudwatch' must be a boolean, "
            f"got {type(metrics['enable_cloudwatch']).__name__}"
        )


def _validate_kafka_config(sink_name: str, sink_config: Dict[str, Any]) -> None:
    """
    Validate kafka configuration section

    Ensures:
    - kafka is a dictionary
    - cluster is a non-empty string
    - starting_offsets is 'earliest' or 'latest'
    """
    kafka = _validate_section(sink_name, sink_config, 'kafka')

    if not isinstance(kafka['cluster'], str) or not kafka['cluster']:
        raise ValueError(
            f"Sink '{sink_name}': 'kafka.cluster' must be a non-empty string, got {kafka['cluster']!r}"
        )

    valid_options = ['earliest', 'latest']
    if kafka['starting_offsets'] not in valid_options:
        raise ValueError(
            f"Sink '{sink_name}': 'kafka.starting_offsets' must be one of {valid_options}, "
            f"got '{kafka['starting_offsets']}'"
        )


def build_sink_config(sink_name: str, sink_config: Dict[str, Any]) -> Dict[str, Any]:
    """
    Fill in defaults for a sink section and validate it

    Args:
        sink_name: Sink name (used in error messages)
        sink_config: Sink section, already env-substituted

    Returns:
        dict: Complete sink configuration

    Raises:
        ValueError: If a setting is invalid
    """
    if not isinstance(sink_config, dict):
        raise ValueError(
            f"Sink '{sink_name}': configuration must be a dictionary, got {type(sink_config).__name__}"
        )

    config = _merge_defaults(DEFAULT_SINK_CONFIG, sink_config)

    _validate_choices(sink_name, config)
    _validate_table_naming(sink_name, config)
    _validate_upsert_config(sink_name, config)
    _validate_audit_columns(sink_name, config)
    _validate_commit_config(sink_name, config)
    _validate_metrics_config(sink_name, config)
    _validate_kafka_config(sink_name, config)

    return config


def get_sink_config(sink_name: str) -> Dict[str, Any]:
    """Get configuration for a specific sink

    Only validates environment variables for the requested sink,
    not all sinks in the config file.
    """
    # Load raw config without env var substitution
    config = load_config_raw(f'{_config_dir()}/sinks.yaml')
    if not config or sink_name not in (config.get('sinks') or {}):
        raise ValueError(f"Sink '{sink_name}' not found in configuration")

    # Extract only the requested sink and substitute env vars for it
    sink_config = _substitute_env_vars(config['sinks'][sink_name] or {})

    sink_config = build_sink_config(sink_name, sink_config)

    if sink_config['table_store'] == 'iceberg' and not sink_config['iceberg_namespace']:
        raise ValueError(f"Sink '{sink_name}': 'iceberg_namespace' is required for the iceberg table store")

    return sink_config

def get_kafka_config(cluster_name: str = 'primary') -> Dict[str, Any]:
    """Get Kafka cluster configuration"""
    config = load_config(f'{_config_dir()}/kafka_clusters.yaml')
    if cluster_name not in config['kafka_clusters']:
        raise ValueError(f"Kafka cluster '{cluster_name}' not found")
    return config['kafka_clusters'][cluster_name]
