"""
Configuration loader utilities.

Provides functions to load configuration from various sources:
- Environment variables (highest precedence)
- Configuration files (YAML/JSON)
- Default values (fallback)
"""

import os
import json
import logging
import dataclasses
import yaml
from pathlib import Path
from typing import Dict, Any, Optional

from .settings import AppConfig, Environment

logger = logging.getLogger(__name__)

# Environment variable -> dotted config path
ENV_MAPPINGS = {
    'ENVIRONMENT': 'environment',
    'DEBUG': 'debug',
    'APP_NAME': 'app_name',
    'APP_VERSION': 'version',
    # Kafka settings
    'KAFKA_BOOTSTRAP_SERVERS': 'kafka.bootstrap_servers',
    'KAFKA_CLIENT_ID': 'kafka.client_id',
    'KAFKA_AUTO_OFFSET_RESET': 'kafka.auto_offset_reset',
    'KAFKA_SESSION_TIMEOUT_MS': 'kafka.session_timeout_ms',
    'KAFKA_HEARTBEAT_INTERVAL_MS': 'kafka.heartbeat_interval_ms',
    'KAFKA_MAX_POLL_INTERVAL_MS': 'kafka.max_poll_interval_ms',
    'KAFKA_FETCH_MIN_BYTES': 'kafka.fetch_min_bytes',
    'KAFKA_FETCH_WAIT_MAX_MS': 'kafka.fetch_wait_max_ms',
    'KAFKA_POLL_TIMEOUT': 'kafka.poll_timeout_seconds',
    'KAFKA_STARTUP_TIMEOUT': 'kafka.startup_timeout_seconds',
    # Runner settings
    'CDC_TOPIC': 'consumer.topic',
    'SEARCH_GROUP_ID': 'consumer.search_group_id',
    'CACHE_GROUP_ID': 'consumer.cache_group_id',
    'CDC_MAX_RETRIES': 'consumer.max_retries',
    'CDC_RETRY_DELAY': 'consumer.retry_delay_seconds',
    'CDC_RETRY_MAX_DELAY': 'consumer.retry_max_delay_seconds',
    'CDC_REDELIVERY_PAUSE': 'consumer.redelivery_pause_seconds',
    # Search settings
    'ELASTICSEARCH_URL': 'search.url',
    'SEARCH_INDEX': 'search.index',
    'SEARCH_REQUEST_TIMEOUT': 'search.request_timeout_seconds',
    # Cache settings
    'REDIS_HOST': 'cache.host',
    'REDIS_PORT': 'cache.port',
    'REDIS_DB': 'cache.db',
    'REDIS_PASSWORD': 'cache.password',
    'CACHE_TTL_SECONDS': 'cache.ttl_seconds',
    'CACHE_ROW_KEY_PREFIX': 'cache.row_key_prefix',
    'CACHE_GROUP_KEY_PREFIX': 'cache.group_key_prefix',
    'REDIS_SOCKET_TIMEOUT': 'cache.socket_timeout_seconds',
    # Source database settings
    'SOURCE_DB_HOST': 'source_database.host',
    'SOURCE_DB_PORT': 'source_database.port',
    'SOURCE_DB_USERNAME': 'source_database.username',
    'SOURCE_DB_PASSWORD': 'source_database.password',
    'SOURCE_DB_NAME': 'source_database.database',
    'SOURCE_DB_POOL_SIZE': 'source_database.pool_size',
    # API settings
    'API_HOST': 'api.host',
    'API_PORT': 'api.port',
    'API_CACHE_FILL_TTL': 'api.cache_fill_ttl_seconds',
    # Logging settings
    'LOG_LEVEL': 'logging.level',
    'LOG_FORMAT': 'logging.format',
    'LOG_DATE_FORMAT': 'logging.date_format',
    'LOG_TO_FILE': 'logging.log_to_file',
    'LOG_FILE_PATH': 'logging.log_file_path',
    'LOG_MAX_FILE_SIZE': 'logging.max_file_size',
    'LOG_BACKUP_COUNT': 'logging.backup_count',
    'LOG_STRUCTURED': 'logging.structured',
    # Monitoring settings
    'MONITORING_ENABLED': 'monitoring.enabled',
    'HEALTH_CHECK_PORT': 'monitoring.health_check_port',
    'PROMETHEUS_ENABLED': 'monitoring.prometheus_enabled',
    'COLLECT_SYSTEM_METRICS': 'monitoring.collect_system_metrics',
}

INT_FIELDS = {
    'port', 'db', 'pool_size', 'max_file_size', 'backup_count', 'health_check_port',
    'max_retries', 'ttl_seconds', 'cache_fill_ttl_seconds', 'session_timeout_ms',
    'heartbeat_interval_ms', 'max_poll_interval_ms', 'fetch_min_bytes', 'fetch_wait_max_ms',
}
FLOAT_FIELDS = {
    'poll_timeout_seconds', 'startup_timeout_seconds', 'retry_delay_seconds',
    'retry_max_delay_seconds', 'redelivery_pause_seconds', 'request_timeout_seconds',
    'socket_timeout_seconds',
}
BOOL_FIELDS = {
    'debug', 'log_to_file', 'structured', 'enabled', 'prometheus_enabled', 'collect_system_metrics',
}


class ConfigLoader:
    """Configuration loader with support for multiple sources."""

    def __init__(self):
        self.config_paths = [
            Path.cwd() / "config" / "projector.yaml",
            Path.cwd() / "config" / "projector.json",
            Path.home() / ".cdc_projector" / "config.yaml",
            Path.home() / ".cdc_projector" / "config.json",
        ]

    def load_from_file(self, config_path: Optional[Path] = None) -> Dict[str, Any]:
        """
        Load configuration from file.

        Args:
            config_path: Specific config file path, or None to try defaults

        Returns:
            Configuration dictionary from file, or empty dict if not found
        """
        paths_to_try = [config_path] if config_path else self.config_paths

        for path in paths_to_try:
            if not path.exists():
                continue
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    if path.suffix.lower() in ['.yaml', '.yml']:
                        return yaml.safe_load(f) or {}
                    elif path.suffix.lower() == '.json':
                        return json.load(f) or {}
            except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
                logger.warning(f"Failed to load config from {path}: {e}")
                continue

        return {}

    def merge_configs(self, file_config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Merge file configuration with environment variables.

        Environment variables take precedence over file config.
        """
        merged = json.loads(json.dumps(file_config))

        for env_var, config_path in ENV_MAPPINGS.items():
            env_value = os.getenv(env_var)
            if env_value is not None:
                self._set_nested_value(merged, config_path, env_value)

        return merged

    def _set_nested_value(self, config: Dict[str, Any], path: str, value: Any) -> None:
        """Set a value in a nested dictionary using dot notation."""
        keys = path.split('.')
        current = config

        for key in keys[:-1]:
            current = current.setdefault(key, {})

        final_key = keys[-1]
        if final_key in INT_FIELDS:
            current[final_key] = int(value)
        elif final_key in FLOAT_FIELDS:
            current[final_key] = float(value)
        elif final_key in BOOL_FIELDS:
            current[final_key] = str(value).lower() in ('true', '1', 'yes', 'on')
        elif final_key == 'bootstrap_servers':
            current[final_key] = [s.strip() for s in str(value).split(',') if s.strip()]
        elif final_key == 'level':
            current[final_key] = str(value).upper()
        else:
            current[final_key] = value

    def build_config(self, merged: Dict[str, Any]) -> AppConfig:
        """Overlay a merged configuration dictionary onto the defaults."""
        config = AppConfig.from_env()
        section_names = {
            f.name for f in dataclasses.fields(AppConfig)
            if dataclasses.is_dataclass(getattr(config, f.name))
        }

        top_level = {}
        for key, value in merged.items():
            if key in section_names:
                section = getattr(config, key)
                known = {f.name for f in dataclasses.fields(section)}
                unknown = set(value) - known
                if unknown:
                    logger.warning(f"Ignoring unknown {key} settings: {sorted(unknown)}")
                overrides = {k: v for k, v in value.items() if k in known}
                setattr(config, key, dataclasses.replace(section, **overrides))
            elif key == 'environment':
                top_level[key] = Environment(str(value).lower())
            elif key in ('debug', 'app_name', 'version'):
                top_level[key] = value
            else:
                logger.warning(f"Ignoring unknown configuration key: {key}")

        return dataclasses.replace(config, **top_level)

    def load_config(self, config_path: Optional[Path] = None) -> AppConfig:
        """
        Load and create AppConfig from available sources.

        Args:
            config_path: Optional specific config file path

        Returns:
            Fully configured AppConfig instance
        """
        file_config = self.load_from_file(config_path)
        merged_config = self.merge_configs(file_config)
        return self.build_config(merged_config)


def load_configuration(config_path: Optional[Path] = None) -> AppConfig:
    """
    Convenience function to load application configuration.

    Args:
        config_path: Optional path to configuration file

    Returns:
        Configured AppConfig instance
    """
    loader = ConfigLoader()
    return loader.load_config(config_path)


# Example configuration file
DEFAULT_CONFIG_YAML = """
environment: development
debug: false

kafka:
  bootstrap_servers:
    - localhost:9092
  auto_offset_reset: earliest

consumer:
  topic: blogdb.public.posts
  search_group_id: search-indexer-group
  cache_group_id: cache-updater-group
  max_retries: 5

search:
  url: http://localhost:9200
  index: posts

cache:
  host: localhost
  port: 6380
  ttl_seconds: 300

source_database:
  host: localhost
  port: 5433
  username: blog_user
  password: blog_pass
  database: blog_db

logging:
  level: INFO
  structured: false

monitoring:
  enabled: true
  health_check_port: 8001
"""
