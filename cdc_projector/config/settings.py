"""
Centralized configuration for the CDC projector.

This module provides:
- Environment variable parsing
- Type-safe configuration classes
- Default value management
- Configuration validation

Every setting has a default that matches the local docker-compose stack
(Kafka on 9092, Elasticsearch on 9200, Redis on 6380, PostgreSQL on 5433).
"""

import os
from typing import List, Optional, Dict, Any
from dataclasses import dataclass, field
from enum import Enum

from ..core.exceptions import FatalConfigurationError


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes", "on")


class Environment(str, Enum):
    """Deployment environment enumeration."""
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


class ProjectionKind(str, Enum):
    """Projections the process knows how to run."""
    SEARCH = "search"
    CACHE = "cache"


@dataclass
class KafkaConfig:
    """Kafka consumer configuration shared by all projections."""
    bootstrap_servers: List[str] = field(default_factory=lambda: ["localhost:9092"])
    client_id: str = "cdc-projector"
    auto_offset_reset: str = "earliest"
    session_timeout_ms: int = 30000
    heartbeat_interval_ms: int = 3000
    max_poll_interval_ms: int = 300000
    fetch_min_bytes: int = 1
    fetch_wait_max_ms: int = 500

    # Runner settings
    poll_timeout_seconds: float = 1.0
    startup_timeout_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> "KafkaConfig":
        """Create Kafka config from environment variables."""
        return cls(
            bootstrap_servers=[
                s.strip() for s in os.getenv("KAFKA_BOOTSTRAP_SERVERS", "localhost:9092").split(",")
                if s.strip()
            ],
            client_id=os.getenv("KAFKA_CLIENT_ID", "cdc-projector"),
            auto_offset_reset=os.getenv("KAFKA_AUTO_OFFSET_RESET", "earliest"),
            session_timeout_ms=int(os.getenv("KAFKA_SESSION_TIMEOUT_MS", "30000")),
            heartbeat_interval_ms=int(os.getenv("KAFKA_HEARTBEAT_INTERVAL_MS", "3000")),
            max_poll_interval_ms=int(os.getenv("KAFKA_MAX_POLL_INTERVAL_MS", "300000")),
            fetch_min_bytes=int(os.getenv("KAFKA_FETCH_MIN_BYTES", "1")),
            fetch_wait_max_ms=int(os.getenv("KAFKA_FETCH_WAIT_MAX_MS", "500")),
            poll_timeout_seconds=float(os.getenv("KAFKA_POLL_TIMEOUT", "1.0")),
            startup_timeout_seconds=float(os.getenv("KAFKA_STARTUP_TIMEOUT", "10.0")),
        )

    def consumer_settings(self, group_id: str) -> Dict[str, Any]:
        """librdkafka settings for one projection's consumer group."""
        return {
            "bootstrap.servers": ",".join(self.bootstrap_servers),
            "client.id": f"{self.client_id}-{group_id}",
            "group.id": group_id,
            "auto.offset.reset": self.auto_offset_reset,
            # Offsets are committed per record, only after apply succeeded
            "enable.auto.commit": False,
            "enable.auto.offset.store": False,
            "session.timeout.ms": self.session_timeout_ms,
            "heartbeat.interval.ms": self.heartbeat_interval_ms,
            "max.poll.interval.ms": self.max_poll_interval_ms,
            "fetch.min.bytes": self.fetch_min_bytes,
            "fetch.wait.max.ms": self.fetch_wait_max_ms,
        }


@dataclass
class ConsumerConfig:
    """Projection runner configuration."""
    topic: str = "blogdb.public.posts"
    search_group_id: str = "search-indexer-group"
    cache_group_id: str = "cache-updater-group"

    # Transient failure handling
    max_retries: int = 5
    retry_delay_seconds: float = 0.1
    retry_max_delay_seconds: float = 5.0
    redelivery_pause_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "ConsumerConfig":
        """Create consumer config from environment variables."""
        return cls(
            topic=os.getenv("CDC_TOPIC", "blogdb.public.posts"),
            search_group_id=os.getenv("SEARCH_GROUP_ID", "search-indexer-group"),
            cache_group_id=os.getenv("CACHE_GROUP_ID", "cache-updater-group"),
            max_retries=int(os.getenv("CDC_MAX_RETRIES", "5")),
            retry_delay_seconds=float(os.getenv("CDC_RETRY_DELAY", "0.1")),
            retry_max_delay_seconds=float(os.getenv("CDC_RETRY_MAX_DELAY", "5.0")),
            redelivery_pause_seconds=float(os.getenv("CDC_REDELIVERY_PAUSE", "5.0")),
        )

    def group_id_for(self, kind: ProjectionKind) -> str:
        if kind is ProjectionKind.SEARCH:
            return self.search_group_id
        return self.cache_group_id


@dataclass
class SearchConfig:
    """Elasticsearch projection configuration."""
    url: str = "http://localhost:9200"
    index: str = "posts"
    request_timeout_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "SearchConfig":
        return cls(
            url=os.getenv("ELASTICSEARCH_URL", "http://localhost:9200"),
            index=os.getenv("SEARCH_INDEX", "posts"),
            request_timeout_seconds=float(os.getenv("SEARCH_REQUEST_TIMEOUT", "5.0")),
        )


@dataclass
class CacheConfig:
    """Redis projection configuration."""
    host: str = "localhost"
    port: int = 6380
    db: int = 0
    password: Optional[str] = None
    ttl_seconds: int = 300
    row_key_prefix: str = "row"
    group_key_prefix: str = "group"
    socket_timeout_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "CacheConfig":
        return cls(
            host=os.getenv("REDIS_HOST", "localhost"),
            port=int(os.getenv("REDIS_PORT", "6380")),
            db=int(os.getenv("REDIS_DB", "0")),
            password=os.getenv("REDIS_PASSWORD"),
            ttl_seconds=int(os.getenv("CACHE_TTL_SECONDS", "300")),
            row_key_prefix=os.getenv("CACHE_ROW_KEY_PREFIX", "row"),
            group_key_prefix=os.getenv("CACHE_GROUP_KEY_PREFIX", "group"),
            socket_timeout_seconds=float(os.getenv("REDIS_SOCKET_TIMEOUT", "5.0")),
        )


@dataclass
class SourceDatabaseConfig:
    """Source store (PostgreSQL) configuration, used by the HTTP API."""
    host: str = "localhost"
    port: int = 5433
    username: str = "blog_user"
    password: str = "blog_pass"
    database: str = "blog_db"
    pool_size: int = 5

    @property
    def connection_string(self) -> str:
        """SQLAlchemy async connection string."""
        return (
            f"postgresql+asyncpg://{self.username}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )

    @classmethod
    def from_env(cls) -> "SourceDatabaseConfig":
        return cls(
            host=os.getenv("SOURCE_DB_HOST", "localhost"),
            port=int(os.getenv("SOURCE_DB_PORT", "5433")),
            username=os.getenv("SOURCE_DB_USERNAME", "blog_user"),
            password=os.getenv("SOURCE_DB_PASSWORD", "blog_pass"),
            database=os.getenv("SOURCE_DB_NAME", "blog_db"),
            pool_size=int(os.getenv("SOURCE_DB_POOL_SIZE", "5")),
        )


@dataclass
class ApiConfig:
    """HTTP API configuration."""
    host: str = "0.0.0.0"
    port: int = 3000
    cache_fill_ttl_seconds: int = 60

    @classmethod
    def from_env(cls) -> "ApiConfig":
        return cls(
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "3000")),
            cache_fill_ttl_seconds=int(os.getenv("API_CACHE_FILL_TTL", "60")),
        )


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - [%(projection)s] %(message)s"
    date_format: str = "%Y-%m-%d %H:%M:%S"

    # File logging
    log_to_file: bool = False
    log_file_path: Optional[str] = None
    max_file_size: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5

    # Structured logging (JSON)
    structured: bool = False

    @classmethod
    def from_env(cls) -> "LoggingConfig":
        """Create logging config from environment variables."""
        return cls(
            level=os.getenv("LOG_LEVEL", "INFO").upper(),
            format=os.getenv(
                "LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - [%(projection)s] %(message)s"
            ),
            date_format=os.getenv("LOG_DATE_FORMAT", "%Y-%m-%d %H:%M:%S"),
            log_to_file=_env_bool("LOG_TO_FILE", "false"),
            log_file_path=os.getenv("LOG_FILE_PATH"),
            max_file_size=int(os.getenv("LOG_MAX_FILE_SIZE", str(10 * 1024 * 1024))),
            backup_count=int(os.getenv("LOG_BACKUP_COUNT", "5")),
            structured=_env_bool("LOG_STRUCTURED", "false"),
        )


@dataclass
class MonitoringConfig:
    """Monitoring and metrics configuration."""
    enabled: bool = True
    health_check_port: int = 8001
    prometheus_enabled: bool = True
    collect_system_metrics: bool = True

    @classmethod
    def from_env(cls) -> "MonitoringConfig":
        """Create monitoring config from environment variables."""
        return cls(
            enabled=_env_bool("MONITORING_ENABLED", "true"),
            health_check_port=int(os.getenv("HEALTH_CHECK_PORT", "8001")),
            prometheus_enabled=_env_bool("PROMETHEUS_ENABLED", "true"),
            collect_system_metrics=_env_bool("COLLECT_SYSTEM_METRICS", "true"),
        )


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = False

    # Component configs
    kafka: KafkaConfig = field(default_factory=KafkaConfig.from_env)
    consumer: ConsumerConfig = field(default_factory=ConsumerConfig.from_env)
    search: SearchConfig = field(default_factory=SearchConfig.from_env)
    cache: CacheConfig = field(default_factory=CacheConfig.from_env)
    source_database: SourceDatabaseConfig = field(default_factory=SourceDatabaseConfig.from_env)
    api: ApiConfig = field(default_factory=ApiConfig.from_env)
    logging: LoggingConfig = field(default_factory=LoggingConfig.from_env)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig.from_env)

    # Application settings
    app_name: str = "cdc-projector"
    version: str = "1.0.0"

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Create application config from environment variables."""
        env_str = os.getenv("ENVIRONMENT", "development").lower()
        try:
            environment = Environment(env_str)
        except ValueError:
            environment = Environment.DEVELOPMENT

        return cls(
            environment=environment,
            debug=_env_bool("DEBUG", "false"),
            app_name=os.getenv("APP_NAME", "cdc-projector"),
            version=os.getenv("APP_VERSION", "1.0.0"),
        )

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            FatalConfigurationError: If any value makes startup unsafe
        """
        if not self.kafka.bootstrap_servers:
            raise FatalConfigurationError("At least one Kafka bootstrap server must be configured")

        if not self.consumer.topic:
            raise FatalConfigurationError("A change-stream topic must be configured")

        if self.consumer.search_group_id == self.consumer.cache_group_id:
            raise FatalConfigurationError(
                "Search and cache projections must use distinct consumer groups"
            )

        if self.consumer.max_retries < 0:
            raise FatalConfigurationError("Max retries cannot be negative")

        if self.cache.ttl_seconds <= 0:
            raise FatalConfigurationError("Cache TTL must be positive")

        if self.logging.level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise FatalConfigurationError(f"Unknown log level: {self.logging.level}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary for logging."""
        return {
            "environment": self.environment.value,
            "debug": self.debug,
            "app_name": self.app_name,
            "version": self.version,
            "kafka": {
                "bootstrap_servers": self.kafka.bootstrap_servers,
                "topic": self.consumer.topic,
                "groups": [self.consumer.search_group_id, self.consumer.cache_group_id],
            },
            "search": {"url": self.search.url, "index": self.search.index},
            "cache": {
                "host": self.cache.host,
                "port": self.cache.port,
                "ttl_seconds": self.cache.ttl_seconds,
            },
            "source_database": {
                "host": self.source_database.host,
                "port": self.source_database.port,
                "database": self.source_database.database,
            },
        }


# Global configuration instance
config = AppConfig.from_env()
