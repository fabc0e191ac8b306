"""
Configuration package for the CDC projector.

This package provides centralized configuration management with:
- Environment variable support
- Configuration file loading (YAML/JSON)
- Type-safe configuration classes
- Startup connectivity validation
"""

from .settings import (
    AppConfig,
    KafkaConfig,
    ConsumerConfig,
    SearchConfig,
    CacheConfig,
    SourceDatabaseConfig,
    ApiConfig,
    LoggingConfig,
    MonitoringConfig,
    Environment,
    ProjectionKind,
    config as app_config
)

from .loader import (
    ConfigLoader,
    load_configuration,
    DEFAULT_CONFIG_YAML,
)

from .validator import (
    ConfigValidator,
    validate_configuration,
)

__all__ = [
    # Configuration classes
    "AppConfig",
    "KafkaConfig",
    "ConsumerConfig",
    "SearchConfig",
    "CacheConfig",
    "SourceDatabaseConfig",
    "ApiConfig",
    "LoggingConfig",
    "MonitoringConfig",
    "Environment",
    "ProjectionKind",

    # Global config instance
    "app_config",

    # Loading utilities
    "ConfigLoader",
    "load_configuration",
    "DEFAULT_CONFIG_YAML",

    # Validation utilities
    "ConfigValidator",
    "validate_configuration",
]
