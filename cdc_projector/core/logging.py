"""
Logging configuration for the CDC projector.

This module provides:
- Structured logging with JSON output
- Console and rotating file handlers
- Log correlation through context variables (projection, record position)
- Performance logging for downstream operations
"""

import os
import sys
import uuid
import logging
import logging.handlers
from datetime import datetime
from typing import Dict, Any, Optional
from pathlib import Path
from contextvars import ContextVar
from pythonjsonlogger import jsonlogger

from ..config import LoggingConfig, Environment


# Context variables for log correlation
correlation_id: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
projection_name: ContextVar[Optional[str]] = ContextVar('projection_name', default=None)
record_position: ContextVar[Optional[str]] = ContextVar('record_position', default=None)


class StructuredFormatter(jsonlogger.JsonFormatter):
    """JSON formatter with service and correlation fields."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.utcnow().isoformat() + 'Z'
        log_record['level'] = record.levelname
        log_record['logger'] = record.name

        if correlation_id.get():
            log_record['correlation_id'] = correlation_id.get()
        if projection_name.get():
            log_record['projection'] = projection_name.get()
        if record_position.get():
            log_record['record'] = record_position.get()

        log_record['service'] = 'cdc-projector'
        log_record['version'] = os.getenv('APP_VERSION', '1.0.0')
        log_record['environment'] = os.getenv('ENVIRONMENT', 'development')

        if hasattr(record, 'perf_duration_ms'):
            log_record['duration_ms'] = record.perf_duration_ms
        if hasattr(record, 'perf_operation'):
            log_record['operation'] = record.perf_operation


class ContextFilter(logging.Filter):
    """Prefix plain-text records with the projection and record position."""

    def filter(self, record):
        record.projection = projection_name.get() or '-'
        record.position = record_position.get() or '-'
        return True


class LogContextManager:
    """Binds correlation fields for the duration of a block."""

    def __init__(
        self,
        corr_id: Optional[str] = None,
        projection: Optional[str] = None,
        position: Optional[str] = None,
    ):
        self.corr_id = corr_id or correlation_id.get()
        self.projection = projection or projection_name.get()
        self.position = position or record_position.get()
        self._tokens = []

    def __enter__(self):
        self._tokens = [
            (correlation_id, correlation_id.set(self.corr_id)),
            (projection_name, projection_name.set(self.projection)),
            (record_position, record_position.set(self.position)),
        ]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens = []


def setup_logging(config: LoggingConfig, environment: Environment) -> None:
    """
    Set up logging for the process.

    Args:
        config: Logging configuration
        environment: Deployment environment
    """
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(getattr(logging, config.level))

    if config.structured:
        formatter = StructuredFormatter(fmt='%(message)s')
    else:
        formatter = logging.Formatter(fmt=config.format, datefmt=config.date_format)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, config.level))
    console_handler.setFormatter(formatter)
    console_handler.addFilter(ContextFilter())
    root_logger.addHandler(console_handler)

    if config.log_to_file and config.log_file_path:
        log_path = Path(config.log_file_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            filename=str(log_path),
            maxBytes=config.max_file_size,
            backupCount=config.backup_count,
            encoding='utf-8'
        )
        file_handler.setLevel(getattr(logging, config.level))
        file_handler.setFormatter(formatter)
        file_handler.addFilter(ContextFilter())
        root_logger.addHandler(file_handler)

    if environment == Environment.PRODUCTION:
        for name in ('confluent_kafka', 'elasticsearch', 'elastic_transport', 'redis', 'aiohttp.access'):
            logging.getLogger(name).setLevel(logging.WARNING)
    elif environment == Environment.DEVELOPMENT:
        logging.getLogger('sqlalchemy.engine').setLevel(logging.INFO)

    _setup_component_loggers(environment)


def _setup_component_loggers(environment: Environment) -> None:
    """Set up component-specific log levels."""
    projections_logger = logging.getLogger('cdc_projector.projections')
    if environment == Environment.DEVELOPMENT:
        projections_logger.setLevel(logging.DEBUG)
    else:
        projections_logger.setLevel(logging.INFO)

    logging.getLogger('cdc_projector.consumer').setLevel(logging.INFO)
    logging.getLogger('cdc_projector.monitoring').setLevel(logging.INFO)

    # One line per apply is too chatty outside development
    perf_logger = logging.getLogger('cdc_projector.performance')
    if environment == Environment.DEVELOPMENT:
        perf_logger.setLevel(logging.DEBUG)
    else:
        perf_logger.setLevel(logging.WARNING)


class PerformanceLogger:
    """Logger for performance monitoring."""

    def __init__(self, logger_name: str = 'cdc_projector.performance'):
        self.logger = logging.getLogger(logger_name)

    def log_operation(
        self,
        operation: str,
        duration_ms: float,
        success: bool = True,
        extra: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log operation performance."""
        level = logging.DEBUG if success else logging.WARNING

        extra_data = dict(extra or {})
        extra_data.update({
            'perf_operation': operation,
            'perf_duration_ms': duration_ms,
            'perf_success': success,
        })

        self.logger.log(
            level,
            f"Operation {operation} completed in {duration_ms:.2f}ms",
            extra=extra_data
        )


performance_logger = PerformanceLogger()


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return str(uuid.uuid4())