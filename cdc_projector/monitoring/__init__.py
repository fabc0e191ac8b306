"""
Monitoring package for the CDC projector.

This package provides:
- Health and readiness endpoints over the projection runners
- Prometheus metrics collection and exposure
- Process resource monitoring
"""

from .service import (
    HealthStatus,
    MetricsCollector,
    HealthChecker,
    MonitoringService,
)

__all__ = [
    "HealthStatus",
    "MetricsCollector",
    "HealthChecker",
    "MonitoringService",
]
