"""
Monitoring service for the CDC projector.

This module provides:
- Health and readiness endpoints over the running projection runners
- Prometheus counters for per-projection record outcomes
- Process resource gauges
"""

import asyncio
import logging
import platform
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import psutil
from aiohttp import web
from prometheus_client import (
    Counter, Gauge, Histogram, CollectorRegistry,
    generate_latest, CONTENT_TYPE_LATEST
)

from ..config import MonitoringConfig

logger = logging.getLogger(__name__)


@dataclass
class HealthStatus:
    """Health check status container."""
    status: str  # "healthy", "unhealthy"
    timestamp: datetime = field(default_factory=datetime.utcnow)
    checks: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "status": self.status,
            "timestamp": self.timestamp.isoformat() + "Z",
            "checks": self.checks,
            "message": self.message,
        }


class MetricsCollector:
    """Prometheus metrics collector."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()

        self.records_consumed = Counter(
            'cdc_projector_records_consumed_total',
            'Total number of change records consumed',
            ['projection'],
            registry=self.registry
        )

        self.record_outcomes = Counter(
            'cdc_projector_record_outcomes_total',
            'Terminal state of consumed change records',
            ['projection', 'state'],
            registry=self.registry
        )

        self.retries = Counter(
            'cdc_projector_retries_total',
            'Downstream retries after transient errors',
            ['projection'],
            registry=self.registry
        )

        self.apply_duration = Histogram(
            'cdc_projector_apply_duration_seconds',
            'Time spent applying a record downstream, retries included',
            ['projection'],
            buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0),
            registry=self.registry
        )

        self.process_cpu_usage = Gauge(
            'cdc_projector_process_cpu_percent',
            'Process CPU usage percentage',
            registry=self.registry
        )

        self.process_memory_usage = Gauge(
            'cdc_projector_process_memory_bytes',
            'Process resident memory in bytes',
            registry=self.registry
        )

        self.app_uptime = Gauge(
            'cdc_projector_uptime_seconds',
            'Application uptime in seconds',
            registry=self.registry
        )

        self.app_start_time = time.time()
        self._process = psutil.Process()

    def record_event(self, projection: str, event: str) -> None:
        """Record a runner event: consumed, retry, or a terminal record state."""
        if event == "consumed":
            self.records_consumed.labels(projection=projection).inc()
        elif event == "retry":
            self.retries.labels(projection=projection).inc()
        else:
            self.record_outcomes.labels(projection=projection, state=event).inc()

    def observe_apply(self, projection: str, duration_seconds: float) -> None:
        """Record how long one apply took."""
        self.apply_duration.labels(projection=projection).observe(duration_seconds)

    def collect_system_metrics(self) -> None:
        """Collect current process metrics."""
        self.process_cpu_usage.set(self._process.cpu_percent(interval=None))
        self.process_memory_usage.set(self._process.memory_info().rss)
        self.app_uptime.set(time.time() - self.app_start_time)

    def get_metrics_text(self) -> str:
        """Get metrics in Prometheus text format."""
        return generate_latest(self.registry).decode('utf-8')


class HealthChecker:
    """Health of the registered projection runners and their downstreams."""

    def __init__(self, runners: Optional[List[Any]] = None):
        self.runners: List[Any] = list(runners or [])

    def add_runner(self, runner) -> None:
        self.runners.append(runner)

    async def run_health_checks(self) -> HealthStatus:
        """Run all health checks."""
        checks_results: Dict[str, Dict[str, Any]] = {}
        overall_status = "healthy"

        for runner in self.runners:
            result = runner.get_health_status()
            result["downstream_reachable"] = await runner.projection.ping()
            if result["status"] != "healthy" or not result["downstream_reachable"]:
                result["status"] = "unhealthy"
                overall_status = "unhealthy"
            checks_results[runner.name] = result

        checks_results["system"] = {
            "status": "healthy",
            "platform": platform.platform(),
            "python_version": platform.python_version(),
            "cpu_count": psutil.cpu_count(),
        }

        if not self.runners:
            return HealthStatus(status="unhealthy", checks=checks_results, message="No runners registered")
        return HealthStatus(status=overall_status, checks=checks_results)


class MonitoringService:
    """HTTP server for /health, /ready and /metrics."""

    def __init__(
        self,
        config: MonitoringConfig,
        runners: Optional[List[Any]] = None,
        metrics_collector: Optional[MetricsCollector] = None
    ):
        self.config = config
        self.metrics = metrics_collector or MetricsCollector()
        self.health_checker = HealthChecker(runners)

        self.app: Optional[web.Application] = None
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

        self._monitoring_task: Optional[asyncio.Task] = None

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get('/health', self.health_check_handler)
        app.router.add_get('/ready', self.readiness_handler)
        app.router.add_get('/metrics', self.metrics_handler)
        return app

    async def start(self) -> None:
        """Start the monitoring service."""
        if not self.config.enabled:
            logger.info("Monitoring disabled in configuration")
            return

        self.app = self.create_app()
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()

        self.site = web.TCPSite(self.runner, '0.0.0.0', self.config.health_check_port)
        await self.site.start()
        logger.info(f"Health check server started on port {self.config.health_check_port}")

        if self.config.collect_system_metrics:
            self._monitoring_task = asyncio.create_task(self._background_monitoring())

    async def stop(self) -> None:
        """Stop the monitoring service."""
        if self._monitoring_task:
            self._monitoring_task.cancel()
            try:
                await self._monitoring_task
            except asyncio.CancelledError:
                pass

        if self.site:
            await self.site.stop()

        if self.runner:
            await self.runner.cleanup()

        logger.info("Monitoring service stopped")

    async def health_check_handler(self, request: web.Request) -> web.Response:
        """Liveness: every runner is consuming."""
        health_status = await self.health_checker.run_health_checks()
        status_code = 200 if health_status.status == "healthy" else 503
        return web.json_response(health_status.to_dict(), status=status_code)

    async def readiness_handler(self, request: web.Request) -> web.Response:
        """Readiness: every runner holds at least one partition."""
        health_status = await self.health_checker.run_health_checks()
        unassigned = [
            runner.name for runner in self.health_checker.runners
            if not runner.assigned_partitions
        ]
        ready = health_status.status == "healthy" and not unassigned
        return web.json_response(
            {"ready": ready, "unassigned": unassigned, **health_status.to_dict()},
            status=200 if ready else 503,
        )

    async def metrics_handler(self, request: web.Request) -> web.Response:
        """Metrics endpoint handler."""
        if not self.config.prometheus_enabled:
            return web.Response(status=404, text="Metrics not enabled")

        if self.config.collect_system_metrics:
            self.metrics.collect_system_metrics()

        response = web.Response(body=self.metrics.get_metrics_text().encode('utf-8'))
        response.headers['Content-Type'] = CONTENT_TYPE_LATEST
        return response

    async def _background_monitoring(self) -> None:
        while True:
            try:
                self.metrics.collect_system_metrics()
            except psutil.Error as e:
                logger.error(f"Background monitoring error: {e}")
            await asyncio.sleep(60)
