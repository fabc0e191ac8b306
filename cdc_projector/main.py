"""
Main entry point for the CDC projector.

    python -m cdc_projector.main [search|cache|all]

Runs one projection runner per selected projection as asyncio tasks in one
process. Runners share no consumer or client. A runner that stops with an
error shuts the others down and the process exits non-zero so an operator
can intervene.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Dict, List, Optional

from .config import AppConfig, ProjectionKind, app_config, load_configuration, validate_configuration
from .consumer import ProjectionRunner
from .core.exceptions import DownstreamError, FatalConfigurationError
from .core.logging import setup_logging
from .monitoring import MetricsCollector, MonitoringService
from .projections import SearchProjection, build_projection

logger = logging.getLogger(__name__)


class CDCProjectorApplication:
    """
    Orchestrates the projection runners and the monitoring server.
    """

    def __init__(self, kinds: List[ProjectionKind], config: AppConfig = app_config):
        self.config = config
        self.kinds = kinds
        self.metrics = MetricsCollector()
        self.runners: List[ProjectionRunner] = []
        self.monitoring_service: Optional[MonitoringService] = None

    async def initialize(self) -> None:
        """Validate configuration and build one runner per projection."""
        logger.info("Validating configuration...")
        results = await validate_configuration(self.config, self.kinds)
        logger.info(f"Configuration validation finished: {results['overall_status']}")

        for kind in self.kinds:
            projection = build_projection(kind, self.config)
            if isinstance(projection, SearchProjection):
                try:
                    await projection.ensure_index()
                except DownstreamError as e:
                    # Writes are retried until the cluster is back
                    logger.warning(f"Could not ensure search index exists: {e}")

            self.runners.append(ProjectionRunner(
                projection,
                self.config.kafka,
                self.config.consumer,
                group_id=self.config.consumer.group_id_for(kind),
                metrics_collector=self.metrics,
            ))

        if self.config.monitoring.enabled:
            self.monitoring_service = MonitoringService(self.config.monitoring, self.runners, self.metrics)
            await self.monitoring_service.start()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self.request_shutdown, signum)

    def request_shutdown(self, signum: Optional[int] = None) -> None:
        if signum is not None:
            logger.info(f"Received signal {signal.Signals(signum).name}, initiating shutdown...")
        for runner in self.runners:
            runner.request_shutdown()

    async def run(self) -> int:
        """Run until every runner has stopped. Returns the process exit code."""
        await self.initialize()
        self.install_signal_handlers()

        try:
            tasks = [asyncio.create_task(self._run_runner(runner), name=runner.name) for runner in self.runners]
            results = await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            await self.cleanup()

        failures: Dict[str, BaseException] = {
            runner.name: result
            for runner, result in zip(self.runners, results)
            if isinstance(result, BaseException)
        }
        for name, error in failures.items():
            logger.error(f"{name} runner stopped with {type(error).__name__}: {error}")
        return 1 if failures else 0

    async def _run_runner(self, runner: ProjectionRunner) -> None:
        try:
            await runner.start()
        except Exception:
            logger.error(f"{runner.name} runner failed, stopping all runners")
            self.request_shutdown()
            raise

    async def cleanup(self) -> None:
        if self.monitoring_service:
            await self.monitoring_service.stop()
        logger.info("Application cleanup completed")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Project a CDC stream into search and cache")
    parser.add_argument(
        "projection",
        nargs="?",
        choices=["search", "cache", "all"],
        default="all",
        help="Which projection to run (default: all)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="YAML or JSON configuration file; environment variables take precedence",
    )
    return parser.parse_args(argv)


def selected_kinds(choice: str) -> List[ProjectionKind]:
    if choice == "all":
        return list(ProjectionKind)
    return [ProjectionKind(choice)]


async def main(argv: Optional[List[str]] = None) -> int:
    """Main application entry point."""
    args = parse_args(argv)
    config = load_configuration(args.config) if args.config else app_config
    setup_logging(config.logging, config.environment)

    logger.info(f"Starting CDC projector v{config.version}")
    logger.info(f"Environment: {config.environment.value}")

    app = CDCProjectorApplication(selected_kinds(args.projection), config=config)
    try:
        return await app.run()
    except FatalConfigurationError as e:
        logger.error(f"Fatal configuration error: {e}")
        return 1


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
