"""
Projection runner: Kafka subscription -> projection.

This module provides:
- One consumer-group member per projection, with manual offset commits
- Per-record state tracking (decode failed / skipped / applied / failed)
- In-process retry with exponential backoff for transient downstream errors
- Redelivery by seeking back when retries are exhausted
- Graceful shutdown that lets the in-flight record finish

Records are processed strictly one at a time in partition order. Per-key
ordering is what makes the idempotent full-document writes converge, so
there is no concurrency inside a runner.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from confluent_kafka import Consumer, KafkaError, KafkaException, TopicPartition
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    stop_any,
    wait_exponential,
)

from ..config import ConsumerConfig, KafkaConfig
from ..core.exceptions import DecodeError, DownstreamTransientError
from ..core.logging import LogContextManager
from ..projections.base import ApplyOutcome, Projection
from .decoder import EventDecoder

logger = logging.getLogger(__name__)


class RecordState(str, Enum):
    """Terminal state of one consumed record."""
    DECODE_FAILED = "decode_failed"
    SKIPPED = "skipped"
    APPLIED = "applied"
    FAILED = "failed"

    @property
    def advances_offset(self) -> bool:
        return self is not RecordState.FAILED


@dataclass
class RunnerMetrics:
    """Runner throughput and health counters."""
    records_consumed: int = 0
    records_applied: int = 0
    records_skipped: int = 0
    records_failed: int = 0
    decode_errors: int = 0
    retries: int = 0
    commit_failures: int = 0
    last_record_timestamp: Optional[datetime] = None
    start_time: Optional[datetime] = None

    def record(self, state: RecordState) -> None:
        if state is RecordState.APPLIED:
            self.records_applied += 1
        elif state is RecordState.SKIPPED:
            self.records_skipped += 1
        elif state is RecordState.DECODE_FAILED:
            self.decode_errors += 1
        else:
            self.records_failed += 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to dictionary."""
        return {
            "records_consumed": self.records_consumed,
            "records_applied": self.records_applied,
            "records_skipped": self.records_skipped,
            "records_failed": self.records_failed,
            "decode_errors": self.decode_errors,
            "retries": self.retries,
            "commit_failures": self.commit_failures,
            "last_record_timestamp": self.last_record_timestamp.isoformat() if self.last_record_timestamp else None,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "uptime_seconds": (datetime.utcnow() - (self.start_time or datetime.utcnow())).total_seconds(),
        }


class ProjectionRunner:
    """
    Drives one projection from its consumer-group subscription.

    The Kafka consumer is created on start unless one is injected, which is
    how tests substitute an in-memory consumer.
    """

    def __init__(
        self,
        projection: Projection,
        kafka_config: KafkaConfig,
        consumer_config: ConsumerConfig,
        group_id: str,
        consumer: Optional[Any] = None,
        decoder: Optional[EventDecoder] = None,
        metrics_collector: Optional[Any] = None,
    ):
        self.projection = projection
        self.kafka_config = kafka_config
        self.consumer_config = consumer_config
        self.group_id = group_id
        self.consumer = consumer
        self.decoder = decoder or EventDecoder()
        self.metrics_collector = metrics_collector

        self.running = False
        self.shutdown_event = asyncio.Event()
        self._stopped = asyncio.Event()
        self.assigned_partitions: List[TopicPartition] = []

        self.metrics = RunnerMetrics()
        self.metrics.start_time = datetime.utcnow()

    @property
    def name(self) -> str:
        return self.projection.name

    async def start(self) -> None:
        """Consume until shutdown is requested or a fatal error occurs."""
        logger.info(f"Starting {self.name} projection runner (group {self.group_id})...")

        try:
            self._initialize_consumer()
            self.running = True
            await self._processing_loop()
        except Exception as e:
            logger.error(f"{self.name} projection runner failed: {e}")
            raise
        finally:
            self.running = False
            await self._cleanup()
            self._stopped.set()

    def request_shutdown(self) -> None:
        """Stop polling; the in-flight record is allowed to finish."""
        if not self.shutdown_event.is_set():
            logger.info(f"Shutdown requested for {self.name} projection runner")
        self.shutdown_event.set()

    async def stop(self) -> None:
        """Request shutdown and wait for the runner to release its resources."""
        self.request_shutdown()
        if self.running:
            await self._stopped.wait()

    def _initialize_consumer(self) -> None:
        if self.consumer is None:
            self.consumer = Consumer(self.kafka_config.consumer_settings(self.group_id))

        topic = self.consumer_config.topic
        logger.info(f"Subscribing to topic: {topic}")
        self.consumer.subscribe([topic], on_assign=self._on_assign, on_revoke=self._on_revoke)

    def _on_assign(self, consumer, partitions: List[TopicPartition]) -> None:
        self.assigned_partitions = list(partitions)
        logger.info(f"Partitions assigned: {[p.partition for p in partitions]}")

    def _on_revoke(self, consumer, partitions: List[TopicPartition]) -> None:
        revoked = {(p.topic, p.partition) for p in partitions}
        self.assigned_partitions = [
            p for p in self.assigned_partitions if (p.topic, p.partition) not in revoked
        ]
        logger.info(f"Partitions revoked: {[p.partition for p in partitions]}")

    async def _processing_loop(self) -> None:
        while not self.shutdown_event.is_set():
            message = await asyncio.to_thread(self.consumer.poll, self.kafka_config.poll_timeout_seconds)
            if message is None:
                continue

            error = message.error()
            if error is not None:
                if error.code() == KafkaError._PARTITION_EOF:
                    logger.debug(f"Reached end of partition {message.partition()}")
                    continue
                if error.fatal():
                    raise KafkaException(error)
                logger.error(f"Kafka error: {error}")
                continue

            await self.process_message(message)

    async def process_message(self, message) -> RecordState:
        """
        Take one message through decode -> apply -> commit.

        Returns:
            The record's terminal state. Every state but FAILED commits the offset.

        Raises:
            DownstreamRejectedError: The downstream refused the record; the
                offset is left uncommitted and the runner should halt
        """
        position = f"{message.topic()}:{message.partition()}:{message.offset()}"

        with LogContextManager(projection=self.name, position=position):
            self.metrics.records_consumed += 1
            self.metrics.last_record_timestamp = datetime.utcnow()
            self._observe("consumed")

            try:
                record = self.decoder.decode_message(message)
            except DecodeError as e:
                logger.error(f"Dropping undecodable record at {position}: {e}")
                state = RecordState.DECODE_FAILED
            else:
                start_time = time.perf_counter()
                try:
                    outcome = await self._apply_with_retry(record)
                except DownstreamTransientError as e:
                    logger.error(f"Giving up on {position} for now, will be redelivered: {e}")
                    state = RecordState.FAILED
                else:
                    state = RecordState.APPLIED if outcome is ApplyOutcome.APPLIED else RecordState.SKIPPED
                    if self.metrics_collector is not None:
                        self.metrics_collector.observe_apply(self.name, time.perf_counter() - start_time)

            self.metrics.record(state)
            self._observe(state.value)

            if state.advances_offset:
                self._commit(message)
            else:
                await self._schedule_redelivery(message)

            return state

    async def _apply_with_retry(self, record) -> ApplyOutcome:
        retrying = AsyncRetrying(
            stop=stop_any(
                stop_after_attempt(self.consumer_config.max_retries + 1),
                self._stop_on_shutdown,
            ),
            wait=wait_exponential(
                multiplier=self.consumer_config.retry_delay_seconds,
                max=self.consumer_config.retry_max_delay_seconds,
            ),
            retry=retry_if_exception_type(DownstreamTransientError),
            before_sleep=self._log_retry,
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                outcome = await self.projection.apply(record)
        return outcome

    def _stop_on_shutdown(self, retry_state: RetryCallState) -> bool:
        return self.shutdown_event.is_set()

    def _log_retry(self, retry_state: RetryCallState) -> None:
        self.metrics.retries += 1
        self._observe("retry")
        logger.warning(
            f"Transient {self.name} failure (attempt {retry_state.attempt_number}), "
            f"retrying: {retry_state.outcome.exception()}"
        )

    def _commit(self, message) -> None:
        try:
            self.consumer.commit(message=message, asynchronous=False)
        except KafkaException as e:
            # Uncommitted records are redelivered, which idempotent applies tolerate
            self.metrics.commit_failures += 1
            logger.warning(f"Offset commit failed for {message.topic()}:{message.partition()}: {e}")

    async def _schedule_redelivery(self, message) -> None:
        """Rewind to the failed record so the next poll delivers it again."""
        try:
            self.consumer.seek(TopicPartition(message.topic(), message.partition(), message.offset()))
        except KafkaException as e:
            # Partition was revoked; the new owner resumes from the last commit
            logger.warning(f"Seek back to {message.offset()} failed: {e}")

        try:
            await asyncio.wait_for(
                self.shutdown_event.wait(),
                timeout=self.consumer_config.redelivery_pause_seconds,
            )
        except asyncio.TimeoutError:
            pass

    def _observe(self, event: str) -> None:
        if self.metrics_collector is not None:
            self.metrics_collector.record_event(self.name, event)

    async def _cleanup(self) -> None:
        logger.info(f"Cleaning up {self.name} runner resources...")

        if self.consumer is not None:
            try:
                self.consumer.close()
            except (KafkaException, RuntimeError) as e:
                logger.warning(f"Error closing Kafka consumer: {e}")
            self.consumer = None

        await self.projection.close()
        logger.info(f"{self.name} runner cleanup completed")

    def get_metrics(self) -> Dict[str, Any]:
        return self.metrics.to_dict()

    def get_health_status(self) -> Dict[str, Any]:
        """Report whether the runner is consuming."""
        return {
            "status": "healthy" if self.running and not self.shutdown_event.is_set() else "unhealthy",
            "running": self.running,
            "shutting_down": self.shutdown_event.is_set(),
            "group_id": self.group_id,
            "assigned_partitions": [p.partition for p in self.assigned_partitions],
            "metrics": self.get_metrics(),
        }


@asynccontextmanager
async def create_projection_runner(
    projection: Projection,
    kafka_config: KafkaConfig,
    consumer_config: ConsumerConfig,
    group_id: str,
    **kwargs,
):
    """
    Context manager for runner lifecycle.

    Usage:
        async with create_projection_runner(projection, kafka, consumer, group) as runner:
            await runner.start()
    """
    runner = ProjectionRunner(projection, kafka_config, consumer_config, group_id, **kwargs)

    try:
        yield runner
    finally:
        await runner.stop()
