"""
Configuration validation utilities.

Checks that the collaborators a process needs are reachable before it
starts consuming. Kafka is mandatory for the projection runners: if its
metadata cannot be fetched the process must exit without touching any
downstream store.
"""

import logging
from typing import Dict, Any, Iterable

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from confluent_kafka import Consumer, KafkaException
from elasticsearch import AsyncElasticsearch

from ..core.exceptions import FatalConfigurationError
from .settings import AppConfig, ProjectionKind

logger = logging.getLogger(__name__)


class ConfigValidator:
    """Connectivity validator for the projector's collaborators."""

    def __init__(self, config: AppConfig):
        self.config = config

    async def validate_all(self, kinds: Iterable[ProjectionKind] = tuple(ProjectionKind)) -> Dict[str, Any]:
        """
        Validate the collaborators needed by the given projections.

        Returns:
            Dict containing validation results for each component
        """
        kinds = set(kinds)
        results: Dict[str, Any] = {
            "config": "valid",
            "kafka": self.validate_kafka(),
        }
        if ProjectionKind.SEARCH in kinds:
            results["elasticsearch"] = await self.validate_elasticsearch()
        if ProjectionKind.CACHE in kinds:
            results["redis"] = await self.validate_redis()

        failed_components = [
            component for component, status in results.items()
            if isinstance(status, dict) and status.get("status") == "failed"
        ]

        results["overall_status"] = "unhealthy" if failed_components else "healthy"
        if failed_components:
            results["failed_components"] = failed_components

        return results

    def validate_kafka(self) -> Dict[str, Any]:
        """
        Validate Kafka connectivity and topic visibility.

        Tests:
        - Broker connectivity (cluster metadata)
        - Topic existence
        """
        settings = self.config.kafka.consumer_settings(f"{self.config.app_name}-validation")
        topic = self.config.consumer.topic

        consumer = None
        try:
            consumer = Consumer(settings)
            metadata = consumer.list_topics(timeout=self.config.kafka.startup_timeout_seconds)

            if topic not in metadata.topics:
                return {
                    "status": "warning",
                    "message": f"Topic {topic} does not exist yet; it will be created by the connector",
                    "available_topics": sorted(metadata.topics.keys()),
                }

            return {
                "status": "healthy",
                "message": "Kafka connectivity and topic validation successful",
                "partitions": len(metadata.topics[topic].partitions),
            }

        except KafkaException as e:
            logger.error(f"Kafka validation failed: {e}")
            return {
                "status": "failed",
                "error": str(e),
                "bootstrap_servers": self.config.kafka.bootstrap_servers,
            }
        finally:
            if consumer:
                consumer.close()

    async def validate_elasticsearch(self) -> Dict[str, Any]:
        """Validate that Elasticsearch answers a ping."""
        client = AsyncElasticsearch(
            self.config.search.url,
            request_timeout=self.config.search.request_timeout_seconds,
        )
        try:
            if await client.ping():
                return {"status": "healthy", "url": self.config.search.url}
            return {"status": "failed", "error": "ping returned false", "url": self.config.search.url}
        finally:
            await client.close()

    async def validate_redis(self) -> Dict[str, Any]:
        """Validate that Redis answers PING."""
        client = aioredis.Redis(
            host=self.config.cache.host,
            port=self.config.cache.port,
            db=self.config.cache.db,
            password=self.config.cache.password,
            socket_timeout=self.config.cache.socket_timeout_seconds,
        )
        try:
            await client.ping()
            return {"status": "healthy", "host": self.config.cache.host, "port": self.config.cache.port}
        except RedisError as e:
            logger.error(f"Redis validation failed: {e}")
            return {"status": "failed", "error": str(e)}
        finally:
            await client.aclose()


async def validate_configuration(
    config: AppConfig,
    kinds: Iterable[ProjectionKind] = tuple(ProjectionKind),
) -> Dict[str, Any]:
    """
    Validate configuration values and collaborator connectivity.

    Raises:
        FatalConfigurationError: If settings are invalid or Kafka is unreachable
    """
    config.validate()

    results = await ConfigValidator(config).validate_all(kinds)
    if results["kafka"].get("status") == "failed":
        raise FatalConfigurationError(
            f"Cannot reach Kafka at {config.kafka.bootstrap_servers}: {results['kafka'].get('error')}"
        )
    return results
