"""
Test configuration and fixtures for CDC projector tests.

This module provides:
- Debezium envelope factories for the `posts` table
- In-memory doubles for Kafka (consumer) and Elasticsearch
- fakeredis-backed cache clients
- An in-memory SQLite source store
"""

import asyncio
import json
import time
from typing import Any, Dict, List, Optional

import fakeredis
import fakeredis.aioredis
import pytest
from confluent_kafka import TopicPartition
from elastic_transport import ApiResponseMeta, HttpHeaders, NodeConfig
from elasticsearch import NotFoundError
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from cdc_projector.api import SourceStore
from cdc_projector.config import (
    AppConfig,
    CacheConfig,
    ConsumerConfig,
    KafkaConfig,
    MonitoringConfig,
    SearchConfig,
)
from cdc_projector.projections import CacheProjection, SearchProjection

TOPIC = "blogdb.public.posts"


# Test data factories
def make_post(**overrides) -> Dict[str, Any]:
    """Factory for a `posts` row as Debezium serializes it."""
    defaults = {
        "id": 1,
        "title": "Hello CDC",
        "content": "Change data capture keeps projections in step.",
        "author": "alice",
        "created_at": 1700000000000000,
        "updated_at": 1700000000000000,
    }
    defaults.update(overrides)
    return defaults


def make_envelope(
    op: str,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
    lsn: int = 33816576,
    ts_ms: int = 1700000000123,
) -> Dict[str, Any]:
    """Factory for a full Debezium envelope."""
    return {
        "schema": {
            "type": "struct",
            "fields": [],
            "optional": False,
            "name": "blogdb.public.posts.Envelope",
        },
        "payload": {
            "before": before,
            "after": after,
            "source": {
                "version": "2.5.0.Final",
                "connector": "postgresql",
                "name": "blogdb",
                "ts_ms": ts_ms - 3,
                "snapshot": "false",
                "db": "blog_db",
                "schema": "public",
                "table": "posts",
                "txId": 771,
                "lsn": lsn,
            },
            "op": op,
            "ts_ms": ts_ms,
            "transaction": None,
        },
    }


class MockMessage:
    """Stand-in for confluent_kafka.Message."""

    def __init__(self, value, topic=TOPIC, partition=0, offset=0, key=None, error=None):
        if isinstance(value, dict):
            value = json.dumps(value).encode("utf-8")
        self._value = value
        self._topic = topic
        self._partition = partition
        self._offset = offset
        self._key = key
        self._error = error

    def value(self):
        return self._value

    def topic(self):
        return self._topic

    def partition(self):
        return self._partition

    def offset(self):
        return self._offset

    def key(self):
        return self._key

    def error(self):
        return self._error


class FakeKafkaConsumer:
    """
    Single-partition consumer over an append-only log.

    `seek` rewinds the read position, so a seeked-back record is delivered
    again on the next poll, as with a real partition.
    """

    def __init__(self, topic: str = TOPIC):
        self.topic = topic
        self.log: List[MockMessage] = []
        self.position = 0
        self.commits: List[int] = []
        self.seeks: List[int] = []
        self.subscribed: List[str] = []
        self.empty_polls = 0
        self.closed = False

    def append(self, value, key=None) -> MockMessage:
        message = MockMessage(value, topic=self.topic, offset=len(self.log), key=key)
        self.log.append(message)
        return message

    def subscribe(self, topics, on_assign=None, on_revoke=None):
        self.subscribed = list(topics)
        if on_assign is not None:
            on_assign(self, [TopicPartition(self.topic, 0)])

    def poll(self, timeout=None):
        if self.position < len(self.log):
            message = self.log[self.position]
            self.position += 1
            return message
        self.empty_polls += 1
        time.sleep(0.005)
        return None

    def commit(self, message=None, asynchronous=True):
        self.commits.append(message.offset())

    def seek(self, partition):
        self.seeks.append(partition.offset)
        self.position = partition.offset

    def close(self):
        self.closed = True


class FakeIndices:
    def __init__(self):
        self.created: Dict[str, Dict[str, Any]] = {}

    async def exists(self, index):
        return index in self.created

    async def create(self, index, settings=None, mappings=None):
        self.created[index] = {"settings": settings, "mappings": mappings}
        return {"acknowledged": True, "index": index}


def es_error(error_class, status: int, message: str = "error"):
    """Build an elasticsearch ApiError subclass as the client raises it for `status`."""
    meta = ApiResponseMeta(
        status=status,
        http_version="1.1",
        headers=HttpHeaders(),
        duration=0.0,
        node=NodeConfig("http", "localhost", 9200),
    )
    return error_class(message, meta=meta, body={"error": message})


class FakeSearchClient:
    """In-memory AsyncElasticsearch double for one or more indices."""

    def __init__(self):
        self.documents: Dict[tuple, Dict[str, Any]] = {}
        self.indices = FakeIndices()
        self.failures: List[Exception] = []
        self.available = True
        self.closed = False

    def fail_next(self, *errors: Exception) -> None:
        """Raise these errors from the next requests, in order."""
        self.failures.extend(errors)

    def _maybe_fail(self):
        if self.failures:
            raise self.failures.pop(0)

    async def index(self, index, id, document):
        self._maybe_fail()
        result = "updated" if (index, id) in self.documents else "created"
        self.documents[(index, id)] = dict(document)
        return {"_id": id, "result": result}

    async def delete(self, index, id):
        self._maybe_fail()
        if (index, id) not in self.documents:
            raise es_error(NotFoundError, 404, "not_found")
        del self.documents[(index, id)]
        return {"_id": id, "result": "deleted"}

    async def get(self, index, id):
        self._maybe_fail()
        if (index, id) not in self.documents:
            raise es_error(NotFoundError, 404, "not_found")
        return {"_id": id, "found": True, "_source": dict(self.documents[(index, id)])}

    async def search(self, index, query, highlight=None):
        self._maybe_fail()
        term = query["multi_match"]["query"].lower()
        hits = [
            {"_id": doc_id, "_score": 1.0, "_source": dict(doc), "highlight": {"title": [doc["title"]]}}
            for (doc_index, doc_id), doc in self.documents.items()
            if doc_index == index and (term in doc["title"].lower() or term in doc["content"].lower())
        ]
        return {"hits": {"total": {"value": len(hits), "relation": "eq"}, "hits": hits}}

    async def ping(self):
        return self.available

    async def close(self):
        self.closed = True


@pytest.fixture
def kafka_config() -> KafkaConfig:
    return KafkaConfig(bootstrap_servers=["localhost:9094"], poll_timeout_seconds=0.01)


@pytest.fixture
def consumer_config() -> ConsumerConfig:
    return ConsumerConfig(
        topic=TOPIC,
        max_retries=2,
        retry_delay_seconds=0.001,
        retry_max_delay_seconds=0.002,
        redelivery_pause_seconds=0.01,
    )


@pytest.fixture
def test_config(kafka_config, consumer_config) -> AppConfig:
    """Application configuration with test collaborators."""
    return AppConfig(
        kafka=kafka_config,
        consumer=consumer_config,
        search=SearchConfig(url="http://localhost:9201"),
        cache=CacheConfig(port=6390),
        monitoring=MonitoringConfig(enabled=False),
    )


@pytest.fixture
def sample_post() -> Dict[str, Any]:
    return make_post()


@pytest.fixture
def sample_create_message(sample_post) -> Dict[str, Any]:
    return make_envelope("c", after=sample_post)


@pytest.fixture
def sample_update_message(sample_post) -> Dict[str, Any]:
    updated = dict(sample_post, title="Hello again", updated_at=1700000100000000)
    return make_envelope("u", before=sample_post, after=updated, lsn=33816800)


@pytest.fixture
def sample_delete_message(sample_post) -> Dict[str, Any]:
    return make_envelope("d", before=sample_post, lsn=33817000)


@pytest.fixture
def fake_consumer() -> FakeKafkaConsumer:
    return FakeKafkaConsumer()


@pytest.fixture
def search_client() -> FakeSearchClient:
    return FakeSearchClient()


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
async def redis_client(redis_server):
    client = fakeredis.aioredis.FakeRedis(server=redis_server, decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
async def redis_reader(redis_server):
    """Second connection to the same fake server, for assertions after a projection closes its client."""
    client = fakeredis.aioredis.FakeRedis(server=redis_server, decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def search_projection(search_client) -> SearchProjection:
    return SearchProjection(search_client, index="posts")


@pytest.fixture
def cache_projection(redis_client) -> CacheProjection:
    return CacheProjection(redis_client, ttl_seconds=300)


@pytest.fixture
async def source_store():
    """Source store on in-memory SQLite."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        echo=False,
    )
    store = SourceStore(engine)
    await store.create_tables()

    yield store

    await engine.dispose()


async def run_until_idle(runner, consumer: FakeKafkaConsumer, timeout: float = 5.0) -> None:
    """Run a projection runner until its consumer has nothing left to deliver."""
    task = asyncio.create_task(runner.start())

    async def idle():
        while consumer.empty_polls == 0 or consumer.position < len(consumer.log):
            if task.done():
                return
            await asyncio.sleep(0.01)

    try:
        await asyncio.wait_for(idle(), timeout)
    finally:
        runner.request_shutdown()
        await asyncio.wait_for(task, timeout)


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
