"""
Cache projection: change stream -> Redis.

Keys written:
- `row:{id}`: JSON of the projected row, with a TTL
- `group:{author}:rows`: sorted set of row ids scored by ingestion time,
  its TTL refreshed on every insert

The row key and the group set are always changed in one MULTI/EXEC
pipeline so the two never disagree for longer than one record.
"""

import json
import time
import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Optional

import redis.asyncio as aioredis
from redis.exceptions import (
    BusyLoadingError,
    ConnectionError as RedisConnectionError,
    ReadOnlyError,
    RedisError,
    TimeoutError as RedisTimeoutError,
)

from ..config import CacheConfig
from ..records import ChangeRecord, Row
from ..core.exceptions import (
    DownstreamNotFoundOnDelete,
    DownstreamRejectedError,
    DownstreamTransientError,
)
from .base import Projection, project_row

logger = logging.getLogger(__name__)

TRANSIENT_REDIS_ERRORS = (RedisConnectionError, RedisTimeoutError, BusyLoadingError, ReadOnlyError)


def row_key(prefix: str, row_id: Any) -> str:
    return f"{prefix}:{row_id}"


def group_key(prefix: str, author: str) -> str:
    return f"{prefix}:{author}:rows"


def create_cache_client(config: CacheConfig) -> aioredis.Redis:
    return aioredis.Redis(
        host=config.host,
        port=config.port,
        db=config.db,
        password=config.password,
        socket_timeout=config.socket_timeout_seconds,
        decode_responses=True,
    )


class CacheProjection(Projection):
    """Change-driven cache of rows plus a per-author ordered index."""

    name = "cache"
    required_fields = ("id",)

    def __init__(
        self,
        client: aioredis.Redis,
        ttl_seconds: int = 300,
        row_key_prefix: str = "row",
        group_key_prefix: str = "group",
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.row_key_prefix = row_key_prefix
        self.group_key_prefix = group_key_prefix
        self.clock = clock

    @classmethod
    def from_config(cls, config: CacheConfig) -> "CacheProjection":
        return cls(
            create_cache_client(config),
            ttl_seconds=config.ttl_seconds,
            row_key_prefix=config.row_key_prefix,
            group_key_prefix=config.group_key_prefix,
        )

    def row_key(self, row_id: Any) -> str:
        return row_key(self.row_key_prefix, row_id)

    def group_key(self, author: str) -> str:
        return group_key(self.group_key_prefix, author)

    async def upsert(self, row: Row, record: ChangeRecord) -> None:
        row_id = row["id"]
        author = row.get("author") or None
        value = json.dumps(project_row(row), default=str)

        async with self._translate_errors("upsert", row_id):
            previous_author = (record.before or {}).get("author")
            if previous_author is None:
                previous_author = await self._cached_author(row_id)

            async with self.client.pipeline(transaction=True) as pipe:
                pipe.set(self.row_key(row_id), value, ex=self.ttl_seconds)
                if previous_author and previous_author != author:
                    # Row moved to another group
                    pipe.zrem(self.group_key(previous_author), str(row_id))
                if author:
                    pipe.zadd(self.group_key(author), {str(row_id): self._score()})
                    pipe.expire(self.group_key(author), self.ttl_seconds)
                await pipe.execute()

        logger.debug(f"Cached row {row_id} (TTL: {self.ttl_seconds}s)")

    async def delete(self, row: Row, record: ChangeRecord) -> None:
        row_id = row["id"]

        async with self._translate_errors("delete", row_id):
            # Debezium only sends the key in `before` unless the table has REPLICA IDENTITY FULL
            author = row.get("author") or await self._cached_author(row_id)
            if not author:
                logger.info(f"Author of row {row_id} unknown, group index left to expire")

            async with self.client.pipeline(transaction=True) as pipe:
                pipe.delete(self.row_key(row_id))
                if author:
                    pipe.zrem(self.group_key(author), str(row_id))
                results = await pipe.execute()

        if not any(results):
            raise DownstreamNotFoundOnDelete(f"Row {row_id} not cached", self.name, row_id)

    async def _cached_author(self, row_id: Any) -> Optional[str]:
        cached = await self.client.get(self.row_key(row_id))
        if not cached:
            return None
        try:
            return json.loads(cached).get("author")
        except (ValueError, AttributeError):
            logger.warning(f"Cached value for row {row_id} is not a JSON object")
            return None

    def _score(self) -> float:
        return self.clock() * 1000

    @asynccontextmanager
    async def _translate_errors(self, action: str, row_id: Any):
        try:
            yield
        except TRANSIENT_REDIS_ERRORS as e:
            raise DownstreamTransientError(f"{action} failed: {e}", self.name, row_id) from e
        except RedisError as e:
            raise DownstreamRejectedError(f"{action} failed: {e}", self.name, row_id) from e

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        await self.client.aclose()
