"""
Search projection: change stream -> Elasticsearch.

Each upsert replaces the whole document for the row id, each delete removes
it. The index is a derived view; dropping it and replaying the topic from
the beginning rebuilds it.
"""

import logging
from typing import Any, Awaitable, Dict, Optional

from elasticsearch import ApiError, AsyncElasticsearch, NotFoundError, TransportError

from ..config import SearchConfig
from ..records import ChangeRecord, Row
from ..core.exceptions import (
    DownstreamNotFoundOnDelete,
    DownstreamRejectedError,
    DownstreamTransientError,
)
from .base import Projection, project_row

logger = logging.getLogger(__name__)

INDEX_SETTINGS: Dict[str, Any] = {
    "number_of_shards": 1,
    "number_of_replicas": 0,
    "analysis": {"analyzer": {"default": {"type": "standard"}}},
}

INDEX_MAPPINGS: Dict[str, Any] = {
    "properties": {
        "id": {"type": "integer"},
        "title": {
            "type": "text",
            "fields": {"keyword": {"type": "keyword", "ignore_above": 256}},
        },
        "content": {"type": "text"},
        "author": {"type": "keyword"},
        "created_at": {"type": "date"},
        "updated_at": {"type": "date"},
    }
}

def create_search_client(config: SearchConfig) -> AsyncElasticsearch:
    return AsyncElasticsearch(config.url, request_timeout=config.request_timeout_seconds)


# 4xx statuses that are retried
RETRYABLE_STATUSES = {429}


class SearchProjection(Projection):
    """Projection that keeps the search index in step with the source table."""

    name = "search"
    required_fields = ("id", "title", "content", "author")

    def __init__(self, client: AsyncElasticsearch, index: str = "posts"):
        self.client = client
        self.index = index

    @classmethod
    def from_config(cls, config: SearchConfig) -> "SearchProjection":
        return cls(create_search_client(config), index=config.index)

    async def ensure_index(self) -> bool:
        """Create the index with its mapping if it does not exist yet."""
        exists = await self._call("exists", None, self.client.indices.exists(index=self.index))
        if exists:
            return False

        await self._call(
            "create_index",
            None,
            self.client.indices.create(
                index=self.index,
                settings=INDEX_SETTINGS,
                mappings=INDEX_MAPPINGS,
            ),
        )
        logger.info(f"Created search index {self.index}")
        return True

    async def upsert(self, row: Row, record: ChangeRecord) -> None:
        await self._call(
            "index",
            row["id"],
            self.client.index(index=self.index, id=str(row["id"]), document=project_row(row)),
        )

    async def delete(self, row: Row, record: ChangeRecord) -> None:
        await self._call(
            "delete",
            row["id"],
            self.client.delete(index=self.index, id=str(row["id"])),
        )

    async def _call(self, action: str, row_id: Optional[Any], request: Awaitable) -> Any:
        """Await an Elasticsearch request, translating failures into the projector taxonomy."""
        try:
            return await request
        except NotFoundError as e:
            if action == "delete":
                raise DownstreamNotFoundOnDelete(str(e), self.name, row_id) from e
            raise DownstreamRejectedError(f"{action} failed: {e}", self.name, row_id) from e
        except ApiError as e:
            status = e.meta.status
            if status >= 500 or status in RETRYABLE_STATUSES:
                raise DownstreamTransientError(f"{action} failed: {e}", self.name, row_id) from e
            raise DownstreamRejectedError(f"{action} failed: {e}", self.name, row_id) from e
        except TransportError as e:
            raise DownstreamTransientError(f"{action} failed: {e}", self.name, row_id) from e

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.close()
