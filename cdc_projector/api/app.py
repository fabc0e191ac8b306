"""
HTTP API over the source store and its projections.

Writes only ever touch the source store; the projections catch up through
the change stream. Reads prefer the projections and fall back to the
source store when a projection is missing the row or is unavailable. The
only projection write made here is the cache-aside fill on a read miss.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from aiohttp import web
from elasticsearch import ApiError, AsyncElasticsearch, TransportError
from redis.exceptions import RedisError

from ..config import ApiConfig, CacheConfig, SearchConfig
from ..projections.base import project_row
from ..projections.cache import group_key, row_key
from .middleware import request_middleware
from .store import SourceStore

logger = logging.getLogger(__name__)

PROPAGATION_NOTE = "Changes will be propagated to the search index and cache via the change stream"


class PostsApi:
    """Route handlers; downstream clients are injected."""

    def __init__(
        self,
        store: SourceStore,
        cache_client,
        search_client: AsyncElasticsearch,
        api_config: Optional[ApiConfig] = None,
        cache_config: Optional[CacheConfig] = None,
        search_config: Optional[SearchConfig] = None,
    ):
        self.store = store
        self.cache = cache_client
        self.search_client = search_client
        self.api_config = api_config or ApiConfig()
        self.cache_config = cache_config or CacheConfig()
        self.search_config = search_config or SearchConfig()

    def setup_routes(self, app: web.Application) -> None:
        app.router.add_get("/health", self.health)
        app.router.add_post("/posts", self.create_post)
        app.router.add_get("/posts/by-author/{author}", self.posts_by_author)
        app.router.add_get(r"/posts/{id:\d+}", self.get_post)
        app.router.add_put(r"/posts/{id:\d+}", self.update_post)
        app.router.add_delete(r"/posts/{id:\d+}", self.delete_post)
        app.router.add_get("/search", self.search)

    def _row_key(self, post_id: Any) -> str:
        return row_key(self.cache_config.row_key_prefix, post_id)

    async def health(self, request: web.Request) -> web.Response:
        services = {
            "source": await self.store.ping(),
            "cache": await self._ping_cache(),
            "search": await self._ping_search(),
        }
        healthy = all(services.values())
        return web.json_response(
            {
                "status": "ok" if healthy else "degraded",
                "services": {name: "ok" if up else "error" for name, up in services.items()},
            },
            status=200 if healthy else 503,
        )

    async def create_post(self, request: web.Request) -> web.Response:
        body = await self._json_body(request)
        title, content, author = body.get("title"), body.get("content"), body.get("author")
        if not title or not content or not author:
            return web.json_response({"error": "title, content, and author are required"}, status=400)

        post = await self.store.create(title=title, content=content, author=author)
        return web.json_response({"post": post, "note": PROPAGATION_NOTE}, status=201)

    async def get_post(self, request: web.Request) -> web.Response:
        post_id = int(request.match_info["id"])

        cached = await self._cache_get(self._row_key(post_id))
        if cached is not None:
            logger.debug(f"Cache hit for post {post_id}")
            return web.json_response({"post": cached, "source": "cache"})

        post = await self.store.get(post_id)
        if post is None:
            return web.json_response({"error": "Post not found"}, status=404)

        await self._cache_fill(post)
        return web.json_response({"post": post, "source": "database"})

    async def update_post(self, request: web.Request) -> web.Response:
        post_id = int(request.match_info["id"])
        body = await self._json_body(request)

        post = await self.store.update(post_id, title=body.get("title"), content=body.get("content"))
        if post is None:
            return web.json_response({"error": "Post not found"}, status=404)
        return web.json_response({"post": post, "note": PROPAGATION_NOTE})

    async def delete_post(self, request: web.Request) -> web.Response:
        post_id = int(request.match_info["id"])

        if not await self.store.delete(post_id):
            return web.json_response({"error": "Post not found"}, status=404)
        return web.json_response({"message": f"Post {post_id} deleted", "note": PROPAGATION_NOTE})

    async def search(self, request: web.Request) -> web.Response:
        query = request.query.get("q")
        if not query:
            return web.json_response({"error": 'Query parameter "q" is required'}, status=400)

        try:
            result = await self.search_client.search(
                index=self.search_config.index,
                query={
                    "multi_match": {
                        "query": query,
                        "fields": ["title^2", "content"],
                        "fuzziness": "AUTO",
                    }
                },
                highlight={"fields": {"title": {}, "content": {}}},
            )
        except (ApiError, TransportError) as e:
            logger.warning(f"Search unavailable: {e}")
            return web.json_response({"error": "search service degraded"}, status=503)

        hits = [
            {**hit["_source"], "score": hit.get("_score"), "highlights": hit.get("highlight")}
            for hit in result["hits"]["hits"]
        ]
        return web.json_response({"total": result["hits"]["total"], "results": hits, "source": "search"})

    async def posts_by_author(self, request: web.Request) -> web.Response:
        author = request.match_info["author"]

        posts = await self._cached_posts_by_author(author)
        if posts:
            return web.json_response({"posts": posts, "source": "cache"})

        posts = await self.store.list_by_author(author)
        return web.json_response({"posts": posts, "source": "database"})

    async def _cached_posts_by_author(self, author: str) -> List[Dict[str, Any]]:
        """Posts from the group index, newest first; empty on miss or cache failure."""
        try:
            post_ids = await self.cache.zrevrange(group_key(self.cache_config.group_key_prefix, author), 0, -1)
            if not post_ids:
                return []
            values = await self.cache.mget([self._row_key(post_id) for post_id in post_ids])
        except RedisError as e:
            logger.warning(f"Cache unavailable for author {author}, falling back to source: {e}")
            return []

        # Rows whose key already expired are dropped
        return [json.loads(value) for value in values if value is not None]

    async def _cache_get(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            cached = await self.cache.get(key)
        except RedisError as e:
            logger.warning(f"Cache read failed for {key}, falling back to source: {e}")
            return None
        return json.loads(cached) if cached else None

    async def _cache_fill(self, post: Dict[str, Any]) -> None:
        try:
            await self.cache.set(
                self._row_key(post["id"]),
                json.dumps(project_row(post), default=str),
                ex=self.api_config.cache_fill_ttl_seconds,
            )
        except RedisError as e:
            logger.warning(f"Cache fill failed for post {post['id']}: {e}")

    async def _ping_cache(self) -> bool:
        try:
            return bool(await self.cache.ping())
        except RedisError:
            return False

    async def _ping_search(self) -> bool:
        try:
            return bool(await self.search_client.ping())
        except (ApiError, TransportError):
            return False

    async def _json_body(self, request: web.Request) -> Dict[str, Any]:
        try:
            body = await request.json()
        except json.JSONDecodeError:
            raise web.HTTPBadRequest(text=json.dumps({"error": "Request body must be JSON"}), content_type="application/json")
        if not isinstance(body, dict):
            raise web.HTTPBadRequest(text=json.dumps({"error": "Request body must be a JSON object"}), content_type="application/json")
        return body


def create_app(api: PostsApi) -> web.Application:
    """Build the aiohttp application; clients are closed on cleanup."""
    app = web.Application(middlewares=[request_middleware])
    api.setup_routes(app)
    app["api"] = api

    async def close_clients(app: web.Application) -> None:
        await api.store.close()
        await api.cache.aclose()
        await api.search_client.close()

    app.on_cleanup.append(close_clients)
    return app
