"""
Unit tests for the HTTP API.

Tests cover:
- Writes go to the source store only
- Cache-aside reads with fill on miss
- Search over the search projection
- Fallback to the source store when the cache is down
- Health reporting and correlation ids
"""

import json

import pytest
from aiohttp.test_utils import TestClient, TestServer
from elasticsearch import ConnectionError as ESConnectionError

from cdc_projector.api import PostsApi, create_app
from cdc_projector.config import ApiConfig

from conftest import make_post


@pytest.fixture
async def client(source_store, redis_client, search_client):
    api = PostsApi(source_store, redis_client, search_client, api_config=ApiConfig(cache_fill_ttl_seconds=60))
    async with TestClient(TestServer(create_app(api))) as client:
        yield client


class TestWrites:
    async def test_create_post(self, client, source_store, redis_client):
        response = await client.post("/posts", json={"title": "First", "content": "Body", "author": "alice"})

        assert response.status == 201
        body = await response.json()
        assert body["post"]["title"] == "First"
        assert "propagated" in body["note"]
        assert await source_store.get(body["post"]["id"]) is not None
        assert await redis_client.keys("*") == []

    @pytest.mark.parametrize("payload", [
        {"content": "Body", "author": "alice"},
        {"title": "First", "author": "alice"},
        {"title": "First", "content": "Body", "author": ""},
    ])
    async def test_create_requires_fields(self, client, payload):
        response = await client.post("/posts", json=payload)

        assert response.status == 400

    async def test_create_rejects_non_json_body(self, client):
        response = await client.post("/posts", data="title=First", headers={"Content-Type": "application/json"})

        assert response.status == 400
        assert (await response.json())["error"] == "Request body must be JSON"

    async def test_update_keeps_omitted_fields(self, client, source_store):
        post = await source_store.create("First", "Body", "alice")

        response = await client.put(f"/posts/{post['id']}", json={"title": "Renamed"})

        assert response.status == 200
        body = await response.json()
        assert body["post"]["title"] == "Renamed"
        assert body["post"]["content"] == "Body"

    async def test_update_missing_post(self, client):
        response = await client.put("/posts/999", json={"title": "Renamed"})

        assert response.status == 404

    async def test_delete_post(self, client, source_store):
        post = await source_store.create("First", "Body", "alice")

        response = await client.delete(f"/posts/{post['id']}")

        assert response.status == 200
        assert await source_store.get(post["id"]) is None
        assert (await client.delete(f"/posts/{post['id']}")).status == 404


class TestCacheAsideReads:
    async def test_miss_reads_source_and_fills_cache(self, client, source_store, redis_client):
        post = await source_store.create("First", "Body", "alice")

        response = await client.get(f"/posts/{post['id']}")

        body = await response.json()
        assert response.status == 200
        assert body["source"] == "database"
        cached = json.loads(await redis_client.get(f"row:{post['id']}"))
        assert cached["title"] == "First"
        assert 0 < await redis_client.ttl(f"row:{post['id']}") <= 60

        again = await (await client.get(f"/posts/{post['id']}")).json()
        assert again["source"] == "cache"

    async def test_hit_is_served_from_cache(self, client, redis_client):
        await redis_client.set("row:5", json.dumps(make_post(id=5, title="Cached")))

        body = await (await client.get("/posts/5")).json()

        assert body == {"post": make_post(id=5, title="Cached"), "source": "cache"}

    async def test_missing_post(self, client):
        response = await client.get("/posts/404")

        assert response.status == 404
        assert (await response.json())["error"] == "Post not found"

    async def test_cache_down_falls_back_to_source(self, client, source_store, redis_server):
        post = await source_store.create("First", "Body", "alice")
        redis_server.connected = False

        response = await client.get(f"/posts/{post['id']}")

        assert response.status == 200
        assert (await response.json())["source"] == "database"


class TestPostsByAuthor:
    async def test_served_from_group_index_newest_first(self, client, redis_client):
        for post_id in (1, 2):
            await redis_client.set(f"row:{post_id}", json.dumps(make_post(id=post_id)))
        await redis_client.zadd("group:alice:rows", {"1": 100, "2": 200})

        body = await (await client.get("/posts/by-author/alice")).json()

        assert body["source"] == "cache"
        assert [post["id"] for post in body["posts"]] == [2, 1]

    async def test_expired_rows_are_dropped(self, client, redis_client):
        await redis_client.set("row:2", json.dumps(make_post(id=2)))
        await redis_client.zadd("group:alice:rows", {"1": 100, "2": 200})

        body = await (await client.get("/posts/by-author/alice")).json()

        assert [post["id"] for post in body["posts"]] == [2]

    async def test_falls_back_to_source(self, client, source_store):
        await source_store.create("First", "Body", "bob")
        await source_store.create("Second", "Body", "bob")

        body = await (await client.get("/posts/by-author/bob")).json()

        assert body["source"] == "database"
        assert [post["title"] for post in body["posts"]] == ["Second", "First"]


class TestSearch:
    async def test_search(self, client, search_client):
        await search_client.index(index="posts", id="1", document=make_post())
        await search_client.index(index="posts", id="2", document=make_post(id=2, title="Other", content="Unrelated"))

        response = await client.get("/search", params={"q": "cdc"})

        body = await response.json()
        assert body["source"] == "search"
        assert body["total"]["value"] == 1
        assert body["results"][0]["title"] == "Hello CDC"
        assert body["results"][0]["score"] == 1.0

    async def test_query_is_required(self, client):
        response = await client.get("/search")

        assert response.status == 400

    async def test_search_unavailable_is_503(self, client, search_client):
        search_client.fail_next(ESConnectionError("connection refused"))

        response = await client.get("/search", params={"q": "cdc"})

        assert response.status == 503
        assert (await response.json())["error"] == "search service degraded"


class TestHealth:
    async def test_all_services_up(self, client):
        response = await client.get("/health")

        assert response.status == 200
        assert await response.json() == {
            "status": "ok",
            "services": {"source": "ok", "cache": "ok", "search": "ok"},
        }

    async def test_degraded_when_search_is_down(self, client, search_client):
        search_client.available = False

        response = await client.get("/health")

        assert response.status == 503
        body = await response.json()
        assert body["status"] == "degraded"
        assert body["services"]["search"] == "error"

    async def test_correlation_id_is_echoed(self, client):
        response = await client.get("/health", headers={"X-Correlation-ID": "req-42"})

        assert response.headers["X-Correlation-ID"] == "req-42"

    async def test_correlation_id_is_generated(self, client):
        response = await client.get("/health")

        assert response.headers["X-Correlation-ID"]
