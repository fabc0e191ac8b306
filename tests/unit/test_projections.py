"""
Unit tests for the projection contract and the search projection.

Tests cover:
- Skip rules for records that cannot be projected
- Idempotent upserts and deletes
- Translation of Elasticsearch errors into the projector taxonomy
- Index bootstrap
"""

import pytest
from elasticsearch import ApiError, BadRequestError, ConnectionError as ESConnectionError, NotFoundError

from cdc_projector.core.exceptions import (
    DownstreamRejectedError,
    DownstreamTransientError,
)
from cdc_projector.projections import ApplyOutcome, PROJECTED_FIELDS, project_row
from cdc_projector.projections.search import INDEX_MAPPINGS
from cdc_projector.records import ChangeRecord, Operation, SourceInfo

from conftest import es_error, make_post

SOURCE = SourceInfo(db="blog_db", schema="public", table="posts", ts_ms=1700000000120)


def record(op: Operation, before=None, after=None, offset=0) -> ChangeRecord:
    return ChangeRecord(
        operation=op,
        before=before,
        after=after,
        source=SOURCE,
        ts_ms=1700000000123,
        topic="blogdb.public.posts",
        partition=0,
        offset=offset,
    )


class TestProjectRow:
    def test_selects_projected_fields_only(self):
        row = make_post(internal_flag=True)

        projected = project_row(row)

        assert tuple(projected) == PROJECTED_FIELDS
        assert "internal_flag" not in projected

    def test_missing_fields_are_null(self):
        assert project_row({"id": 3})["title"] is None


class TestSkipRules:
    """Records that cannot be projected are skipped, not failed."""

    async def test_create_without_after_is_skipped(self, search_projection, search_client):
        outcome = await search_projection.apply(record(Operation.CREATE, before=make_post()))

        assert outcome is ApplyOutcome.SKIPPED
        assert search_client.documents == {}

    @pytest.mark.parametrize("field", ["id", "title", "content", "author"])
    def test_required_fields_listed(self, search_projection, field):
        assert field in search_projection.required_fields

    @pytest.mark.parametrize("field", ["title", "content", "author"])
    async def test_missing_required_field_is_skipped(self, search_projection, search_client, field):
        outcome = await search_projection.apply(record(Operation.CREATE, after=make_post(**{field: None})))

        assert outcome is ApplyOutcome.SKIPPED
        assert search_client.documents == {}

    async def test_blank_required_field_is_skipped(self, search_projection, search_client):
        outcome = await search_projection.apply(record(Operation.UPDATE, after=make_post(title="   ")))

        assert outcome is ApplyOutcome.SKIPPED

    async def test_delete_without_before_is_skipped(self, search_projection):
        outcome = await search_projection.apply(record(Operation.DELETE, after=make_post()))

        assert outcome is ApplyOutcome.SKIPPED

    async def test_delete_without_id_is_skipped(self, search_projection):
        outcome = await search_projection.apply(record(Operation.DELETE, before={"title": "x"}))

        assert outcome is ApplyOutcome.SKIPPED


class TestSearchProjection:
    """Test cases for SearchProjection."""

    async def test_create_indexes_document(self, search_projection, search_client):
        outcome = await search_projection.apply(record(Operation.CREATE, after=make_post()))

        assert outcome is ApplyOutcome.APPLIED
        assert search_client.documents[("posts", "1")] == project_row(make_post())

    async def test_snapshot_read_indexes_document(self, search_projection, search_client):
        outcome = await search_projection.apply(record(Operation.SNAPSHOT, after=make_post(id=9)))

        assert outcome is ApplyOutcome.APPLIED
        assert ("posts", "9") in search_client.documents

    async def test_update_replaces_whole_document(self, search_projection, search_client):
        await search_projection.apply(record(Operation.CREATE, after=make_post()))
        updated = make_post(title="Renamed", content="New body")

        await search_projection.apply(record(Operation.UPDATE, before=make_post(), after=updated))

        assert search_client.documents[("posts", "1")]["title"] == "Renamed"
        assert search_client.documents[("posts", "1")]["content"] == "New body"

    async def test_duplicate_delivery_is_idempotent(self, search_projection, search_client):
        create = record(Operation.CREATE, after=make_post())

        await search_projection.apply(create)
        snapshot = dict(search_client.documents)
        await search_projection.apply(create)

        assert search_client.documents == snapshot

    async def test_delete_removes_document(self, search_projection, search_client):
        await search_projection.apply(record(Operation.CREATE, after=make_post()))

        outcome = await search_projection.apply(record(Operation.DELETE, before=make_post()))

        assert outcome is ApplyOutcome.APPLIED
        assert search_client.documents == {}

    async def test_delete_of_absent_document_is_success(self, search_projection):
        outcome = await search_projection.apply(record(Operation.DELETE, before={"id": 404}))

        assert outcome is ApplyOutcome.APPLIED

    @pytest.mark.parametrize("status", [500, 502, 503, 429])
    async def test_retryable_status_is_transient(self, search_projection, search_client, status):
        search_client.fail_next(es_error(ApiError, status))

        with pytest.raises(DownstreamTransientError) as exc_info:
            await search_projection.apply(record(Operation.CREATE, after=make_post()))

        assert exc_info.value.downstream == "search"
        assert exc_info.value.row_id == 1

    async def test_connection_error_is_transient(self, search_projection, search_client):
        search_client.fail_next(ESConnectionError("connection refused"))

        with pytest.raises(DownstreamTransientError):
            await search_projection.apply(record(Operation.CREATE, after=make_post()))

    async def test_bad_request_is_rejected(self, search_projection, search_client):
        search_client.fail_next(es_error(BadRequestError, 400, "mapper_parsing_exception"))

        with pytest.raises(DownstreamRejectedError):
            await search_projection.apply(record(Operation.CREATE, after=make_post()))

    async def test_unavailable_cluster_on_delete_is_transient(self, search_projection, search_client):
        search_client.fail_next(es_error(ApiError, 503, "unavailable"))

        with pytest.raises(DownstreamTransientError) as exc_info:
            await search_projection.apply(record(Operation.DELETE, before=make_post()))

        assert exc_info.value.__cause__.meta.status == 503

    async def test_conflict_on_delete_is_rejected(self, search_projection, search_client):
        search_client.fail_next(es_error(ApiError, 409, "version_conflict_engine_exception"))

        with pytest.raises(DownstreamRejectedError):
            await search_projection.apply(record(Operation.DELETE, before=make_post()))

    async def test_missing_index_on_write_is_rejected(self, search_projection, search_client):
        search_client.fail_next(es_error(NotFoundError, 404, "index_not_found_exception"))

        with pytest.raises(DownstreamRejectedError):
            await search_projection.apply(record(Operation.CREATE, after=make_post()))

    async def test_ensure_index_creates_once(self, search_projection, search_client):
        assert await search_projection.ensure_index() is True
        assert await search_projection.ensure_index() is False

        created = search_client.indices.created["posts"]
        assert created["mappings"] == INDEX_MAPPINGS
        assert created["settings"]["number_of_replicas"] == 0

    async def test_ping_and_close(self, search_projection, search_client):
        assert await search_projection.ping() is True

        await search_projection.close()

        assert search_client.closed
