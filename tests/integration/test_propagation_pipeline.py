"""
Integration tests for change propagation into both projections.

Tests cover:
- Create, update and delete reaching the search index and the cache
- Group index membership across the row lifecycle
- Recovery from a downstream outage by redelivery
- Undecodable records not blocking the partition
"""

import asyncio

import pytest
from elasticsearch import ApiError

from cdc_projector.consumer import ProjectionRunner
from cdc_projector.convergence import CacheProbe, ConvergenceChecker, Expectation, SearchProbe

from conftest import FakeKafkaConsumer, es_error, make_envelope, make_post


@pytest.mark.integration
class TestPropagationPipeline:
    """Both runners consume the same change stream in separate groups."""

    @pytest.fixture
    def consumers(self):
        return {"search": FakeKafkaConsumer(), "cache": FakeKafkaConsumer()}

    @pytest.fixture
    async def runners(self, search_projection, cache_projection, kafka_config, consumer_config, consumers):
        runners = [
            ProjectionRunner(search_projection, kafka_config, consumer_config, "search-indexer-group",
                             consumer=consumers["search"]),
            ProjectionRunner(cache_projection, kafka_config, consumer_config, "cache-updater-group",
                             consumer=consumers["cache"]),
        ]
        tasks = [asyncio.create_task(runner.start()) for runner in runners]

        yield runners

        for runner in runners:
            runner.request_shutdown()
        await asyncio.wait_for(asyncio.gather(*tasks), timeout=5)

    @pytest.fixture
    def checker(self, search_client, redis_reader):
        return ConvergenceChecker(
            [SearchProbe(search_client), CacheProbe(redis_reader)],
            interval_ms=20,
            max_wait_ms=3000,
        )

    @staticmethod
    def publish(consumers, envelope, row_id):
        for consumer in consumers.values():
            consumer.append(envelope, key=str(row_id).encode())

    @staticmethod
    async def committed(consumers, offset):
        while any(offset not in consumer.commits for consumer in consumers.values()):
            await asyncio.sleep(0.01)

    async def test_row_lifecycle_converges(self, runners, consumers, checker, sample_post):
        self.publish(consumers, make_envelope("c", after=sample_post), 1)

        report = await checker.wait_for(1, {
            "search": Expectation.present_with(title="Hello CDC"),
            "cache": Expectation.present_with(title="Hello CDC"),
        })
        assert report.converged, report.to_dict()

        updated = dict(sample_post, title="Hello again")
        self.publish(consumers, make_envelope("u", before=sample_post, after=updated), 1)

        report = await checker.wait_for(1, {
            "search": Expectation.present_with(title="Hello again"),
            "cache": Expectation.present_with(title="Hello again"),
        })
        assert report.converged, report.to_dict()

        self.publish(consumers, make_envelope("d", before=updated), 1)

        report = await checker.wait_for(1, {"search": Expectation.absent(), "cache": Expectation.absent()})
        assert report.converged, report.to_dict()
        await asyncio.wait_for(self.committed(consumers, 2), timeout=3)
        assert consumers["search"].commits == [0, 1, 2]
        assert consumers["cache"].commits == [0, 1, 2]

    async def test_group_index_tracks_creates_and_deletes(self, runners, consumers, checker, redis_reader):
        for post_id in range(1, 5):
            self.publish(consumers, make_envelope("c", after=make_post(id=post_id)), post_id)

        report = await checker.wait_for(4, {"cache": Expectation.present_with()})
        assert report.converged
        assert await redis_reader.zcard("group:alice:rows") == 4

        self.publish(consumers, make_envelope("d", before=make_post(id=2)), 2)

        report = await checker.wait_for(2, {"search": Expectation.absent(), "cache": Expectation.absent()})
        assert report.converged
        assert sorted(await redis_reader.zrange("group:alice:rows", 0, -1)) == ["1", "3", "4"]

    async def test_search_outage_is_redelivered(self, runners, consumers, checker, search_client, consumer_config,
                                                sample_post):
        search_client.fail_next(*[es_error(ApiError, 503) for _ in range(consumer_config.max_retries + 1)])

        self.publish(consumers, make_envelope("c", after=sample_post), 1)
        while search_client.failures or not consumers["search"].seeks:
            await asyncio.sleep(0.01)

        report = await checker.wait_for(1, {
            "search": Expectation.present_with(title="Hello CDC"),
            "cache": Expectation.present_with(title="Hello CDC"),
        })
        assert report.converged, report.to_dict()
        assert consumers["search"].seeks == [0]
        assert runners[0].metrics.records_failed == 1
        assert runners[1].metrics.records_failed == 0

    async def test_undecodable_record_does_not_block(self, runners, consumers, checker, sample_post):
        for consumer in consumers.values():
            consumer.append(b"\x00not json")
        self.publish(consumers, make_envelope("c", after=sample_post), 1)

        report = await checker.wait_for(1, {"search": Expectation.present_with(), "cache": Expectation.present_with()})

        assert report.converged
        assert all(runner.metrics.decode_errors == 1 for runner in runners)
        assert 0 in consumers["cache"].commits
