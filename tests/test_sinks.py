"""Unit tests for the commit-time sink fan-out."""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from dataclasses import replace

import pytest

from roundcrawler.crawler.resource import FetchResult, Resource, ResourceStatus
from roundcrawler.crawler.scheduler import CrawlJob
from roundcrawler.crawler.sinks import (
    STEP_COMMIT,
    STEP_PUBLISH_CONTENT,
    STEP_STORE_CONTENT,
    STEP_UPDATE_STATUS,
    SinkFanout,
)
from roundcrawler.errors import SinkFailure, StoreError
from roundcrawler.storage.content_store import FileContentStore
from roundcrawler.storage.crawldb import MemoryResourceStore
from roundcrawler.utils.retry import RetryPolicy

FAST_RETRY = RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)
TASK = "20240101000000-abcdef12"


class RecordingPublisher:
    """Stands in for the stream publisher and counts connections."""

    def __init__(self):
        self.opened = 0
        self.sent = []

    @asynccontextmanager
    async def open(self):
        self.opened += 1
        yield f"connection-{self.opened}"

    async def send(self, connection, result):
        self.sent.append((connection, result.resource.url))


class FlakyCommitStore(MemoryResourceStore):
    """Fails the first ``failures`` commits."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures

    async def commit(self, task_id):
        if self.failures > 0:
            self.failures -= 1
            raise StoreError("commit lost")
        await super().commit(task_id)


class BrokenStatusStore(MemoryResourceStore):

    async def update_status(self, resource, selectable=None):
        raise StoreError("status write rejected")


def fetched_result(resource: Resource, body: bytes = b"<html></html>") -> FetchResult:
    done = resource.advance(ResourceStatus.FETCHING).advance(
        ResourceStatus.FETCHED, fetch_timestamp=1000.0
    )
    return FetchResult(resource=done, raw_content=body, content_type="text/html", status_code=200)


def failed_result(resource: Resource) -> FetchResult:
    failed = resource.advance(ResourceStatus.FETCHING).advance(
        ResourceStatus.ERROR, retry_count=1, error="HTTP 503"
    )
    return FetchResult(resource=failed)


async def seeded(store, job_id, *urls):
    resources = [Resource.new(job_id, url) for url in urls]
    for resource in resources:
        await store.upsert(resource)
    return resources


class TestSinkFanout:
    """Tests for writing and committing a round."""

    @pytest.mark.asyncio
    async def test_writes_every_sink_then_commits(self, job, tmp_path) -> None:
        store = MemoryResourceStore()
        a1, a2, b1 = await seeded(store, job.job_id, "http://a.test/1", "http://a.test/2", "http://b.test/1")
        partitions = {
            "a.test": [fetched_result(a1), failed_result(a2)],
            "b.test": [fetched_result(b1)],
        }
        new = [Resource.new(job.job_id, "http://c.test/", discover_depth=1, parent=a1)]
        content_store = FileContentStore(str(tmp_path))

        report = await SinkFanout(store, content_store, retry_policy=FAST_RETRY).commit_round(
            job, TASK, partitions, new
        )

        assert report.outlinks_created == 1
        assert report.statuses_updated == 3
        assert report.contents_stored == 2
        assert store.commits == [TASK]
        assert store.resources[a2.id].status is ResourceStatus.ERROR
        assert store.resources[new[0].id].discover_depth == 1

        lines = content_store.partition_path(TASK, "a.test").read_text().splitlines()
        assert [json.loads(line)["url"] for line in lines] == ["http://a.test/1"]

    @pytest.mark.asyncio
    async def test_known_outlinks_are_not_overwritten(self, job, tmp_path) -> None:
        store = MemoryResourceStore()
        (a1,) = await seeded(store, job.job_id, "http://a.test/1")
        again = Resource.new(job.job_id, "http://a.test/1", discover_depth=4)

        report = await SinkFanout(store, FileContentStore(str(tmp_path)), retry_policy=FAST_RETRY).commit_round(
            job, TASK, {}, [again]
        )

        assert report.outlinks_created == 0
        assert store.resources[a1.id].discover_depth == 0

    @pytest.mark.asyncio
    async def test_one_publisher_connection_per_partition(self, settings, tmp_path) -> None:
        job = CrawlJob("job1", replace(settings, stream_enabled=True))
        store = MemoryResourceStore()
        a1, a2, b1 = await seeded(store, job.job_id, "http://a.test/1", "http://a.test/2", "http://b.test/1")
        partitions = {
            "a.test": [fetched_result(a1), fetched_result(a2)],
            "b.test": [fetched_result(b1)],
        }
        publisher = RecordingPublisher()

        report = await SinkFanout(store, FileContentStore(str(tmp_path)), publisher, FAST_RETRY).commit_round(
            job, TASK, partitions, []
        )

        assert publisher.opened == 2
        assert report.contents_published == 3
        by_connection = {}
        for connection, url in publisher.sent:
            by_connection.setdefault(connection, set()).add(url.split("/")[2])
        assert sorted(len(groups) for groups in by_connection.values()) == [1, 1]

    @pytest.mark.asyncio
    async def test_publisher_ignored_when_streaming_disabled(self, job, tmp_path) -> None:
        store = MemoryResourceStore()
        (a1,) = await seeded(store, job.job_id, "http://a.test/1")
        publisher = RecordingPublisher()

        await SinkFanout(store, FileContentStore(str(tmp_path)), publisher, FAST_RETRY).commit_round(
            job, TASK, {"a.test": [fetched_result(a1)]}, []
        )

        assert publisher.opened == 0

    @pytest.mark.asyncio
    async def test_commit_is_retried(self, job, tmp_path) -> None:
        store = FlakyCommitStore(failures=2)

        await SinkFanout(store, FileContentStore(str(tmp_path)), retry_policy=FAST_RETRY).commit_round(
            job, TASK, {}, []
        )

        assert store.commits == [TASK]

    @pytest.mark.asyncio
    async def test_commit_failure_names_step(self, job, tmp_path) -> None:
        store = FlakyCommitStore(failures=5)

        with pytest.raises(SinkFailure) as excinfo:
            await SinkFanout(store, FileContentStore(str(tmp_path)), retry_policy=FAST_RETRY).commit_round(
                job, TASK, {}, []
            )

        assert excinfo.value.task_id == TASK
        assert excinfo.value.step == STEP_COMMIT
        assert isinstance(excinfo.value.cause, StoreError)

    @pytest.mark.asyncio
    async def test_failed_step_prevents_commit(self, job, tmp_path) -> None:
        store = BrokenStatusStore()
        (a1,) = await seeded(store, job.job_id, "http://a.test/1")

        with pytest.raises(SinkFailure) as excinfo:
            await SinkFanout(store, FileContentStore(str(tmp_path)), retry_policy=FAST_RETRY).commit_round(
                job, TASK, {"a.test": [fetched_result(a1)]}, []
            )

        assert excinfo.value.step == STEP_UPDATE_STATUS
        assert store.commits == []

    @pytest.mark.asyncio
    async def test_content_store_failure(self, job, tmp_path) -> None:
        store = MemoryResourceStore()
        (a1,) = await seeded(store, job.job_id, "http://a.test/1")
        blocker = tmp_path / "blocked"
        blocker.write_text("not a directory")

        with pytest.raises(SinkFailure) as excinfo:
            await SinkFanout(store, FileContentStore(str(blocker)), retry_policy=FAST_RETRY).commit_round(
                job, TASK, {"a.test": [fetched_result(a1)]}, []
            )

        assert excinfo.value.step == STEP_STORE_CONTENT
        assert store.commits == []


class FlakyUpsertStore(MemoryResourceStore):
    """The second upsert call fails once, after the first one was written."""

    def __init__(self):
        super().__init__()
        self.calls = 0

    async def upsert(self, resource):
        self.calls += 1
        if self.calls == 2:
            raise StoreError("connection reset")
        return await super().upsert(resource)


class SlowPartitionStore:
    """Content store where one group fails at once and the others write late."""

    def __init__(self, failing_group: str, delay: float):
        self.failing_group = failing_group
        self.delay = delay
        self.written = []

    @asynccontextmanager
    async def open_partition(self, task_id, group):
        if group == self.failing_group:
            raise StoreError("disk full")
        await asyncio.sleep(self.delay)
        yield self

    async def put(self, url, result):
        self.written.append(url)


class TestPartialFailures:
    """Failures inside a step are accounted for completely."""

    @pytest.mark.asyncio
    async def test_created_count_spans_attempts(self, job, tmp_path) -> None:
        store = FlakyUpsertStore()
        new = [Resource.new(job.job_id, "http://c.test/1"), Resource.new(job.job_id, "http://c.test/2")]

        report = await SinkFanout(store, FileContentStore(str(tmp_path)), retry_policy=FAST_RETRY).commit_round(
            job, TASK, {}, new
        )

        assert report.outlinks_created == 2
        assert store.calls == 3
        assert set(store.resources) == {r.id for r in new}

    @pytest.mark.asyncio
    async def test_failed_partition_stops_its_siblings(self, job) -> None:
        store = MemoryResourceStore()
        bad, good = await seeded(store, job.job_id, "http://bad.test/", "http://good.test/")
        content_store = SlowPartitionStore("bad.test", delay=0.2)
        partitions = {
            "bad.test": [fetched_result(bad)],
            "good.test": [fetched_result(good)],
        }

        with pytest.raises(SinkFailure) as excinfo:
            await SinkFanout(store, content_store, retry_policy=RetryPolicy(max_attempts=1)).commit_round(
                job, TASK, partitions, []
            )
        await asyncio.sleep(0.3)

        assert excinfo.value.step == STEP_STORE_CONTENT
        assert content_store.written == []
        assert store.commits == []

    @pytest.mark.asyncio
    async def test_failed_publish_partition_stops_its_siblings(self, settings, tmp_path) -> None:
        job = CrawlJob("job1", replace(settings, stream_enabled=True))
        store = MemoryResourceStore()
        bad, good = await seeded(store, job.job_id, "http://bad.test/", "http://good.test/")
        sent = []

        class SlowPublisher:
            @asynccontextmanager
            async def open(self):
                yield None

            async def send(self, connection, result):
                if result.resource.group == "bad.test":
                    raise StoreError("stream unavailable")
                await asyncio.sleep(0.2)
                sent.append(result.resource.url)

        with pytest.raises(SinkFailure) as excinfo:
            await SinkFanout(store, FileContentStore(str(tmp_path)), SlowPublisher(),
                             RetryPolicy(max_attempts=1)).commit_round(
                job, TASK, {"bad.test": [fetched_result(bad)], "good.test": [fetched_result(good)]}, []
            )
        await asyncio.sleep(0.3)

        assert excinfo.value.step == STEP_PUBLISH_CONTENT
        assert sent == []
