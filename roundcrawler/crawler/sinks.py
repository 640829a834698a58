"""
Commit-time fan-out of one round's output to every sink.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Dict, Iterable, List, Optional, Sequence

from .frontier import eligible_for
from .resource import FetchResult, Resource
from ..errors import SinkFailure
from ..utils.retry import RetryError, RetryPolicy, retry_with_policy


STEP_UPSERT_OUTLINKS = 'upsert_outlinks'
STEP_UPDATE_STATUS = 'update_status'
STEP_STORE_CONTENT = 'store_content'
STEP_PUBLISH_CONTENT = 'publish_content'
STEP_COMMIT = 'commit'


async def _gather_partitions(coros: Iterable[Awaitable[int]]) -> List[int]:
    """
    Run one coroutine per partition. If any of them fails, the others are
    cancelled and awaited before the error propagates, so nothing of a
    failed step keeps writing.
    """
    tasks = [asyncio.ensure_future(coro) for coro in coros]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


@dataclass
class SinkReport:
    """What one round wrote."""
    outlinks_created: int = 0
    statuses_updated: int = 0
    contents_stored: int = 0
    contents_published: int = 0


class SinkFanout:
    """
    Writes a round to the resource store, the content store and, when
    enabled, the stream publisher, then commits the resource store.

    The four steps run concurrently; the commit only happens when all of
    them succeeded. A step that still fails after its retries is reported
    as a SinkFailure naming the round and the step.
    """

    def __init__(self, resource_store, content_store, publisher=None,
                 retry_policy: Optional[RetryPolicy] = None):
        self.resource_store = resource_store
        self.content_store = content_store
        self.publisher = publisher
        self.retry_policy = retry_policy or RetryPolicy()
        self.logger = logging.getLogger(__name__)

    async def commit_round(self, job, task_id: str, partitions: Dict[str, List[FetchResult]],
                           new_resources: Sequence[Resource]) -> SinkReport:
        report = SinkReport()

        steps = [
            (STEP_UPSERT_OUTLINKS, self._upsert_outlinks(task_id, new_resources, report)),
            (STEP_UPDATE_STATUS, self._update_statuses(job, task_id, partitions, report)),
            (STEP_STORE_CONTENT, self._store_content(task_id, partitions, report)),
        ]
        if self.publisher is not None and job.settings.stream_enabled:
            steps.append((STEP_PUBLISH_CONTENT, self._publish_content(task_id, partitions, report)))

        outcomes = await asyncio.gather(*(coro for _, coro in steps), return_exceptions=True)

        failure: Optional[SinkFailure] = None
        for (step, _), outcome in zip(steps, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                cause = outcome.last_exception if isinstance(outcome, RetryError) else outcome
                self.logger.error(f"Round {task_id}: sink step '{step}' failed: {cause}")
                if failure is None:
                    failure = SinkFailure(task_id, step, cause)
        if failure is not None:
            raise failure

        try:
            await retry_with_policy(
                lambda: self.resource_store.commit(task_id), self.retry_policy, f"{STEP_COMMIT} {task_id}"
            )
        except RetryError as e:
            raise SinkFailure(task_id, STEP_COMMIT, e.last_exception)

        self.logger.info(
            f"Round {task_id} committed: {report.outlinks_created} new resources, "
            f"{report.statuses_updated} status updates, {report.contents_stored} contents stored, "
            f"{report.contents_published} contents published"
        )
        return report

    async def _upsert_outlinks(self, task_id: str, new_resources: Sequence[Resource], report: SinkReport):
        # Survives retries, so a resource created by a failed attempt still counts
        created = set()

        async def upsert_all():
            for resource in new_resources:
                if resource.id in created:
                    continue
                if await self.resource_store.upsert(resource):
                    created.add(resource.id)
            return len(created)

        report.outlinks_created = await retry_with_policy(
            upsert_all, self.retry_policy, f"{STEP_UPSERT_OUTLINKS} {task_id}"
        )

    async def _update_statuses(self, job, task_id: str, partitions: Dict[str, List[FetchResult]],
                               report: SinkReport):
        selectable = eligible_for(job.settings.retry_attempts)

        async def update_all():
            updated = 0
            for results in partitions.values():
                for result in results:
                    resource = result.resource
                    await self.resource_store.update_status(resource, selectable=selectable(resource))
                    updated += 1
            return updated

        report.statuses_updated = await retry_with_policy(
            update_all, self.retry_policy, f"{STEP_UPDATE_STATUS} {task_id}"
        )

    async def _store_content(self, task_id: str, partitions: Dict[str, List[FetchResult]],
                             report: SinkReport):
        async def store_partition(group: str, results: List[FetchResult]) -> int:
            stored = 0
            async with self.content_store.open_partition(task_id, group) as writer:
                for result in results:
                    await writer.put(result.resource.url, result)
                    stored += 1
            return stored

        counts = await _gather_partitions(
            retry_with_policy(
                lambda group=group, fetched=fetched: store_partition(group, fetched),
                self.retry_policy, f"{STEP_STORE_CONTENT} {task_id}/{group}"
            )
            for group, fetched in self._fetched_by_partition(partitions).items()
        )
        report.contents_stored = sum(counts)

    async def _publish_content(self, task_id: str, partitions: Dict[str, List[FetchResult]],
                               report: SinkReport):
        async def publish_partition(results: List[FetchResult]) -> int:
            sent = 0
            async with self.publisher.open() as connection:
                for result in results:
                    await self.publisher.send(connection, result)
                    sent += 1
            return sent

        counts = await _gather_partitions(
            retry_with_policy(
                lambda fetched=fetched: publish_partition(fetched),
                self.retry_policy, f"{STEP_PUBLISH_CONTENT} {task_id}/{group}"
            )
            for group, fetched in self._fetched_by_partition(partitions).items()
        )
        report.contents_published = sum(counts)

    @staticmethod
    def _fetched_by_partition(partitions: Dict[str, List[FetchResult]]) -> Dict[str, List[FetchResult]]:
        fetched = {}
        for group, results in partitions.items():
            kept = [result for result in results if result.fetched]
            if kept:
                fetched[group] = kept
        return fetched
