"""
Job driver that runs the crawl round by round.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from .fetcher import FairFetcher, FetchFunction, OutlinkFilterFunction, ParseFunction
from .frontier import FrontierSelector, partition
from .outlinks import OutlinkResolver
from .resource import FetchResult, Resource, WorkUnit
from .scorer import DepthScorer, Scorer, apply_score
from .sinks import SinkFanout
from ..errors import SinkFailure
from ..utils.config import CrawlSettings
from ..utils.logger import get_crawler_logger
from ..utils.monitoring import CrawlerMonitor


@dataclass(frozen=True)
class CrawlJob:
    """Job identity plus the configuration snapshot every round reads."""
    job_id: str
    settings: CrawlSettings = field(default_factory=CrawlSettings)


def new_task_id() -> str:
    """Unique, time-ordered identifier for one round."""
    stamp = datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S')
    return f"{stamp}-{uuid.uuid4().hex[:8]}"


@dataclass
class RoundStats:
    """Statistics for one round."""
    task_id: str
    selected: int = 0
    groups: int = 0
    fetched: int = 0
    errors: int = 0
    new_resources: int = 0
    started_at: float = field(default_factory=time.time)
    duration: float = 0.0


@dataclass
class CrawlStats:
    """Statistics across all rounds of a run."""
    start_time: float
    rounds: int = 0
    resources_fetched: int = 0
    errors: int = 0
    new_resources: int = 0

    @property
    def elapsed_time(self) -> float:
        return time.time() - self.start_time

    def add(self, round_stats: RoundStats):
        self.rounds += 1
        self.resources_fetched += round_stats.fetched
        self.errors += round_stats.errors
        self.new_resources += round_stats.new_resources


class JobDriver:
    """
    Runs select → partition → fetch → score → resolve → fan-out → commit,
    one round at a time. A round never starts before the previous one is
    committed.
    """

    def __init__(self, job: CrawlJob, resource_store, sinks: SinkFanout,
                 fetch_fn: FetchFunction, parse_fn: ParseFunction,
                 outlink_filter_fn: OutlinkFilterFunction,
                 scorer: Optional[Scorer] = None,
                 monitor: Optional[CrawlerMonitor] = None):
        self.job = job
        self.resource_store = resource_store
        self.sinks = sinks
        self.fetch_fn = fetch_fn
        self.parse_fn = parse_fn
        self.outlink_filter_fn = outlink_filter_fn
        self.scorer = scorer or DepthScorer()
        self.monitor = monitor

        self.selector = FrontierSelector(resource_store)
        self.resolver = OutlinkResolver(max_depth=job.settings.max_depth)
        self.logger = get_crawler_logger(__name__, job_id=job.job_id)

        self.stats = CrawlStats(start_time=time.time())
        self._current_task: Optional[str] = None

    @property
    def current_task(self) -> Optional[str]:
        """Task id of the round in progress, for observers only."""
        return self._current_task

    async def inject(self, seed_urls: Sequence[str]) -> int:
        """Add depth-0 seed resources that are not known yet."""
        added = 0
        for url in seed_urls:
            if await self.resource_store.upsert(Resource.new(self.job.job_id, url)):
                added += 1
        self.logger.info(f"Injected {added} of {len(seed_urls)} seed URLs")
        return added

    async def run(self, iterations: int = 1) -> List[RoundStats]:
        """
        Run up to ``iterations`` rounds; ``iterations <= 0`` means until the
        frontier is exhausted.

        Raises:
            SinkFailure: if a round could not be committed
        """
        unbounded = iterations <= 0
        if unbounded:
            self.logger.info("Going to crawl until the frontier is exhausted")

        history: List[RoundStats] = []
        self.stats = CrawlStats(start_time=time.time())
        iteration = 0

        while unbounded or iteration < iterations:
            iteration += 1
            task_id = new_task_id()
            self._current_task = task_id
            try:
                round_stats = await self.run_round(task_id)
            finally:
                self._current_task = None

            if round_stats is None:
                self.logger.info(f"Frontier exhausted after {iteration - 1} rounds")
                break
            history.append(round_stats)
            self.stats.add(round_stats)

        self._log_final_stats()
        return history

    async def run_round(self, task_id: str) -> Optional[RoundStats]:
        """Run one round. Returns None when nothing was selected."""
        job = self.job
        log = self.logger.bind(task_id=task_id)
        log.info(f"Starting the job: {job.job_id}, task: {task_id}")

        round_stats = RoundStats(task_id=task_id)

        selected = await self.selector.select(job)
        if not selected:
            return None

        units = partition(selected, job.settings.group_by)
        round_stats.selected = len(selected)
        round_stats.groups = len(units)
        log.info(f"Selected {len(selected)} resources in {len(units)} groups")

        partitions = await self._fetch_all(job, task_id, units)

        results = [result for group_results in partitions.values() for result in group_results]
        round_stats.fetched = sum(1 for result in results if result.fetched)
        round_stats.errors = len(results) - round_stats.fetched

        new_resources = self.resolver.resolve(job, results)

        try:
            report = await self.sinks.commit_round(job, task_id, partitions, new_resources)
        except SinkFailure as e:
            log.error(f"Round {e.task_id} failed at sink step '{e.step}': {e.cause}")
            if self.monitor:
                self.monitor.record_sink_failure(e.step)
            raise

        round_stats.new_resources = report.outlinks_created
        round_stats.duration = time.time() - round_stats.started_at
        if self.monitor:
            self.monitor.record_round(
                round_stats.selected, round_stats.fetched, round_stats.errors,
                round_stats.new_resources, round_stats.duration,
            )

        log.info(
            f"===End of round {task_id}: fetched={round_stats.fetched}, "
            f"errors={round_stats.errors}, new={round_stats.new_resources}, "
            f"time={round_stats.duration:.2f}s==="
        )
        return round_stats

    async def _fetch_all(self, job: CrawlJob, task_id: str,
                         units: List[WorkUnit]) -> Dict[str, List[FetchResult]]:
        """One task per work unit, bounded by the worker capacity; joins them all."""
        semaphore = asyncio.Semaphore(job.settings.max_concurrent_groups)

        async def run_unit(unit: WorkUnit) -> List[FetchResult]:
            async with semaphore:
                return await self._fetch_group(job, task_id, unit)

        tasks = [asyncio.create_task(run_unit(unit)) for unit in units]
        try:
            group_results = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        return {unit.group: results for unit, results in zip(units, group_results)}

    async def _fetch_group(self, job: CrawlJob, task_id: str, unit: WorkUnit) -> List[FetchResult]:
        log = self.logger.bind(task_id=task_id, group=unit.group)
        log.debug(f"Fetching {len(unit)} resources")
        if self.monitor:
            self.monitor.active_groups.inc()

        results: List[FetchResult] = []
        try:
            fetcher = FairFetcher(
                job, unit, job.settings.fetch_delay,
                self.fetch_fn, self.parse_fn, self.outlink_filter_fn,
            )
            async for result in fetcher:
                results.append(apply_score(job, self.scorer, result))
        finally:
            if self.monitor:
                self.monitor.active_groups.dec()

        log.debug(f"Finished {len(results)} resources")
        return results

    def _log_final_stats(self):
        self.logger.info("=== CRAWL COMPLETED ===")
        self.logger.info(f"Rounds: {self.stats.rounds}")
        self.logger.info(f"Resources fetched: {self.stats.resources_fetched}")
        self.logger.info(f"Errors: {self.stats.errors}")
        self.logger.info(f"New resources: {self.stats.new_resources}")
        self.logger.info(f"Total time: {self.stats.elapsed_time:.2f} seconds")

    def get_stats(self) -> Dict:
        """Get cumulative crawl statistics."""
        return {
            'rounds': self.stats.rounds,
            'resources_fetched': self.stats.resources_fetched,
            'errors': self.stats.errors,
            'new_resources': self.stats.new_resources,
            'elapsed_time': self.stats.elapsed_time,
            'current_task': self._current_task,
        }
