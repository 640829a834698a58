"""
Outlink resolution: turn a round's discovered links into new resources.
"""

import logging
from typing import Dict, Iterable, List

from .resource import FetchResult, Resource


class OutlinkResolver:
    """
    Reduces all (link, parent) pairs of a round to one new resource per link.

    The winning parent is the one with the smallest discover depth. Parents
    of equal depth are ordered by URL, then id, so the outcome never depends
    on the order in which groups finished.
    """

    def __init__(self, max_depth: int = 0):
        self.max_depth = max_depth
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def _parent_rank(parent: Resource) -> tuple:
        return (parent.discover_depth, parent.url, parent.id)

    def resolve(self, job, fetch_results: Iterable[FetchResult]) -> List[Resource]:
        parents: Dict[str, Resource] = {}
        pairs = 0

        for result in fetch_results:
            if not result.fetched:
                continue
            parent = result.resource
            for link in result.outlinks:
                pairs += 1
                current = parents.get(link)
                if current is None or self._parent_rank(parent) < self._parent_rank(current):
                    parents[link] = parent

        new_resources = []
        for link in sorted(parents):
            parent = parents[link]
            depth = parent.discover_depth + 1
            if self.max_depth > 0 and depth > self.max_depth:
                continue
            new_resources.append(
                Resource.new(job.job_id, link, discover_depth=depth, parent=parent, score=parent.score)
            )

        self.logger.debug(f"Resolved {pairs} outlink pairs into {len(new_resources)} resources")
        return new_resources
