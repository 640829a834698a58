"""
Scoring of fetch results; the score drives the next rounds' selection.
"""

import math
from dataclasses import replace
from typing import Protocol

from .resource import FetchResult


class Scorer(Protocol):
    """A pure, deterministic function of the job and a fetch result."""

    def score(self, job, result: FetchResult) -> float:
        ...


class DepthScorer:
    """
    Shallow pages with many outlinks score higher.
    Failed resources keep a decayed copy of their previous score.
    """

    def score(self, job, result: FetchResult) -> float:
        settings = job.settings
        resource = result.resource
        if not result.fetched:
            return resource.score * settings.error_decay
        base = 1.0 / (1 + resource.discover_depth)
        return base + settings.outlink_weight * math.log1p(len(result.outlinks))


def apply_score(job, scorer: Scorer, result: FetchResult) -> FetchResult:
    """Return a copy of ``result`` whose resource carries the new score."""
    value = float(scorer.score(job, result))
    return replace(result, resource=replace(result.resource, score=value))
