"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import time
from typing import Dict, List, Optional

import pytest

from roundcrawler.crawler.resource import FetchedContent, ParsedPage, Resource
from roundcrawler.crawler.scheduler import CrawlJob
from roundcrawler.errors import FetchFailure
from roundcrawler.storage.crawldb import MemoryResourceStore
from roundcrawler.utils.config import CrawlSettings


class FakeWeb:
    """
    In-memory web: each page body is its outlinks, one per line.
    URLs listed in ``failing`` raise FetchFailure.
    """

    def __init__(self, pages: Optional[Dict[str, List[str]]] = None, failing: Optional[set] = None):
        self.pages = pages or {}
        self.failing = failing or set()
        self.calls: List[str] = []
        self.starts: List[float] = []

    async def fetch(self, resource: Resource) -> FetchedContent:
        self.starts.append(time.monotonic())
        self.calls.append(resource.url)
        if resource.url in self.failing or resource.url not in self.pages:
            raise FetchFailure(resource.url, "HTTP 503")
        body = "\n".join(self.pages[resource.url]).encode("utf-8")
        return FetchedContent(content=body, content_type="text/plain", status_code=200)

    @staticmethod
    def parse(url: str, raw_content: bytes) -> ParsedPage:
        links = [line for line in raw_content.decode("utf-8").splitlines() if line]
        return ParsedPage(fields={"links": len(links)}, outlinks=tuple(links))


def accept_all(url: str) -> bool:
    return True


@pytest.fixture
def settings() -> CrawlSettings:
    return CrawlSettings(fetch_delay=0.0, top_n=10, top_groups=5)


@pytest.fixture
def job(settings) -> CrawlJob:
    return CrawlJob(job_id="job1", settings=settings)


@pytest.fixture
def store() -> MemoryResourceStore:
    return MemoryResourceStore()


@pytest.fixture
def make_resource():
    """Build resources for job1 with explicit fields."""

    def _make(url: str, depth: int = 0, score: float = 0.0, **changes) -> Resource:
        resource = Resource.new("job1", url, discover_depth=depth, score=score)
        for key, value in changes.items():
            setattr(resource, key, value)
        return resource

    return _make
