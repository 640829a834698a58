"""Unit tests for outlink resolution."""

from __future__ import annotations

import pytest

from roundcrawler.crawler.outlinks import OutlinkResolver
from roundcrawler.crawler.resource import FetchResult, ResourceStatus


@pytest.fixture
def fetched(make_resource):
    def _fetched(url, depth=0, outlinks=(), score=0.0):
        resource = make_resource(url, depth=depth, score=score,
                                 status=ResourceStatus.FETCHED, fetch_timestamp=1000.0)
        return FetchResult(resource=resource, outlinks=tuple(outlinks))
    return _fetched


class TestOutlinkResolver:
    """Tests for reducing (link, parent) pairs."""

    LINK = "http://c.test/page"

    @pytest.mark.parametrize("order", [(0, 1), (1, 0)])
    def test_shallowest_parent_wins_in_any_order(self, job, fetched, order) -> None:
        results = [
            fetched("http://a.test/", depth=2, outlinks=[self.LINK]),
            fetched("http://b.test/", depth=5, outlinks=[self.LINK]),
        ]

        (resource,) = OutlinkResolver().resolve(job, [results[i] for i in order])

        assert resource.discover_depth == 3
        assert resource.parent_id == results[0].resource.id

    @pytest.mark.parametrize("order", [(0, 1), (1, 0)])
    def test_equal_depth_ties_go_to_smaller_url(self, job, fetched, order) -> None:
        results = [
            fetched("http://a.test/", depth=1, outlinks=[self.LINK]),
            fetched("http://z.test/", depth=1, outlinks=[self.LINK]),
        ]

        (resource,) = OutlinkResolver().resolve(job, [results[i] for i in order])

        assert resource.parent_id == results[0].resource.id

    def test_new_resource_fields(self, job, fetched) -> None:
        parent = fetched("http://a.test/", depth=0, score=0.7, outlinks=[self.LINK])

        (resource,) = OutlinkResolver().resolve(job, [parent])

        assert resource.url == self.LINK
        assert resource.group == "c.test"
        assert resource.status is ResourceStatus.UNFETCHED
        assert resource.job_id == job.job_id
        assert resource.score == 0.7
        assert resource.fetch_timestamp == 1000.0

    def test_failed_results_contribute_nothing(self, job, make_resource) -> None:
        failed = FetchResult(resource=make_resource("http://a.test/", status=ResourceStatus.ERROR),
                             outlinks=(self.LINK,))

        assert OutlinkResolver().resolve(job, [failed]) == []

    def test_sorted_by_url(self, job, fetched) -> None:
        parent = fetched("http://a.test/", outlinks=["http://z.test/", "http://b.test/"])

        resources = OutlinkResolver().resolve(job, [parent])

        assert [r.url for r in resources] == ["http://b.test/", "http://z.test/"]

    def test_max_depth(self, job, fetched) -> None:
        results = [
            fetched("http://a.test/", depth=0, outlinks=["http://b.test/"]),
            fetched("http://d.test/", depth=1, outlinks=["http://e.test/"]),
        ]

        resources = OutlinkResolver(max_depth=1).resolve(job, results)

        assert [r.url for r in resources] == ["http://b.test/"]
