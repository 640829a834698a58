"""Unit tests for frontier selection and partitioning."""

from __future__ import annotations

import pytest

from roundcrawler.crawler.frontier import (
    FrontierSelector,
    parse_group_policy,
    parse_sort_policy,
    partition,
    rank_frontier,
)
from roundcrawler.crawler.resource import ResourceStatus


# =============================================================================
# Policy parsing
# =============================================================================


class TestParsePolicies:
    """Tests for sort and group key parsing."""

    def test_default_sort_is_score_descending(self) -> None:
        assert parse_sort_policy(None).terms == (("score", True),)

    def test_compound_sort(self) -> None:
        policy = parse_sort_policy("discover_depth asc, score desc")

        assert policy.terms == (("discover_depth", False), ("score", True))

    def test_direction_defaults_to_ascending(self) -> None:
        assert parse_sort_policy("url").terms == (("url", False),)

    @pytest.mark.parametrize("value", ["rank desc", "score up", "score desc extra", ","])
    def test_invalid_sort(self, value) -> None:
        with pytest.raises(ValueError):
            parse_sort_policy(value)

    def test_invalid_group(self) -> None:
        with pytest.raises(ValueError):
            parse_group_policy("tld")

    def test_domain_group(self, make_resource) -> None:
        policy = parse_group_policy("domain")

        assert policy.key(make_resource("http://news.example.com:8080/a")) == "example.com"


# =============================================================================
# rank_frontier
# =============================================================================


class TestRankFrontier:
    """Tests for group and per-group bounds."""

    def test_bounds_groups_and_items(self, make_resource) -> None:
        resources = [
            make_resource(f"http://site{g}.test/{i}", score=float(i))
            for g in range(6) for i in range(5)
        ]

        selected = rank_frontier(
            resources, parse_group_policy("group"), parse_sort_policy("score desc"), 3, 2
        )

        groups = {r.group for r in selected}
        assert len(groups) == 3
        assert len(selected) == 6
        for group in groups:
            assert [r.score for r in selected if r.group == group] == [4.0, 3.0]

    def test_groups_ranked_by_best_resource_then_key(self, make_resource) -> None:
        resources = [
            make_resource("http://b.test/1", score=0.5),
            make_resource("http://a.test/1", score=0.5),
            make_resource("http://c.test/1", score=0.9),
            make_resource("http://d.test/1", score=0.1),
        ]

        selected = rank_frontier(
            resources, parse_group_policy("group"), parse_sort_policy("score desc"), 3, 10
        )

        assert [r.group for r in selected] == ["c.test", "a.test", "b.test"]

    def test_ascending_depth_order(self, make_resource) -> None:
        resources = [
            make_resource("http://a.test/deep", depth=3),
            make_resource("http://a.test/seed", depth=0),
            make_resource("http://a.test/mid", depth=1),
        ]

        selected = rank_frontier(
            resources, parse_group_policy("group"), parse_sort_policy("discover_depth asc"), 1, 10
        )

        assert [r.discover_depth for r in selected] == [0, 1, 3]


# =============================================================================
# partition
# =============================================================================


class TestPartition:
    """Tests for the group partitioner."""

    def test_preserves_order_within_group(self, make_resource) -> None:
        resources = [
            make_resource("http://a.test/1"),
            make_resource("http://b.test/1"),
            make_resource("http://a.test/2"),
            make_resource("http://a.test/3"),
        ]

        units = partition(resources)

        assert [unit.group for unit in units] == ["a.test", "b.test"]
        assert [r.url for r in units[0].resources] == [
            "http://a.test/1", "http://a.test/2", "http://a.test/3"
        ]

    def test_empty_input(self) -> None:
        assert partition([]) == []


# =============================================================================
# FrontierSelector
# =============================================================================


class TestFrontierSelector:
    """Tests for selecting against a store."""

    @pytest.mark.asyncio
    async def test_empty_store_selects_nothing(self, job, store) -> None:
        assert await FrontierSelector(store).select(job) == []

    @pytest.mark.asyncio
    async def test_never_exceeds_limits(self, job, store, make_resource) -> None:
        for g in range(8):
            for i in range(12):
                await store.upsert(make_resource(f"http://g{g}.test/{i}", score=i / 10))

        selected = await FrontierSelector(store).select(job, max_groups=5, top_n=10)

        groups = {r.group for r in selected}
        assert len(groups) == 5
        assert len(selected) == 50
        assert all(sum(1 for r in selected if r.group == g) <= 10 for g in groups)

    @pytest.mark.asyncio
    async def test_eligibility(self, job, store, make_resource) -> None:
        await store.upsert(make_resource("http://a.test/new"))
        await store.upsert(make_resource("http://a.test/done", status=ResourceStatus.FETCHED))
        await store.upsert(make_resource("http://a.test/retry", status=ResourceStatus.ERROR, retry_count=1))
        await store.upsert(make_resource(
            "http://a.test/dead", status=ResourceStatus.ERROR,
            retry_count=job.settings.retry_attempts,
        ))

        selected = await FrontierSelector(store).select(job, sort_by="url asc")

        assert [r.url for r in selected] == ["http://a.test/new", "http://a.test/retry"]
