"""Unit tests for configuration loading and validation."""

from __future__ import annotations

import pytest

from roundcrawler.errors import ConfigurationError
from roundcrawler.utils.config import ConfigManager, CrawlSettings, load_config
from roundcrawler.utils.retry import RetryPolicy


def write_config(tmp_path, text: str) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(text)
    return str(path)


class TestLoadConfig:
    """Tests for YAML loading."""

    def test_defaults_without_file(self) -> None:
        config = load_config(None)

        assert config.crawler.top_n == 100
        assert config.crawler.sort_by == "score desc"
        assert config.resource_store.type == "redis"
        assert config.sink.on_failure == "retry"

    def test_partial_file_keeps_defaults(self, tmp_path) -> None:
        path = write_config(tmp_path, "crawler:\n  top_n: 7\n  fetch_delay: 0.5\n")

        config = load_config(path)

        assert config.crawler.top_n == 7
        assert config.crawler.fetch_delay == 0.5
        assert config.crawler.top_groups == 256

    def test_overrides_replace_file_values(self, tmp_path) -> None:
        path = write_config(tmp_path, "crawler:\n  top_n: 7\n")

        config = load_config(path, {"crawler": {"top_n": 3, "iterations": None}})

        assert config.crawler.top_n == 3
        assert config.crawler.iterations == 1

    def test_missing_file(self, tmp_path) -> None:
        with pytest.raises(ConfigurationError):
            load_config(str(tmp_path / "missing.yaml"))

    def test_unknown_section(self, tmp_path) -> None:
        path = write_config(tmp_path, "spark:\n  master: local\n")

        with pytest.raises(ConfigurationError, match="Unknown configuration sections"):
            load_config(path)

    def test_unknown_key(self, tmp_path) -> None:
        path = write_config(tmp_path, "crawler:\n  topn: 7\n")

        with pytest.raises(ConfigurationError, match="topn"):
            load_config(path)


class TestValidation:
    """Invalid values are rejected before any round runs."""

    @pytest.mark.parametrize("overrides", [
        {"crawler": {"sort_by": "popularity desc"}},
        {"crawler": {"sort_by": "score sideways"}},
        {"crawler": {"group_by": "country"}},
        {"crawler": {"top_n": 0}},
        {"crawler": {"top_groups": 0}},
        {"crawler": {"fetch_delay": -1}},
        {"resource_store": {"type": "solr"}},
        {"sink": {"on_failure": "ignore"}},
        {"streaming": {"enabled": True, "listeners": []}},
    ])
    def test_rejects_invalid_values(self, overrides) -> None:
        with pytest.raises(ConfigurationError):
            ConfigManager(None).load_config(overrides)

    def test_accepts_compound_sort(self) -> None:
        config = load_config(None, {"crawler": {"sort_by": "discover_depth asc, score desc"}})

        assert config.crawler.sort_by == "discover_depth asc, score desc"


class TestCrawlSettings:
    """Tests for the immutable per-job snapshot."""

    def test_output_path_defaults_to_job_id(self) -> None:
        settings = CrawlSettings.from_config(load_config(None), "job42")

        assert settings.output_path == "job42"

    def test_topic_is_formatted_with_job_id(self) -> None:
        config = load_config(None, {"streaming": {"topic": "crawl_{job_id}"}})

        settings = CrawlSettings.from_config(config, "job42")

        assert settings.stream_topic == "crawl_job42"

    def test_settings_are_frozen(self) -> None:
        settings = CrawlSettings()

        with pytest.raises(AttributeError):
            settings.top_n = 5  # type: ignore[misc]


class TestRetryPolicy:
    """Sink failure policy built from config."""

    def test_abort_means_single_attempt(self) -> None:
        config = load_config(None, {"sink": {"on_failure": "abort"}})

        assert RetryPolicy.from_config(config.sink).max_attempts == 1

    def test_backoff_is_capped(self) -> None:
        policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=3.0)

        assert [policy.calculate_delay(i) for i in range(4)] == [1.0, 2.0, 3.0, 3.0]
