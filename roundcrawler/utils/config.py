"""
Configuration management for the crawl scheduler.
"""

import yaml
import logging
from pathlib import Path
from typing import Dict, List, Any, Optional
from dataclasses import dataclass, field, fields, replace

from ..crawler.frontier import parse_group_policy, parse_sort_policy
from ..errors import ConfigurationError


@dataclass
class CrawlerConfig:
    """Configuration for crawler behavior."""
    seed_urls: List[str] = field(default_factory=list)
    top_n: int = 100
    top_groups: int = 256
    iterations: int = 1
    fetch_delay: float = 1.0
    sort_by: str = "score desc"
    group_by: str = "group"
    max_concurrent_groups: int = 16
    request_timeout: int = 30
    retry_attempts: int = 3
    max_depth: int = 0
    max_content_bytes: int = 10 * 1024 * 1024
    user_agent: str = "RoundCrawler/1.0"
    allowed_domains: List[str] = field(default_factory=list)
    blocked_domains: List[str] = field(default_factory=list)
    outlink_weight: float = 0.1
    error_decay: float = 0.5


@dataclass
class ResourceStoreConfig:
    """Configuration for the authoritative resource store."""
    type: str = "redis"
    url: str = "redis://localhost:6379/0"
    key_prefix: str = "roundcrawler"


@dataclass
class ContentStoreConfig:
    """Configuration for raw content storage."""
    type: str = "file"
    output_path: str = ""
    cassandra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StreamingConfig:
    """Configuration for streaming raw content to a Redis stream."""
    enabled: bool = False
    listeners: List[str] = field(default_factory=lambda: ["localhost:6379"])
    topic: str = "roundcrawler_{job_id}"
    maxlen: Optional[int] = None


@dataclass
class SinkConfig:
    """Configuration for commit-time sink failures."""
    on_failure: str = "retry"
    max_attempts: int = 3
    backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str = "INFO"
    file: str = "logs/crawler.log"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    json: bool = False


@dataclass
class MonitoringConfig:
    """Configuration for monitoring."""
    prometheus_port: int = 8000
    metrics_enabled: bool = False


@dataclass
class Config:
    """Main configuration class."""
    crawler: CrawlerConfig = field(default_factory=CrawlerConfig)
    resource_store: ResourceStoreConfig = field(default_factory=ResourceStoreConfig)
    content_store: ContentStoreConfig = field(default_factory=ContentStoreConfig)
    streaming: StreamingConfig = field(default_factory=StreamingConfig)
    sink: SinkConfig = field(default_factory=SinkConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)


@dataclass(frozen=True)
class CrawlSettings:
    """
    Immutable per-job snapshot of everything a round reads.
    Passed explicitly into every worker task.
    """
    top_n: int = 100
    top_groups: int = 256
    fetch_delay: float = 1.0
    sort_by: str = "score desc"
    group_by: str = "group"
    max_concurrent_groups: int = 16
    retry_attempts: int = 3
    max_depth: int = 0
    outlink_weight: float = 0.1
    error_decay: float = 0.5
    output_path: str = ""
    stream_enabled: bool = False
    stream_topic: str = ""

    @classmethod
    def from_config(cls, config: Config, job_id: str) -> 'CrawlSettings':
        """Snapshot the crawl-relevant parts of a loaded config."""
        crawler = config.crawler
        return cls(
            top_n=crawler.top_n,
            top_groups=crawler.top_groups,
            fetch_delay=crawler.fetch_delay,
            sort_by=crawler.sort_by,
            group_by=crawler.group_by,
            max_concurrent_groups=crawler.max_concurrent_groups,
            retry_attempts=crawler.retry_attempts,
            max_depth=crawler.max_depth,
            outlink_weight=crawler.outlink_weight,
            error_decay=crawler.error_decay,
            output_path=config.content_store.output_path or job_id,
            stream_enabled=config.streaming.enabled,
            stream_topic=config.streaming.topic.format(job_id=job_id),
        )


_SECTIONS = {
    'crawler': CrawlerConfig,
    'resource_store': ResourceStoreConfig,
    'content_store': ContentStoreConfig,
    'streaming': StreamingConfig,
    'sink': SinkConfig,
    'logging': LoggingConfig,
    'monitoring': MonitoringConfig,
}


def _build_section(name: str, section_cls, data: Optional[Dict[str, Any]]):
    if data is None:
        return section_cls()
    if not isinstance(data, dict):
        raise ConfigurationError(f"Section '{name}' must be a mapping")
    known = {f.name for f in fields(section_cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigurationError(f"Unknown keys in section '{name}': {sorted(unknown)}")
    return section_cls(**data)


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_path: Optional[str] = "config.yaml"):
        self.config_path = Path(config_path) if config_path else None
        self._config: Optional[Config] = None

    def load_config(self, overrides: Optional[Dict[str, Dict[str, Any]]] = None) -> Config:
        """
        Load configuration from YAML file, then apply per-section overrides.

        Args:
            overrides: Mapping of section name to the keys to replace,
                typically built from command line flags.
        """
        config_data: Dict[str, Any] = {}
        if self.config_path is not None:
            if not self.config_path.exists():
                raise ConfigurationError(f"Configuration file not found: {self.config_path}")
            with open(self.config_path, 'r') as file:
                try:
                    config_data = yaml.safe_load(file) or {}
                except yaml.YAMLError as e:
                    raise ConfigurationError(f"Invalid YAML in {self.config_path}: {e}")

        unknown = set(config_data) - set(_SECTIONS)
        if unknown:
            raise ConfigurationError(f"Unknown configuration sections: {sorted(unknown)}")

        sections = {
            name: _build_section(name, section_cls, config_data.get(name))
            for name, section_cls in _SECTIONS.items()
        }

        for name, values in (overrides or {}).items():
            if name not in sections:
                raise ConfigurationError(f"Unknown configuration section: {name}")
            values = {k: v for k, v in values.items() if v is not None}
            if values:
                try:
                    sections[name] = replace(sections[name], **values)
                except TypeError as e:
                    raise ConfigurationError(f"Invalid override for '{name}': {e}")

        self._config = Config(**sections)
        self._validate_config()
        return self._config

    def _validate_config(self):
        """Validate configuration values."""
        if not self._config:
            raise ConfigurationError("Configuration not loaded")

        crawler = self._config.crawler

        # Group and sort keys must be understood before any round runs
        try:
            parse_sort_policy(crawler.sort_by)
            parse_group_policy(crawler.group_by)
        except ValueError as e:
            raise ConfigurationError(str(e))

        if crawler.top_n < 1:
            raise ConfigurationError("top_n must be at least 1")

        if crawler.top_groups < 1:
            raise ConfigurationError("top_groups must be at least 1")

        if crawler.fetch_delay < 0:
            raise ConfigurationError("fetch_delay must be non-negative")

        if crawler.max_concurrent_groups < 1:
            raise ConfigurationError("max_concurrent_groups must be at least 1")

        if crawler.retry_attempts < 1:
            raise ConfigurationError("retry_attempts must be at least 1")

        if self._config.resource_store.type not in ('redis', 'memory'):
            raise ConfigurationError("Resource store type must be 'redis' or 'memory'")

        if self._config.content_store.type not in ('file', 'cassandra'):
            raise ConfigurationError("Content store type must be 'file' or 'cassandra'")

        streaming = self._config.streaming
        if streaming.enabled and not streaming.listeners:
            raise ConfigurationError("Streaming is enabled but no listeners are configured")

        sink = self._config.sink
        if sink.on_failure not in ('retry', 'abort'):
            raise ConfigurationError("sink.on_failure must be 'retry' or 'abort'")

        if sink.max_attempts < 1:
            raise ConfigurationError("sink.max_attempts must be at least 1")

        logging.getLogger(__name__).info("Configuration validation passed")

    @property
    def config(self) -> Config:
        """Get the loaded configuration."""
        if not self._config:
            raise ConfigurationError("Configuration not loaded. Call load_config() first.")
        return self._config


def load_config(config_path: Optional[str] = "config.yaml",
                overrides: Optional[Dict[str, Dict[str, Any]]] = None) -> Config:
    """Load configuration from file."""
    return ConfigManager(config_path).load_config(overrides)
