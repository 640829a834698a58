"""
Monitoring and metrics collection for the crawl scheduler.
"""

import time
import logging
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server


class CrawlerMonitor:
    """Prometheus metrics for rounds, fetches and sinks, in a private registry."""

    def __init__(self, enable_server: bool = False, prometheus_port: int = 8000,
                 registry: Optional[CollectorRegistry] = None):
        self.logger = logging.getLogger(__name__)
        self.enable_server = enable_server
        self.prometheus_port = prometheus_port
        self.registry = registry or CollectorRegistry()
        self.start_time = time.time()

        self.rounds_total = Counter(
            'crawler_rounds_total',
            'Number of committed crawl rounds',
            registry=self.registry
        )
        self.resources_fetched_total = Counter(
            'crawler_resources_fetched_total',
            'Resources fetched successfully',
            registry=self.registry
        )
        self.fetch_errors_total = Counter(
            'crawler_fetch_errors_total',
            'Resources whose fetch or parse failed',
            registry=self.registry
        )
        self.outlinks_total = Counter(
            'crawler_outlinks_total',
            'New resources created from outlinks',
            registry=self.registry
        )
        self.sink_failures_total = Counter(
            'crawler_sink_failures_total',
            'Sink steps that failed after retries',
            ['step'],
            registry=self.registry
        )
        self.round_duration_seconds = Histogram(
            'crawler_round_duration_seconds',
            'Wall clock duration of a crawl round',
            registry=self.registry
        )
        self.frontier_size = Gauge(
            'crawler_frontier_size',
            'Resources selected for the current round',
            registry=self.registry
        )
        self.active_groups = Gauge(
            'crawler_active_groups',
            'Groups being fetched right now',
            registry=self.registry
        )

    def start_server(self):
        """Start Prometheus metrics HTTP server."""
        if not self.enable_server:
            return
        try:
            start_http_server(self.prometheus_port, registry=self.registry)
            self.logger.info(f"Prometheus metrics server started on port {self.prometheus_port}")
        except OSError as e:
            self.logger.error(f"Failed to start Prometheus server: {e}")

    def record_round(self, selected: int, fetched: int, errors: int, outlinks: int, duration: float):
        self.rounds_total.inc()
        self.frontier_size.set(selected)
        self.resources_fetched_total.inc(fetched)
        self.fetch_errors_total.inc(errors)
        self.outlinks_total.inc(outlinks)
        self.round_duration_seconds.observe(duration)

    def record_sink_failure(self, step: str):
        self.sink_failures_total.labels(step=step).inc()

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of the main counters."""
        runtime = time.time() - self.start_time
        fetched = self.registry.get_sample_value('crawler_resources_fetched_total') or 0.0
        return {
            'runtime_seconds': runtime,
            'rounds': self.registry.get_sample_value('crawler_rounds_total') or 0.0,
            'resources_fetched': fetched,
            'fetch_errors': self.registry.get_sample_value('crawler_fetch_errors_total') or 0.0,
            'outlinks_created': self.registry.get_sample_value('crawler_outlinks_total') or 0.0,
            'fetched_per_minute': fetched / (runtime / 60) if runtime > 0 else 0,
        }
