#!/usr/bin/env python3
"""
Main entry point for the round crawler.
"""

import asyncio
import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from roundcrawler import __version__
from roundcrawler.crawler.fetcher import WebFetcher
from roundcrawler.crawler.parser import ContentParser, OutlinkFilter
from roundcrawler.crawler.scheduler import CrawlJob, JobDriver
from roundcrawler.crawler.sinks import SinkFanout
from roundcrawler.errors import ConfigurationError, CrawlerError, SinkFailure
from roundcrawler.storage.content_store import create_content_store
from roundcrawler.storage.crawldb import MemoryResourceStore, RedisResourceStore
from roundcrawler.storage.publisher import RedisStreamPublisher
from roundcrawler.utils.config import Config, CrawlSettings, load_config
from roundcrawler.utils.logger import log_system_info, setup_logging
from roundcrawler.utils.monitoring import CrawlerMonitor
from roundcrawler.utils.retry import RetryPolicy


class CrawlerApp:
    """Main application class for the round crawler."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._shutdown_event: Optional[asyncio.Event] = None

    def setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            self.logger.info(f"Received signal {signum}, initiating shutdown...")
            self._shutdown_event.set()

        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, signal_handler, signum)
            except NotImplementedError:
                pass

    async def run(self, config: Config, job_id: str, seed_urls: List[str], dry_run: bool = False) -> int:
        """Run the crawl job; returns the process exit code."""
        self._shutdown_event = asyncio.Event()
        self.setup_signal_handlers()

        settings = CrawlSettings.from_config(config, job_id)
        job = CrawlJob(job_id=job_id, settings=settings)

        self.logger.info("=== ROUND CRAWLER STARTING ===")
        self.logger.info(f"Job id: {job_id}")
        self.logger.info(f"Iterations: {config.crawler.iterations}")
        self.logger.info(f"Top groups: {settings.top_groups}, top N per group: {settings.top_n}")
        self.logger.info(f"Fetch delay: {settings.fetch_delay}s")
        self.logger.info(f"Sort by: {settings.sort_by}, group by: {settings.group_by}")
        self.logger.info(f"Output path: {settings.output_path}")
        self.logger.info(f"Streaming: {settings.stream_enabled} ({settings.stream_topic})")

        if config.resource_store.type == 'memory' or dry_run:
            resource_store = MemoryResourceStore()
        else:
            resource_store = RedisResourceStore.from_url(
                config.resource_store.url, job_id, config.resource_store.key_prefix
            )
        content_store = create_content_store(config.content_store, settings.output_path)
        publisher = None
        if settings.stream_enabled:
            publisher = RedisStreamPublisher(
                config.streaming.listeners, settings.stream_topic, config.streaming.maxlen
            )

        monitor = CrawlerMonitor(config.monitoring.metrics_enabled, config.monitoring.prometheus_port)
        monitor.start_server()

        fetcher = WebFetcher(
            user_agent=config.crawler.user_agent,
            request_timeout=config.crawler.request_timeout,
            max_concurrent_requests=settings.max_concurrent_groups,
            max_content_bytes=config.crawler.max_content_bytes,
        )

        try:
            await resource_store.initialize()
            await content_store.initialize()
            await fetcher.start()

            driver = JobDriver(
                job,
                resource_store,
                SinkFanout(resource_store, content_store, publisher, RetryPolicy.from_config(config.sink)),
                fetch_fn=fetcher,
                parse_fn=ContentParser(),
                outlink_filter_fn=OutlinkFilter(config.crawler.allowed_domains, config.crawler.blocked_domains),
                monitor=monitor,
            )

            if seed_urls:
                await driver.inject(seed_urls)

            if dry_run:
                counts = await resource_store.count_by_status()
                self.logger.info(f"DRY RUN MODE: resource counts {counts}, no crawling performed")
                return 0

            crawl_task = asyncio.create_task(driver.run(config.crawler.iterations))
            shutdown_task = asyncio.create_task(self._shutdown_event.wait())

            done, pending = await asyncio.wait(
                [crawl_task, shutdown_task],
                return_when=asyncio.FIRST_COMPLETED
            )

            for task in pending:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

            if shutdown_task in done:
                self.logger.info("Shutdown requested, in-flight round aborted")
                return 0

            crawl_task.result()
            self.logger.info(f"Summary: {monitor.get_summary()}")
            return 0

        except SinkFailure as e:
            self.logger.error(f"Crawl aborted: round {e.task_id} failed at step '{e.step}': {e.cause}")
            return 1
        except CrawlerError as e:
            self.logger.error(f"Fatal error: {e}", exc_info=True)
            return 1

        finally:
            await fetcher.close()
            await content_store.close()
            await resource_store.close()
            self.logger.info("=== ROUND CRAWLER FINISHED ===")


def build_overrides(args: argparse.Namespace) -> Dict[str, Dict[str, Any]]:
    """Map command line flags onto configuration sections."""
    return {
        'crawler': {
            'top_n': args.top_n,
            'top_groups': args.top_groups,
            'iterations': args.iterations,
            'fetch_delay': args.fetch_delay,
            'sort_by': args.sort_by,
            'group_by': args.group_by,
            'max_concurrent_groups': args.workers,
        },
        'resource_store': {
            'url': args.crawldb,
        },
        'content_store': {
            'output_path': args.out,
        },
        'streaming': {
            'enabled': True if args.stream_enable else None,
            'listeners': args.stream_listeners.split(',') if args.stream_listeners else None,
            'topic': args.stream_topic,
        },
    }


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Round Crawler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --id job1 --seed https://example.com   # Inject a seed and run one round
  python main.py --id job1 --iterations 10               # Run ten rounds
  python main.py --id job1 --iterations -1               # Crawl until the frontier is empty
  python main.py --id job1 --dry-run                     # Test configuration only
        """
    )

    parser.add_argument('--config', default=None,
                        help='Path to configuration file (default: config.yaml if present)')
    parser.add_argument('-id', '--id', dest='job_id', required=True,
                        help='Job id')
    parser.add_argument('-cdb', '--crawldb', help='Resource store URL, e.g. redis://localhost:6379/0')
    parser.add_argument('-o', '--out', help='Output path, default is the job id')
    parser.add_argument('-ke', '--stream-enable', action='store_true',
                        help='Stream fetched content to a Redis stream')
    parser.add_argument('-kls', '--stream-listeners',
                        help='Comma separated stream endpoints, e.g. host1:6379,host2:6379')
    parser.add_argument('-ktp', '--stream-topic', help='Stream name; {job_id} is substituted')
    parser.add_argument('-tn', '--top-n', type=int, help='Top resources per group selected for a round')
    parser.add_argument('-tg', '--top-groups', type=int, help='Max groups selected for a round')
    parser.add_argument('-i', '--iterations', type=int,
                        help='Number of rounds; any number <= 0 crawls until the frontier is empty')
    parser.add_argument('-fd', '--fetch-delay', type=float,
                        help='Delay in seconds between two fetch starts in the same group')
    parser.add_argument('--sort-by', help="Frontier order, e.g. 'discover_depth asc, score desc'")
    parser.add_argument('--group-by', help='Partition key: group, host or domain')
    parser.add_argument('--workers', type=int, help='Max groups fetched concurrently')
    parser.add_argument('--seed', action='append', default=[], help='Seed URL to inject (repeatable)')
    parser.add_argument('--dry-run', action='store_true',
                        help='Test configuration without actually crawling')
    parser.add_argument('--version', action='version', version=f'Round Crawler {__version__}')

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    config_path = args.config
    if config_path is None and Path('config.yaml').exists():
        config_path = 'config.yaml'

    try:
        config = load_config(config_path, build_overrides(args))
    except ConfigurationError as e:
        print(f"Configuration error: {e}")
        return 1

    setup_logging(config.logging)
    log_system_info()

    seed_urls = list(config.crawler.seed_urls) + list(args.seed)

    app = CrawlerApp()
    try:
        return asyncio.run(app.run(config, args.job_id, seed_urls, dry_run=args.dry_run))
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 1


if __name__ == '__main__':
    sys.exit(main())
