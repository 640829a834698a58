"""
Per-group fair fetching with a politeness delay, plus the default aiohttp
fetch function.
"""

import asyncio
import aiohttp
import logging
import time
from typing import Awaitable, Callable, Dict, Optional
from aiohttp import ClientSession, ClientTimeout, ClientError

from .resource import FetchedContent, FetchResult, ParsedPage, Resource, ResourceStatus, WorkUnit
from ..errors import FetchFailure, ParseFailure


FetchFunction = Callable[[Resource], Awaitable[FetchedContent]]
ParseFunction = Callable[[str, bytes], ParsedPage]
OutlinkFilterFunction = Callable[[str], bool]


class PolitenessLimiter:
    """
    Enforces a minimum interval between successive request starts.
    One instance per group; never shared across groups.
    """

    def __init__(self, delay: float):
        self.delay = max(0.0, delay)
        self._last_start: Optional[float] = None

    async def wait(self):
        """Suspend until ``delay`` has elapsed since the previous start, then mark a new start."""
        loop = asyncio.get_running_loop()
        if self._last_start is not None:
            # Loop until the clock agrees; sleep() may wake a hair early
            remaining = self._last_start + self.delay - loop.time()
            while remaining > 0:
                await asyncio.sleep(remaining)
                remaining = self._last_start + self.delay - loop.time()
        self._last_start = loop.time()


class FairFetcher:
    """
    Fetches one group's work unit strictly in order.

    Iterating the instance yields one FetchResult per resource, lazily, so
    downstream stages can start before the group finishes. A failing
    resource ends in ERROR and never aborts the rest of the unit.
    """

    def __init__(self, job, work_unit: WorkUnit, delay: float,
                 fetch_fn: FetchFunction, parse_fn: ParseFunction,
                 outlink_filter_fn: OutlinkFilterFunction):
        self.job = job
        self.work_unit = work_unit
        self.fetch_fn = fetch_fn
        self.parse_fn = parse_fn
        self.outlink_filter_fn = outlink_filter_fn
        self.limiter = PolitenessLimiter(delay)
        self.logger = logging.getLogger(__name__)

    def __aiter__(self):
        return self._run()

    async def _run(self):
        for resource in self.work_unit.resources:
            await self.limiter.wait()
            yield await self._fetch_one(resource)

    async def _fetch_one(self, resource: Resource) -> FetchResult:
        fetching = resource.advance(ResourceStatus.FETCHING)
        try:
            fetched = await self.fetch_fn(fetching)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return self._failed(fetching, e)

        timestamp = time.time()
        try:
            page = self.parse_fn(fetching.url, fetched.content)
        except Exception as e:
            return self._failed(fetching, ParseFailure(fetching.url, str(e)))

        outlinks = self._filter_outlinks(fetching.url, page.outlinks)
        done = fetching.advance(ResourceStatus.FETCHED, fetch_timestamp=timestamp, error=None)

        self.logger.debug(f"Fetched {done.url}: {len(fetched.content)} bytes, {len(outlinks)} outlinks")
        return FetchResult(
            resource=done,
            raw_content=fetched.content,
            content_type=fetched.content_type,
            status_code=fetched.status_code,
            parsed_fields=dict(page.fields),
            outlinks=outlinks,
        )

    def _failed(self, resource: Resource, cause: Exception) -> FetchResult:
        if isinstance(cause, FetchFailure):
            reason = cause.reason
        elif isinstance(cause, ParseFailure):
            reason = f"parse: {cause.reason}"
        else:
            reason = str(cause) or cause.__class__.__name__
        self.logger.warning(f"Failed to fetch {resource.url} (group {self.work_unit.group}): {reason}")
        failed = resource.advance(
            ResourceStatus.ERROR,
            fetch_timestamp=time.time(),
            retry_count=resource.retry_count + 1,
            error=reason,
        )
        return FetchResult(resource=failed)

    def _filter_outlinks(self, page_url: str, outlinks) -> tuple:
        seen = set()
        accepted = []
        for link in outlinks:
            if not link or link == page_url or link in seen:
                continue
            seen.add(link)
            try:
                ok = self.outlink_filter_fn(link)
            except Exception as e:
                self.logger.debug(f"Outlink filter error for {link}: {e}")
                ok = False
            if ok:
                accepted.append(link)
        return tuple(accepted)


class WebFetcher:
    """
    Default fetch function: downloads a resource over HTTP with aiohttp.
    HTTP error statuses (400 and above), oversize bodies, timeouts and
    transport errors raise FetchFailure. Redirects are followed.
    """

    def __init__(self, user_agent: str, request_timeout: int = 30,
                 max_concurrent_requests: int = 10, max_content_bytes: int = 10 * 1024 * 1024):
        self.user_agent = user_agent
        self.request_timeout = request_timeout
        self.max_concurrent_requests = max_concurrent_requests
        self.max_content_bytes = max_content_bytes

        self.logger = logging.getLogger(__name__)

        # Session management
        self.session: Optional[ClientSession] = None
        self.semaphore = asyncio.Semaphore(max_concurrent_requests)

        # Statistics
        self.stats = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
            'total_bytes_downloaded': 0
        }

    async def __aenter__(self):
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def start(self):
        """Initialize the fetcher session."""
        if self.session is None:
            timeout = ClientTimeout(total=self.request_timeout)
            headers = {'User-Agent': self.user_agent}

            self.session = aiohttp.ClientSession(
                timeout=timeout,
                headers=headers,
                connector=aiohttp.TCPConnector(
                    limit=self.max_concurrent_requests * 2,
                    ttl_dns_cache=300,
                    use_dns_cache=True
                )
            )
            self.logger.info("WebFetcher session started")

    async def close(self):
        """Close the fetcher session."""
        if self.session:
            await self.session.close()
            self.session = None
            self.logger.info("WebFetcher session closed")

    async def __call__(self, resource: Resource) -> FetchedContent:
        return await self.fetch(resource.url)

    async def fetch(self, url: str) -> FetchedContent:
        """
        Fetch a single URL.

        Raises:
            FetchFailure: on timeouts, client errors, a status of 400 or above, or oversize content
        """
        if self.session is None:
            raise FetchFailure(url, "fetcher session not started")

        async with self.semaphore:
            self.stats['total_requests'] += 1
            try:
                async with self.session.get(url) as response:
                    if response.status >= 400:
                        raise FetchFailure(url, f"HTTP {response.status}")

                    content = await self._read_content_safely(url, response)
                    headers = dict(response.headers)

                    self.stats['successful_requests'] += 1
                    self.stats['total_bytes_downloaded'] += len(content)
                    self.logger.debug(f"Fetched {url}: {response.status} ({len(content)} bytes)")

                    return FetchedContent(
                        content=content,
                        content_type=response.headers.get('content-type', '').lower() or None,
                        status_code=response.status,
                        headers=headers,
                    )

            except FetchFailure:
                self.stats['failed_requests'] += 1
                raise
            except asyncio.TimeoutError:
                self.stats['failed_requests'] += 1
                raise FetchFailure(url, "Request timeout")
            except ClientError as e:
                self.stats['failed_requests'] += 1
                raise FetchFailure(url, f"Client error: {e}")

    async def _read_content_safely(self, url: str, response) -> bytes:
        """Read the body in chunks, enforcing the size limit."""
        content_length = response.headers.get('content-length')
        if content_length and content_length.isdigit() and int(content_length) > self.max_content_bytes:
            raise FetchFailure(url, f"Content too large ({content_length} bytes)")

        chunks = []
        size = 0
        async for chunk in response.content.iter_chunked(8192):
            size += len(chunk)
            if size > self.max_content_bytes:
                raise FetchFailure(url, "Content exceeded size limit during reading")
            chunks.append(chunk)
        return b''.join(chunks)

    def get_stats(self) -> Dict[str, int]:
        """Get fetcher statistics."""
        return self.stats.copy()
