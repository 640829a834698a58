"""
Authoritative resource store ("crawl db").
Supports Redis for deployments and an in-memory backend for tests and dry runs.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

import redis.asyncio as redis

from ..crawler.frontier import GroupPolicy, SortPolicy, rank_frontier
from ..crawler.resource import Resource, ResourceStatus
from ..errors import StoreError


EligibleFilter = Callable[[Resource], bool]


class ResourceStore:
    """Abstract base class for resource stores."""

    async def initialize(self):
        """Initialize the store."""
        raise NotImplementedError

    async def query(self, eligible: EligibleFilter, group_policy: GroupPolicy,
                    sort_policy: SortPolicy, max_groups: int, top_n: int) -> List[Resource]:
        """Return the best eligible resources, grouped and bounded."""
        raise NotImplementedError

    async def upsert(self, resource: Resource) -> bool:
        """Create the resource if its URL is unknown. Returns True if created."""
        raise NotImplementedError

    async def update_status(self, resource: Resource, selectable: Optional[bool] = None):
        """
        Record status, score, timestamp and retry state of a fetched resource.

        Args:
            selectable: Whether later rounds may select the resource again.
                Defaults to true for UNFETCHED and ERROR resources.
        """
        raise NotImplementedError

    async def get(self, resource_id: str) -> Optional[Resource]:
        """Retrieve a resource by id."""
        raise NotImplementedError

    async def commit(self, task_id: str):
        """Visibility barrier at the end of a round."""
        raise NotImplementedError

    async def count_by_status(self) -> Dict[str, int]:
        """Number of resources per status."""
        raise NotImplementedError

    async def close(self):
        """Close store connections."""
        raise NotImplementedError


class MemoryResourceStore(ResourceStore):
    """In-process store; state is lost when the process exits."""

    def __init__(self):
        self.resources: Dict[str, Resource] = {}
        self.commits: List[str] = []
        self.logger = logging.getLogger(__name__)

    async def initialize(self):
        self.logger.info("In-memory resource store initialized")

    async def query(self, eligible, group_policy, sort_policy, max_groups, top_n):
        candidates = [r for r in self.resources.values() if eligible(r)]
        return rank_frontier(candidates, group_policy, sort_policy, max_groups, top_n)

    async def upsert(self, resource):
        if resource.id in self.resources:
            return False
        self.resources[resource.id] = resource
        return True

    async def update_status(self, resource, selectable=None):
        if resource.id not in self.resources:
            raise StoreError(f"Unknown resource: {resource.url}")
        self.resources[resource.id] = resource

    async def get(self, resource_id):
        return self.resources.get(resource_id)

    async def commit(self, task_id):
        self.commits.append(task_id)

    async def count_by_status(self):
        counts = {status.value: 0 for status in ResourceStatus}
        for resource in self.resources.values():
            counts[resource.status.value] += 1
        return counts

    async def close(self):
        pass


def _encode(resource: Resource) -> Dict[str, Any]:
    return {key: ('' if value is None else value) for key, value in resource.to_dict().items()}


def _decode(row: Dict[str, str]) -> Optional[Resource]:
    # A hash without a url was never fully written
    if not row or 'url' not in row:
        return None
    return Resource.from_dict(row)


def _default_selectable(resource: Resource) -> bool:
    return resource.status in (ResourceStatus.UNFETCHED, ResourceStatus.ERROR)


class RedisResourceStore(ResourceStore):
    """
    Redis-backed store. Layout, per job:

    * ``<prefix>:<job>:resource:<id>`` hash with the resource fields
    * ``<prefix>:<job>:frontier:<group>`` sorted set of selectable ids, by score
    * ``<prefix>:<job>:groups`` set of groups that ever had selectable ids
    * ``<prefix>:<job>:commit`` hash with the last committed task

    A resource is created together with its frontier entry in one
    transaction, so a failed write leaves nothing behind.
    """

    def __init__(self, redis_client: redis.Redis, job_id: str, key_prefix: str = "roundcrawler"):
        self.redis_client = redis_client
        self.job_id = job_id
        self.prefix = f"{key_prefix}:{job_id}"
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_url(cls, url: str, job_id: str, key_prefix: str = "roundcrawler") -> 'RedisResourceStore':
        return cls(redis.Redis.from_url(url, decode_responses=True), job_id, key_prefix)

    def _resource_key(self, resource_id: str) -> str:
        return f"{self.prefix}:resource:{resource_id}"

    def _frontier_key(self, group: str) -> str:
        return f"{self.prefix}:frontier:{group}"

    @property
    def _groups_key(self) -> str:
        return f"{self.prefix}:groups"

    async def initialize(self):
        try:
            await self.redis_client.ping()
            groups = await self.redis_client.scard(self._groups_key)
        except redis.RedisError as e:
            raise StoreError(f"Failed to connect to resource store: {e}")
        self.logger.info(f"Redis resource store initialized for job {self.job_id} ({groups} groups)")

    async def query(self, eligible, group_policy, sort_policy, max_groups, top_n):
        # The sorted sets hold the score, so the per-group limit can be
        # applied in Redis when score decides the order within a group
        limit_in_redis = group_policy.name == 'group' and sort_policy.terms[0] == ('score', True)
        try:
            groups = await self.redis_client.smembers(self._groups_key)
            candidates: List[Resource] = []
            for group in sorted(groups):
                if limit_in_redis:
                    candidates.extend(await self._top_of_group(group, eligible, top_n))
                else:
                    ids = await self.redis_client.zrange(self._frontier_key(group), 0, -1)
                    candidates.extend(r for r in await self._load(ids) if r is not None and eligible(r))
        except redis.RedisError as e:
            raise StoreError(f"Frontier query failed: {e}")

        return rank_frontier(candidates, group_policy, sort_policy, max_groups, top_n)

    async def _top_of_group(self, group: str, eligible: EligibleFilter, top_n: int) -> List[Resource]:
        """
        Best ``top_n`` eligible resources of a group by descending score,
        plus every resource tied with the last one kept.
        """
        key = self._frontier_key(group)
        selected: List[Resource] = []
        lowest: Optional[float] = None
        start = 0

        while len(selected) < top_n:
            page = await self.redis_client.zrevrange(key, start, start + top_n - 1, withscores=True)
            if not page:
                break
            resources = await self._load([resource_id for resource_id, _ in page])
            for (_, score), resource in zip(page, resources):
                if resource is not None and eligible(resource):
                    selected.append(resource)
                    lowest = score
            start += top_n

        if lowest is not None and len(selected) >= top_n:
            known = {resource.id for resource in selected}
            tied = [resource_id for resource_id in await self.redis_client.zrangebyscore(key, lowest, lowest)
                    if resource_id not in known]
            selected.extend(r for r in await self._load(tied) if r is not None and eligible(r))
        return selected

    async def _load(self, ids: List[str]) -> List[Optional[Resource]]:
        if not ids:
            return []
        async with self.redis_client.pipeline(transaction=False) as pipe:
            for resource_id in ids:
                pipe.hgetall(self._resource_key(resource_id))
            rows = await pipe.execute()
        return [_decode(row) for row in rows]

    async def upsert(self, resource):
        key = self._resource_key(resource.id)
        try:
            async with self.redis_client.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(key)
                        if await pipe.hexists(key, 'url'):
                            return False
                        pipe.multi()
                        pipe.hset(key, mapping=_encode(resource))
                        pipe.zadd(self._frontier_key(resource.group), {resource.id: resource.score})
                        pipe.sadd(self._groups_key, resource.group)
                        await pipe.execute()
                        return True
                    except redis.WatchError:
                        # Another writer touched the key; re-check it
                        continue
        except redis.RedisError as e:
            raise StoreError(f"Failed to upsert {resource.url}: {e}")

    async def update_status(self, resource, selectable=None):
        if selectable is None:
            selectable = _default_selectable(resource)
        key = self._resource_key(resource.id)
        try:
            if not await self.redis_client.hexists(key, 'url'):
                raise StoreError(f"Unknown resource: {resource.url}")

            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.hset(key, mapping=_encode(resource))
                if selectable:
                    pipe.zadd(self._frontier_key(resource.group), {resource.id: resource.score})
                else:
                    pipe.zrem(self._frontier_key(resource.group), resource.id)
                await pipe.execute()
        except redis.RedisError as e:
            raise StoreError(f"Failed to update {resource.url}: {e}")

    async def get(self, resource_id):
        try:
            row = await self.redis_client.hgetall(self._resource_key(resource_id))
        except redis.RedisError as e:
            raise StoreError(f"Failed to read resource {resource_id}: {e}")
        return _decode(row)

    async def commit(self, task_id):
        try:
            await self.redis_client.hset(
                f"{self.prefix}:commit",
                mapping={'task_id': task_id, 'committed_at': time.time()},
            )
        except redis.RedisError as e:
            raise StoreError(f"Failed to commit task {task_id}: {e}")
        self.logger.debug(f"Committed crawl db for task {task_id}")

    async def count_by_status(self):
        counts = {status.value: 0 for status in ResourceStatus}
        try:
            async for key in self.redis_client.scan_iter(match=f"{self.prefix}:resource:*"):
                status = await self.redis_client.hget(key, 'status')
                if status in counts:
                    counts[status] += 1
        except redis.RedisError as e:
            raise StoreError(f"Failed to count resources: {e}")
        return counts

    async def close(self):
        await self.redis_client.aclose()
        self.logger.info("Resource store connection closed")
