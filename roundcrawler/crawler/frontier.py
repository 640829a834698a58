"""
Frontier selection: choose the next round's resources, bounded per group,
and split them into independent per-group work units.
"""

import functools
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .resource import Resource, ResourceStatus, WorkUnit, url_group


SORT_FIELDS = ('score', 'discover_depth', 'fetch_timestamp', 'retry_count', 'url')


@functools.total_ordering
class _Descending:
    """Wraps a value so that it sorts in reverse order."""

    __slots__ = ('value',)

    def __init__(self, value):
        self.value = value

    def __eq__(self, other):
        return self.value == other.value

    def __lt__(self, other):
        return self.value > other.value


@dataclass(frozen=True)
class SortPolicy:
    """Ordering of resources, e.g. ``discover_depth asc, score desc``."""
    terms: Tuple[Tuple[str, bool], ...]

    def key(self, resource: Resource) -> tuple:
        parts = []
        for name, descending in self.terms:
            value = getattr(resource, name)
            if value is None:
                value = float('-inf')
            parts.append(_Descending(value) if descending else value)
        return tuple(parts)

    def __str__(self) -> str:
        return ", ".join(f"{name} {'desc' if desc else 'asc'}" for name, desc in self.terms)


def parse_sort_policy(sort_by: Optional[str]) -> SortPolicy:
    """
    Parse a comma separated ``field [asc|desc]`` list.

    Raises:
        ValueError: on unknown fields or directions
    """
    if not sort_by or not sort_by.strip():
        return SortPolicy((('score', True),))

    terms = []
    for raw_term in sort_by.split(','):
        parts = raw_term.split()
        if not parts or len(parts) > 2:
            raise ValueError(f"Invalid sort term: '{raw_term.strip()}'")
        name = parts[0]
        direction = parts[1].lower() if len(parts) == 2 else 'asc'
        if name not in SORT_FIELDS:
            raise ValueError(f"Unknown sort field '{name}', expected one of {SORT_FIELDS}")
        if direction not in ('asc', 'desc'):
            raise ValueError(f"Unknown sort direction '{direction}' for field '{name}'")
        terms.append((name, direction == 'desc'))
    return SortPolicy(tuple(terms))


def _domain_of(resource: Resource) -> str:
    host = url_group(resource.url).split(':')[0]
    labels = [label for label in host.split('.') if label]
    return '.'.join(labels[-2:]) if labels else host


GROUP_KEYS: Dict[str, Callable[[Resource], str]] = {
    'group': lambda resource: resource.group,
    'host': lambda resource: url_group(resource.url),
    'domain': _domain_of,
}


@dataclass(frozen=True)
class GroupPolicy:
    """Partition key used for politeness and parallelism."""
    name: str

    def key(self, resource: Resource) -> str:
        return GROUP_KEYS[self.name](resource)


def parse_group_policy(group_by: Optional[str]) -> GroupPolicy:
    """
    Raises:
        ValueError: on unknown group keys
    """
    name = (group_by or 'group').strip()
    if name not in GROUP_KEYS:
        raise ValueError(f"Unknown group key '{name}', expected one of {sorted(GROUP_KEYS)}")
    return GroupPolicy(name)


def eligible_for(retry_attempts: int) -> Callable[[Resource], bool]:
    """Frontier filter: unfetched resources, plus failed ones with attempts left."""
    def is_eligible(resource: Resource) -> bool:
        if resource.status is ResourceStatus.UNFETCHED:
            return True
        return resource.status is ResourceStatus.ERROR and resource.retry_count < retry_attempts
    return is_eligible


def rank_frontier(resources: Iterable[Resource], group_policy: GroupPolicy,
                  sort_policy: SortPolicy, max_groups: int, top_n: int) -> List[Resource]:
    """
    Keep the best ``top_n`` resources of the best ``max_groups`` groups.

    Groups are ranked by their best resource under ``sort_policy``; equal
    groups are ordered by group key. The result lists groups in rank order,
    each group's resources in ``sort_policy`` order.
    """
    groups: Dict[str, List[Resource]] = {}
    for resource in resources:
        groups.setdefault(group_policy.key(resource), []).append(resource)

    ranked = []
    for group, members in groups.items():
        members.sort(key=lambda r: (sort_policy.key(r), r.url))
        ranked.append((sort_policy.key(members[0]), group, members[:top_n]))

    ranked.sort(key=lambda item: (item[0], item[1]))

    selected: List[Resource] = []
    for _, _, members in ranked[:max_groups]:
        selected.extend(members)
    return selected


def partition(resources: Iterable[Resource], group_by: str = 'group') -> List[WorkUnit]:
    """Split a flat selection into per-group work units, keeping order."""
    policy = parse_group_policy(group_by)
    units: 'OrderedDict[str, List[Resource]]' = OrderedDict()
    for resource in resources:
        units.setdefault(policy.key(resource), []).append(resource)
    return [WorkUnit(group=group, resources=tuple(members)) for group, members in units.items()]


class FrontierSelector:
    """Queries the resource store for the next round's candidate set."""

    def __init__(self, store):
        self.store = store
        self.logger = logging.getLogger(__name__)

    async def select(self, job, sort_by: Optional[str] = None, group_by: Optional[str] = None,
                     max_groups: Optional[int] = None, top_n: Optional[int] = None) -> List[Resource]:
        """
        Select at most ``max_groups`` groups of at most ``top_n`` resources.
        An empty list means the frontier is exhausted.
        """
        settings = job.settings
        sort_policy = parse_sort_policy(sort_by if sort_by is not None else settings.sort_by)
        group_policy = parse_group_policy(group_by if group_by is not None else settings.group_by)
        max_groups = max_groups if max_groups is not None else settings.top_groups
        top_n = top_n if top_n is not None else settings.top_n

        candidates = await self.store.query(
            eligible_for(settings.retry_attempts), group_policy, sort_policy, max_groups, top_n
        )
        # Re-rank so the bound holds whatever the backend returned
        selected = rank_frontier(candidates, group_policy, sort_policy, max_groups, top_n)

        self.logger.debug(
            f"Selected {len(selected)} resources for job {job.job_id} "
            f"(sort_by={sort_policy}, group_by={group_policy.name}, "
            f"max_groups={max_groups}, top_n={top_n})"
        )
        return selected
