"""
Crawl resource model and the values that flow through one round.
"""

import hashlib
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse

from ..errors import InvalidTransition


class ResourceStatus(Enum):
    """Fetch status of a crawl resource."""
    UNFETCHED = "UNFETCHED"
    FETCHING = "FETCHING"
    FETCHED = "FETCHED"
    ERROR = "ERROR"


_TRANSITIONS = {
    ResourceStatus.UNFETCHED: {ResourceStatus.FETCHING},
    # ERROR resources are picked up again by a later round
    ResourceStatus.ERROR: {ResourceStatus.FETCHING},
    ResourceStatus.FETCHING: {ResourceStatus.FETCHED, ResourceStatus.ERROR},
    ResourceStatus.FETCHED: set(),
}


def resource_id(job_id: str, url: str) -> str:
    """Stable resource id for a URL within a job."""
    return hashlib.sha256(f"{job_id}-{url}".encode('utf-8')).hexdigest()


def url_group(url: str) -> str:
    """Default partition key: the lower-cased host of the URL."""
    try:
        return urlparse(url).netloc.lower() or "unknown"
    except ValueError:
        return "unknown"


@dataclass
class Resource:
    """A crawl resource as stored in the resource store."""
    id: str
    url: str
    group: str
    discover_depth: int = 0
    status: ResourceStatus = ResourceStatus.UNFETCHED
    fetch_timestamp: Optional[float] = None
    parent_id: Optional[str] = None
    score: float = 0.0
    job_id: str = ""
    retry_count: int = 0
    error: Optional[str] = None

    @classmethod
    def new(cls, job_id: str, url: str, discover_depth: int = 0,
            parent: Optional['Resource'] = None, score: float = 0.0) -> 'Resource':
        """Create an UNFETCHED resource; seeds have no parent and depth 0."""
        return cls(
            id=resource_id(job_id, url),
            url=url,
            group=url_group(url),
            discover_depth=discover_depth,
            status=ResourceStatus.UNFETCHED,
            fetch_timestamp=parent.fetch_timestamp if parent else None,
            parent_id=parent.id if parent else None,
            score=score,
            job_id=job_id,
        )

    def advance(self, status: ResourceStatus, **changes) -> 'Resource':
        """
        Return a copy moved to ``status``.

        Raises:
            InvalidTransition: if the move is not forward
        """
        if status not in _TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"{self.url}: cannot move from {self.status.value} to {status.value}"
            )
        return replace(self, status=status, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            'id': self.id,
            'url': self.url,
            'group': self.group,
            'discover_depth': self.discover_depth,
            'status': self.status.value,
            'fetch_timestamp': self.fetch_timestamp,
            'parent_id': self.parent_id,
            'score': self.score,
            'job_id': self.job_id,
            'retry_count': self.retry_count,
            'error': self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Resource':
        """Create Resource from dictionary."""
        fetch_timestamp = data.get('fetch_timestamp')
        return cls(
            id=data['id'],
            url=data['url'],
            group=data.get('group') or url_group(data['url']),
            discover_depth=int(data.get('discover_depth', 0)),
            status=ResourceStatus(data.get('status', ResourceStatus.UNFETCHED.value)),
            fetch_timestamp=float(fetch_timestamp) if fetch_timestamp not in (None, '') else None,
            parent_id=data.get('parent_id') or None,
            score=float(data.get('score', 0.0)),
            job_id=data.get('job_id', ''),
            retry_count=int(data.get('retry_count', 0)),
            error=data.get('error') or None,
        )


@dataclass
class FetchedContent:
    """Raw response handed back by a fetch function."""
    content: bytes
    content_type: Optional[str] = None
    status_code: int = 200
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class ParsedPage:
    """Output of a parse function."""
    fields: Dict[str, Any] = field(default_factory=dict)
    outlinks: Tuple[str, ...] = ()


@dataclass(frozen=True)
class FetchResult:
    """Outcome of one fetch attempt in a round."""
    resource: Resource
    raw_content: Optional[bytes] = None
    content_type: Optional[str] = None
    status_code: int = 0
    parsed_fields: Dict[str, Any] = field(default_factory=dict)
    outlinks: Tuple[str, ...] = ()

    @property
    def fetched(self) -> bool:
        return self.resource.status is ResourceStatus.FETCHED


@dataclass(frozen=True)
class WorkUnit:
    """All resources of one group selected for a round, in fetch order."""
    group: str
    resources: Tuple[Resource, ...]

    def __len__(self) -> int:
        return len(self.resources)
