"""
Bulk content store for raw fetched content.
Supports file-based storage and Cassandra.
"""

import base64
import hashlib
import json
import logging
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional

try:
    from cassandra.cluster import Cluster
    from cassandra.policies import DCAwareRoundRobinPolicy
    CASSANDRA_AVAILABLE = True
except ImportError:
    CASSANDRA_AVAILABLE = False

from ..crawler.resource import FetchResult
from ..errors import StoreError
from ..utils.config import ContentStoreConfig


class PartitionWriter:
    """Append-only writer for one group's content in one round."""

    async def put(self, url: str, result: FetchResult):
        raise NotImplementedError


class ContentStore:
    """Abstract base class for content stores."""

    async def initialize(self):
        """Initialize the storage backend."""
        raise NotImplementedError

    def open_partition(self, task_id: str, group: str):
        """Async context manager yielding a PartitionWriter."""
        raise NotImplementedError

    async def get_stats(self) -> Dict[str, Any]:
        """Get storage statistics."""
        raise NotImplementedError

    async def close(self):
        """Close storage connections."""
        raise NotImplementedError


def _record(url: str, task_id: str, group: str, result: FetchResult) -> Dict[str, Any]:
    return {
        'url': url,
        'task_id': task_id,
        'group': group,
        'content_type': result.content_type,
        'status_code': result.status_code,
        'fetch_timestamp': result.resource.fetch_timestamp,
        'parsed_fields': result.parsed_fields,
        'content': base64.b64encode(result.raw_content or b'').decode('ascii'),
        'stored_at': datetime.now(timezone.utc).isoformat(),
    }


class _FilePartitionWriter(PartitionWriter):

    def __init__(self, store: 'FileContentStore', handle, task_id: str, group: str):
        self.store = store
        self.handle = handle
        self.task_id = task_id
        self.group = group

    async def put(self, url, result):
        line = json.dumps(_record(url, self.task_id, self.group, result), ensure_ascii=False, default=str)
        self.handle.write(line + '\n')
        self.store.stats['total_stored'] += 1
        self.store.stats['total_size_bytes'] += len(result.raw_content or b'')


class FileContentStore(ContentStore):
    """
    Writes one JSON-lines file per group under ``<output_path>/<task_id>/``.
    Raw content is base64 encoded.
    """

    def __init__(self, output_path: str):
        self.output_path = Path(output_path)
        self.logger = logging.getLogger(__name__)
        self.stats = {
            'total_stored': 0,
            'total_size_bytes': 0,
            'partitions_written': 0
        }

    async def initialize(self):
        try:
            self.output_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(f"Failed to initialize file storage: {e}")
        self.logger.info(f"File content store initialized at {self.output_path}")

    def partition_path(self, task_id: str, group: str) -> Path:
        safe = re.sub(r'[^A-Za-z0-9._-]', '_', group)[:80]
        digest = hashlib.sha1(group.encode('utf-8')).hexdigest()[:8]
        return self.output_path / task_id / f"part-{safe}-{digest}.jsonl"

    @asynccontextmanager
    async def open_partition(self, task_id: str, group: str) -> AsyncIterator[PartitionWriter]:
        path = self.partition_path(task_id, group)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'a', encoding='utf-8') as handle:
            yield _FilePartitionWriter(self, handle, task_id, group)
        self.stats['partitions_written'] += 1
        self.logger.debug(f"Stored partition {group} of task {task_id} at {path}")

    async def get_stats(self):
        return self.stats.copy()

    async def close(self):
        pass


class _CassandraPartitionWriter(PartitionWriter):

    def __init__(self, store: 'CassandraContentStore', task_id: str, group: str):
        self.store = store
        self.task_id = task_id
        self.group = group

    async def put(self, url, result):
        fetched_at = result.resource.fetch_timestamp
        self.store.session.execute(self.store.insert_statement, (
            hashlib.sha256(url.encode('utf-8')).hexdigest(),
            self.task_id,
            url,
            self.group,
            result.raw_content or b'',
            result.content_type,
            result.status_code,
            datetime.fromtimestamp(fetched_at, timezone.utc) if fetched_at else None,
        ))
        self.store.stats['total_stored'] += 1


class CassandraContentStore(ContentStore):
    """Cassandra content store for production deployments."""

    def __init__(self, config: Dict[str, Any]):
        if not CASSANDRA_AVAILABLE:
            raise StoreError("Cassandra driver not available. Install cassandra-driver package.")

        self.config = config
        self.cluster = None
        self.session = None
        self.insert_statement = None
        self.logger = logging.getLogger(__name__)
        self.stats = {
            'total_stored': 0,
            'partitions_written': 0
        }

    async def initialize(self):
        try:
            hosts = self.config.get('hosts', ['localhost'])
            port = self.config.get('port', 9042)

            self.cluster = Cluster(
                hosts,
                port=port,
                load_balancing_policy=DCAwareRoundRobinPolicy()
            )
            self.session = self.cluster.connect()

            keyspace = self.config.get('keyspace', 'crawler_data')
            replication_factor = self.config.get('replication_factor', 1)

            self.session.execute(f"""
                CREATE KEYSPACE IF NOT EXISTS {keyspace}
                WITH replication = {{
                    'class': 'SimpleStrategy',
                    'replication_factor': {replication_factor}
                }}
            """)
            self.session.set_keyspace(keyspace)

            self.session.execute("""
                CREATE TABLE IF NOT EXISTS crawled_content (
                    url_hash text,
                    task_id text,
                    url text,
                    group_key text,
                    content blob,
                    content_type text,
                    status_code int,
                    fetched_at timestamp,
                    PRIMARY KEY (url_hash, task_id)
                )
            """)
            self.insert_statement = self.session.prepare("""
                INSERT INTO crawled_content (
                    url_hash, task_id, url, group_key, content, content_type, status_code, fetched_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """)

            self.logger.info(f"Cassandra content store initialized with keyspace: {keyspace}")

        except Exception as e:
            raise StoreError(f"Failed to initialize Cassandra: {e}")

    @asynccontextmanager
    async def open_partition(self, task_id: str, group: str) -> AsyncIterator[PartitionWriter]:
        yield _CassandraPartitionWriter(self, task_id, group)
        self.stats['partitions_written'] += 1

    async def get_stats(self):
        return self.stats.copy()

    async def close(self):
        if self.cluster:
            self.cluster.shutdown()
            self.logger.info("Cassandra connections closed")


def create_content_store(config: ContentStoreConfig, output_path: Optional[str] = None) -> ContentStore:
    """Build the configured content store backend."""
    store_type = config.type.lower()
    if store_type == 'file':
        return FileContentStore(output_path or config.output_path)
    if store_type == 'cassandra':
        return CassandraContentStore(config.cassandra)
    raise StoreError(f"Unknown content store type: {store_type}")
