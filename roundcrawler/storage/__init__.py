"""
Storage layer: resource store, content store and stream publisher.
"""

from .crawldb import ResourceStore, MemoryResourceStore, RedisResourceStore
from .content_store import ContentStore, FileContentStore, CassandraContentStore, create_content_store
from .publisher import RedisStreamPublisher

__all__ = [
    'ResourceStore', 'MemoryResourceStore', 'RedisResourceStore',
    'ContentStore', 'FileContentStore', 'CassandraContentStore', 'create_content_store',
    'RedisStreamPublisher'
]
