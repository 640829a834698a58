"""
Crawl pipeline stages.
"""

from .resource import (
    Resource, ResourceStatus, FetchedContent, ParsedPage, FetchResult, WorkUnit
)
from .frontier import FrontierSelector, partition, parse_sort_policy, parse_group_policy
from .fetcher import FairFetcher, PolitenessLimiter, WebFetcher
from .parser import ContentParser, OutlinkFilter
from .scorer import Scorer, DepthScorer
from .outlinks import OutlinkResolver

__all__ = [
    'Resource', 'ResourceStatus', 'FetchedContent', 'ParsedPage', 'FetchResult', 'WorkUnit',
    'FrontierSelector', 'partition', 'parse_sort_policy', 'parse_group_policy',
    'FairFetcher', 'PolitenessLimiter', 'WebFetcher',
    'ContentParser', 'OutlinkFilter',
    'Scorer', 'DepthScorer',
    'OutlinkResolver'
]
