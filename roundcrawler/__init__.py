"""
Round Crawler

A round-based crawl scheduler: select a bounded frontier, fetch it politely
group by group, resolve outlinks and commit the round to every sink.
"""

__version__ = "1.0.0"
__description__ = "A distributed, iterative web crawl scheduler and pipeline engine"
