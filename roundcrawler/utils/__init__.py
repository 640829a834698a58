"""
Utility modules for the crawl scheduler.
"""

from .config import Config, ConfigManager, CrawlSettings, load_config

__all__ = ['Config', 'ConfigManager', 'CrawlSettings', 'load_config']
