"""
Exception hierarchy shared by all crawler components.
"""

from typing import Optional


class CrawlerError(Exception):
    """Base class for crawler errors."""
    pass


class ConfigurationError(CrawlerError):
    """Invalid configuration detected before any round runs."""
    pass


class FetchFailure(CrawlerError):
    """A single resource could not be fetched."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Failed to fetch {url}: {reason}")


class ParseFailure(CrawlerError):
    """Fetched content could not be parsed."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Failed to parse {url}: {reason}")


class InvalidTransition(CrawlerError):
    """A resource status change would move backwards."""
    pass


class StoreError(CrawlerError):
    """Resource store or content store operation failed."""
    pass


class SinkFailure(CrawlerError):
    """
    A sink step of a round's commit failed after all attempts.
    Carries the round task id and the failing step so the driver can report it.
    """

    def __init__(self, task_id: str, step: str, cause: Optional[BaseException] = None):
        self.task_id = task_id
        self.step = step
        self.cause = cause
        super().__init__(f"Sink step '{step}' failed in round {task_id}: {cause}")
