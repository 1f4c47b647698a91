"""
Paged remote source interface.

A source turns a platform's REST API into two cursor-driven streams: catalog
items and order events. Cursors are opaque strings; None means the stream is
exhausted.
"""

from datetime import datetime
from typing import List, Optional, Tuple

from ..clock import Deadline
from ..http import FetchResult, HttpFetcher


class PagedSource:
    """Base class for platform sources."""

    platform: str = ""

    def __init__(self, config, fetcher: HttpFetcher):
        self.config = config
        self.fetcher = fetcher

    def initial_catalog_cursor(self) -> str:
        raise NotImplementedError

    def initial_events_cursor(self, since: datetime) -> str:
        """Cursor for orders created at or after since."""
        raise NotImplementedError

    def fetch_catalog_page(self, cursor: str, deadline: Optional[Deadline] = None) -> FetchResult:
        """FetchResult whose value is a Page of CatalogItem."""
        raise NotImplementedError

    def fetch_events_page(self, cursor: str, deadline: Optional[Deadline] = None) -> FetchResult:
        """FetchResult whose value is a Page of OrderEvent."""
        raise NotImplementedError


def to_float(value, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def to_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def record_list(data, key: Optional[str] = None) -> Tuple[List, int]:
    """
    Records from a response body as (records, skipped). A body of the wrong
    shape yields no records and counts as one skipped record.
    """
    if key is not None:
        if not isinstance(data, dict):
            return [], 0 if data is None else 1
        data = data.get(key)
    if data is None:
        return [], 0
    if not isinstance(data, list):
        return [], 1
    return data, 0
