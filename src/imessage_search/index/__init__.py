"""Incremental substring search index for the Messages database.

This module provides:
- IndexManager: Main interface for building, updating, and searching the index
- IndexScheduler: Background catch-up and periodic updates on asyncio
- Text extraction from attributedBody archives
- Paginated substring search with contact filters
"""

from .extractor import extract_text
from .manager import IndexManager, IndexStats
from .scheduler import IndexScheduler
from .search import SearchError, SearchPage, SearchResult

__all__ = [
    "IndexManager",
    "IndexScheduler",
    "IndexStats",
    "SearchError",
    "SearchPage",
    "SearchResult",
    "extract_text",
]
