"""IndexManager - Central interface for the message search index.

Provides:
- build_index(): Catch up with chat.db in large batches
- index_batch(): One incremental batch (used by the scheduler)
- search(): Paginated substring search with contact filters
- get_stats(): Index statistics for status reporting

The manager only wires collaborators together: the read-only SourceStore,
the IndexStore, the Indexer and the QueryEngine. Create one per process
and pass it to whatever needs it.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from ..config import get_update_batch_size
from .indexer import Indexer
from .search import QueryEngine
from .source import SourceStore
from .store import IndexStore

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from ..contacts import ContactDirectory
    from .indexer import BatchResult
    from .search import SearchPage

logger = logging.getLogger(__name__)


@dataclass
class IndexStats:
    """Statistics about the search index."""

    entry_count: int
    last_indexed_id: int
    source_max_id: int | None  # None when chat.db is unreadable
    last_indexed_at: datetime | None
    db_size_mb: float

    @property
    def pending(self) -> int | None:
        """Source messages not yet considered, if the source is readable."""
        if self.source_max_id is None:
            return None
        return max(self.source_max_id - self.last_indexed_id, 0)


class IndexManager:
    """
    Owns the source and index stores for one process.

    Usage:
        with IndexManager() as manager:
            manager.build_index()
            page = manager.search("dinner")

    Thread Safety:
    - Store access is serialized by each store's lock
    - Indexing runs are expected to be serialized by the caller
      (IndexScheduler holds an asyncio.Lock around them)
    """

    def __init__(
        self,
        index_path: Path | None = None,
        source_path: Path | None = None,
        contacts: ContactDirectory | None = None,
        scan_limit: int | None = None,
    ):
        """
        Initialize the manager (no I/O until first use).

        Args:
            index_path: Custom index database path (config default if None)
            source_path: Custom chat.db path (config default if None)
            contacts: Optional directory used for names and contact filters
            scan_limit: Override for the per-search candidate cap
        """
        self.source = SourceStore(source_path)
        self.store = IndexStore(index_path)
        self.contacts = contacts
        self.indexer = Indexer(self.source, self.store)
        self.engine = QueryEngine(
            self.store,
            source=self.source,
            contacts=contacts,
            scan_limit=scan_limit,
        )

    @property
    def db_path(self) -> Path:
        """Get the index database file path."""
        return self.store.db_path

    def open(self) -> IndexManager:
        """Open the index store. chat.db is opened lazily on first read."""
        self.store.open()
        return self

    def close(self) -> None:
        """Close both stores."""
        self.source.close()
        self.store.close()

    def __enter__(self) -> IndexManager:
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    def has_index(self) -> bool:
        """Check if an index database exists."""
        return self.store.exists()

    # ─────────────────────────────────────────────────────────────────
    # Indexing
    # ─────────────────────────────────────────────────────────────────

    def run_batch(self, batch_size: int | None = None) -> BatchResult:
        """Run one batch and return its full outcome."""
        return self.indexer.run_batch(batch_size or get_update_batch_size())

    def index_batch(self, batch_size: int | None = None) -> int:
        """
        Index the next batch of new messages.

        Args:
            batch_size: Rows to consider (IMESSAGE_SEARCH_UPDATE_BATCH_SIZE
                if None)

        Returns:
            Number of source rows considered
        """
        return self.indexer.index_batch(batch_size or get_update_batch_size())

    def build_index(
        self,
        progress_callback: Callable[[int, int | None, str], None] | None = None,
        batch_size: int | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> int:
        """
        Catch up with chat.db completely.

        Requires Full Disk Access for the process reading chat.db.

        Args:
            progress_callback: Optional callback(current, total, message)
            batch_size: Rows per batch (IMESSAGE_SEARCH_BATCH_SIZE if None)
            should_stop: Optional predicate checked between batches

        Returns:
            Number of source rows considered

        Raises:
            PermissionError: If Full Disk Access is not granted
            FileNotFoundError: If chat.db does not exist
        """
        return self.indexer.build_index(
            progress_callback, batch_size, should_stop
        )

    def needs_update(self) -> bool:
        """Check whether chat.db has messages past the index cursor."""
        return self.indexer.needs_update()

    def rebuild(
        self,
        progress_callback: Callable[[int, int | None, str], None] | None = None,
        batch_size: int | None = None,
    ) -> int:
        """
        Wipe the index and re-index everything from chat.db.

        Recovers messages that were inserted below the cursor.

        Returns:
            Number of source rows considered
        """
        # Fail before wiping if the source cannot be read
        self.source.open()
        self.store.clear()
        return self.build_index(progress_callback, batch_size)

    # ─────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────

    def search(
        self,
        query: str,
        page: int = 1,
        page_size: int | None = None,
        contacts: Iterable[str] | None = None,
        chat_ids: Iterable[int] | None = None,
    ) -> SearchPage:
        """
        Search indexed messages (see QueryEngine.search).

        Raises:
            SearchError: If the index cannot be read
        """
        return self.engine.search(
            query,
            page=page,
            page_size=page_size,
            contacts=contacts,
            chat_ids=chat_ids,
        )

    def get_stats(self) -> IndexStats:
        """
        Get index statistics.

        Returns:
            IndexStats with counts, cursor, size and pending backlog
        """
        stats = self.store.stats()

        source_max_id = None
        try:
            source_max_id = self.source.max_message_id()
        except (OSError, sqlite3.Error) as e:
            logger.debug("Source unavailable for stats: %s", e)

        return IndexStats(
            entry_count=stats["entry_count"],
            last_indexed_id=stats["last_message_id"],
            source_max_id=source_max_id,
            last_indexed_at=stats["updated_at"],
            db_size_mb=stats["db_size_mb"],
        )
