"""Incremental indexing from chat.db into the search index.

Each batch:
1. Reads the cursor (last source ROWID considered)
2. Fetches the next ``batch_size`` messages after it, oldest first
3. Resolves each message's text (plain column or attributedBody)
4. Writes the entries and the new cursor in one transaction

Messages without recoverable text still advance the cursor, so they are
never rescanned. A batch that fails to commit leaves both the entries and
the cursor untouched; re-running it is safe.

Limitation: rows inserted into chat.db with a ROWID at or below the
cursor (e.g. a retroactive sync) are never picked up. Run ``rebuild`` to
recover them.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..config import get_batch_size
from .resolver import resolve_message_text
from .store import IndexedEntry

if TYPE_CHECKING:
    from collections.abc import Callable

    from .source import SourceMessage, SourceStore
    from .store import IndexStore

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    """Outcome of a single indexing batch."""

    considered: int  # Source rows read (drives "is there more?")
    indexed: int  # Rows written to the index
    errors: int  # Rows whose text could not be resolved
    cursor: int  # Cursor after the batch

    @property
    def skipped(self) -> int:
        return self.considered - self.indexed


class Indexer:
    """
    Moves the search index forward to match the source store.

    Assumes a single writer: callers serialize indexing runs (see
    IndexScheduler). Searches may run concurrently.
    """

    def __init__(
        self,
        source: SourceStore,
        store: IndexStore,
        resolver: Callable[[SourceMessage], str | None] = resolve_message_text,
    ):
        self._source = source
        self._store = store
        self._resolve = resolver

    def run_batch(self, batch_size: int) -> BatchResult:
        """
        Index the next batch of source messages.

        Args:
            batch_size: Maximum number of source rows to consider

        Returns:
            BatchResult with counts and the new cursor

        Raises:
            sqlite3.Error: If reading the source or committing fails. The
                batch is rolled back and the cursor is unchanged.
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")

        last_id = self._store.get_cursor()
        messages = self._source.fetch_messages_after(last_id, batch_size)

        if not messages:
            return BatchResult(considered=0, indexed=0, errors=0, cursor=last_id)

        entries: list[IndexedEntry] = []
        errors = 0
        max_id = last_id

        for message in messages:
            try:
                text = self._resolve(message)
            except Exception as e:  # Broad: one bad row must not stall us
                logger.warning(
                    "Could not resolve text for message %d: %s", message.id, e
                )
                errors += 1
                text = None

            if text:
                entries.append(
                    IndexedEntry(
                        message_id=message.id,
                        text=text,
                        date=message.date,
                        chat_id=message.chat_id,
                    )
                )

            max_id = max(max_id, message.id)

        with self._store.transaction():
            for entry in entries:
                self._store.upsert_entry(entry)
            self._store.set_cursor(max_id)

        logger.debug(
            "Batch after %d: considered=%d, indexed=%d, errors=%d, cursor=%d",
            last_id,
            len(messages),
            len(entries),
            errors,
            max_id,
        )

        return BatchResult(
            considered=len(messages),
            indexed=len(entries),
            errors=errors,
            cursor=max_id,
        )

    def index_batch(self, batch_size: int) -> int:
        """
        Index the next batch and return the number of source rows considered.

        A full batch (== batch_size) means more rows are probably waiting;
        a short batch means the index has caught up.
        """
        return self.run_batch(batch_size).considered

    def build_index(
        self,
        progress_callback: Callable[[int, int | None, str], None] | None = None,
        batch_size: int | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> int:
        """
        Catch up with the source store completely.

        Progress is reported in source ROWIDs, so ``total`` is the span
        between the cursor and the newest source message at start.

        Args:
            progress_callback: Optional callback(current, total, message)
            batch_size: Rows per batch (IMESSAGE_SEARCH_BATCH_SIZE if None)
            should_stop: Optional predicate checked between batches; the
                build ends early (after a committed batch) once it is true

        Returns:
            Total number of source rows considered
        """
        batch_size = batch_size or get_batch_size()
        logger.info("Starting index build (batch size %d)", batch_size)
        start = time.monotonic()

        start_cursor = self._store.get_cursor()
        span = max(self._source.max_message_id() - start_cursor, 0)

        total = 0
        batches = 0
        while not (should_stop and should_stop()):
            result = self.run_batch(batch_size)
            total += result.considered
            batches += 1

            if progress_callback:
                progress_callback(
                    min(result.cursor - start_cursor, span),
                    span,
                    f"Indexed {total:,} messages...",
                )

            if result.considered < batch_size:
                break
        else:
            logger.info("Index build stopped after %d batches", batches)

        elapsed = time.monotonic() - start
        logger.info(
            "Indexed %d messages in %d batches (%.1fs)",
            total,
            batches,
            elapsed,
        )
        return total

    def needs_update(self) -> bool:
        """Check whether the source has messages past the cursor."""
        return self._source.max_message_id() > self._store.get_cursor()
