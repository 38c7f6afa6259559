"""IndexStore - durable storage for extracted message text.

Owns the index database: the ``message_text`` entries and the single-row
``index_state`` cursor. The indexer writes entries and the new cursor
inside one ``transaction()``, so after a crash the cursor and the entries
it implies are either both pre-batch or both post-batch.

Thread Safety:
- One connection per store, opened with check_same_thread=False
- A re-entrant lock is held for the whole of a transaction and for every
  read, so readers on the shared connection never see an open batch
- WAL mode gives other processes the last committed snapshot
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING

from ..config import get_index_path
from .schema import UPSERT_ENTRY_SQL, init_database

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger(__name__)


@dataclass
class IndexedEntry:
    """A searchable record derived from one source message."""

    message_id: int
    text: str
    date: int | None
    chat_id: int | None


@dataclass
class IndexState:
    """Persisted cursor plus bookkeeping."""

    last_message_id: int
    updated_at: datetime | None


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so user input matches literally."""
    return (
        value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    )


class IndexStore:
    """
    Search index storage with an explicit open/close lifecycle.

    Usage:
        with IndexStore(path) as store:
            with store.transaction():
                store.upsert_entry(entry)
                store.set_cursor(entry.message_id)
    """

    def __init__(self, db_path: Path | None = None):
        """
        Initialize the store (no I/O until open()).

        Args:
            db_path: Custom database path (uses config default if None)
        """
        self._db_path = db_path or get_index_path()
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._txn_depth = 0

    @property
    def db_path(self) -> Path:
        """Get the database file path."""
        return self._db_path

    def exists(self) -> bool:
        """Check if the index database file exists."""
        return self._db_path.exists()

    def open(self) -> IndexStore:
        """Open the connection, creating the schema if absent."""
        with self._lock:
            if self._conn is None:
                self._conn = init_database(self._db_path)
            return self

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> IndexStore:
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self.open()
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator[IndexStore]:
        """
        Group writes into one atomic commit.

        Everything written inside the block lands together or, if the
        block raises, is rolled back and the exception re-raised. Nested
        use joins the outer transaction.
        """
        with self._lock:
            conn = self._get_conn()
            if self._txn_depth:
                self._txn_depth += 1
                try:
                    yield self
                finally:
                    self._txn_depth -= 1
                return

            conn.execute("BEGIN IMMEDIATE")
            self._txn_depth = 1
            try:
                yield self
                conn.commit()
            except BaseException:
                conn.rollback()
                raise
            finally:
                self._txn_depth = 0

    def _commit_if_idle(self, conn: sqlite3.Connection) -> None:
        if not self._txn_depth:
            conn.commit()

    # ─────────────────────────────────────────────────────────────────
    # Entries
    # ─────────────────────────────────────────────────────────────────

    def upsert_entry(self, entry: IndexedEntry) -> None:
        """Insert or overwrite the entry for entry.message_id."""
        if not entry.text:
            raise ValueError(f"Refusing to index empty text: {entry}")
        with self._lock:
            conn = self._get_conn()
            conn.execute(
                UPSERT_ENTRY_SQL,
                (entry.message_id, entry.text, entry.date, entry.chat_id),
            )
            self._commit_if_idle(conn)

    def get_entry(self, message_id: int) -> IndexedEntry | None:
        """Return the entry for a message, or None if not indexed."""
        with self._lock:
            row = (
                self._get_conn()
                .execute(
                    "SELECT message_id, text, date, chat_id "
                    "FROM message_text WHERE message_id = ?",
                    (message_id,),
                )
                .fetchone()
            )
        return _row_to_entry(row) if row else None

    def search_text(self, query: str, limit: int) -> list[IndexedEntry]:
        """
        Substring search over entry text, newest first.

        Matching follows SQLite LIKE: case-insensitive for ASCII letters,
        case-sensitive otherwise.

        Args:
            query: Literal substring to find
            limit: Maximum number of rows scanned and returned

        Returns:
            Matching entries ordered by date descending
        """
        pattern = f"%{escape_like(query)}%"
        with self._lock:
            cursor = self._get_conn().execute(
                """SELECT message_id, text, date, chat_id
                   FROM message_text
                   WHERE text LIKE ? ESCAPE '\\'
                   ORDER BY date DESC, message_id DESC
                   LIMIT ?""",
                (pattern, limit),
            )
            rows = cursor.fetchall()
        return [_row_to_entry(row) for row in rows]

    def count(self) -> int:
        """Return the number of indexed entries."""
        with self._lock:
            row = (
                self._get_conn()
                .execute("SELECT COUNT(*) FROM message_text")
                .fetchone()
            )
        return row[0]

    def indexed_ids(self) -> set[int]:
        """Return every indexed message id."""
        with self._lock:
            cursor = self._get_conn().execute(
                "SELECT message_id FROM message_text"
            )
            return {row[0] for row in cursor}

    # ─────────────────────────────────────────────────────────────────
    # Cursor
    # ─────────────────────────────────────────────────────────────────

    def get_state(self) -> IndexState:
        """Return the cursor and when it last moved."""
        with self._lock:
            row = (
                self._get_conn()
                .execute(
                    "SELECT last_message_id, updated_at "
                    "FROM index_state WHERE id = 1"
                )
                .fetchone()
            )
        if row is None:
            return IndexState(last_message_id=0, updated_at=None)
        updated_at = (
            datetime.fromisoformat(row["updated_at"])
            if row["updated_at"]
            else None
        )
        return IndexState(
            last_message_id=row["last_message_id"], updated_at=updated_at
        )

    def get_cursor(self) -> int:
        """Return the last source message id considered for indexing."""
        return self.get_state().last_message_id

    def set_cursor(self, message_id: int) -> None:
        """
        Advance the cursor.

        Raises:
            ValueError: If message_id is lower than the current cursor
        """
        with self._lock:
            current = self.get_cursor()
            if message_id < current:
                raise ValueError(
                    f"Cursor cannot move backwards ({current} → {message_id})"
                )
            conn = self._get_conn()
            conn.execute(
                """INSERT INTO index_state (id, last_message_id, updated_at)
                   VALUES (1, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       last_message_id = excluded.last_message_id,
                       updated_at = excluded.updated_at""",
                (message_id, datetime.now().isoformat()),
            )
            self._commit_if_idle(conn)

    # ─────────────────────────────────────────────────────────────────
    # Maintenance
    # ─────────────────────────────────────────────────────────────────

    def clear(self) -> None:
        """Delete every entry and reset the cursor to 0 (full rebuild)."""
        with self.transaction():
            conn = self._get_conn()
            conn.execute("DELETE FROM message_text")
            conn.execute(
                "UPDATE index_state SET last_message_id = 0, "
                "updated_at = NULL WHERE id = 1"
            )
        logger.info("Cleared search index at %s", self._db_path)

    def size_mb(self) -> float:
        """Return the database file size in megabytes."""
        if not self._db_path.exists():
            return 0.0
        return self._db_path.stat().st_size / (1024 * 1024)

    def stats(self) -> dict:
        """Return entry count, cursor, last update and file size."""
        with self._lock:
            state = self.get_state()
            entry_count = self.count()
        return {
            "entry_count": entry_count,
            "last_message_id": state.last_message_id,
            "updated_at": state.updated_at,
            "db_size_mb": self.size_mb(),
        }


def _row_to_entry(row: sqlite3.Row) -> IndexedEntry:
    return IndexedEntry(
        message_id=row["message_id"],
        text=row["text"],
        date=row["date"],
        chat_id=row["chat_id"],
    )
