"""Read-only access to the Messages database (chat.db).

The source store is owned by Messages.app and is appended to while we
read it. Every connection is opened with ``mode=ro`` so the indexer can
never write to it or take a write lock.

Tables used:
    message            ROWID, text, attributedBody, date
    chat_message_join  chat_id, message_id
    handle             ROWID, id (phone number or email)
    chat_handle_join   chat_id, handle_id
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from ..config import get_source_path

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)

# Mac absolute time epoch (2001-01-01 00:00:00 UTC) in Unix seconds
MAC_EPOCH = 978307200

# message.date is stored in nanoseconds since the Mac epoch
MAC_TIME_DIVISOR = 1_000_000_000

# SQLite's default bound-parameter limit is 999 on older builds
HANDLE_CHUNK_SIZE = 500


@dataclass
class SourceMessage:
    """A row from the source ``message`` table."""

    id: int
    text: str | None
    attributed_body: bytes | None
    date: int | None
    chat_id: int | None


def convert_mac_time(mac_time: int | None) -> datetime | None:
    """Convert Mac absolute time (ns since 2001-01-01) to a UTC datetime."""
    if mac_time is None:
        return None
    try:
        return datetime.fromtimestamp(
            mac_time / MAC_TIME_DIVISOR + MAC_EPOCH, tz=UTC
        )
    except (OSError, ValueError, OverflowError):
        return None


class SourceStore:
    """
    Read-only client for the Messages database.

    Usage:
        with SourceStore(path) as source:
            rows = source.fetch_messages_after(0, 1000)
    """

    def __init__(self, db_path: Path | None = None):
        self._db_path = db_path or get_source_path()
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def open(self) -> SourceStore:
        """
        Open the read-only connection.

        Raises:
            FileNotFoundError: If the database does not exist
            PermissionError: If Full Disk Access is not granted
        """
        with self._lock:
            if self._conn is not None:
                return self

            if not self._db_path.exists():
                raise FileNotFoundError(
                    f"Messages database not found: {self._db_path}\n"
                    "Ensure Messages has been used on this Mac."
                )

            try:
                conn = sqlite3.connect(
                    f"file:{self._db_path}?mode=ro",
                    uri=True,
                    check_same_thread=False,
                )
                conn.row_factory = sqlite3.Row
                # Forces the file to be read; fails here if access is denied
                conn.execute("SELECT 1 FROM sqlite_master LIMIT 1")
            except sqlite3.OperationalError as e:
                raise PermissionError(
                    f"Cannot read {self._db_path}\n"
                    "Grant Full Disk Access to your terminal:\n"
                    "  System Settings → Privacy & Security → Full Disk Access"
                ) from e

            self._conn = conn
            logger.info("Opened source database %s", self._db_path)
            return self

    def close(self) -> None:
        """Close the connection (safe to call repeatedly)."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> SourceStore:
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self.open()
        return self._conn

    def fetch_messages_after(
        self, last_id: int, limit: int
    ) -> list[SourceMessage]:
        """
        Fetch messages with ROWID > last_id in ascending ROWID order.

        Messages that belong to no chat are included (chat_id None) so the
        index cursor can move past them. A message joined to several
        chats is returned once, with the lowest chat id.
        """
        sql = """
            SELECT
                m.ROWID AS message_id,
                m.text,
                m.attributedBody,
                m.date,
                (SELECT MIN(cmj.chat_id) FROM chat_message_join cmj
                 WHERE cmj.message_id = m.ROWID) AS chat_id
            FROM message m
            WHERE m.ROWID > ?
            ORDER BY m.ROWID ASC
            LIMIT ?
        """
        with self._lock:
            cursor = self._get_conn().execute(sql, (last_id, limit))
            rows = cursor.fetchall()

        return [
            SourceMessage(
                id=row["message_id"],
                text=row["text"],
                attributed_body=row["attributedBody"],
                date=row["date"],
                chat_id=row["chat_id"],
            )
            for row in rows
        ]

    def max_message_id(self) -> int:
        """Return the highest message ROWID (0 for an empty store)."""
        with self._lock:
            row = (
                self._get_conn()
                .execute("SELECT MAX(ROWID) FROM message")
                .fetchone()
            )
        return row[0] or 0

    def chat_ids_for_handles(self, identifiers: Iterable[str]) -> set[int]:
        """
        Find every chat that includes one of the given handles.

        Args:
            identifiers: Raw handle ids (phone numbers, emails)

        Returns:
            Set of chat ROWIDs
        """
        handles = sorted(set(identifiers))
        chat_ids: set[int] = set()

        with self._lock:
            conn = self._get_conn()
            for i in range(0, len(handles), HANDLE_CHUNK_SIZE):
                chunk = handles[i : i + HANDLE_CHUNK_SIZE]
                placeholders = ", ".join("?" for _ in chunk)
                cursor = conn.execute(
                    f"""SELECT DISTINCT chj.chat_id
                        FROM chat_handle_join chj
                        JOIN handle h ON chj.handle_id = h.ROWID
                        WHERE h.id IN ({placeholders})""",
                    chunk,
                )
                chat_ids.update(row[0] for row in cursor)

        return chat_ids

    def contact_identifier_for_chat(self, chat_id: int | None) -> str | None:
        """Return one handle id participating in the chat, if any."""
        if chat_id is None:
            return None
        with self._lock:
            row = (
                self._get_conn()
                .execute(
                    """SELECT h.id FROM chat_handle_join chj
                       JOIN handle h ON chj.handle_id = h.ROWID
                       WHERE chj.chat_id = ?
                       ORDER BY h.ROWID
                       LIMIT 1""",
                    (chat_id,),
                )
                .fetchone()
            )
        return row[0] if row else None
