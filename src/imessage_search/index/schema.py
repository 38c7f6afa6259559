"""SQLite schema for the message search index.

The schema uses:
- message_text: One row per indexed message (extracted text + metadata)
- index_state: Single-row table holding the incremental cursor
- schema_version: Schema version for migrations

An unversioned legacy index (cursor kept in an index_metadata key/value
table) is migrated in place on first open.

The index lives in a private cache directory, separate from chat.db. It is
a rebuildable cache: deleting the file triggers a full rebuild on the next
run.
"""

import logging
import os
import sqlite3
from pathlib import Path

logger = logging.getLogger(__name__)

# Current schema version for migrations
SCHEMA_VERSION = 1

# Default PRAGMAs for all connections (centralized to avoid drift)
DEFAULT_PRAGMAS = {
    "journal_mode": "WAL",  # Readers see the last committed batch
    "synchronous": "NORMAL",  # Good balance of safety and speed
    "busy_timeout": 5000,  # Wait up to 5s for locks
}

# Uses INSERT OR REPLACE for idempotent upserts keyed by message_id
UPSERT_ENTRY_SQL = """INSERT OR REPLACE INTO message_text
    (message_id, text, date, chat_id)
    VALUES (?, ?, ?, ?)"""


def create_connection(db_path: Path | str) -> sqlite3.Connection:
    """
    Create a database connection with standard configuration.

    Args:
        db_path: Path to the SQLite database file (or ":memory:")

    Returns:
        Configured connection with WAL mode, busy timeout, and Row factory
    """
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row

    for pragma, value in DEFAULT_PRAGMAS.items():
        conn.execute(f"PRAGMA {pragma}={value}")

    return conn


def get_schema_sql() -> str:
    """Return the complete schema creation SQL."""
    return """
-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

-- Extracted message text, keyed by the source message ROWID
CREATE TABLE IF NOT EXISTS message_text (
    message_id INTEGER PRIMARY KEY,
    text TEXT NOT NULL,
    date INTEGER,                     -- Mac absolute time (ns)
    chat_id INTEGER
);

CREATE INDEX IF NOT EXISTS idx_message_text_date
    ON message_text(date DESC);
CREATE INDEX IF NOT EXISTS idx_message_text_chat
    ON message_text(chat_id);

-- Incremental cursor: last source ROWID considered for indexing
CREATE TABLE IF NOT EXISTS index_state (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    last_message_id INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT
);

INSERT OR IGNORE INTO index_state (id, last_message_id) VALUES (1, 0);
"""


def init_database(db_path: Path) -> sqlite3.Connection:
    """
    Initialize the database with schema, creating parent directories if needed.

    Safe to call on an existing index: every statement is idempotent.

    Args:
        db_path: Path to the SQLite database file

    Returns:
        Open database connection

    Security:
        Sets file permissions to 0600 (owner read/write only) on new databases
        since the index holds message content.
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)

    is_new_db = not db_path.exists()

    conn = create_connection(db_path)

    if is_new_db:
        try:
            os.chmod(db_path, 0o600)
            logger.debug("Set secure permissions (0600) on %s", db_path)
        except OSError as e:
            logger.warning(
                "Could not set secure permissions on %s: %s", db_path, e
            )

    try:
        apply_schema(conn)
    except sqlite3.Error:
        conn.close()
        raise

    return conn


def apply_schema(conn: sqlite3.Connection) -> None:
    """Create or migrate the schema on an open connection."""
    if _table_exists(conn, "schema_version"):
        cursor = conn.execute("SELECT version FROM schema_version LIMIT 1")
        row = cursor.fetchone()
        current_version = row[0] if row else 0
    elif _table_exists(conn, "index_metadata"):
        # Unversioned legacy index
        current_version = 0
    else:
        logger.info(
            "Creating fresh index schema (version %d)", SCHEMA_VERSION
        )
        conn.executescript(get_schema_sql())
        conn.execute(
            "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
        )
        conn.commit()
        return

    if current_version < SCHEMA_VERSION:
        logger.info(
            "Migrating index from version %d to %d",
            current_version,
            SCHEMA_VERSION,
        )
        _run_migrations(conn, current_version, SCHEMA_VERSION)


def _table_exists(conn: sqlite3.Connection, name: str) -> bool:
    cursor = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type='table' AND name=?", (name,)
    )
    return cursor.fetchone() is not None


def _run_migrations(
    conn: sqlite3.Connection, from_version: int, to_version: int
) -> None:
    """
    Run schema migrations.

    Args:
        conn: Database connection
        from_version: Current schema version
        to_version: Target schema version
    """
    if from_version < 1:
        # Legacy layout: same message_text table, cursor kept as text in a
        # key/value table, plus an unused index on the text column
        logger.info("Migrating legacy index: moving cursor to index_state")
        conn.executescript(get_schema_sql())
        conn.execute("DROP INDEX IF EXISTS idx_message_text_text")
        conn.execute("DELETE FROM message_text WHERE text IS NULL")

        row = conn.execute(
            "SELECT value FROM index_metadata WHERE key = 'last_message_id'"
        ).fetchone()
        if row and str(row[0]).isdigit():
            conn.execute(
                "UPDATE index_state SET last_message_id = ? WHERE id = 1",
                (int(row[0]),),
            )
        conn.execute("DROP TABLE index_metadata")

    conn.execute("DELETE FROM schema_version")
    conn.execute(
        "INSERT INTO schema_version (version) VALUES (?)", (to_version,)
    )
    conn.commit()
