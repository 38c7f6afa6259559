"""Shared pytest fixtures for imessage-search tests."""

from __future__ import annotations

import plistlib
import sqlite3
from pathlib import Path

import pytest

from imessage_search.index.manager import IndexManager
from imessage_search.index.schema import apply_schema, create_connection
from imessage_search.index.source import SourceStore
from imessage_search.index.store import IndexStore

# Subset of the Messages schema that the indexer and query engine read
SOURCE_SCHEMA_SQL = """
CREATE TABLE message (
    ROWID INTEGER PRIMARY KEY AUTOINCREMENT,
    text TEXT,
    attributedBody BLOB,
    date INTEGER
);
CREATE TABLE chat (ROWID INTEGER PRIMARY KEY AUTOINCREMENT);
CREATE TABLE handle (
    ROWID INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL
);
CREATE TABLE chat_message_join (chat_id INTEGER, message_id INTEGER);
CREATE TABLE chat_handle_join (chat_id INTEGER, handle_id INTEGER);
"""

# One second in Mac absolute time (nanoseconds)
SECOND = 1_000_000_000


def build_keyed_archive(text: str) -> bytes:
    """Encode text the way NSKeyedArchiver stores an attributed string."""
    archive = {
        "$version": 100000,
        "$archiver": "NSKeyedArchiver",
        "$top": {"root": plistlib.UID(1)},
        "$objects": [
            "$null",
            {
                "NSString": plistlib.UID(2),
                "NSAttributes": plistlib.UID(3),
                "$class": plistlib.UID(4),
            },
            text,
            {"__kIMMessagePartAttributeName": 0},
            {
                "$classname": "NSMutableAttributedString",
                "$classes": ["NSMutableAttributedString", "NSObject"],
            },
        ],
    }
    return plistlib.dumps(archive, fmt=plistlib.FMT_BINARY)


def build_typedstream(text: str) -> bytes:
    """Encode text the way a typedstream attributedBody stores it."""
    raw = text.encode("utf-8")
    if len(raw) < 0x80:
        length = bytes([len(raw)])
    else:
        length = b"\x81" + len(raw).to_bytes(2, "little")
    return (
        b"\x04\x0bstreamtyped\x81\xe8\x03\x84\x01@\x84\x84\x84"
        b"\x12NSAttributedString\x00\x84\x84\x08NSObject\x00\x85\x92"
        b"\x84\x84\x84\x08NSString\x01\x94\x84\x01+"
        + length
        + raw
        + b"\x86\x84\x02iI\x01\x05\x92\x84\x84\x84\x0cNSDictionary"
    )


@pytest.fixture
def keyed_archive():
    """Builder for keyed-archive attributedBody blobs."""
    return build_keyed_archive


@pytest.fixture
def typedstream():
    """Builder for typedstream attributedBody blobs."""
    return build_typedstream


@pytest.fixture
def temp_db():
    """Create an in-memory index database with the schema."""
    conn = create_connection(":memory:")
    apply_schema(conn)
    yield conn
    conn.close()


@pytest.fixture
def temp_db_path(tmp_path: Path) -> Path:
    """Return a temporary path for an index database file."""
    return tmp_path / "cache" / "search_index.db"


@pytest.fixture
def source_db_path(tmp_path: Path) -> Path:
    """Create an empty Messages-style chat.db and return its path."""
    path = tmp_path / "Messages" / "chat.db"
    path.parent.mkdir()
    conn = sqlite3.connect(path)
    conn.executescript(SOURCE_SCHEMA_SQL)
    conn.commit()
    conn.close()
    return path


@pytest.fixture
def add_message(source_db_path: Path):
    """
    Insert a message into the synthetic chat.db.

    Returns a function add(text=None, body=None, date=None, chat_id=None,
    rowid=None) -> rowid. Dates default to the ROWID in seconds so newer
    messages sort first.
    """

    def _add(
        text: str | None = None,
        body: bytes | None = None,
        date: int | None = None,
        chat_id: int | None = None,
        rowid: int | None = None,
    ) -> int:
        conn = sqlite3.connect(source_db_path)
        try:
            cursor = conn.execute(
                "INSERT INTO message (ROWID, text, attributedBody, date) "
                "VALUES (?, ?, ?, ?)",
                (rowid, text, body, date),
            )
            message_id = cursor.lastrowid
            if date is None:
                conn.execute(
                    "UPDATE message SET date = ? WHERE ROWID = ?",
                    (message_id * SECOND, message_id),
                )
            if chat_id is not None:
                conn.execute(
                    "INSERT OR IGNORE INTO chat (ROWID) VALUES (?)",
                    (chat_id,),
                )
                conn.execute(
                    "INSERT INTO chat_message_join (chat_id, message_id) "
                    "VALUES (?, ?)",
                    (chat_id, message_id),
                )
            conn.commit()
        finally:
            conn.close()
        return message_id

    return _add


@pytest.fixture
def add_handle(source_db_path: Path):
    """
    Add a participant to a chat.

    Returns a function add(chat_id, identifier) -> handle rowid.
    """

    def _add(chat_id: int, identifier: str) -> int:
        conn = sqlite3.connect(source_db_path)
        try:
            row = conn.execute(
                "SELECT ROWID FROM handle WHERE id = ?", (identifier,)
            ).fetchone()
            if row:
                handle_id = row[0]
            else:
                handle_id = conn.execute(
                    "INSERT INTO handle (id) VALUES (?)", (identifier,)
                ).lastrowid
            conn.execute(
                "INSERT INTO chat_handle_join (chat_id, handle_id) "
                "VALUES (?, ?)",
                (chat_id, handle_id),
            )
            conn.commit()
        finally:
            conn.close()
        return handle_id

    return _add


@pytest.fixture
def source_store(source_db_path: Path):
    """Open read-only SourceStore over the synthetic chat.db."""
    store = SourceStore(source_db_path)
    yield store
    store.close()


@pytest.fixture
def index_store(temp_db_path: Path):
    """Open IndexStore in a temporary directory."""
    store = IndexStore(temp_db_path).open()
    yield store
    store.close()


@pytest.fixture
def manager(temp_db_path: Path, source_db_path: Path):
    """IndexManager wired to the synthetic chat.db and a temp index."""
    with IndexManager(
        index_path=temp_db_path, source_path=source_db_path
    ) as mgr:
        yield mgr
