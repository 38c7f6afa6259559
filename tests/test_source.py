"""Tests for read-only access to chat.db."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime

import pytest

from imessage_search.index.source import SourceStore, convert_mac_time


class TestConvertMacTime:
    """Tests for Mac absolute time conversion."""

    def test_epoch(self):
        assert convert_mac_time(0) == datetime(2001, 1, 1, tzinfo=UTC)

    def test_nanoseconds(self):
        one_day = 86_400 * 1_000_000_000
        assert convert_mac_time(one_day) == datetime(2001, 1, 2, tzinfo=UTC)

    def test_none(self):
        assert convert_mac_time(None) is None


class TestOpen:
    """Tests for opening the source database."""

    def test_missing_database_raises(self, tmp_path):
        store = SourceStore(tmp_path / "missing" / "chat.db")
        with pytest.raises(FileNotFoundError):
            store.open()

    def test_opens_read_only(self, source_store, add_message):
        add_message(text="hello")
        conn = source_store.open()._get_conn()
        with pytest.raises(sqlite3.OperationalError):
            conn.execute("DELETE FROM message")

    def test_default_path_from_config(self, tmp_path, monkeypatch):
        path = tmp_path / "chat.db"
        monkeypatch.setenv("IMESSAGE_SEARCH_SOURCE_PATH", str(path))
        assert SourceStore().db_path == path


class TestFetchMessagesAfter:
    """Tests for incremental reads."""

    def test_ascending_after_cursor(self, source_store, add_message):
        for i in range(5):
            add_message(text=f"msg {i}", chat_id=1)

        rows = source_store.fetch_messages_after(2, 10)

        assert [r.id for r in rows] == [3, 4, 5]

    def test_limit(self, source_store, add_message):
        for i in range(5):
            add_message(text=f"msg {i}")
        rows = source_store.fetch_messages_after(0, 2)
        assert [r.id for r in rows] == [1, 2]

    def test_carries_columns(self, source_store, add_message):
        add_message(text=None, body=b"\x01blob", date=123, chat_id=9)

        (row,) = source_store.fetch_messages_after(0, 10)

        assert row.text is None
        assert row.attributed_body == b"\x01blob"
        assert row.date == 123
        assert row.chat_id == 9

    def test_message_without_chat_included(self, source_store, add_message):
        add_message(text="orphan")
        (row,) = source_store.fetch_messages_after(0, 10)
        assert row.chat_id is None

    def test_message_in_several_chats_returned_once(
        self, source_store, source_db_path, add_message
    ):
        message_id = add_message(text="shared", chat_id=8)
        conn = sqlite3.connect(source_db_path)
        conn.execute(
            "INSERT INTO chat_message_join (chat_id, message_id) VALUES (3, ?)",
            (message_id,),
        )
        conn.commit()
        conn.close()

        rows = source_store.fetch_messages_after(0, 10)

        assert len(rows) == 1
        assert rows[0].chat_id == 3


class TestLookups:
    """Tests for max id and handle lookups."""

    def test_max_message_id_empty(self, source_store):
        assert source_store.max_message_id() == 0

    def test_max_message_id(self, source_store, add_message):
        add_message(text="a", rowid=40)
        add_message(text="b", rowid=12)
        assert source_store.max_message_id() == 40

    def test_chat_ids_for_handles(self, source_store, add_handle):
        add_handle(1, "+15551234567")
        add_handle(2, "+15551234567")
        add_handle(2, "friend@example.com")
        add_handle(3, "other@example.com")

        chats = source_store.chat_ids_for_handles(
            ["+15551234567", "friend@example.com"]
        )

        assert chats == {1, 2}

    def test_chat_ids_for_unknown_handle(self, source_store, add_handle):
        add_handle(1, "+15551234567")
        assert source_store.chat_ids_for_handles(["nobody"]) == set()
        assert source_store.chat_ids_for_handles([]) == set()

    def test_chat_ids_for_many_handles(self, source_store, add_handle):
        """Lookups larger than one parameter chunk are split."""
        add_handle(7, "handle-999")
        handles = [f"handle-{i}" for i in range(1200)]
        assert source_store.chat_ids_for_handles(handles) == {7}

    def test_contact_identifier_for_chat(self, source_store, add_handle):
        add_handle(4, "first@example.com")
        add_handle(4, "second@example.com")
        assert source_store.contact_identifier_for_chat(4) == (
            "first@example.com"
        )

    def test_contact_identifier_missing(self, source_store, add_message):
        add_message(text="x")
        assert source_store.contact_identifier_for_chat(99) is None
        assert source_store.contact_identifier_for_chat(None) is None
