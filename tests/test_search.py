"""Tests for the query engine.

Tests paginated substring search over the index:
- Pagination and totals
- Blank-query fast path
- Scan cap boundary
- Contact and conversation filters
- Result enrichment (identifiers, display names, dates)
- Error handling
"""

from __future__ import annotations

import sqlite3
from unittest.mock import MagicMock

import pytest

from imessage_search.contacts import ContactDirectory
from imessage_search.index.search import (
    QueryEngine,
    SearchError,
    SearchPage,
)
from imessage_search.index.store import IndexedEntry

SECOND = 1_000_000_000


def _fill(store, count: int, text: str = "match", chat_id: int | None = 1):
    with store.transaction():
        for i in range(1, count + 1):
            store.upsert_entry(
                IndexedEntry(
                    message_id=i, text=f"{text} {i}", date=i * SECOND,
                    chat_id=chat_id,
                )
            )


class TestPagination:
    """Tests for page slicing and totals."""

    def test_45_matches_20_per_page(self, index_store):
        _fill(index_store, 45)
        engine = QueryEngine(index_store)

        first = engine.search("match", page=1, page_size=20)
        third = engine.search("match", page=3, page_size=20)

        assert len(first.results) == 20
        assert first.total == 45
        assert len(third.results) == 5
        assert third.total == 45

    def test_pages_are_disjoint_and_newest_first(self, index_store):
        _fill(index_store, 45)
        engine = QueryEngine(index_store)

        ids = []
        for page in (1, 2, 3):
            result = engine.search("match", page=page, page_size=20)
            ids.extend(r.message_id for r in result.results)

        assert ids == list(range(45, 0, -1))

    def test_page_past_end_is_empty(self, index_store):
        _fill(index_store, 5)
        result = QueryEngine(index_store).search("match", page=9, page_size=5)
        assert result.results == []
        assert result.total == 5

    def test_page_below_one_reads_first_page(self, index_store):
        _fill(index_store, 3)
        result = QueryEngine(index_store).search("match", page=0)
        assert result.page == 1
        assert len(result.results) == 3

    def test_default_page_size(self, index_store):
        _fill(index_store, 30)
        engine = QueryEngine(index_store, default_page_size=20)

        assert len(engine.search("match").results) == 20
        assert engine.search("match", page_size=0).page_size == 20

    def test_page_size_from_config(self, index_store, monkeypatch):
        monkeypatch.setenv("IMESSAGE_SEARCH_PAGE_SIZE", "7")
        _fill(index_store, 10)
        assert len(QueryEngine(index_store).search("match").results) == 7

    def test_to_dict(self, index_store):
        _fill(index_store, 1)
        data = QueryEngine(index_store).search("match").to_dict()
        assert set(data) == {"results", "page", "page_size", "total"}
        assert data["results"][0]["message_id"] == 1


class TestBlankQuery:
    """Blank queries never touch the store."""

    @pytest.mark.parametrize("query", ["", "   ", "\n\t", None])
    def test_blank_query_returns_empty_page(self, query):
        store = MagicMock()
        result = QueryEngine(store).search(query)

        assert result == SearchPage(results=[], page=1, page_size=20, total=0)
        store.search_text.assert_not_called()


class TestScanCap:
    """The candidate cap bounds totals."""

    def test_cap_exactly_reached(self, index_store):
        _fill(index_store, 10)
        result = QueryEngine(index_store, scan_limit=10).search("match")
        assert result.total == 10

    def test_cap_exceeded_undercounts(self, index_store):
        """With more matches than the cap, total stops at the cap."""
        _fill(index_store, 11)
        engine = QueryEngine(index_store, scan_limit=10, default_page_size=50)

        result = engine.search("match")

        assert result.total == 10
        # The newest candidates are the ones kept
        assert [r.message_id for r in result.results] == list(
            range(11, 1, -1)
        )

    def test_cap_applies_before_filter(self, index_store):
        with index_store.transaction():
            for i in range(1, 21):
                index_store.upsert_entry(
                    IndexedEntry(i, "match", i * SECOND, 1 if i <= 5 else 2)
                )
        engine = QueryEngine(index_store, scan_limit=15)

        result = engine.search("match", chat_ids=[1])

        # Only ids 6-20 were scanned, none of which are in chat 1
        assert result.total == 0


class TestFilters:
    """Tests for contact and conversation filters."""

    @pytest.fixture
    def contacts(self) -> ContactDirectory:
        directory = ContactDirectory()
        directory.add_contact("+15551234567", "Jane Appleseed", "main-1")
        directory.add_contact("jane@example.com", "Jane Appleseed", "main-1")
        directory.add_contact("+15559876543", "Bob Builder", "main-2")
        return directory

    @pytest.fixture
    def populated(self, index_store, add_handle):
        add_handle(1, "+15551234567")
        add_handle(2, "jane@example.com")
        add_handle(3, "+15559876543")
        with index_store.transaction():
            for message_id, chat_id in [(1, 1), (2, 2), (3, 3), (4, 1)]:
                index_store.upsert_entry(
                    IndexedEntry(
                        message_id, f"dinner {message_id}",
                        message_id * SECOND, chat_id,
                    )
                )
        return index_store

    def test_contact_filter_covers_all_handles(
        self, populated, source_store, contacts
    ):
        """Every phone and email of the contact matches."""
        engine = QueryEngine(populated, source_store, contacts)

        result = engine.search("dinner", contacts=["main-1"])

        assert [r.message_id for r in result.results] == [4, 2, 1]
        assert all(r.conversation_id in {1, 2} for r in result.results)

    def test_chat_id_filter(self, populated, source_store, contacts):
        engine = QueryEngine(populated, source_store, contacts)
        result = engine.search("dinner", chat_ids=[3])
        assert [r.message_id for r in result.results] == [3]

    def test_filters_union(self, populated, source_store, contacts):
        engine = QueryEngine(populated, source_store, contacts)
        result = engine.search("dinner", contacts=["main-2"], chat_ids=[2])
        assert {r.message_id for r in result.results} == {2, 3}

    def test_unknown_contact_matches_nothing(
        self, populated, source_store, contacts
    ):
        engine = QueryEngine(populated, source_store, contacts)
        result = engine.search("dinner", contacts=["main-404"])
        assert result.results == []
        assert result.total == 0

    def test_no_filter_returns_everything(
        self, populated, source_store, contacts
    ):
        engine = QueryEngine(populated, source_store, contacts)
        assert engine.search("dinner").total == 4

    def test_resolve_conversations(self, populated, source_store, contacts):
        engine = QueryEngine(populated, source_store, contacts)
        assert engine.resolve_conversations(None, None) is None
        assert engine.resolve_conversations(["main-1"], None) == {1, 2}
        assert engine.resolve_conversations([], [9]) == {9}


class TestEnrichment:
    """Tests for identifiers, names and dates on results."""

    def test_display_name_from_contacts(
        self, index_store, source_store, add_handle
    ):
        add_handle(1, "+15551234567")
        index_store.upsert_entry(IndexedEntry(1, "hello", 0, 1))
        contacts = ContactDirectory()
        contacts.add_contact("+15551234567", "Jane Appleseed", "main-1")

        (hit,) = QueryEngine(index_store, source_store, contacts).search(
            "hello"
        ).results

        assert hit.contact_identifier == "+15551234567"
        assert hit.display_name == "Jane Appleseed"
        assert hit.conversation_id == 1
        assert hit.date == "2001-01-01T00:00:00+00:00"

    def test_unknown_number_is_formatted(
        self, index_store, source_store, add_handle
    ):
        add_handle(1, "+15550001111")
        index_store.upsert_entry(IndexedEntry(1, "hello", 0, 1))

        (hit,) = QueryEngine(
            index_store, source_store, ContactDirectory()
        ).search("hello").results

        assert hit.display_name == "(555) 000-1111"

    def test_without_source_identifier_is_unknown(self, index_store):
        index_store.upsert_entry(IndexedEntry(1, "hello", None, None))

        (hit,) = QueryEngine(index_store).search("hello").results

        assert hit.contact_identifier == "Unknown"
        assert hit.display_name == "Unknown"
        assert hit.date is None

    def test_name_lookup_failure_falls_back(
        self, index_store, source_store, add_handle
    ):
        add_handle(1, "friend@example.com")
        index_store.upsert_entry(IndexedEntry(1, "hello", 0, 1))
        contacts = MagicMock()
        contacts.display_name.side_effect = RuntimeError("lookup down")

        (hit,) = QueryEngine(index_store, source_store, contacts).search(
            "hello"
        ).results

        assert hit.display_name == "friend@example.com"

    def test_unreadable_source_falls_back(self, index_store, tmp_path):
        from imessage_search.index.source import SourceStore

        index_store.upsert_entry(IndexedEntry(1, "hello", 0, 1))
        missing = SourceStore(tmp_path / "nope" / "chat.db")

        (hit,) = QueryEngine(index_store, missing).search("hello").results

        assert hit.contact_identifier == "Unknown"


class TestErrors:
    """Store failures surface as SearchError."""

    def test_store_error_raises_search_error(self):
        store = MagicMock()
        store.search_text.side_effect = sqlite3.OperationalError("corrupt")

        with pytest.raises(SearchError, match="Search failed"):
            QueryEngine(store).search("anything")

    def test_filter_lookup_error_raises_search_error(self, index_store):
        source = MagicMock()
        source.chat_ids_for_handles.side_effect = sqlite3.DatabaseError("x")
        contacts = ContactDirectory()
        contacts.add_contact("+15551234567", "Jane", "main-1")

        engine = QueryEngine(index_store, source, contacts)

        with pytest.raises(SearchError):
            engine.search("hi", contacts=["main-1"])
