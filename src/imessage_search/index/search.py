"""Substring search over the message index.

Provides:
- QueryEngine: paginated, contact-filtered search with display names
- SearchPage / SearchResult: result containers

Matching is a plain substring test (SQLite LIKE): case-insensitive for
ASCII letters, no ranking, no tokenization. ``%`` and ``_`` in a query
match literally.

Each search scans at most ``scan_limit`` of the newest matching entries
before filtering and pagination, so ``total`` never exceeds the cap. This
keeps common terms on a large index fast at the price of undercounting.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING

from ..config import get_page_size, get_scan_limit
from .source import convert_mac_time

if TYPE_CHECKING:
    from collections.abc import Iterable

    from ..contacts import ContactDirectory
    from .source import SourceStore
    from .store import IndexedEntry, IndexStore

logger = logging.getLogger(__name__)

UNKNOWN_CONTACT = "Unknown"


class SearchError(Exception):
    """Raised when a search cannot be answered from the index."""


@dataclass
class SearchResult:
    """A single search hit, enriched for display."""

    message_id: int
    text: str
    conversation_id: int | None
    contact_identifier: str
    date: str | None
    display_name: str


@dataclass
class SearchPage:
    """One page of search results."""

    results: list[SearchResult]
    page: int
    page_size: int
    total: int

    def to_dict(self) -> dict:
        return asdict(self)


class QueryEngine:
    """
    Stateless query front-end for an IndexStore.

    The source store and contact directory are optional: without them,
    contact filters match nothing and results carry raw identifiers.
    """

    def __init__(
        self,
        store: IndexStore,
        source: SourceStore | None = None,
        contacts: ContactDirectory | None = None,
        scan_limit: int | None = None,
        default_page_size: int | None = None,
    ):
        self._store = store
        self._source = source
        self._contacts = contacts
        self.scan_limit = scan_limit or get_scan_limit()
        self.default_page_size = default_page_size or get_page_size()

    def search(
        self,
        query: str,
        *,
        page: int = 1,
        page_size: int | None = None,
        contacts: Iterable[str] | None = None,
        chat_ids: Iterable[int] | None = None,
    ) -> SearchPage:
        """
        Search indexed messages for a substring.

        Args:
            query: Text to find; blank queries return an empty page
            page: 1-based page number (values below 1 read page 1)
            page_size: Results per page (default from config)
            contacts: Contact group ids to restrict to
            chat_ids: Raw conversation ids to restrict to

        Returns:
            SearchPage with results ordered newest first

        Raises:
            SearchError: If the index or source cannot be read
        """
        page = max(page or 1, 1)
        if not page_size or page_size < 1:
            page_size = self.default_page_size

        if not query or not query.strip():
            return SearchPage(results=[], page=page, page_size=page_size, total=0)

        try:
            allowed = self.resolve_conversations(contacts, chat_ids)
            matches = self._store.search_text(query, self.scan_limit)
        except (sqlite3.Error, OSError) as e:
            logger.error("Search for %r failed: %s", query, e)
            raise SearchError("Search failed") from e

        if allowed is not None:
            matches = [m for m in matches if m.chat_id in allowed]

        total = len(matches)
        offset = (page - 1) * page_size
        window = matches[offset : offset + page_size]

        logger.debug(
            "Query %r: %d matches, page %d returns %d",
            query,
            total,
            page,
            len(window),
        )

        return SearchPage(
            results=[self._enrich(entry) for entry in window],
            page=page,
            page_size=page_size,
            total=total,
        )

    def resolve_conversations(
        self,
        contacts: Iterable[str] | None,
        chat_ids: Iterable[int] | None,
    ) -> set[int] | None:
        """
        Turn a contact/conversation filter into allowed chat ids.

        Returns:
            None when no filter was requested, otherwise the (possibly
            empty) set of chat ids a result must belong to
        """
        contact_ids = list(contacts or [])
        allowed = set(chat_ids or [])
        if not contact_ids and not allowed:
            return None

        if contact_ids and self._contacts is not None:
            identifiers = self._contacts.identifiers_for(contact_ids)
            if identifiers and self._source is not None:
                allowed |= self._source.chat_ids_for_handles(identifiers)

        return allowed

    def _enrich(self, entry: IndexedEntry) -> SearchResult:
        identifier = None
        if self._source is not None:
            try:
                identifier = self._source.contact_identifier_for_chat(
                    entry.chat_id
                )
            except (sqlite3.Error, OSError) as e:
                logger.debug("Handle lookup failed for %s: %s", entry.chat_id, e)
        identifier = identifier or UNKNOWN_CONTACT

        display_name = identifier
        if self._contacts is not None:
            try:
                display_name = self._contacts.display_name(identifier)
            except Exception as e:  # Broad: external collaborator
                logger.debug("Name lookup failed for %s: %s", identifier, e)

        date = convert_mac_time(entry.date)
        return SearchResult(
            message_id=entry.message_id,
            text=entry.text,
            conversation_id=entry.chat_id,
            contact_identifier=identifier,
            date=date.isoformat() if date else None,
            display_name=display_name,
        )
