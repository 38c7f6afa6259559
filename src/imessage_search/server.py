"""
iMessage Search MCP Server

Exposes the message search index to MCP clients. The index itself is kept
up to date by IndexScheduler, started alongside the server by the CLI.

TOOLS (2 total):
- search(query, page?, page_size?, contacts?) - Paginated substring search
- index_status() - Index size, cursor and pending backlog
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from typing_extensions import TypedDict

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError

from .index.search import SearchError

if TYPE_CHECKING:
    from .index import IndexManager

logger = logging.getLogger(__name__)


# ========== Response Type Definitions ==========


class MessageHit(TypedDict):
    """A message matching a search."""

    message_id: int
    text: str
    conversation_id: int | None
    contact_identifier: str
    display_name: str
    date: str | None


class SearchResponse(TypedDict):
    """One page of search results."""

    results: list[MessageHit]
    page: int
    page_size: int
    total: int


class IndexStatus(TypedDict):
    """Index statistics."""

    entry_count: int
    last_indexed_id: int
    source_max_id: int | None
    pending: int | None
    last_indexed_at: str | None
    db_size_mb: float


# ========== Tool Implementations ==========


async def search_messages(
    manager: IndexManager,
    query: str,
    page: int = 1,
    page_size: int | None = None,
    contacts: list[str] | None = None,
) -> SearchResponse:
    """Run a search off the event loop and shape it for MCP clients."""
    try:
        result = await asyncio.to_thread(
            manager.search,
            query,
            page=page,
            page_size=page_size,
            contacts=contacts,
        )
    except SearchError as e:
        raise ToolError("Search failed") from e
    return result.to_dict()


async def get_index_status(manager: IndexManager) -> IndexStatus:
    stats = await asyncio.to_thread(manager.get_stats)
    return {
        "entry_count": stats.entry_count,
        "last_indexed_id": stats.last_indexed_id,
        "source_max_id": stats.source_max_id,
        "pending": stats.pending,
        "last_indexed_at": (
            stats.last_indexed_at.isoformat() if stats.last_indexed_at else None
        ),
        "db_size_mb": round(stats.db_size_mb, 2),
    }


def create_server(manager: IndexManager) -> FastMCP:
    """
    Build the MCP server around an IndexManager.

    Args:
        manager: Opened manager shared with the index scheduler

    Returns:
        FastMCP instance ready for run() / run_async()
    """
    mcp = FastMCP("iMessage Search")

    @mcp.tool
    async def search(
        query: str,
        page: int = 1,
        page_size: int | None = None,
        contacts: list[str] | None = None,
    ) -> SearchResponse:
        """
        Search messages for a substring, newest first.

        Matching is case-insensitive for ASCII letters. There is no
        ranking: results are ordered by date.

        Args:
            query: Text to find in message bodies
            page: 1-based page number (default: 1)
            page_size: Results per page (default: 20)
            contacts: Contact ids to restrict results to; a contact id
                covers every phone number and email of that person

        Returns:
            Page of results with the total number of matches. Totals are
            capped at the scan limit (10,000 by default).

        Examples:
            >>> search("dinner")
            >>> search("flight", page=2)
            >>> search("address", contacts=["main-42"])
        """
        return await search_messages(manager, query, page, page_size, contacts)

    @mcp.tool
    async def index_status() -> IndexStatus:
        """
        Report how much of the message history is searchable.

        Returns:
            Indexed entry count, cursor, newest source message id,
            pending backlog, last update time and index size in MB
        """
        return await get_index_status(manager)

    return mcp
