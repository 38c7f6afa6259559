"""iMessage Search - incremental substring search over the Messages database.

Features:
- Recovers text hidden in attributedBody archives
- Rebuildable index kept in step with chat.db in small atomic batches
- Paginated search filtered by contact, served over MCP

Usage:
    imessage-search            # Run MCP server (default)
    imessage-search index      # Catch up with chat.db
    imessage-search status     # Show index statistics
    imessage-search rebuild    # Wipe and rebuild the index
    imessage-search search Q   # Search from the terminal
"""

from .cli import main

__all__ = ["main"]
