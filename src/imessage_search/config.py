"""Configuration for the iMessage search index."""

import os
from pathlib import Path

# Default locations
DEFAULT_SOURCE_PATH = Path.home() / "Library" / "Messages" / "chat.db"
DEFAULT_INDEX_PATH = (
    Path.home() / ".imessage-search-cache" / "search_index.db"
)
DEFAULT_CONTACTS_PATH = (
    Path.home() / "Library" / "Application Support" / "AddressBook"
)


def _env_path(name: str, default: Path) -> Path:
    env_path = os.environ.get(name)
    if env_path:
        return Path(env_path).expanduser()
    return default


def get_source_path() -> Path:
    """
    Get the path of the Messages database (the read-only source store).

    Set IMESSAGE_SEARCH_SOURCE_PATH to customize the location.
    Defaults to ~/Library/Messages/chat.db

    Returns:
        Path to the source database file.
    """
    return _env_path("IMESSAGE_SEARCH_SOURCE_PATH", DEFAULT_SOURCE_PATH)


def get_index_path() -> Path:
    """
    Get the search index database path.

    Set IMESSAGE_SEARCH_INDEX_PATH to customize the location.
    Defaults to ~/.imessage-search-cache/search_index.db

    Returns:
        Path to the index database file.
    """
    return _env_path("IMESSAGE_SEARCH_INDEX_PATH", DEFAULT_INDEX_PATH)


def get_contacts_path() -> Path:
    """
    Get the AddressBook directory used for display names.

    Set IMESSAGE_SEARCH_CONTACTS_PATH to customize the location.

    Returns:
        Path to the AddressBook base directory.
    """
    return _env_path("IMESSAGE_SEARCH_CONTACTS_PATH", DEFAULT_CONTACTS_PATH)


# ========== Indexing Configuration ==========


def get_batch_size() -> int:
    """
    Get the batch size used while catching up on the full history.

    Set IMESSAGE_SEARCH_BATCH_SIZE to customize.
    Defaults to 5000 messages per batch.
    """
    return int(os.environ.get("IMESSAGE_SEARCH_BATCH_SIZE", "5000"))


def get_update_batch_size() -> int:
    """
    Get the batch size used by the periodic incremental update.

    Set IMESSAGE_SEARCH_UPDATE_BATCH_SIZE to customize.
    Defaults to 1000 messages per tick.
    """
    return int(os.environ.get("IMESSAGE_SEARCH_UPDATE_BATCH_SIZE", "1000"))


def get_update_interval() -> float:
    """
    Get the number of seconds between incremental index checks.

    Set IMESSAGE_SEARCH_UPDATE_INTERVAL to customize.
    Defaults to 30 seconds.
    """
    return float(os.environ.get("IMESSAGE_SEARCH_UPDATE_INTERVAL", "30"))


# ========== Search Configuration ==========


def get_scan_limit() -> int:
    """
    Get the maximum number of candidate rows scanned per search.

    Totals reported by a search never exceed this value, so very common
    terms on a large index are undercounted. Lower values keep
    pathological queries fast.

    Set IMESSAGE_SEARCH_SCAN_LIMIT to customize.
    Defaults to 10000.
    """
    return int(os.environ.get("IMESSAGE_SEARCH_SCAN_LIMIT", "10000"))


def get_page_size() -> int:
    """
    Get the default number of search results per page.

    Set IMESSAGE_SEARCH_PAGE_SIZE to customize.
    Defaults to 20.
    """
    return int(os.environ.get("IMESSAGE_SEARCH_PAGE_SIZE", "20"))


def get_log_level() -> str:
    """
    Get the log level name for the CLI and server.

    Set IMESSAGE_SEARCH_LOG_LEVEL (DEBUG, INFO, WARNING, ERROR).
    Defaults to WARNING.
    """
    return os.environ.get("IMESSAGE_SEARCH_LOG_LEVEL", "WARNING").upper()
