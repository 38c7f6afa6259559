"""Command-line interface for imessage-search.

Provides commands for:
- index: Catch up with chat.db (requires Full Disk Access)
- status: Show index statistics
- rebuild: Wipe and rebuild the index
- search: Search the index from the terminal
- serve: Run the MCP server (default)

Usage:
    imessage-search                  # Run MCP server (default)
    imessage-search serve            # Run MCP server explicitly
    imessage-search --watch          # Also index as soon as chat.db changes
    imessage-search index            # Catch up with chat.db
    imessage-search status           # Show index status
    imessage-search rebuild          # Wipe and rebuild index
    imessage-search search "dinner"  # Search from the terminal
"""

import asyncio
import logging
import sys
import time
from typing import Annotated

import cyclopts

from .config import get_contacts_path, get_index_path, get_log_level

app = cyclopts.App(
    name="imessage-search",
    help="Incremental substring search over your iMessage history.",
)


def _configure_logging(verbose: bool = False) -> None:
    """Send log records to stderr (stdout carries the MCP protocol)."""
    level = logging.DEBUG if verbose else get_log_level()
    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _format_size(size_mb: float) -> str:
    """Format file size for display."""
    if size_mb < 1:
        return f"{size_mb * 1024:.1f} KB"
    return f"{size_mb:.1f} MB"


def _format_time(seconds: float) -> str:
    """Format duration for display."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes = int(seconds // 60)
    secs = seconds % 60
    return f"{minutes}m {secs:.1f}s"


def _progress_bar(current: int, total: int | None, width: int = 40) -> str:
    """Create a progress bar string."""
    if total is None or total == 0:
        # Indeterminate progress
        return f"[{'=' * (current % width)}>]"

    pct = min(current / total, 1.0)
    filled = int(width * pct)
    bar = "=" * filled + "-" * (width - filled)
    return f"[{bar}] {pct * 100:.0f}%"


def _print_access_help(e: Exception) -> None:
    if isinstance(e, PermissionError):
        print(f"\n✗ Permission denied: {e}", file=sys.stderr)
        print("\nTo fix this:", file=sys.stderr)
        print("  1. Open System Settings", file=sys.stderr)
        print("  2. Privacy & Security → Full Disk Access", file=sys.stderr)
        print("  3. Add and enable your terminal app", file=sys.stderr)
        print("  4. Restart terminal and try again", file=sys.stderr)
    else:
        print(f"\n✗ Not found: {e}", file=sys.stderr)


def _load_contacts():
    """Load AddressBook names; an unreadable AddressBook leaves it empty."""
    from .contacts import ContactDirectory

    directory = ContactDirectory()
    directory.load_address_book(get_contacts_path())
    return directory


async def _serve(watch: bool) -> None:
    from .index import IndexManager, IndexScheduler
    from .server import create_server

    contacts = await asyncio.to_thread(_load_contacts)
    manager = IndexManager(contacts=contacts).open()

    watch_path = manager.source.db_path.parent if watch else None
    scheduler = IndexScheduler(manager, watch_path=watch_path)
    scheduler.start()

    try:
        await create_server(manager).run_async()
    finally:
        await scheduler.stop()
        manager.close()


def _run_serve(watch: bool = False, verbose: bool = False) -> None:
    """Internal function to run the MCP server."""
    _configure_logging(verbose)
    asyncio.run(_serve(watch))


@app.command
def serve(
    watch: Annotated[
        bool,
        cyclopts.Parameter(
            name=["--watch", "-w"],
            help="Index new messages as soon as chat.db changes",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        cyclopts.Parameter(
            name=["--verbose", "-v"],
            help="Enable verbose output",
        ),
    ] = False,
) -> None:
    """
    Run the MCP server.

    This is the default command when no subcommand is specified.

    At startup, the index catches up with chat.db in the background and
    then checks for new messages every 30 seconds. Use --watch to index
    new messages as soon as they arrive.
    Requires Full Disk Access for the terminal.
    """
    _run_serve(watch=watch, verbose=verbose)


@app.command
def index(
    verbose: Annotated[
        bool,
        cyclopts.Parameter(name=["--verbose", "-v"], help="Show progress"),
    ] = False,
) -> None:
    """
    Catch up the search index with chat.db.

    Only messages newer than the last indexed one are read, so running
    this repeatedly is cheap.

    IMPORTANT: Requires Full Disk Access permission for Terminal.
    Grant access in System Settings → Privacy & Security → Full Disk Access.
    """
    from .index import IndexManager

    _configure_logging(verbose)

    print("Indexing messages...")
    print(f"Index location: {get_index_path()}")
    print()

    start = time.time()
    last_report = start

    def progress(current: int, total: int | None, message: str) -> None:
        nonlocal last_report
        now = time.time()

        # Throttle updates to avoid spam
        if now - last_report < 0.5 and total is None:
            return
        last_report = now

        if total:
            bar = _progress_bar(current, total)
            print(f"\r{bar} {message}", end="", flush=True)
        else:
            print(f"\r{message}", end="", flush=True)

    try:
        with IndexManager() as manager:
            callback = progress if verbose else None
            count = manager.build_index(progress_callback=callback)
            elapsed = time.time() - start

            if verbose:
                print()  # Newline after progress

            print()
            print(f"✓ Considered {count:,} messages in {_format_time(elapsed)}")

            stats = manager.get_stats()
            print(f"  Searchable messages: {stats.entry_count:,}")
            print(f"  Database size: {_format_size(stats.db_size_mb)}")

    except (PermissionError, FileNotFoundError) as e:
        _print_access_help(e)
        sys.exit(1)

    except Exception as e:
        print(f"\n✗ Error: {e}", file=sys.stderr)
        sys.exit(1)


@app.command
def status(
    verbose: Annotated[
        bool,
        cyclopts.Parameter(
            name=["--verbose", "-v"],
            help="Enable verbose output",
        ),
    ] = False,
) -> None:
    """
    Show index statistics.

    Displays:
    - Searchable message count and cursor position
    - Messages waiting to be indexed
    - Last update time and database file size
    """
    from .index import IndexManager

    _configure_logging(verbose)

    manager = IndexManager()

    if not manager.has_index():
        print("No index found.")
        print(f"Expected location: {get_index_path()}")
        print()
        print("Run 'imessage-search index' to build the index.")
        sys.exit(1)

    with manager:
        stats = manager.get_stats()

    print("iMessage Search Index Status")
    print("=" * 40)
    print(f"Location:     {manager.db_path}")
    print(f"Messages:     {stats.entry_count:,}")
    print(f"Cursor:       {stats.last_indexed_id:,}")
    print(f"Database:     {_format_size(stats.db_size_mb)}")

    if stats.pending is None:
        print("Pending:      unknown (chat.db not readable)")
    else:
        print(f"Pending:      {stats.pending:,}")
    print()

    if stats.last_indexed_at:
        when = stats.last_indexed_at.strftime("%Y-%m-%d %H:%M:%S")
        print(f"Last update:  {when}")
        if stats.pending:
            print()
            print("⚠ Index is behind. Run 'imessage-search index' to catch up.")
    else:
        print("Last update:  Never")
        print()
        print("⚠ Nothing indexed yet. Run 'imessage-search index' to build.")


@app.command
def rebuild(
    verbose: Annotated[
        bool,
        cyclopts.Parameter(name=["--verbose", "-v"], help="Show progress"),
    ] = False,
) -> None:
    """
    Force rebuild the search index.

    Clears every indexed message, resets the cursor and re-reads chat.db
    from the start. Use this to pick up messages that were synced into
    the history after newer ones had already been indexed.
    """
    from .index import IndexManager

    _configure_logging(verbose)

    print("Rebuilding entire index...")
    start = time.time()

    def progress(current: int, total: int | None, message: str) -> None:
        if verbose:
            bar = _progress_bar(current, total)
            print(f"\r{bar} {message}", end="", flush=True)

    try:
        with IndexManager() as manager:
            count = manager.rebuild(
                progress_callback=progress if verbose else None,
            )
        elapsed = time.time() - start

        if verbose:
            print()

        print(f"✓ Rebuilt {count:,} messages in {_format_time(elapsed)}")

    except (PermissionError, FileNotFoundError) as e:
        _print_access_help(e)
        sys.exit(1)

    except Exception as e:
        print(f"\n✗ Error: {e}", file=sys.stderr)
        sys.exit(1)


@app.command
def search(
    query: str,
    page: Annotated[
        int,
        cyclopts.Parameter(name=["--page", "-p"], help="Page number"),
    ] = 1,
    page_size: Annotated[
        int | None,
        cyclopts.Parameter(name=["--page-size", "-n"], help="Results per page"),
    ] = None,
    contact: Annotated[
        list[str] | None,
        cyclopts.Parameter(
            name=["--contact", "-c"],
            help="Restrict to a contact id (repeatable)",
        ),
    ] = None,
    verbose: Annotated[
        bool,
        cyclopts.Parameter(
            name=["--verbose", "-v"],
            help="Enable verbose output",
        ),
    ] = False,
) -> None:
    """
    Search indexed messages from the terminal.

    Results are newest first. Contact names are shown when the
    AddressBook is readable.
    """
    from .index import IndexManager, SearchError

    _configure_logging(verbose)

    manager = IndexManager(contacts=_load_contacts())
    if not manager.has_index():
        print("No index found. Run 'imessage-search index' first.")
        sys.exit(1)

    try:
        with manager:
            result = manager.search(
                query, page=page, page_size=page_size, contacts=contact
            )
    except SearchError as e:
        print(f"✗ {e}", file=sys.stderr)
        sys.exit(1)

    if not result.results:
        print("No matches.")
        return

    for hit in result.results:
        when = hit.date[:16].replace("T", " ") if hit.date else "????"
        print(f"{when}  {hit.display_name}")
        print(f"    {hit.text}")

    first = (result.page - 1) * result.page_size + 1
    last = first + len(result.results) - 1
    print()
    print(f"Showing {first}-{last} of {result.total:,}")


@app.default
def default_handler(
    watch: Annotated[
        bool,
        cyclopts.Parameter(
            name=["--watch", "-w"],
            help="Index new messages as soon as chat.db changes",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        cyclopts.Parameter(
            name=["--verbose", "-v"],
            help="Enable verbose output",
        ),
    ] = False,
) -> None:
    """Run the MCP server (default when no command specified)."""
    _run_serve(watch=watch, verbose=verbose)


def main() -> None:
    """Entry point for the CLI."""
    app()
