"""Background scheduling for incremental index updates.

Runs inside the server's event loop:
- One catch-up build at startup (in a worker thread)
- A periodic tick every ``interval`` seconds that indexes one batch
  when chat.db has grown
- Optionally, a watchfiles watcher on the Messages directory that
  triggers a tick as soon as chat.db (or its WAL) changes

An asyncio.Lock keeps the catch-up and ticks from overlapping: a tick that
finds the lock held is skipped, not queued. Failures are logged and
retried on the next tick; they never stop the scheduler.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from ..config import get_update_batch_size, get_update_interval

if TYPE_CHECKING:
    from watchfiles import Change

    from .manager import IndexManager

logger = logging.getLogger(__name__)

# chat.db, chat.db-wal and chat.db-shm all signal new messages
SOURCE_FILE_PREFIX = "chat.db"


def _source_filter(change: Change, path: str) -> bool:
    return Path(path).name.startswith(SOURCE_FILE_PREFIX)


class IndexScheduler:
    """
    Keeps the index in step with chat.db while the server runs.

    Usage:
        scheduler = IndexScheduler(manager)
        scheduler.start()
        # ... later ...
        await scheduler.stop()
    """

    def __init__(
        self,
        manager: IndexManager,
        interval: float | None = None,
        batch_size: int | None = None,
        watch_path: Path | None = None,
    ):
        """
        Initialize the scheduler (nothing runs until start()).

        Args:
            manager: IndexManager to drive
            interval: Seconds between ticks (IMESSAGE_SEARCH_UPDATE_INTERVAL)
            batch_size: Rows per tick (IMESSAGE_SEARCH_UPDATE_BATCH_SIZE)
            watch_path: Directory to watch for chat.db changes (no
                watcher if None)
        """
        self.manager = manager
        self.interval = interval or get_update_interval()
        self.batch_size = batch_size or get_update_batch_size()
        self.watch_path = watch_path

        self._lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self.catch_up_done = asyncio.Event()

    @property
    def is_running(self) -> bool:
        """Check if any scheduler task is still alive."""
        return any(not task.done() for task in self._tasks)

    def start(self) -> bool:
        """
        Start the catch-up build and the periodic loop.

        Must be called from a running event loop. Returns immediately;
        the catch-up runs in the background.

        Returns:
            True if started, False if already running
        """
        if self.is_running:
            return False

        self._stop_event.clear()
        self.catch_up_done.clear()
        self._tasks = [
            asyncio.create_task(self._catch_up(), name="index-catch-up"),
            asyncio.create_task(self._periodic_loop(), name="index-periodic"),
        ]
        if self.watch_path is not None:
            self._tasks.append(
                asyncio.create_task(self._watch_loop(), name="index-watch")
            )

        logger.info(
            "Index scheduler started (every %.0fs, %d per batch)",
            self.interval,
            self.batch_size,
        )
        return True

    async def stop(self) -> None:
        """
        Stop all scheduler tasks and wait for them to finish.

        Tasks are not cancelled: a batch already running in a worker
        thread commits first, and the catch-up stops before its next
        batch. Once this returns, nothing touches the manager's stores.
        """
        self._stop_event.set()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Index scheduler stopped")

    async def tick(self) -> int:
        """
        Index one batch if chat.db has new messages.

        Returns:
            Source rows considered; 0 if skipped, up to date, or failed
        """
        if self._stop_event.is_set():
            return 0
        if self._lock.locked():
            logger.debug("Indexing already in progress, skipping tick")
            return 0

        async with self._lock:
            try:
                if not await asyncio.to_thread(self.manager.needs_update):
                    return 0
                count = await asyncio.to_thread(
                    self.manager.index_batch, self.batch_size
                )
            except Exception:
                logger.exception("Incremental index update failed")
                return 0

        if count:
            logger.info("Indexed %d new messages", count)
        return count

    # ─────────────────────────────────────────────────────────────────
    # Background tasks
    # ─────────────────────────────────────────────────────────────────

    async def _catch_up(self) -> None:
        try:
            async with self._lock:
                count = await asyncio.to_thread(
                    self.manager.build_index,
                    should_stop=self._stop_event.is_set,
                )
            logger.info("Catch-up complete: %d messages considered", count)
        except Exception:
            logger.exception("Catch-up indexing failed")
        finally:
            self.catch_up_done.set()

    async def _periodic_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=self.interval
                )
            except TimeoutError:
                await self.tick()

    async def _watch_loop(self) -> None:
        from watchfiles import awatch

        logger.debug("Watching %s for new messages", self.watch_path)
        try:
            async for _changes in awatch(
                self.watch_path,
                watch_filter=_source_filter,
                stop_event=self._stop_event,
                recursive=False,
            ):
                await self.tick()
        except FileNotFoundError:
            logger.warning(
                "Messages directory %s not found, watcher not started",
                self.watch_path,
            )
        except Exception:
            logger.exception("File watcher failed")
