"""
Memory Maintenance

Background sweep that deletes memories past their expiry on a fixed
interval. The sweep is single-flight and never blocks callers.
"""

import asyncio

import structlog

from grounding.config import Settings, get_settings
from grounding.engine.memory_store import ConversationMemoryStore
from grounding.errors import StoreError

logger = structlog.get_logger(__name__)


class MemoryCleanupScheduler:
    """
    Periodic expired-memory sweep.

    start() launches the background task and stop() cancels it.
    run_once() performs a single sweep and returns the number of deleted
    memories, or None when a sweep is already in progress.
    """

    def __init__(
        self,
        memory_store: ConversationMemoryStore,
        settings: Settings | None = None,
        interval_seconds: float | None = None,
    ):
        self.memory_store = memory_store
        self.settings = settings or get_settings()
        self.interval_seconds = interval_seconds or self.settings.memory_cleanup_interval_seconds
        self._task: asyncio.Task | None = None
        self._running = False
        self._sweeping = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._worker())
        logger.info("Memory cleanup scheduler started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        self._running = False

        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("Memory cleanup scheduler stopped")

    async def _worker(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval_seconds)
                await self.run_once()
            except asyncio.CancelledError:
                break
            except StoreError as e:
                logger.error("Memory cleanup sweep failed", error=str(e))
            except Exception as e:
                logger.error("Memory cleanup worker error", error=str(e))

    async def run_once(self) -> int | None:
        """Delete expired memories now."""
        if self._sweeping:
            logger.debug("Memory cleanup already in progress, skipping")
            return None

        self._sweeping = True
        try:
            deleted = await self.memory_store.delete_expired()
        finally:
            self._sweeping = False

        logger.info("Expired memories cleaned up", deleted=deleted)
        return deleted
