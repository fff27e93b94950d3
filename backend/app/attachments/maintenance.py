"""Periodic attachment sweeper.

Started from the application lifespan. Every ``interval_seconds`` it reclaims
abandoned pending uploads and purges old deleted records. Errors are logged
and the loop keeps running.
"""
import asyncio
import logging
from datetime import timedelta
from typing import Dict, Optional

from app.errors import ChatlineError

from .service import AttachmentLifecycleManager

logger = logging.getLogger(__name__)


class AttachmentSweeper:
    """Background task running the attachment maintenance operations.

    Args:
        manager: The attachment lifecycle manager.
        interval_seconds: Delay between sweeps.
        reclaim_after: Age after which a pending upload counts as abandoned.
        purge_after: Age after which a deleted record is purged.
    """

    def __init__(
        self,
        manager: AttachmentLifecycleManager,
        interval_seconds: float,
        reclaim_after: timedelta = timedelta(hours=24),
        purge_after: timedelta = timedelta(days=7),
    ) -> None:
        self._manager = manager
        self._interval = interval_seconds
        self._reclaim_after = reclaim_after
        self._purge_after = purge_after
        self._task: Optional[asyncio.Task] = None

    async def sweep_once(self) -> Dict[str, int]:
        """Run one reclaim + purge pass."""
        reclaimed = await self._manager.reclaim_abandoned(self._reclaim_after)
        purged = await self._manager.purge_deleted(self._purge_after)
        logger.debug("[AttachmentSweeper] reclaimed=%d purged=%d", reclaimed, purged)
        return {"reclaimed": reclaimed, "purged": purged}

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.sweep_once()
            except ChatlineError as e:
                logger.error("[AttachmentSweeper] sweep failed: %s", e)
            except Exception:
                logger.exception("[AttachmentSweeper] unexpected error during sweep")

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop())
            logger.info("[AttachmentSweeper] started (interval=%ss)", self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("[AttachmentSweeper] stopped")
