"""
Sync Scheduler — periodic and on-demand sync triggers.

One asyncio task runs the periodic loop. On-demand triggers (app resume,
an explicit request, a local save) call straight into the engine. The
engine rejects overlapping passes, so a trigger that fires mid-pass is
dropped and the next tick picks up whatever it would have done.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from .engine import SyncEngine
from .models import SyncReport

logger = logging.getLogger("vaultnote.sync.scheduler")

MAX_RECORDED_ERRORS = 50

Sleep = Callable[[float], Awaitable[Any]]


class SyncScheduler:
    """Owns the periodic sync task.

    Args:
        engine: The engine every trigger drives.
        interval_minutes: Minutes between periodic passes; 0 disables them.
        sleep: Awaitable sleep used between periodic passes.
    """

    def __init__(
        self, engine: SyncEngine, interval_minutes: int = 2, sleep: Sleep = asyncio.sleep
    ) -> None:
        self.engine = engine
        self.interval_minutes = interval_minutes
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self.last_run: Optional[datetime] = None
        self.dropped = 0
        self.errors: list[str] = []

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the periodic loop on the running event loop."""
        if self.is_running:
            return
        if self.interval_minutes <= 0:
            logger.info("Periodic sync disabled")
            return
        logger.info("Periodic sync every %d min", self.interval_minutes)
        self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        """Cancel the periodic loop and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Periodic sync stopped")

    async def set_interval(self, minutes: int) -> None:
        """Change the interval and restart the loop."""
        self.interval_minutes = minutes
        await self.stop()
        self.start()

    async def _loop(self) -> None:
        while True:
            await self._sleep(self.interval_minutes * 60)
            await self.trigger("periodic")

    def _record_error(self, error: str) -> None:
        ts = datetime.now(timezone.utc).isoformat()
        self.errors.append(f"[{ts}] {error}")
        if len(self.errors) > MAX_RECORDED_ERRORS:
            self.errors = self.errors[-MAX_RECORDED_ERRORS:]

    async def trigger(self, reason: str = "manual") -> Optional[SyncReport]:
        """Run a pass now unless one is already running.

        Errors are logged and recorded, never raised, so a failing pass
        cannot kill the periodic loop.

        Returns:
            The pass report, or None if dropped or failed.
        """
        if self.engine.is_running:
            self.dropped += 1
            logger.debug("Dropping %s trigger, sync in progress", reason)
            return None
        try:
            report = await self.engine.sync(reason)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Sync (%s) failed: %s", reason, exc)
            self._record_error(f"{reason}: {exc}")
            return None
        if report is None:
            self.dropped += 1
        else:
            self.last_run = report.finished_at
        return report

    def request(self, reason: str = "manual") -> Optional[asyncio.Task]:
        """Fire-and-forget trigger, e.g. right after a local save.

        Returns:
            The scheduled task, or None if a pass is already running.
        """
        if self.engine.is_running:
            self.dropped += 1
            return None
        return asyncio.get_running_loop().create_task(self.trigger(reason))

    async def on_resume(self) -> Optional[SyncReport]:
        """Trigger a pass when the application comes back to the foreground."""
        return await self.trigger("resume")
