"""Background reconciliation loop.

Periodically asks the instance manager to merge process status reported by
the process supervisor into the registry. One task per manager; a failing
cycle is logged and the loop carries on.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from instancehub.logging_schema import LogEvent

if TYPE_CHECKING:
    from instancehub.instances.manager import InstanceManager

logger = logging.getLogger(__name__)


class Reconciler:
    """Runs InstanceManager.reconcile() every ``interval`` seconds."""

    def __init__(self, manager: InstanceManager, interval: float) -> None:
        self._manager = manager
        self._interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self.run(), name="instance-reconciler")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def run(self) -> None:
        """Main reconcile loop."""
        logger.info(
            "Starting reconciler",
            extra={"event": LogEvent.APP_STARTED, "interval": self._interval},
        )
        try:
            while True:
                await asyncio.sleep(self._interval)
                await self._tick()
        finally:
            logger.info("Reconciler stopped", extra={"event": LogEvent.APP_STOPPED})

    async def _tick(self) -> None:
        try:
            await self._manager.reconcile()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Error in reconcile: %s", e)
