"""Background eviction of idle, empty rooms."""

from __future__ import annotations

import asyncio
import logging

from codesync.rooms import DEFAULT_MAX_IDLE_SECONDS, RoomRegistry

logger = logging.getLogger(__name__)


class Reaper:
    """Periodically sweeps ``registry`` for idle rooms.

    Each tick is one synchronous pass over the rooms with no ``await`` in
    it, so it cannot interleave with a registry mutation and never holds
    the event loop for longer than that pass.
    """

    def __init__(
        self,
        registry: RoomRegistry,
        interval_seconds: float = 60 * 60,
        max_idle_seconds: float = DEFAULT_MAX_IDLE_SECONDS,
    ) -> None:
        self.registry = registry
        self.interval_seconds = interval_seconds
        self.max_idle_seconds = max_idle_seconds
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def tick(self) -> list[str]:
        """Run one sweep now and return the evicted room IDs."""
        evicted = self.registry.sweep(max_idle=self.max_idle_seconds)
        for room_id in evicted:
            logger.info("GC: removed idle room %s", room_id)
        if evicted:
            logger.info(
                "GC: pruned %d room(s); %d remaining", len(evicted), len(self.registry)
            )
        return evicted

    async def _loop(self) -> None:
        # Errors are logged so a transient bug cannot stop the loop for good.
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                self.tick()
            except Exception:
                logger.exception(
                    "GC: unexpected error during room cleanup; will retry next cycle"
                )

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "GC: room sweep loop started (interval=%ss, max idle=%ss)",
            self.interval_seconds,
            self.max_idle_seconds,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("GC: room sweep loop stopped")
