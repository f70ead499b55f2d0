"""Round timer: background task that delivers due room deadlines.

Rooms only record *when* they next need to act (registration close, next
draw, claim window close, end of announce).  This loop notices due
deadlines and calls ``Room.on_deadline``, which takes the room's lock and
re-checks the deadline, so a wakeup that raced with a client event is
harmless.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Callable

if TYPE_CHECKING:
    from app.registry import RoomRegistry

logger = logging.getLogger(__name__)

# How often the timer loop checks for expired deadlines (seconds)
TICK_INTERVAL = 0.25


class RoundTimer:
    """Fires room deadlines from a single asyncio background loop."""

    def __init__(
        self, registry: "RoomRegistry", clock: Callable[[], float] = time.time
    ) -> None:
        self._registry = registry
        self._clock = clock
        self._task: asyncio.Task | None = None

    def start(self) -> None:
        """Start the background timer loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            logger.info("Round timer started")

    def stop(self) -> None:
        """Stop the background timer loop."""
        if self._task and not self._task.done():
            self._task.cancel()
            logger.info("Round timer stopped")

    async def tick(self) -> list[int]:
        """Fire every room whose deadline has passed.  Returns their stakes.

        Rooms share nothing but the ledger, so they are fired concurrently.
        """
        now = self._clock()
        due = [
            room
            for room in self._registry
            if room.deadline is not None and now >= room.deadline
        ]
        if not due:
            return []

        results = await asyncio.gather(
            *(room.on_deadline() for room in due), return_exceptions=True
        )
        for room, result in zip(due, results):
            if isinstance(result, Exception):
                logger.error(
                    "Deadline error for room %d", room.stake, exc_info=result
                )
        return [room.stake for room in due]

    async def _loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(TICK_INTERVAL)
                try:
                    await self.tick()
                except Exception:
                    logger.exception("Round timer tick failed")
        except asyncio.CancelledError:
            pass
