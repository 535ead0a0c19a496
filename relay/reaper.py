"""Background reclamation of abandoned leases."""

from __future__ import annotations

import asyncio
import logging

from relay.dedup import DedupMarkers
from relay.models import Reclaimed
from relay.queue import TaskQueue

LOGGER = logging.getLogger(__name__)


class LockReaper:
    """Periodically hands stale leases back to the queue.

    Old dedup day directories are pruned on the same timer.
    """

    def __init__(
        self,
        queue: TaskQueue,
        interval_seconds: float = 30.0,
        markers: DedupMarkers | None = None,
    ) -> None:
        self._queue = queue
        self._interval_seconds = interval_seconds
        self._markers = markers
        self._stop_event = asyncio.Event()

    def tick(self) -> list[Reclaimed]:
        """Run one reclamation pass; never raises."""

        reclaimed: list[Reclaimed] = []
        try:
            reclaimed = self._queue.reclaim_stale(source="REAPER")
        except Exception:  # noqa: BLE001
            LOGGER.exception("Reaper pass failed")
        if self._markers is not None:
            try:
                self._markers.prune()
            except Exception:  # noqa: BLE001
                LOGGER.exception("Dedup marker pruning failed")
        return reclaimed

    async def run_forever(self) -> None:
        """Run reaper loop until stop() is called.

        Each run gets a fresh stop event bound to the running loop, so the same
        reaper can be started again after an earlier run was stopped.
        """
        self._stop_event = asyncio.Event()
        LOGGER.info("Lock reaper started (interval %.1fs)", self._interval_seconds)
        try:
            while not self._stop_event.is_set():
                self.tick()
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval_seconds)
                except asyncio.TimeoutError:
                    continue
        finally:
            LOGGER.info("Lock reaper stopped")

    def stop(self) -> None:
        """Signal the loop to stop."""

        self._stop_event.set()
