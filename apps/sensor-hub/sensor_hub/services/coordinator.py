"""Fixed-interval driver for new-record pushes and liveness checks."""
from __future__ import annotations

import asyncio
import logging
from typing import Optional

from sensor_hub.services.broadcast import BroadcastHub
from sensor_hub.services.liveness import LivenessFuser
from sensor_hub.storage import SensorStore

logger = logging.getLogger(__name__)


class PeriodicCoordinator:
    def __init__(
        self,
        store: SensorStore,
        hub: BroadcastHub,
        liveness: LivenessFuser,
        *,
        interval_seconds: float = 2.0,
    ) -> None:
        self.store = store
        self.hub = hub
        self.liveness = liveness
        self.interval = float(interval_seconds)
        self.last_record_id: Optional[int] = None
        self._task: asyncio.Task | None = None
        self._stop = asyncio.Event()

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name="periodic-coordinator")

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def tick(self) -> None:
        await self._push_new_record()
        try:
            await self.liveness.recompute("poll")
        except Exception:
            logger.exception("Liveness recompute failed")

    async def _push_new_record(self) -> None:
        try:
            record = await self.store.latest_record()
        except Exception as exc:
            logger.warning("Unable to read latest sensor record: %s", exc)
            return
        if record is None or record.id == self.last_record_id:
            return
        self.last_record_id = record.id
        self.hub.broadcast("new", record.as_payload())

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while not self._stop.is_set():
            started = loop.time()
            await self.tick()
            sleep_for = max(self.interval - (loop.time() - started), 0.05)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=sleep_for)
            except asyncio.TimeoutError:
                continue
