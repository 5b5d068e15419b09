"""Device reachability from a local interface probe and data recency."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional, Set

from sensor_hub.hardware import InterfaceProbe, NullInterfaceProbe, ProbeResult
from sensor_hub.models import LivenessSource, LivenessState, utcnow
from sensor_hub.services.broadcast import BroadcastHub
from sensor_hub.storage import SensorStore

logger = logging.getLogger(__name__)

DEFAULT_ONLINE_WINDOW_SECONDS = 15.0
DEFAULT_RESTORE_DELAY_SECONDS = 1.0

Restorer = Callable[[], Awaitable[object]]


class LivenessFuser:
    """Fuse the probe and recency signals into one debounced online state.

    ``recompute`` is safe to call from any trigger (periodic tick, command
    gate, stream open). Whole recomputes are serialized on one lock, so a
    caller holding older signals can never overwrite a newer result and at
    most one ``device_online`` event is broadcast per change.
    """

    def __init__(
        self,
        store: SensorStore,
        hub: BroadcastHub,
        *,
        probe: Optional[InterfaceProbe] = None,
        restorer: Optional[Restorer] = None,
        online_window_seconds: float = DEFAULT_ONLINE_WINDOW_SECONDS,
        restore_delay_seconds: float = DEFAULT_RESTORE_DELAY_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.hub = hub
        self.probe = probe or NullInterfaceProbe()
        self.restorer = restorer
        self.online_window = timedelta(seconds=float(online_window_seconds))
        self.restore_delay = float(restore_delay_seconds)
        self._clock = clock
        self._state = LivenessState()
        self._prev_online: Optional[bool] = None
        self._lock = asyncio.Lock()
        self._restore_tasks: Set[asyncio.Task] = set()
        self.transitions: int = 0

    @property
    def initialized(self) -> bool:
        return self._prev_online is not None

    def snapshot(self) -> LivenessState:
        return self._state

    async def _probe(self) -> ProbeResult:
        try:
            return await self.probe.probe()
        except Exception as exc:
            logger.warning("Interface probe failed: %s", exc)
            return ProbeResult(online=False, via="sensor-only")

    async def _recency(self, now: datetime) -> tuple[bool, Optional[datetime]]:
        try:
            last = await self.store.last_record_time()
        except Exception as exc:
            logger.warning("Recency check failed: %s", exc)
            return False, None
        if last is None:
            return False, None
        return now - last <= self.online_window, last

    async def recompute(self, reason: str = "poll") -> LivenessState:
        async with self._lock:
            return await self._recompute_locked(reason)

    async def _recompute_locked(self, reason: str) -> LivenessState:
        probe = await self._probe()
        now = self._clock()
        recent, last_seen = await self._recency(now)

        online = probe.online or recent
        source: LivenessSource = "usb" if probe.online else ("sensor" if recent else "none")
        if last_seen is not None:
            seen_at = last_seen
        elif online:
            seen_at = now
        else:
            seen_at = self._state.last_seen_at
        state = LivenessState(online=online, source=source, last_seen_at=seen_at)

        previous = self._prev_online
        self._state = state
        if previous is not None and previous == online:
            return state
        self._prev_online = online
        self.transitions += 1
        logger.info(
            "Device %s (source=%s, reason=%s)",
            "online" if online else "offline",
            source,
            reason,
        )
        self.hub.broadcast("device_online", state.as_payload())
        if online and previous is False:
            self._schedule_restore()
        return state

    def _schedule_restore(self) -> None:
        if self.restorer is None:
            return
        task = asyncio.create_task(self._restore_after_delay(), name="restore-desired-state")
        self._restore_tasks.add(task)
        task.add_done_callback(self._restore_tasks.discard)

    async def _restore_after_delay(self) -> None:
        await asyncio.sleep(self.restore_delay)
        try:
            await self.restorer()
        except Exception:
            logger.exception("Restoring desired device state failed")

    async def wait_for_restores(self) -> None:
        """Await any pending restoration passes."""

        if self._restore_tasks:
            await asyncio.gather(*list(self._restore_tasks), return_exceptions=True)

    async def stop(self) -> None:
        for task in list(self._restore_tasks):
            task.cancel()
        await self.wait_for_restores()
