"""Fold the three single-value sensor topics into unified records."""
from __future__ import annotations

import asyncio
import logging
import math
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Union

from sensor_hub.errors import SensorPayloadError
from sensor_hub.models import SENSOR_KINDS, SensorKind, SensorRecord, utcnow
from sensor_hub.storage import SensorStore

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 2.0

Reading = Union[int, float, str, bytes]


def parse_reading(kind: str, value: Reading) -> float | int:
    """Parse a raw payload for ``kind``; light is integral, the others are floats."""

    if kind not in SENSOR_KINDS:
        raise SensorPayloadError(f"unknown sensor kind {kind!r}")
    if isinstance(value, bool):
        raise SensorPayloadError(f"{kind} reading must be numeric")
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise SensorPayloadError(f"empty {kind} payload")
        try:
            parsed = float(text)
        except ValueError as exc:
            raise SensorPayloadError(f"{kind} payload {text!r} is not a number") from exc
    else:
        parsed = float(value)
    if math.isnan(parsed) or math.isinf(parsed):
        raise SensorPayloadError(f"{kind} reading must be finite")
    if kind == "light":
        return int(parsed)
    return parsed


@dataclass
class AccumulatorState:
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    light: Optional[int] = None
    first_update_at: Optional[datetime] = None
    last_update_at: Optional[datetime] = None

    @property
    def empty(self) -> bool:
        return self.first_update_at is None

    @property
    def ready(self) -> bool:
        return self.temperature is not None and self.humidity is not None and self.light is not None

    def to_record(self) -> SensorRecord:
        return SensorRecord(
            temperature=self.temperature,
            humidity=self.humidity,
            light=self.light,
            captured_at=self.last_update_at or self.first_update_at or utcnow(),
        )


class RecordCorrelator:
    """Single-slot accumulator with a ready-or-timeout flush rule.

    The draft is flushed as soon as all three kinds are present, or once the
    window measured from the first reading of the draft has elapsed. The
    check-flush-reset sequence runs under one lock so readings arriving
    concurrently land either in the flushed record or in the next draft.
    """

    def __init__(
        self,
        *,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.window = timedelta(seconds=float(window_seconds))
        self._clock = clock
        self._lock = threading.Lock()
        self._state = AccumulatorState()

    def snapshot(self) -> AccumulatorState:
        with self._lock:
            return AccumulatorState(**vars(self._state))

    def on_message(self, kind: SensorKind, value: Reading) -> Optional[SensorRecord]:
        parsed = parse_reading(kind, value)
        with self._lock:
            now = self._clock()
            state = self._state
            setattr(state, kind, parsed)
            if state.first_update_at is None:
                state.first_update_at = now
            state.last_update_at = now
            if state.ready or self._expired(now):
                return self._flush_locked()
        return None

    def expire(self, now: Optional[datetime] = None) -> Optional[SensorRecord]:
        """Flush a partial draft whose correlation window has elapsed."""

        with self._lock:
            if self._state.empty:
                return None
            if not self._expired(now or self._clock()):
                return None
            return self._flush_locked()

    def _expired(self, now: datetime) -> bool:
        first = self._state.first_update_at
        return first is not None and now - first >= self.window

    def _flush_locked(self) -> SensorRecord:
        record = self._state.to_record()
        self._state = AccumulatorState()
        return record


class CorrelationService:
    """Route bus messages into the correlator and persist flushed records."""

    def __init__(
        self,
        correlator: RecordCorrelator,
        store: SensorStore,
        topics: Dict[str, str],
        *,
        sweep_seconds: float = 0.25,
    ) -> None:
        self.correlator = correlator
        self.store = store
        self.topics = dict(topics)
        self.sweep_seconds = float(sweep_seconds)
        self.saved_records: int = 0
        self.dropped_messages: int = 0
        self._task: asyncio.Task | None = None
        self._stop = asyncio.Event()

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run_sweep(), name="correlation-sweep")

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def handle_message(self, topic: str, payload: Reading) -> Optional[SensorRecord]:
        kind = self.topics.get(topic)
        if kind is None:
            logger.debug("Ignoring message on unexpected topic %s", topic)
            return None
        try:
            record = self.correlator.on_message(kind, payload)
        except SensorPayloadError as exc:
            self.dropped_messages += 1
            logger.warning("Dropping %s message on %s: %s", kind, topic, exc)
            return None
        if record is None:
            return None
        return await self._persist(record, reason="ready" if self._complete(record) else "timeout")

    async def sweep(self) -> Optional[SensorRecord]:
        record = self.correlator.expire()
        if record is None:
            return None
        return await self._persist(record, reason="timeout")

    async def _run_sweep(self) -> None:
        while not self._stop.is_set():
            try:
                await self.sweep()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Correlation sweep failed")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.sweep_seconds)
            except asyncio.TimeoutError:
                continue

    @staticmethod
    def _complete(record: SensorRecord) -> bool:
        return record.temperature is not None and record.humidity is not None and record.light is not None

    async def _persist(self, record: SensorRecord, *, reason: str) -> Optional[SensorRecord]:
        try:
            saved = await self.store.insert_record(record)
        except Exception as exc:
            logger.error("Failed to save sensor record (%s): %s", reason, exc)
            return None
        self.saved_records += 1
        logger.info(
            "Saved sensor record",
            extra={
                "record_id": saved.id,
                "flush_reason": reason,
                "temperature": saved.temperature,
                "humidity": saved.humidity,
                "light": saved.light,
            },
        )
        return saved
