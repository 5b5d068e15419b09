from __future__ import annotations

import asyncio
import json
from datetime import datetime, timedelta
from typing import Optional
from unittest.mock import AsyncMock

from sensor_hub.hardware import ProbeResult
from sensor_hub.models import DeviceAction
from sensor_hub.services.broadcast import BroadcastHub
from sensor_hub.services.commands import CommandDispatcher
from sensor_hub.services.liveness import LivenessFuser


class _RecencyStore:
    def __init__(self, last: Optional[datetime] = None) -> None:
        self.last = last
        self.fail = False

    async def last_record_time(self) -> Optional[datetime]:
        if self.fail:
            raise ConnectionError("storage unreachable")
        return self.last


class _Probe:
    def __init__(self, online: bool = False) -> None:
        self.online = online

    async def probe(self) -> ProbeResult:
        return ProbeResult(online=self.online, via="usb")


class _RaisingProbe:
    async def probe(self) -> ProbeResult:
        raise OSError("no serial subsystem")


class _Restorer:
    def __init__(self) -> None:
        self.calls = 0

    async def __call__(self) -> None:
        self.calls += 1


def _liveness_events(hub: BroadcastHub, subscriber) -> list[dict]:
    events = []
    while not subscriber.queue.empty():
        frame = subscriber.queue.get_nowait()
        name, data = frame.split("\n")[:2]
        assert name == "event: device_online"
        events.append(json.loads(data.removeprefix("data: ")))
    return events


def _build(clock, *, last=None, probe_online=False, restorer=None):
    hub = BroadcastHub()
    watcher = hub.register("status")
    store = _RecencyStore(last)
    probe = _Probe(probe_online)
    fuser = LivenessFuser(
        store,
        hub,
        probe=probe,
        restorer=restorer,
        restore_delay_seconds=0.0,
        clock=clock,
    )
    return fuser, store, probe, hub, watcher


def test_first_computation_broadcasts_once_then_debounces(clock) -> None:
    async def runner() -> None:
        fuser, _, _, hub, watcher = _build(clock)
        for _ in range(3):
            state = await fuser.recompute("poll")
        assert state.online is False
        assert state.source == "none"
        events = _liveness_events(hub, watcher)
        assert events == [{"online": False, "source": "none", "last_seen": None}]

    asyncio.run(runner())


def test_one_broadcast_per_transition(clock) -> None:
    async def runner() -> None:
        fuser, store, _, hub, watcher = _build(clock)
        await fuser.recompute()
        store.last = clock.now - timedelta(seconds=3)
        await fuser.recompute()
        await fuser.recompute()
        clock.advance(seconds=30)
        await fuser.recompute()
        await fuser.recompute()

        events = _liveness_events(hub, watcher)
        assert [event["online"] for event in events] == [False, True, False]
        assert fuser.transitions == 3

    asyncio.run(runner())


def test_source_prefers_usb_and_either_signal_sets_online(clock) -> None:
    async def runner() -> None:
        fuser, store, probe, _, _ = _build(clock)

        probe.online = True
        state = await fuser.recompute()
        assert (state.online, state.source) == (True, "usb")
        assert state.last_seen_at == clock.now

        store.last = clock.now - timedelta(seconds=1)
        state = await fuser.recompute()
        assert (state.online, state.source) == (True, "usb")
        assert state.last_seen_at == store.last

        probe.online = False
        state = await fuser.recompute()
        assert (state.online, state.source) == (True, "sensor")

        clock.advance(seconds=15)
        state = await fuser.recompute()
        assert state.online is False and state.source == "none"
        assert state.last_seen_at == store.last

    asyncio.run(runner())


def test_recency_window_is_inclusive(clock) -> None:
    async def runner() -> None:
        fuser, store, _, _, _ = _build(clock)
        store.last = clock.now - timedelta(seconds=15)
        assert (await fuser.recompute()).online is True
        store.last = clock.now - timedelta(seconds=15, milliseconds=1)
        assert (await fuser.recompute()).online is False

    asyncio.run(runner())


def test_offline_keeps_previous_last_seen_when_no_data(clock) -> None:
    async def runner() -> None:
        fuser, _, probe, _, _ = _build(clock)
        probe.online = True
        seen = (await fuser.recompute()).last_seen_at
        probe.online = False
        clock.advance(seconds=60)
        state = await fuser.recompute()
        assert state.online is False
        assert state.last_seen_at == seen

    asyncio.run(runner())


def test_reconnect_triggers_restoration_once(clock) -> None:
    async def runner() -> None:
        restorer = _Restorer()
        fuser, store, _, _, _ = _build(clock, restorer=restorer)
        await fuser.recompute()
        store.last = clock.now
        await fuser.recompute()
        await fuser.recompute()
        await fuser.wait_for_restores()
        assert restorer.calls == 1

    asyncio.run(runner())


def test_startup_online_does_not_restore(clock) -> None:
    async def runner() -> None:
        restorer = _Restorer()
        fuser, _, _, _, _ = _build(clock, probe_online=True, restorer=restorer)
        await fuser.recompute()
        await fuser.wait_for_restores()
        assert restorer.calls == 0

    asyncio.run(runner())


def test_failing_restoration_is_contained(clock) -> None:
    async def broken_restore() -> None:
        raise RuntimeError("broker down")

    async def runner() -> None:
        fuser, store, _, _, _ = _build(clock, restorer=broken_restore)
        await fuser.recompute()
        store.last = clock.now
        await fuser.recompute()
        await fuser.wait_for_restores()
        assert fuser.snapshot().online is True

    asyncio.run(runner())


def test_signal_failures_read_as_offline(clock) -> None:
    async def runner() -> None:
        hub = BroadcastHub()
        store = _RecencyStore(clock.now)
        store.fail = True
        fuser = LivenessFuser(store, hub, probe=_RaisingProbe(), clock=clock)
        state = await fuser.recompute("poll")
        assert state.online is False
        assert state.source == "none"

    asyncio.run(runner())


def test_concurrent_recomputes_emit_single_broadcast(clock) -> None:
    async def runner() -> None:
        fuser, store, _, hub, watcher = _build(clock)
        await fuser.recompute()
        _liveness_events(hub, watcher)
        store.last = clock.now
        await asyncio.gather(*(fuser.recompute(f"caller-{i}") for i in range(10)))
        assert len(_liveness_events(hub, watcher)) == 1

    asyncio.run(runner())


class _ScriptedRecencyStore:
    """Answers ``last_record_time`` from a script of ``(delay, value)`` pairs."""

    def __init__(self, script, default) -> None:
        self.script = list(script)
        self.default = default

    async def last_record_time(self) -> Optional[datetime]:
        if not self.script:
            return self.default
        delay, value = self.script.pop(0)
        await asyncio.sleep(delay)
        return value


def test_slow_stale_reader_cannot_overwrite_newer_result(clock) -> None:
    async def runner() -> None:
        hub = BroadcastHub()
        restorer = _Restorer()
        stale = clock.now - timedelta(minutes=5)
        fresh = clock.now - timedelta(seconds=1)
        store = _ScriptedRecencyStore([(0.0, stale), (0.05, stale), (0.0, fresh)], default=fresh)
        fuser = LivenessFuser(store, hub, restorer=restorer, restore_delay_seconds=0.0, clock=clock)
        assert (await fuser.recompute("poll")).online is False

        watcher = hub.register("status")
        await asyncio.gather(fuser.recompute("poll"), fuser.recompute("pre-command"))
        await fuser.recompute("poll")
        await fuser.wait_for_restores()

        assert [event["online"] for event in _liveness_events(hub, watcher)] == [True]
        assert restorer.calls == 1
        assert fuser.snapshot().online is True

    asyncio.run(runner())


class _HubStore:
    """Recency plus action log, enough to drive a real dispatcher."""

    def __init__(self, actions) -> None:
        self.last: Optional[datetime] = None
        self.actions = list(actions)

    async def last_record_time(self) -> Optional[datetime]:
        return self.last

    async def latest_actions(self, device_names):
        wanted = {name.lower() for name in device_names}
        latest = {}
        for action in sorted(self.actions, key=lambda item: item.timestamp):
            if action.device_name.lower() in wanted:
                latest[action.device_name.lower()] = action
        return latest


def test_reconnect_republishes_on_devices_after_delay(clock) -> None:
    history = [
        DeviceAction("light", "ON", clock.now - timedelta(minutes=10), id=1),
        DeviceAction("fan", "ON", clock.now - timedelta(minutes=9), id=2),
        DeviceAction("fan", "OFF", clock.now - timedelta(minutes=8), id=3),
    ]

    async def runner() -> None:
        store = _HubStore(history)
        bus = AsyncMock()
        fuser = LivenessFuser(store, BroadcastHub(), restore_delay_seconds=0.2, clock=clock)
        dispatcher = CommandDispatcher(bus, store, fuser, clock=clock)
        fuser.restorer = dispatcher.restore_desired_state

        await fuser.recompute("poll")
        store.last = clock.now
        assert (await fuser.recompute("poll")).online is True

        await asyncio.sleep(0.05)
        bus.publish.assert_not_awaited()

        await fuser.wait_for_restores()
        bus.publish.assert_awaited_once_with("device/led/1", "ON", qos=1)

    asyncio.run(runner())
