from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Dict, List, Sequence
from unittest.mock import AsyncMock

import pytest

from sensor_hub.errors import BusUnavailableError, CommandDispatchError, DeviceOfflineError, InvalidCommandError
from sensor_hub.models import DeviceAction, LivenessState
from sensor_hub.services.commands import (
    CommandDispatcher,
    canonical_device,
    parse_named_command,
    parse_raw_command,
)


class _ActionLog:
    def __init__(self, actions: Sequence[DeviceAction] = ()) -> None:
        self.actions: List[DeviceAction] = list(actions)

    async def insert_action(self, action: DeviceAction) -> DeviceAction:
        saved = DeviceAction(action.device_name, action.action, action.timestamp, id=len(self.actions) + 1)
        self.actions.append(saved)
        return saved

    async def latest_actions(self, device_names: Sequence[str]) -> Dict[str, DeviceAction]:
        wanted = {name.lower() for name in device_names}
        latest: Dict[str, DeviceAction] = {}
        for action in sorted(self.actions, key=lambda item: (item.timestamp, item.id or 0)):
            key = action.device_name.lower()
            if key in wanted:
                latest[key] = action
        return latest


class _Gate:
    def __init__(self, online: bool) -> None:
        self.online = online
        self.reasons: List[str] = []

    async def recompute(self, reason: str = "poll") -> LivenessState:
        self.reasons.append(reason)
        return LivenessState(online=self.online, source="sensor" if self.online else "none")


def _dispatcher(clock, *, online: bool = True, actions: Sequence[DeviceAction] = ()):
    bus = AsyncMock()
    store = _ActionLog(actions)
    gate = _Gate(online)
    return CommandDispatcher(bus, store, gate, clock=clock), bus, store, gate


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("Fan", "fan"),
        ("  LIGHT ", "light"),
        ("air   conditioner", "air conditioner"),
        ("AC", "air conditioner"),
        ("air-conditioner", "air conditioner"),
        ("air_conditioner", "air conditioner"),
    ],
)
def test_canonical_device_aliases(name, expected) -> None:
    assert canonical_device(name) == expected


def test_named_command_channels() -> None:
    assert parse_named_command("light", "on").channel == "1"
    assert parse_named_command("fan", "OFF").channel == "2"
    assert parse_named_command("ac", " On ").channel == "3"


@pytest.mark.parametrize(("device", "action"), [("heater", "ON"), ("fan", "TOGGLE"), (None, "ON"), ("fan", None)])
def test_named_command_rejects_invalid_input(device, action) -> None:
    with pytest.raises(InvalidCommandError):
        parse_named_command(device, action)


def test_raw_command_tolerates_case_and_whitespace() -> None:
    command = parse_raw_command("  led 2 : on ")
    assert (command.channel, command.state, command.logged_action) == ("2", "ON", "LED2:ON")


@pytest.mark.parametrize("text", ["LED4:ON", "LED1:TOGGLE", "LED:ON", "", "fan:on"])
def test_raw_command_rejects_invalid_text(text) -> None:
    with pytest.raises(InvalidCommandError):
        parse_raw_command(text)


def test_offline_command_is_rejected_without_publishing(clock) -> None:
    async def runner() -> None:
        dispatcher, bus, store, gate = _dispatcher(clock, online=False)
        with pytest.raises(DeviceOfflineError):
            await dispatcher.send_command("fan", "ON")
        bus.publish.assert_not_awaited()
        assert store.actions == []
        assert gate.reasons == ["pre-command"]

    asyncio.run(runner())


def test_invalid_command_is_rejected_before_liveness_check(clock) -> None:
    async def runner() -> None:
        dispatcher, bus, _, gate = _dispatcher(clock, online=False)
        with pytest.raises(InvalidCommandError):
            await dispatcher.send_command("heater", "ON")
        assert gate.reasons == []
        bus.publish.assert_not_awaited()

    asyncio.run(runner())


def test_online_command_publishes_and_logs_canonical_name(clock) -> None:
    async def runner() -> None:
        dispatcher, bus, store, _ = _dispatcher(clock)
        saved = await dispatcher.send_command("Fan", "on")

        bus.publish.assert_awaited_once_with("device/led/2", "ON", qos=1)
        assert saved.id == 1
        assert saved.device_name == "fan"
        assert saved.action == "ON"
        assert saved.timestamp == clock.now
        assert store.actions == [saved]

    asyncio.run(runner())


def test_raw_command_logs_raw_text(clock) -> None:
    async def runner() -> None:
        dispatcher, bus, store, _ = _dispatcher(clock)
        saved = await dispatcher.send_raw("led3:off", "Air Conditioner")

        bus.publish.assert_awaited_once_with("device/led/3", "OFF", qos=1)
        assert saved.action == "LED3:OFF"
        assert saved.device_name == "Air Conditioner"

    asyncio.run(runner())


def test_bus_failure_is_reported_and_not_logged(clock) -> None:
    async def runner() -> None:
        dispatcher, bus, store, _ = _dispatcher(clock)
        bus.publish.side_effect = BusUnavailableError("not connected")
        with pytest.raises(CommandDispatchError):
            await dispatcher.send_command("light", "ON")
        assert store.actions == []

    asyncio.run(runner())


def test_desired_state_follows_latest_action(clock) -> None:
    history = [
        DeviceAction("fan", "ON", clock.now - timedelta(minutes=5), id=1),
        DeviceAction("Fan", "OFF", clock.now - timedelta(minutes=1), id=2),
        DeviceAction("light", "ON", clock.now - timedelta(minutes=2), id=3),
    ]

    async def runner() -> None:
        dispatcher, _, _, _ = _dispatcher(clock, actions=history)
        assert await dispatcher.desired_state() == {"ac": False, "fan": False, "light": True}

    asyncio.run(runner())


def test_restore_republishes_only_devices_last_set_on(clock) -> None:
    history = [
        DeviceAction("light", "ON", clock.now - timedelta(minutes=3), id=1),
        DeviceAction("air conditioner", "ON", clock.now - timedelta(minutes=4), id=2),
        DeviceAction("air conditioner", "OFF", clock.now - timedelta(minutes=2), id=3),
    ]

    async def runner() -> None:
        dispatcher, bus, store, _ = _dispatcher(clock, actions=history)
        restored = await dispatcher.restore_desired_state()

        assert restored == ["light"]
        bus.publish.assert_awaited_once_with("device/led/1", "ON", qos=1)
        # Restoration re-asserts state; it does not append to the log.
        assert len(store.actions) == 3

    asyncio.run(runner())


def test_restore_continues_after_publish_failure(clock) -> None:
    history = [
        DeviceAction("light", "ON", clock.now, id=1),
        DeviceAction("fan", "ON", clock.now, id=2),
    ]

    async def runner() -> None:
        dispatcher, bus, _, _ = _dispatcher(clock, actions=history)
        bus.publish.side_effect = [BusUnavailableError("dropped"), None]
        restored = await dispatcher.restore_desired_state()
        assert bus.publish.await_count == 2
        assert len(restored) == 1

    asyncio.run(runner())
