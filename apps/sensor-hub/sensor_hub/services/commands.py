"""Validate operator commands, gate them on liveness and relay them to the device."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from sensor_hub.config import TopicConfig
from sensor_hub.errors import BusUnavailableError, CommandDispatchError, DeviceOfflineError, InvalidCommandError
from sensor_hub.models import DeviceAction, LivenessState, utcnow
from sensor_hub.storage import SensorStore

logger = logging.getLogger(__name__)

VALID_ACTIONS = ("ON", "OFF")
RAW_COMMAND_RE = re.compile(r"^LED\s*([123])\s*:\s*(ON|OFF)$", re.IGNORECASE)

# Canonical device name -> output channel on the firmware.
DEVICE_CHANNELS: Dict[str, str] = {
    "light": "1",
    "fan": "2",
    "air conditioner": "3",
}
DEVICE_ALIASES: Dict[str, str] = {
    "air-conditioner": "air conditioner",
    "air_conditioner": "air conditioner",
    "ac": "air conditioner",
}
# Keys used by the desired-state payload.
STATE_KEYS: Dict[str, str] = {
    "air conditioner": "ac",
    "fan": "fan",
    "light": "light",
}


class CommandPublisher(Protocol):
    async def publish(self, topic: str, payload: str, *, qos: int = 1) -> None:
        ...


class LivenessGate(Protocol):
    async def recompute(self, reason: str = "poll") -> LivenessState:
        ...


@dataclass(frozen=True)
class Command:
    device_name: str
    channel: str
    state: str
    logged_action: str


def canonical_device(name: Optional[str]) -> str:
    cleaned = " ".join(str(name or "").strip().lower().split())
    cleaned = DEVICE_ALIASES.get(cleaned, cleaned)
    if cleaned not in DEVICE_CHANNELS:
        raise InvalidCommandError("Unknown device. Use: fan | air conditioner | light")
    return cleaned


def normalize_action(action: Optional[str]) -> str:
    act = str(action or "").strip().upper()
    if act not in VALID_ACTIONS:
        raise InvalidCommandError("action must be ON or OFF")
    return act


def parse_named_command(device_name: Optional[str], action: Optional[str]) -> Command:
    device = canonical_device(device_name)
    state = normalize_action(action)
    return Command(device_name=device, channel=DEVICE_CHANNELS[device], state=state, logged_action=state)


def parse_raw_command(action_text: Optional[str], device_name: Optional[str] = None) -> Command:
    """Parse ``LED<1|2|3>:<ON|OFF>``; the raw text is what gets logged."""

    text = str(action_text or "").strip()
    match = RAW_COMMAND_RE.match(text)
    if not match:
        raise InvalidCommandError('Action must look like "LED1:ON" or "LED2:OFF"')
    channel, state = match.group(1), match.group(2).upper()
    return Command(
        device_name=str(device_name or "").strip(),
        channel=channel,
        state=state,
        logged_action=f"LED{channel}:{state}",
    )


class CommandDispatcher:
    def __init__(
        self,
        bus: CommandPublisher,
        store: SensorStore,
        liveness: LivenessGate,
        *,
        topics: Optional[TopicConfig] = None,
        known_devices: Sequence[str] = tuple(DEVICE_CHANNELS),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.bus = bus
        self.store = store
        self.liveness = liveness
        self.topics = topics or TopicConfig()
        self.known_devices = [canonical_device(name) for name in known_devices]
        self._clock = clock

    async def send_command(self, device_name: Optional[str], action: Optional[str]) -> DeviceAction:
        return await self._dispatch(parse_named_command(device_name, action))

    async def send_raw(self, action_text: Optional[str], device_name: Optional[str] = None) -> DeviceAction:
        return await self._dispatch(parse_raw_command(action_text, device_name))

    async def _dispatch(self, command: Command) -> DeviceAction:
        state = await self.liveness.recompute("pre-command")
        if not state.online:
            logger.info("Rejected %s for %s: device offline", command.state, command.device_name or command.channel)
            raise DeviceOfflineError("Device is offline")
        topic = self.topics.command_topic(command.channel)
        try:
            await self.bus.publish(topic, command.state, qos=1)
        except BusUnavailableError as exc:
            raise CommandDispatchError(str(exc)) from exc
        entry = DeviceAction(
            device_name=command.device_name,
            action=command.logged_action,
            timestamp=self._clock(),
        )
        return await self.store.insert_action(entry)

    async def desired_state(self) -> Dict[str, bool]:
        latest = await self.store.latest_actions(self.known_devices)
        state = {STATE_KEYS.get(name, name): False for name in self.known_devices}
        for name, action in latest.items():
            key = STATE_KEYS.get(name, name)
            if key in state:
                state[key] = action.action.strip().upper() == "ON"
        return state

    async def restore_desired_state(self) -> List[str]:
        """Re-publish ON to every known device whose last logged action is ON.

        Devices last set OFF, or never commanded, receive nothing.
        """

        latest = await self.store.latest_actions(self.known_devices)
        restored: List[str] = []
        for name in self.known_devices:
            action = latest.get(name)
            if action is None or action.action.strip().upper() != "ON":
                continue
            topic = self.topics.command_topic(DEVICE_CHANNELS[name])
            try:
                await self.bus.publish(topic, "ON", qos=1)
            except Exception as exc:
                logger.warning("Failed to restore %s: %s", name, exc)
                continue
            restored.append(name)
        if restored:
            logger.info("Restored desired state for %s", ", ".join(restored))
        return restored
