"""Exception types raised by the hub services."""
from __future__ import annotations


class HubError(Exception):
    """Base error for the sensor hub."""


class SensorPayloadError(HubError, ValueError):
    """A sensor message could not be parsed as a reading."""


class InvalidCommandError(HubError, ValueError):
    """A command request named an unknown device or an invalid action."""


class DeviceOfflineError(HubError):
    """The device is offline; the command was not published."""


class BusUnavailableError(HubError):
    """No live MQTT connection is available for publishing."""


class CommandDispatchError(HubError):
    """Publishing a command to the broker failed."""
