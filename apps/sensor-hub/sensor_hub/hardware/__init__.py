"""Hardware abstraction layer for the sensor hub."""
from __future__ import annotations

from .usb_probe import (
    InterfaceProbe,
    NullInterfaceProbe,
    PortInfo,
    ProbeResult,
    SerialPortProbe,
    build_probe,
    match_port,
)

__all__ = [
    "InterfaceProbe",
    "NullInterfaceProbe",
    "PortInfo",
    "ProbeResult",
    "SerialPortProbe",
    "build_probe",
    "match_port",
]
