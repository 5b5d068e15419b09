"""Local serial-interface probes used as a physical liveness signal."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional, Protocol

from sensor_hub.config import UsbHintConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PortInfo:
    path: str
    vendor_id: str = ""
    product_id: str = ""
    description: Optional[str] = None


@dataclass(frozen=True)
class ProbeResult:
    online: bool
    via: str
    port: Optional[str] = None


class InterfaceProbe(Protocol):
    """Reports whether the device is attached to a local interface. Must not raise."""

    async def probe(self) -> ProbeResult:
        ...


class NullInterfaceProbe:
    """Probe used when no local interface is available; always reports offline."""

    backend: str = "disabled"

    async def probe(self) -> ProbeResult:
        return ProbeResult(online=False, via="sensor-only")


def _format_id(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, int):
        return f"{value:04x}"
    return str(value).strip().lower().removeprefix("0x")


def list_serial_ports() -> List[PortInfo]:
    from serial.tools import list_ports

    ports: List[PortInfo] = []
    for port in list_ports.comports():
        ports.append(
            PortInfo(
                path=str(port.device or ""),
                vendor_id=_format_id(port.vid),
                product_id=_format_id(port.pid),
                description=port.description,
            )
        )
    return ports


def match_port(ports: Iterable[PortInfo], hints: UsbHintConfig) -> Optional[PortInfo]:
    """First port matching any configured hint (vendor id, product id or path substring)."""

    for port in ports:
        by_vid = bool(hints.vendor_id) and port.vendor_id == hints.vendor_id
        by_pid = bool(hints.product_id) and port.product_id == hints.product_id
        by_path = bool(hints.path_hint) and hints.path_hint in port.path
        if by_vid or by_pid or by_path:
            return port
    return None


class SerialPortProbe:
    """Enumerate serial ports with pyserial and match them against configured hints."""

    backend: str = "pyserial"

    def __init__(
        self,
        hints: UsbHintConfig,
        *,
        lister: Callable[[], List[PortInfo]] = list_serial_ports,
    ) -> None:
        self.hints = hints
        self._lister = lister
        self.last_error: Optional[str] = None

    async def probe(self) -> ProbeResult:
        if not self.hints.has_hints:
            return ProbeResult(online=False, via="usb")
        try:
            ports = await asyncio.to_thread(self._lister)
        except Exception as exc:
            self.last_error = str(exc)
            logger.debug("Serial port enumeration failed: %s", exc)
            return ProbeResult(online=False, via="sensor-only")
        self.last_error = None
        match = match_port(ports, self.hints)
        return ProbeResult(online=match is not None, via="usb", port=match.path if match else None)


def build_probe(hints: UsbHintConfig) -> InterfaceProbe:
    if not hints.enabled:
        return NullInterfaceProbe()
    if not hints.has_hints:
        logger.warning("Serial probe enabled without vendor/product/path hints; it will never match")
    return SerialPortProbe(hints)
