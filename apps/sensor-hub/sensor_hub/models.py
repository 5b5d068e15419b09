"""Domain records shared between the hub services."""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Dict, Literal, Optional

SensorKind = Literal["temperature", "humidity", "light"]
LivenessSource = Literal["usb", "sensor", "none"]
SENSOR_KINDS: tuple[SensorKind, ...] = ("temperature", "humidity", "light")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


@dataclass(frozen=True)
class SensorRecord:
    temperature: Optional[float]
    humidity: Optional[float]
    light: Optional[int]
    captured_at: datetime
    id: Optional[int] = None

    def with_id(self, record_id: int) -> "SensorRecord":
        return replace(self, id=record_id)

    def as_payload(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "temperature": self.temperature,
            "humidity": self.humidity,
            "light": self.light,
            "time": isoformat(self.captured_at),
        }


@dataclass(frozen=True)
class DeviceAction:
    device_name: str
    action: str
    timestamp: datetime
    id: Optional[int] = None

    def as_payload(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "nameDevice": self.device_name,
            "action": self.action,
            "timestamp": isoformat(self.timestamp),
        }


@dataclass(frozen=True)
class LivenessState:
    online: bool = False
    source: LivenessSource = "none"
    last_seen_at: Optional[datetime] = None

    def as_payload(self) -> Dict[str, object]:
        return {
            "online": self.online,
            "source": self.source,
            "last_seen": isoformat(self.last_seen_at),
        }
