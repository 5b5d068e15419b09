"""Runtime configuration for the sensor hub."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_INTERVAL_SECONDS = 0.05
MAX_INTERVAL_SECONDS = 3600.0


def _clamp_interval_seconds(value: float, *, field: str) -> float:
    try:
        parsed = float(value)
    except Exception as exc:
        raise ValueError(f"{field} must be a number") from exc
    if parsed != parsed:  # NaN
        raise ValueError(f"{field} must be a real number")
    return max(MIN_INTERVAL_SECONDS, min(parsed, MAX_INTERVAL_SECONDS))


class TopicConfig(BaseModel):
    """MQTT topics published by the device firmware."""

    temperature: str = Field(default="esp32/dht/temperature", description="Temperature reading topic")
    humidity: str = Field(default="esp32/dht/humidity", description="Relative humidity reading topic")
    light: str = Field(default="esp32/ldr/value", description="Light (LDR) reading topic")
    command_pattern: str = Field(
        default="device/led/{channel}",
        description="Command topic template; {channel} is the device output channel",
    )

    def sensor_topics(self) -> Dict[str, str]:
        """Map each subscribed topic to the reading kind it carries."""

        return {
            self.temperature: "temperature",
            self.humidity: "humidity",
            self.light: "light",
        }

    def command_topic(self, channel: str) -> str:
        return self.command_pattern.format(channel=channel)


class UsbHintConfig(BaseModel):
    """Hints used to recognise the device on a local serial interface."""

    enabled: bool = Field(default=False, description="Probe local serial ports for the device")
    vendor_id: str = Field(default="", description="USB vendor id, hex without 0x (e.g. 10C4)")
    product_id: str = Field(default="", description="USB product id, hex without 0x (e.g. EA60)")
    path_hint: str = Field(default="", description="Substring of the port path (e.g. ttyUSB)")

    @field_validator("vendor_id", "product_id")
    @classmethod
    def _normalize_hex(cls, value: str) -> str:
        cleaned = (value or "").strip().lower()
        if cleaned.startswith("0x"):
            cleaned = cleaned[2:]
        return cleaned

    @property
    def has_hints(self) -> bool:
        return bool(self.vendor_id or self.product_id or self.path_hint)


class Settings(BaseSettings):
    """Environment driven settings for the hub process."""

    service_name: str = "sensor-hub"
    service_version: str = "0.1.0"
    log_level: str = "INFO"
    otel_enabled: bool = False
    otel_exporter_otlp_endpoint: str = "http://127.0.0.1:4317"
    otel_sample_ratio: float = 1.0
    mqtt_url: str = Field(default="mqtt://127.0.0.1:1883", description="MQTT broker URL")
    mqtt_username: Optional[str] = None
    mqtt_password: Optional[str] = None
    mqtt_reconnect_seconds: float = 5.0
    topics: TopicConfig = Field(default_factory=TopicConfig)
    usb: UsbHintConfig = Field(default_factory=UsbHintConfig)
    database_path: str = "storage/sensor_hub.db"
    correlation_window_seconds: float = Field(default=2.0, description="Max wait for all three readings")
    correlation_sweep_seconds: float = Field(default=0.25, description="How often stale drafts are checked")
    online_window_seconds: float = Field(default=15.0, description="Recency window for the sensor signal")
    poll_interval_seconds: float = Field(default=2.0, description="Periodic coordinator cadence")
    restore_delay_seconds: float = Field(default=1.0, description="Wait before re-asserting ON after reconnect")
    sse_keepalive_seconds: float = Field(default=15.0, description="Keep-alive comment cadence on SSE streams")
    sse_queue_size: int = Field(default=256, ge=1, description="Buffered events per live subscriber")
    stream_window_minutes: int = Field(default=10, ge=1, description="Default history window for the sensor stream")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"], description="Origins allowed to call the API")
    known_devices: List[str] = Field(
        default_factory=lambda: ["air conditioner", "fan", "light"],
        description="Canonical device names considered for state restoration",
    )

    model_config = SettingsConfigDict(
        env_prefix="HUB_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
    )

    @field_validator(
        "correlation_window_seconds",
        "correlation_sweep_seconds",
        "online_window_seconds",
        "poll_interval_seconds",
        "sse_keepalive_seconds",
        "mqtt_reconnect_seconds",
    )
    @classmethod
    def _clamp_intervals(cls, value: float, info: ValidationInfo) -> float:
        return _clamp_interval_seconds(value, field=info.field_name)

    @field_validator("restore_delay_seconds")
    @classmethod
    def _non_negative_delay(cls, value: float) -> float:
        return max(float(value), 0.0)

    @property
    def mqtt_host(self) -> str:
        return _parsed_mqtt(self.mqtt_url).hostname or "127.0.0.1"

    @property
    def mqtt_port(self) -> int:
        return _parsed_mqtt(self.mqtt_url).port or 1883

    @property
    def database_file(self) -> Path:
        path = Path(self.database_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        return path


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


@lru_cache(maxsize=32)
def _parsed_mqtt(url: str):
    return urlparse(url)
