"""MQTT connection used for sensor ingest and device commands."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Iterable, Optional

from aiomqtt import Client, MqttError

from sensor_hub.config import Settings
from sensor_hub.errors import BusUnavailableError
from sensor_hub.models import utcnow

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], Awaitable[object]]

QOS_AT_LEAST_ONCE = 1


class MessageBusClient:
    """Keep one broker session alive, feed sensor messages to ``handler`` and publish commands."""

    def __init__(
        self,
        settings: Settings,
        handler: MessageHandler,
        *,
        topics: Optional[Iterable[str]] = None,
    ) -> None:
        self.settings = settings
        self.handler = handler
        self.topics = list(topics if topics is not None else settings.topics.sensor_topics().keys())
        self.connected: bool = False
        self.last_error: Optional[str] = None
        self.last_message_at: Optional[datetime] = None
        self._client: Client | None = None
        self._task: asyncio.Task | None = None
        self._stop = asyncio.Event()

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name="mqtt-bus")

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._client = None
        self.connected = False

    async def publish(self, topic: str, payload: str, *, qos: int = QOS_AT_LEAST_ONCE) -> None:
        client = self._client
        if client is None or not self.connected:
            raise BusUnavailableError("MQTT broker is not connected")
        try:
            await client.publish(topic, payload.encode("utf-8"), qos=qos)
        except MqttError as exc:
            self.last_error = str(exc)
            raise BusUnavailableError(f"publish to {topic} failed: {exc}") from exc
        logger.info("Published %s to %s", payload, topic)

    async def _run(self) -> None:
        retry_delay = self.settings.mqtt_reconnect_seconds
        while not self._stop.is_set():
            try:
                logger.info("Connecting to MQTT broker %s:%s", self.settings.mqtt_host, self.settings.mqtt_port)
                async with Client(
                    self.settings.mqtt_host,
                    port=self.settings.mqtt_port,
                    username=self.settings.mqtt_username,
                    password=self.settings.mqtt_password,
                ) as client:
                    self._client = client
                    self.connected = True
                    self.last_error = None
                    logger.info("MQTT connected")
                    try:
                        await self._listen(client)
                    finally:
                        self.connected = False
                        self._client = None
            except asyncio.CancelledError:
                break
            except MqttError as exc:
                self.last_error = str(exc)
                logger.warning("MQTT error %s; reconnecting in %.0fs", exc, retry_delay)
                await asyncio.sleep(retry_delay)
            except Exception:
                logger.exception("Unhandled error in MQTT bus loop")
                await asyncio.sleep(retry_delay)

    async def _listen(self, client: Client) -> None:
        for topic in self.topics:
            await client.subscribe(topic, qos=QOS_AT_LEAST_ONCE)
        logger.info("Subscribed to %s", ", ".join(self.topics))
        async for message in client.messages:
            if self._stop.is_set():
                break
            topic = getattr(message.topic, "value", None)
            if topic is None:
                topic = str(message.topic)
            await self.dispatch(topic, message.payload)

    async def dispatch(self, topic: str, payload: object) -> None:
        """Hand one message to the handler; failures stay with that message."""

        self.last_message_at = utcnow()
        if isinstance(payload, (bytes, bytearray)):
            raw = bytes(payload)
        else:
            raw = str(payload if payload is not None else "").encode("utf-8")
        try:
            await self.handler(topic, raw)
        except Exception:
            logger.exception("MQTT handle error on topic %s (payload %r)", topic, raw[:64])
