"""FastAPI application ingesting device telemetry and relaying device commands."""
from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sensor_hub.config import get_settings
from sensor_hub.hardware import build_probe
from sensor_hub.observability import configure_observability
from sensor_hub.routers import actions as actions_router
from sensor_hub.routers import device as device_router
from sensor_hub.routers import root as root_router
from sensor_hub.routers import sensors as sensors_router
from sensor_hub.services.broadcast import BroadcastHub
from sensor_hub.services.bus import MessageBusClient
from sensor_hub.services.commands import CommandDispatcher
from sensor_hub.services.coordinator import PeriodicCoordinator
from sensor_hub.services.correlator import CorrelationService, RecordCorrelator
from sensor_hub.services.liveness import LivenessFuser
from sensor_hub.storage import SqliteSensorStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    store = SqliteSensorStore(settings.database_file)
    store.initialize()
    hub = BroadcastHub(queue_size=settings.sse_queue_size)

    correlation = CorrelationService(
        RecordCorrelator(window_seconds=settings.correlation_window_seconds),
        store,
        settings.topics.sensor_topics(),
        sweep_seconds=settings.correlation_sweep_seconds,
    )
    bus = MessageBusClient(settings, correlation.handle_message)
    liveness = LivenessFuser(
        store,
        hub,
        probe=build_probe(settings.usb),
        online_window_seconds=settings.online_window_seconds,
        restore_delay_seconds=settings.restore_delay_seconds,
    )
    dispatcher = CommandDispatcher(
        bus,
        store,
        liveness,
        topics=settings.topics,
        known_devices=settings.known_devices,
    )
    liveness.restorer = dispatcher.restore_desired_state
    coordinator = PeriodicCoordinator(
        store,
        hub,
        liveness,
        interval_seconds=settings.poll_interval_seconds,
    )

    bus.start()
    correlation.start()
    coordinator.start()

    app.state.store = store
    app.state.hub = hub
    app.state.bus = bus
    app.state.correlation = correlation
    app.state.liveness = liveness
    app.state.dispatcher = dispatcher
    app.state.coordinator = coordinator
    app.state.started_at = time.monotonic()
    logger.info("Sensor hub started (broker %s:%s)", settings.mqtt_host, settings.mqtt_port)

    try:
        yield
    finally:
        coordinator: PeriodicCoordinator | None = getattr(app.state, "coordinator", None)
        if coordinator:
            await coordinator.stop()
        correlation: CorrelationService | None = getattr(app.state, "correlation", None)
        if correlation:
            await correlation.stop()
        liveness: LivenessFuser | None = getattr(app.state, "liveness", None)
        if liveness:
            await liveness.stop()
        bus: MessageBusClient | None = getattr(app.state, "bus", None)
        if bus:
            await bus.stop()
        logger.info("Sensor hub stopped")


settings = get_settings()
app = FastAPI(title="Sensor Hub", lifespan=lifespan)
configure_observability(app, settings)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(root_router.router)
app.include_router(sensors_router.router)
app.include_router(actions_router.router)
app.include_router(device_router.router)


if __name__ == "__main__":  # pragma: no cover
    import uvicorn

    uvicorn.run("sensor_hub.main:app", host="0.0.0.0", port=4000)
