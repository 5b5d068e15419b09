from __future__ import annotations

import time
from typing import Dict

import psutil
from fastapi import APIRouter, Request

from sensor_hub.http_utils import hub, store

router = APIRouter()


@router.get("/health")
async def health(request: Request) -> Dict[str, object]:
    ok = await store(request.app).ping()
    bus = getattr(request.app.state, "bus", None)
    started_at = getattr(request.app.state, "started_at", time.monotonic())
    return {
        "ok": ok,
        "mqtt_connected": bool(bus and bus.connected),
        "subscribers": hub(request.app).subscriber_count(),
        "uptime_seconds": int(time.monotonic() - started_at),
        "memory_percent": psutil.virtual_memory().percent,
    }


@router.get("/healthz")
async def healthz():
    return {"status": "ok"}
