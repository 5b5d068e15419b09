from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from sensor_hub.config import Settings, get_settings
from sensor_hub.http_utils import (
    SSE_HEADERS,
    announce_liveness,
    event_stream,
    hub,
    liveness,
    request_disconnect_probe,
)
from sensor_hub.schemas import OnlineResponse
from sensor_hub.services.broadcast import Subscriber

router = APIRouter(prefix="/api")


@router.get("/device/online", response_model=OnlineResponse)
async def device_online(request: Request) -> OnlineResponse:
    state = await liveness(request.app).recompute("http")
    return OnlineResponse(**state.as_payload())


@router.get("/status/stream")
async def status_stream(request: Request) -> StreamingResponse:
    settings: Settings = get_settings()
    fuser = liveness(request.app)

    async def _announce_online(subscriber: Subscriber) -> None:
        await announce_liveness(fuser, subscriber, "status:open")

    return StreamingResponse(
        event_stream(
            hub(request.app),
            "status",
            on_open=_announce_online,
            keepalive_seconds=settings.sse_keepalive_seconds,
            is_disconnected=request_disconnect_probe(request),
        ),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
