from __future__ import annotations

import logging
from datetime import timedelta
from typing import Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse

from sensor_hub.config import Settings, get_settings
from sensor_hub.http_utils import (
    SSE_HEADERS,
    announce_liveness,
    event_stream,
    expand_at,
    hub,
    lenient_int,
    liveness,
    page_args,
    parse_timestamp,
    request_disconnect_probe,
    store,
)
from sensor_hub.models import utcnow
from sensor_hub.services.broadcast import Subscriber, encode_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sensors")


@router.get("")
async def list_sensor_records(
    request: Request,
    page: Optional[str] = Query(default=None),
    limit: Optional[str] = Query(default=None),
    sort: Optional[str] = Query(default="time:desc"),
    q: Optional[str] = Query(default=None, description="Value search; numeric or text"),
    key: Optional[str] = Query(default=None, description="Restrict q to temperature, humidity or light"),
    at: Optional[str] = Query(default=None, description="Exact minute (HH:MM, YYYY-MM-DD HH:MM) or day"),
    start: Optional[str] = Query(default=None, alias="from"),
    end: Optional[str] = Query(default=None, alias="to"),
) -> Dict[str, object]:
    page_number, page_size = page_args(page, limit)
    if at:
        # An unparsable ``at`` applies no time filter at all.
        window = expand_at(at)
        range_start, range_end = window if window else (None, None)
    else:
        range_start = parse_timestamp(start, field="from")
        range_end = parse_timestamp(end, field="to")
    result = await store(request.app).list_records(
        page=page_number,
        limit=page_size,
        sort=sort,
        query=(q or "").strip() or None,
        key=key,
        start=range_start,
        end=range_end,
    )
    return result.as_payload()


@router.get("/stream")
async def sensor_stream(
    request: Request,
    window: Optional[str] = Query(default=None, description="Minutes of history in the init event"),
) -> StreamingResponse:
    settings: Settings = get_settings()
    window_minutes = lenient_int(window, settings.stream_window_minutes)
    sensor_store = store(request.app)
    fuser = liveness(request.app)

    async def _initial_frames() -> List[str]:
        try:
            records = await sensor_store.records_since(utcnow() - timedelta(minutes=window_minutes))
        except Exception as exc:
            logger.warning("Sensor stream init query failed: %s", exc)
            return [encode_event("error", {"message": "Init query failed"})]
        return [encode_event("init", [record.as_payload() for record in records])]

    async def _announce_online(subscriber: Subscriber) -> None:
        await announce_liveness(fuser, subscriber, "sensors:open")

    return StreamingResponse(
        event_stream(
            hub(request.app),
            "telemetry",
            initial=_initial_frames,
            on_open=_announce_online,
            keepalive_seconds=settings.sse_keepalive_seconds,
            is_disconnected=request_disconnect_probe(request),
        ),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.get("/latest")
async def latest_sensor_record(request: Request) -> Dict[str, object]:
    record = await store(request.app).latest_record()
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No sensor data yet")
    return record.as_payload()
