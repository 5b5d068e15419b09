from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Awaitable, Callable, Iterable, Optional, Tuple

from fastapi import HTTPException, Request, status
from fastapi.applications import FastAPI

from sensor_hub.services.broadcast import KEEPALIVE_FRAME, BroadcastHub, Subscriber, SubscriberKind, encode_event
from sensor_hub.services.commands import CommandDispatcher
from sensor_hub.services.liveness import LivenessFuser
from sensor_hub.storage import SqliteSensorStore

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 200

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _state(app: FastAPI, name: str):
    value = getattr(app.state, name, None)
    if value is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=f"{name} not ready")
    return value


def store(app: FastAPI) -> SqliteSensorStore:
    return _state(app, "store")


def hub(app: FastAPI) -> BroadcastHub:
    return _state(app, "hub")


def liveness(app: FastAPI) -> LivenessFuser:
    return _state(app, "liveness")


def dispatcher(app: FastAPI) -> CommandDispatcher:
    return _state(app, "dispatcher")


def parse_timestamp(raw: Optional[str], *, field: str) -> Optional[datetime]:
    """Parse an ISO-8601 query parameter; naive values are taken as UTC."""

    if raw is None or not str(raw).strip():
        return None
    text = str(raw).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"{field} must be an ISO-8601 timestamp",
        ) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


_LEADING_INT_RE = re.compile(r"^\s*([+-]?\d+)")


def lenient_int(raw: Optional[str], default: int, *, minimum: int = 1) -> int:
    """Leading-integer parse; unparsable or zero input yields ``default``."""

    match = _LEADING_INT_RE.match(str(raw or ""))
    value = int(match.group(1)) if match else 0
    return max(value or default, minimum)


def page_args(page: Optional[str], limit: Optional[str], *, default_limit: int = 20) -> Tuple[int, int]:
    page_number = lenient_int(page, 1)
    page_size = min(lenient_int(limit, default_limit), MAX_PAGE_SIZE)
    return page_number, page_size


_AT_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")
_AT_DAY_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_AT_MINUTE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})[ T](\d{2}):(\d{2})$")
_AT_SECOND_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})[ T](\d{2}):(\d{2}):(\d{2})$")


def expand_at(raw: Optional[str], *, now: Optional[datetime] = None) -> Optional[Tuple[datetime, datetime]]:
    """Expand an ``at`` lookup into an inclusive UTC range.

    ``HH:MM`` is that minute today, ``YYYY-MM-DD`` the whole day,
    ``YYYY-MM-DD HH:MM`` the minute and ``YYYY-MM-DD HH:MM:SS`` the second.
    Any other ISO timestamp selects its minute. Unparsable input returns None.
    """

    text = str(raw or "").strip()
    if not text:
        return None
    today = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    try:
        if match := _AT_TIME_RE.match(text):
            hour, minute = (int(part) for part in match.groups())
            start = today.replace(hour=hour, minute=minute, second=0, microsecond=0)
            return start, start + timedelta(minutes=1, microseconds=-1)
        if match := _AT_DAY_RE.match(text):
            start = datetime(*(int(part) for part in match.groups()), tzinfo=timezone.utc)
            return start, start + timedelta(days=1, microseconds=-1)
        if match := _AT_MINUTE_RE.match(text):
            start = datetime(*(int(part) for part in match.groups()), tzinfo=timezone.utc)
            return start, start + timedelta(minutes=1, microseconds=-1)
        if match := _AT_SECOND_RE.match(text):
            start = datetime(*(int(part) for part in match.groups()), tzinfo=timezone.utc)
            return start, start + timedelta(seconds=1, microseconds=-1)
        parsed = datetime.fromisoformat(text[:-1] + "+00:00" if text.endswith("Z") else text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    start = parsed.astimezone(timezone.utc).replace(second=0, microsecond=0)
    return start, start + timedelta(minutes=1, microseconds=-1)


async def event_stream(
    hub: BroadcastHub,
    kind: SubscriberKind,
    *,
    initial: Optional[Callable[[], Awaitable[Iterable[str]]]] = None,
    on_open: Optional[Callable[[Subscriber], Awaitable[object]]] = None,
    keepalive_seconds: float = 15.0,
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
) -> AsyncIterator[str]:
    """Yield SSE frames for one subscriber until the client goes away.

    The subscriber is registered when the body starts streaming, before the
    ``initial`` frames are loaded, so no push is missed between the snapshot
    and the live feed and nothing is left registered if the body never starts.
    """

    subscriber = hub.register(kind)
    try:
        if initial is not None:
            for frame in await initial():
                yield frame
        if on_open is not None:
            try:
                await on_open(subscriber)
            except Exception:
                logger.exception("Stream open hook failed")
        while not subscriber.closed:
            try:
                frame = await asyncio.wait_for(subscriber.queue.get(), timeout=keepalive_seconds)
            except asyncio.TimeoutError:
                if is_disconnected is not None and await is_disconnected():
                    break
                yield KEEPALIVE_FRAME
                continue
            yield frame
    finally:
        hub.unregister(subscriber)
        logger.debug("Closed %s stream", subscriber.kind)


def request_disconnect_probe(request: Request) -> Callable[[], Awaitable[bool]]:
    async def _probe() -> bool:
        return await request.is_disconnected()

    return _probe


async def announce_liveness(fuser: LivenessFuser, subscriber: Subscriber, reason: str) -> None:
    """Recompute liveness and make sure the new subscriber sees the current state once."""

    before = fuser.transitions
    state = await fuser.recompute(reason)
    if fuser.transitions == before:
        subscriber.write(encode_event("device_online", state.as_payload()))
