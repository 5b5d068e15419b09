from __future__ import annotations

import logging
from typing import Dict, Optional

from fastapi import APIRouter, HTTPException, Query, Request, status

from sensor_hub.errors import CommandDispatchError, DeviceOfflineError, InvalidCommandError
from sensor_hub.http_utils import dispatcher, page_args, parse_timestamp, store
from sensor_hub.schemas import ActionAccepted, ActionRequest, DeviceStateResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/actions")


@router.get("")
async def list_actions(
    request: Request,
    page: Optional[str] = Query(default=None),
    limit: Optional[str] = Query(default=None),
    sort: Optional[str] = Query(default="timestamp:desc"),
    q: Optional[str] = Query(default=None),
    start: Optional[str] = Query(default=None, alias="from"),
    end: Optional[str] = Query(default=None, alias="to"),
) -> Dict[str, object]:
    page_number, page_size = page_args(page, limit)
    result = await store(request.app).list_actions(
        page=page_number,
        limit=page_size,
        sort=sort,
        query=(q or "").strip() or None,
        start=parse_timestamp(start, field="from"),
        end=parse_timestamp(end, field="to"),
    )
    return result.as_payload()


@router.post("", status_code=status.HTTP_201_CREATED, response_model=ActionAccepted)
async def submit_action(payload: ActionRequest, request: Request) -> ActionAccepted:
    commands = dispatcher(request.app)
    try:
        if payload.action_text:
            entry = await commands.send_raw(payload.action_text, payload.name_device)
        else:
            if not payload.name_device or not payload.action:
                raise InvalidCommandError(
                    "nameDevice (fan|air conditioner|light) & action (ON|OFF) are required"
                )
            entry = await commands.send_command(payload.name_device, payload.action)
    except InvalidCommandError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except DeviceOfflineError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except CommandDispatchError as exc:
        logger.warning("Command publish failed: %s", exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Unable to reach MQTT broker") from exc
    return ActionAccepted(ok=True, id=entry.id)


@router.get("/state", response_model=DeviceStateResponse)
async def action_state(request: Request) -> DeviceStateResponse:
    try:
        state = await dispatcher(request.app).desired_state()
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Failed to read action state")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to read action state",
        ) from exc
    return DeviceStateResponse(**state)
