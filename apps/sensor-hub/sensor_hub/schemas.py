from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ActionRequest(BaseModel):
    """Command submission: a device name with ON/OFF, or a raw ``LED<n>:<ON|OFF>`` string."""

    model_config = ConfigDict(populate_by_name=True)

    name_device: Optional[str] = Field(default=None, alias="nameDevice")
    action: Optional[str] = None
    action_text: Optional[str] = Field(default=None, alias="actionText")


class ActionAccepted(BaseModel):
    ok: bool = True
    id: Optional[int] = None


class DeviceStateResponse(BaseModel):
    ac: bool = False
    fan: bool = False
    light: bool = False


class OnlineResponse(BaseModel):
    online: bool
    source: str
    last_seen: Optional[str] = None
