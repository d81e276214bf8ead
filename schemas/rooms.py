from pydantic import BaseModel, ConfigDict, Field
from typing import Optional


class CreateRoomRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: Optional[str] = Field(default=None, alias="roomId")
    creator_id: str = Field(alias="creatorId", min_length=1)
    title: str = Field(min_length=1)
    description: Optional[str] = None

class CreateRoomResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(alias="roomId")
    ws_url: str = Field(alias="wsUrl")

class RoomDetailsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(alias="roomId")
    title: Optional[str] = None
    description: Optional[str] = None
    creator_id: Optional[str] = Field(default=None, alias="creatorId")
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    online_count: int = Field(alias="onlineCount")
    url: Optional[str] = None
    time: Optional[float] = None
    playing: Optional[bool] = None

class HealthResponse(BaseModel):
    status: str
    redis: bool
