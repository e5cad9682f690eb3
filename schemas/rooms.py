from pydantic import BaseModel, Field
from typing import Optional


class CreateRoomRequest(BaseModel):
    room_id: Optional[str] = Field(None, pattern=r"^[a-z0-9]{4,32}$")
    room_url: Optional[str] = None
    expiry_seconds: Optional[int] = None

class CreateRoomResponse(BaseModel):
    room_id: str
    host_peer_id: str
    ws_url: str
    expires_at: str

class RoomDetailsResponse(BaseModel):
    room_id: str
    host_peer_id: str
    room_url: Optional[str] = None
    created_at: str
    expires_at: str
    host_online: bool
    ws_url: str
