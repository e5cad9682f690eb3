from fastapi import APIRouter, HTTPException, Request
from schemas.rooms import CreateRoomRequest, CreateRoomResponse, RoomDetailsResponse
from backend import redis_backend
from datetime import datetime, timedelta
from constants import ROOM_TTL_SECONDS
from party.session import base_url, generate_room_id, host_peer_id
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


def peer_ws_base(request: Request) -> str:
    """Broker websocket base URL as seen by the caller."""
    base = str(request.base_url).rstrip('/')
    return base.replace("http://", "ws://").replace("https://", "wss://")


@rooms_router.post("/", status_code=201, response_model=CreateRoomResponse)
async def create_room(room: CreateRoomRequest, request: Request):
    client_host = request.client.host if request.client else 'unknown'
    logger.info(f"Room creation request from {client_host}, room_url: {room.room_url}")
    expiry_seconds = room.expiry_seconds or ROOM_TTL_SECONDS
    room_id = room.room_id or generate_room_id()

    if redis_backend.room_exists(room_id):
        logger.warning(f"Room creation failed: {room_id} already exists")
        raise HTTPException(status_code=409, detail="Room already exists")

    expires_at = (datetime.now() + timedelta(seconds=expiry_seconds)).isoformat()
    try:
        redis_backend.create_room(room_id, {
            "room_id": room_id,
            "host_peer_id": host_peer_id(room_id),
            "room_url": base_url(room.room_url),
            "created_at": datetime.now().isoformat(),
            "expires_at": expires_at,
        }, ttl=expiry_seconds)
    except Exception as e:
        logger.error(f"Error creating room: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to create room")

    ws_url = f"{peer_ws_base(request)}/peers/{host_peer_id(room_id)}/ws"
    logger.info(f"Room {room_id} created successfully, expires_at={expires_at}")
    return CreateRoomResponse(
        room_id=room_id,
        host_peer_id=host_peer_id(room_id),
        ws_url=ws_url,
        expires_at=expires_at,
    )


@rooms_router.get("/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(room_id: str, request: Request):
    """
    Get room details.

    Returns:
    - room_id / host_peer_id: identifiers, the host id is derived from the room id
    - room_url: base URL the room was created on, if any
    - host_online: whether the host transport is currently registered
    """
    client_host = request.client.host if request.client else 'unknown'
    logger.info(f"Room details request for {room_id} from {client_host}")

    room = redis_backend.get_room(room_id)
    if not room:
        logger.warning(f"Room details failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")

    host_id = host_peer_id(room_id)
    host_online = redis_backend.is_peer_online(host_id)
    return RoomDetailsResponse(
        room_id=room_id,
        host_peer_id=host_id,
        room_url=room.get("room_url"),
        created_at=str(room.get("created_at", "")),
        expires_at=str(room.get("expires_at", "")),
        host_online=host_online,
        ws_url=f"{peer_ws_base(request)}/peers/{{peer_id}}/ws",
    )


@rooms_router.delete("/{room_id}")
async def close_room(room_id: str, request: Request):
    client_host = request.client.host if request.client else 'unknown'
    logger.info(f"Close room request for {room_id} from {client_host}")
    if not redis_backend.delete_room(room_id):
        logger.warning(f"Close room failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")
    return {"message": "Room closed successfully"}
