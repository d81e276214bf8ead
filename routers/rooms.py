import uuid

from fastapi import APIRouter, HTTPException, Request
from redis import RedisError
from starlette.concurrency import run_in_threadpool

from logging_config import get_logger
from schemas.rooms import CreateRoomRequest, CreateRoomResponse, HealthResponse, RoomDetailsResponse

logger = get_logger(__name__)

rooms_router = APIRouter(tags=["rooms"])


def _ws_url(request: Request, room_id: str) -> str:
    # Replace http/https with ws/wss
    base_url = str(request.base_url).rstrip('/')
    ws_base = base_url.replace("http://", "ws://").replace("https://", "wss://")
    return f"{ws_base}/ws?roomId={room_id}"


@rooms_router.post("/rooms/", response_model=CreateRoomResponse, response_model_by_alias=True, status_code=201)
async def create_room(room: CreateRoomRequest, request: Request):
    """Register room metadata. The creator is the only participant whose seeks are committed."""
    backend = request.app.state.backend
    room_id = room.room_id or uuid.uuid4().hex
    logger.info(f"Room creation request for {room_id} by {room.creator_id}, title: {room.title}")

    try:
        if await run_in_threadpool(backend.get_room, room_id):
            logger.warning(f"Room creation failed: Room {room_id} already exists")
            raise HTTPException(status_code=409, detail="Room already exists")
        await run_in_threadpool(backend.create_room, room_id, {
            "room_id": room_id,
            "creator_id": room.creator_id,
            "title": room.title,
            "description": room.description,
        })
    except RedisError as e:
        logger.error(f"Error creating room: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to create room")

    # A live session created before the metadata existed adopts the creator
    relay = request.app.state.relay
    async with relay.locks.hold(room_id):
        session = relay.sessions.get(room_id)
        if session is not None:
            session.authority_id = room.creator_id

    logger.info(f"Room {room_id} created successfully")
    return CreateRoomResponse(room_id=room_id, ws_url=_ws_url(request, room_id))


@rooms_router.get("/rooms/{room_id}", response_model=RoomDetailsResponse, response_model_by_alias=True)
async def get_room_details(room_id: str, request: Request):
    """Room metadata plus the live playback snapshot and online count."""
    backend = request.app.state.backend
    relay = request.app.state.relay

    try:
        room = await run_in_threadpool(backend.get_room, room_id)
    except RedisError as e:
        logger.error(f"Error fetching room {room_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to fetch room")

    async with relay.locks.hold(room_id):
        live = relay.describe(room_id)
        has_session = relay.sessions.get(room_id) is not None
    if not room and not has_session:
        logger.warning(f"Room details failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")

    room = room or {}
    return RoomDetailsResponse(
        room_id=room_id,
        title=room.get("title"),
        description=room.get("description"),
        creator_id=room.get("creator_id"),
        created_at=room.get("created_at"),
        online_count=live["online_count"],
        url=live["url"],
        time=live["time"],
        playing=live["playing"],
    )


@rooms_router.get("/health", response_model=HealthResponse)
def health(request: Request):
    redis_ok = request.app.state.backend.ping()
    return HealthResponse(status="ok" if redis_ok else "degraded", redis=redis_ok)
