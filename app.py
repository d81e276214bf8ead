from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Query, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from backend import RedisBackend
from constants import DEFAULT_ROOM_ID, LOG_FILE, LOG_LEVEL
from logging_config import get_logger, setup_logging
from relay import RelayEngine
from routers.rooms import rooms_router

# Setup logging
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)
logger = get_logger(__name__)


def create_app(backend=None, **relay_options) -> FastAPI:
    """Build the relay application.

    ``backend`` is the persistence gateway; a RedisBackend from the environment
    is used when omitted. ``relay_options`` are passed to RelayEngine.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        gateway = backend if backend is not None else RedisBackend()
        if hasattr(gateway, "ping") and not gateway.ping():
            logger.warning("Persistence store unreachable at startup; snapshots will not be restored or saved until it recovers")
        relay = RelayEngine(gateway, **relay_options)
        app.state.backend = gateway
        app.state.relay = relay
        relay.start()
        logger.info("Relay started")
        try:
            yield
        finally:
            await relay.shutdown()

    app = FastAPI(title="Jam Room Relay", lifespan=lifespan)

    # Configure CORS to allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(rooms_router)

    @app.websocket("/ws")
    async def websocket_endpoint(
        websocket: WebSocket,
        room_id: str = Query(DEFAULT_ROOM_ID, alias="roomId"),
        sender_id: Optional[str] = Query(None, alias="senderId"),
    ):
        """Room sync socket. The room is fixed by ``?roomId=`` for the connection's lifetime."""
        logger.info(f"WebSocket connection attempt for room: {room_id}, senderId: {sender_id}")
        await websocket.app.state.relay.serve(websocket, room_id or DEFAULT_ROOM_ID, sender_id)

    @app.websocket("/rooms/{room_id}/ws")
    async def room_websocket_endpoint(
        room_id: str,
        websocket: WebSocket,
        sender_id: Optional[str] = Query(None, alias="senderId"),
    ):
        logger.info(f"WebSocket connection attempt for room: {room_id}, senderId: {sender_id}")
        await websocket.app.state.relay.serve(websocket, room_id, sender_id)

    logger.info("FastAPI application initialized")
    return app


app = create_app()
