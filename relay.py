import asyncio
import json
import time
from contextlib import asynccontextmanager, suppress
from typing import Dict, List, Optional

from fastapi import WebSocketDisconnect

from constants import (
    REDIS_SOCKET_TIMEOUT_SECONDS,
    ROOM_SESSION_IDLE_SECONDS,
    ROOM_SWEEP_INTERVAL_SECONDS,
    WS_WRITE_TIMEOUT_SECONDS,
)
from logging_config import get_logger
from registry import Connection, ConnectionRegistry, ConnectionState
from schemas.envelopes import Envelope, EnvelopeError, EnvelopeType, SyncState, parse_envelope
from sessions import RoomSessionStore

logger = get_logger(__name__)


class RoomLocks:
    """One asyncio.Lock per room, dropped as soon as nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, room_id: str):
        lock = self._locks.setdefault(room_id, asyncio.Lock())
        self._holders[room_id] = self._holders.get(room_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[room_id] -= 1
            if not self._holders[room_id]:
                del self._holders[room_id]
                del self._locks[room_id]

    def __len__(self):
        return len(self._locks)


class SnapshotWriter:
    """Best-effort background persistence of room snapshots.

    Writes for one room run one at a time and coalesce: only the newest pending
    snapshot is written, so a room's stored state never goes backwards.
    """

    def __init__(self, backend, timeout: float):
        self.backend = backend
        self.timeout = timeout
        self._pending: Dict[str, dict] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    def schedule(self, room_id: str, snapshot: dict):
        self._pending[room_id] = snapshot
        task = self._tasks.get(room_id)
        if task is None or task.done():
            self._tasks[room_id] = asyncio.create_task(self._drain(room_id))

    async def _drain(self, room_id: str):
        loop = asyncio.get_running_loop()
        try:
            while room_id in self._pending:
                snapshot = self._pending.pop(room_id)
                try:
                    await asyncio.wait_for(
                        loop.run_in_executor(None, self.backend.save_snapshot, room_id, snapshot),
                        timeout=self.timeout,
                    )
                except asyncio.TimeoutError:
                    logger.error(f"Persisting snapshot for room {room_id} timed out after {self.timeout}s")
                except Exception as e:
                    logger.error(f"Failed to persist snapshot for room {room_id}: {e}", exc_info=True)
        finally:
            if self._tasks.get(room_id) is asyncio.current_task():
                del self._tasks[room_id]

    async def flush(self):
        while True:
            running = [t for t in self._tasks.values() if not t.done()]
            if not running:
                return
            await asyncio.gather(*running, return_exceptions=True)


class RelayEngine:
    """Room synchronization relay.

    Owns the connection registry and the session store for the process. Every
    state change and fan-out for a room happens under that room's lock, so a
    room's envelopes are applied and delivered in the order they were read.
    Different rooms never wait on each other.
    """

    def __init__(
        self,
        backend,
        write_timeout: float = WS_WRITE_TIMEOUT_SECONDS,
        idle_seconds: float = ROOM_SESSION_IDLE_SECONDS,
        sweep_interval: float = ROOM_SWEEP_INTERVAL_SECONDS,
        store_timeout: float = REDIS_SOCKET_TIMEOUT_SECONDS,
    ):
        self.backend = backend
        self.registry = ConnectionRegistry(write_timeout)
        self.sessions = RoomSessionStore()
        self.writer = SnapshotWriter(backend, store_timeout)
        self.store_timeout = store_timeout
        self.locks = RoomLocks()
        self.idle_seconds = idle_seconds
        self.sweep_interval = sweep_interval
        self._sweeper: Optional[asyncio.Task] = None

    def start(self):
        if self.idle_seconds and self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_forever())
            logger.info(f"Idle session sweeper started (idle after {self.idle_seconds}s, every {self.sweep_interval}s)")

    async def shutdown(self):
        if self._sweeper is not None:
            self._sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        for room_id in self.registry.rooms():
            for connection in self.registry.connections(room_id):
                self.registry.unregister(connection)
                await connection.close()
        await self.writer.flush()
        logger.info("Relay shut down")

    def connect(self, transport, room_id: str, participant_id: Optional[str] = None) -> Connection:
        connection = Connection(transport, room_id, participant_id)
        logger.info(f"Connection {connection.connection_id} opened for room {room_id}")
        return connection

    async def disconnect(self, connection: Connection):
        self.registry.unregister(connection)
        if connection.state == ConnectionState.JOINED:
            session = self.sessions.get(connection.room_id)
            if session is not None:
                session.touch()
        connection.state = ConnectionState.CLOSED
        logger.info(f"Participant {connection.participant_id} left room {connection.room_id}")

    async def serve(self, websocket, room_id: str, participant_id: Optional[str] = None):
        """Run one websocket for its whole lifetime."""
        await websocket.accept()
        connection = self.connect(websocket, room_id, participant_id)
        try:
            while connection.is_open:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None and message.get("bytes") is not None:
                    raw = message["bytes"].decode("utf-8", errors="replace")
                await self.handle_text(connection, raw)
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected for connection {connection.connection_id} in room {room_id}")
        except Exception as e:
            logger.error(f"WebSocket error for connection {connection.connection_id} in room {room_id}: {e}", exc_info=True)
        finally:
            await self.disconnect(connection)
            try:
                await websocket.close()
            except Exception as e:
                logger.debug(f"Error closing WebSocket: {e}")

    async def handle_text(self, connection: Connection, raw: Optional[str]):
        if not connection.is_open:
            return
        try:
            envelope, data = parse_envelope(raw)
        except EnvelopeError as e:
            logger.warning(f"Dropping envelope from {connection.connection_id} in room {connection.room_id}: {e}")
            return

        if envelope.room_id != connection.room_id:
            logger.warning(
                f"Dropping {envelope.type.value} from {connection.connection_id}: "
                f"roomId {envelope.room_id!r} does not match bound room {connection.room_id!r}"
            )
            return

        if connection.state == ConnectionState.CONNECTING:
            if envelope.type != EnvelopeType.JOIN:
                logger.warning(f"Dropping {envelope.type.value} from {connection.connection_id}: not joined yet")
                return
            await self._join(connection, envelope)
            return

        if envelope.type == EnvelopeType.JOIN:
            logger.debug(f"Ignoring repeated join from {connection.participant_id} in room {connection.room_id}")
            return

        async with self.locks.hold(connection.room_id):
            if not connection.is_open:
                return
            await self._dispatch(connection, envelope, data)

    async def _join(self, connection: Connection, envelope: Envelope):
        room_id = connection.room_id
        participant_id = envelope.sender_id or connection.participant_id or connection.connection_id
        async with self.locks.hold(room_id):
            session = self.sessions.get(room_id)
            if session is None:
                session = await self._hydrate(room_id)
            if session.authority_id is None:
                session.authority_id = participant_id
                logger.info(f"No creator recorded for room {room_id}, {participant_id} holds seek authority")

            connection.participant_id = participant_id
            connection.state = ConnectionState.JOINED
            self.registry.register(room_id, connection)
            session.touch()
            logger.info(f"Participant {participant_id} joined room {room_id} ({self.registry.count(room_id)} connected)")

            snapshot = self.sessions.snapshot(room_id)
            if snapshot is None:
                return
            sync = SyncState(
                room_id=room_id,
                url=snapshot["mediaRef"],
                time=snapshot["position"],
                playing=snapshot["isPlaying"],
            )
            await self.registry.send_many([connection], sync.to_json())

    async def _hydrate(self, room_id: str):
        loop = asyncio.get_running_loop()
        snapshot = None
        authority_id = None
        try:
            snapshot = await asyncio.wait_for(
                loop.run_in_executor(None, self.backend.load_snapshot, room_id), timeout=self.store_timeout
            )
            authority_id = await asyncio.wait_for(
                loop.run_in_executor(None, self.backend.load_authority, room_id), timeout=self.store_timeout
            )
        except asyncio.TimeoutError:
            logger.error(f"Loading room {room_id} from store timed out after {self.store_timeout}s, starting fresh")
        except Exception as e:
            logger.error(f"Failed to load room {room_id} from store, starting fresh: {e}", exc_info=True)
        return self.sessions.hydrate(room_id, snapshot, authority_id)

    async def _dispatch(self, connection: Connection, envelope: Envelope, data: dict):
        room_id = connection.room_id
        data.setdefault("senderId", connection.participant_id)

        if envelope.is_point_to_point:
            data.setdefault("from", connection.participant_id)
            recipients = []
            if envelope.to is not None:
                recipients = [c for c in self.registry.find(room_id, envelope.to) if c is not connection]
            if not recipients:
                logger.debug(f"No recipient {envelope.to!r} in room {room_id} for {envelope.type.value}")
                return
            await self.registry.send_many(recipients, json.dumps(data))
            return

        persist = False
        if envelope.type == EnvelopeType.MEDIA_CHANGE and envelope.url is not None:
            self.sessions.apply_media_change(room_id, envelope.url)
            persist = True
        elif envelope.type == EnvelopeType.SEEK and envelope.time is not None:
            persist = self.sessions.apply_seek(room_id, envelope.time, connection.participant_id)
        elif envelope.type == EnvelopeType.PLAYBACK and envelope.playing is not None:
            self.sessions.apply_playback(room_id, envelope.playing)

        delivered = await self.registry.broadcast(room_id, json.dumps(data), excluding=connection)
        logger.debug(f"Relayed {envelope.type.value} from {connection.participant_id} to {delivered} connections in room {room_id}")

        if persist:
            self.writer.schedule(room_id, self.sessions.get(room_id).persisted_view())

    def describe(self, room_id: str) -> dict:
        session = self.sessions.get(room_id)
        return {
            "online_count": self.registry.count(room_id),
            "url": session.current_media_ref if session else None,
            "time": session.current_position if session else None,
            "playing": session.is_playing if session else None,
        }

    async def sweep_idle(self, now: Optional[float] = None) -> List[str]:
        """Evict sessions of rooms that have been empty for ``idle_seconds``."""
        if not self.idle_seconds:
            return []
        now = time.monotonic() if now is None else now
        evicted = []
        for room_id in self.sessions.idle_rooms(self.idle_seconds, now):
            async with self.locks.hold(room_id):
                session = self.sessions.get(room_id)
                if session is None or self.registry.has_connections(room_id):
                    continue
                if now - session.last_active < self.idle_seconds:
                    continue
                if self.sessions.evict(room_id):
                    evicted.append(room_id)
                    logger.info(f"Evicted idle session for room {room_id}")
        return evicted

    async def _sweep_forever(self):
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep_idle()
            except Exception as e:
                logger.error(f"Idle session sweep failed: {e}", exc_info=True)
