import asyncio
import uuid
from enum import Enum
from typing import Dict, Iterable, List, Optional

from logging_config import get_logger

logger = get_logger(__name__)


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    JOINED = "joined"
    CLOSED = "closed"


class Connection:
    """One live client channel.

    ``transport`` is anything with async ``send_text(str)`` and ``close()``,
    normally a starlette ``WebSocket``.
    """

    def __init__(self, transport, room_id: str, participant_id: Optional[str] = None):
        self.connection_id = str(uuid.uuid4())
        self.transport = transport
        self.room_id = room_id
        self.participant_id = participant_id
        self.state = ConnectionState.CONNECTING

    @property
    def is_open(self) -> bool:
        return self.state != ConnectionState.CLOSED

    async def send_text(self, text: str, timeout: float):
        await asyncio.wait_for(self.transport.send_text(text), timeout=timeout)

    async def close(self):
        if self.state == ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        try:
            await self.transport.close()
        except Exception as e:
            logger.debug(f"Error closing connection {self.connection_id}: {e}")

    def __repr__(self):
        return f"<Connection {self.connection_id[:8]} room={self.room_id} participant={self.participant_id} {self.state.value}>"


class ConnectionRegistry:
    """Room id -> live connections. Plain bookkeeping, no protocol rules."""

    def __init__(self, write_timeout: float):
        self.write_timeout = write_timeout
        # Format: {room_id: {connection_id: Connection}}
        self._rooms: Dict[str, Dict[str, Connection]] = {}

    def register(self, room_id: str, connection: Connection):
        connection.room_id = room_id
        self._rooms.setdefault(room_id, {})[connection.connection_id] = connection
        logger.debug(f"Added connection {connection.connection_id} to room {room_id} (local connections: {len(self._rooms[room_id])})")

    def unregister(self, connection: Connection) -> bool:
        """Remove ``connection`` from the room it was registered to.

        Returns True when that left the room empty (the entry is evicted).
        """
        members = self._rooms.get(connection.room_id)
        if not members or members.pop(connection.connection_id, None) is None:
            return False
        logger.debug(f"Removed connection {connection.connection_id} from room {connection.room_id}")
        if not members:
            del self._rooms[connection.room_id]
            logger.info(f"No more connections in room {connection.room_id}")
            return True
        return False

    def connections(self, room_id: str) -> List[Connection]:
        return list(self._rooms.get(room_id, {}).values())

    def find(self, room_id: str, participant_id: str) -> List[Connection]:
        return [c for c in self.connections(room_id) if c.participant_id == participant_id]

    def has_connections(self, room_id: str) -> bool:
        return bool(self._rooms.get(room_id))

    def rooms(self) -> List[str]:
        return list(self._rooms)

    def count(self, room_id: str) -> int:
        return len(self._rooms.get(room_id, {}))

    async def broadcast(self, room_id: str, text: str, excluding: Optional[Connection] = None) -> int:
        recipients = [c for c in self.connections(room_id) if c is not excluding]
        return await self.send_many(recipients, text)

    async def send_many(self, recipients: Iterable[Connection], text: str) -> int:
        """Send ``text`` to every recipient concurrently.

        A failed or timed out write closes and unregisters only that connection.
        Returns the number of successful deliveries.
        """
        recipients = [c for c in recipients if c.is_open]
        if not recipients:
            return 0
        results = await asyncio.gather(
            *(c.send_text(text, self.write_timeout) for c in recipients),
            return_exceptions=True,
        )
        delivered = 0
        for connection, result in zip(recipients, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.TimeoutError):
                    logger.warning(f"Write to {connection.connection_id} in room {connection.room_id} timed out, dropping connection")
                else:
                    logger.warning(f"Error sending to connection {connection.connection_id} in room {connection.room_id}: {result!r}")
                self.unregister(connection)
                await connection.close()
            else:
                delivered += 1
        return delivered
