import redis
from datetime import datetime
from typing import Optional
from constants import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD, REDIS_SOCKET_TIMEOUT_SECONDS, SNAPSHOT_TTL_SECONDS
from redis_keys import REDIS_META_KEY, REDIS_SESSION_KEY
from logging_config import get_logger

logger = get_logger(__name__)


class RedisBackend:
    """Persistence gateway for room metadata and playback snapshots.

    All methods are blocking redis-py calls; the relay runs them in an executor.
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None, snapshot_ttl: int = SNAPSHOT_TTL_SECONDS):
        if redis_client is None:
            logger.info(f"Initializing RedisBackend with connection to {REDIS_HOST}:{REDIS_PORT}")
            redis_client = redis.Redis(
                host=REDIS_HOST,
                port=REDIS_PORT,
                password=REDIS_PASSWORD,
                decode_responses=True,
                socket_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
                socket_connect_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
            )
        self.redis_client = redis_client
        self.snapshot_ttl = snapshot_ttl

    def ping(self) -> bool:
        try:
            return bool(self.redis_client.ping())
        except redis.RedisError as e:
            logger.error(f"Redis ping failed: {e}")
            return False

    def create_room(self, room_id: str, room_data: dict):
        logger.info(f"Creating room {room_id}")
        key = REDIS_META_KEY.format(slug=room_id)
        # Redis hashes hold strings only, skip None values
        room_data_str = {k: str(v) for k, v in room_data.items() if v is not None}
        room_data_str.setdefault("created_at", datetime.now().isoformat())
        self.redis_client.hset(key, mapping=room_data_str)
        logger.debug(f"Room {room_id} created successfully with key: {key}")
        return room_id

    def get_room(self, room_id: str) -> Optional[dict]:
        logger.debug(f"Fetching room {room_id}")
        room_data = self.redis_client.hgetall(REDIS_META_KEY.format(slug=room_id))
        if not room_data:
            logger.debug(f"Room {room_id} not found in Redis")
            return None
        return dict(room_data)

    def load_authority(self, room_id: str) -> Optional[str]:
        """Return the creator identity recorded for the room, if any."""
        creator_id = self.redis_client.hget(REDIS_META_KEY.format(slug=room_id), "creator_id")
        return creator_id or None

    def load_snapshot(self, room_id: str) -> Optional[dict]:
        key = REDIS_SESSION_KEY.format(slug=room_id)
        data = self.redis_client.hgetall(key)
        if not data or not data.get("media_ref"):
            logger.debug(f"No persisted snapshot for room {room_id}")
            return None
        try:
            position = float(data.get("position", 0.0))
        except (TypeError, ValueError):
            logger.warning(f"Corrupt position {data.get('position')!r} in {key}, using 0")
            position = 0.0
        return {"mediaRef": data["media_ref"], "position": position}

    def save_snapshot(self, room_id: str, snapshot: dict):
        key = REDIS_SESSION_KEY.format(slug=room_id)
        mapping = {
            "media_ref": snapshot.get("mediaRef") or "",
            "position": str(snapshot.get("position", 0.0)),
            "updated_at": datetime.now().isoformat(),
        }
        self.redis_client.hset(key, mapping=mapping)
        if self.snapshot_ttl:
            self.redis_client.expire(key, self.snapshot_ttl)
        logger.debug(f"Saved snapshot for room {room_id}: {mapping['media_ref']} @ {mapping['position']}")
        return True
