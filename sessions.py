import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from logging_config import get_logger

logger = get_logger(__name__)


def clamp_position(position: float) -> float:
    return min(1.0, max(0.0, float(position)))


def same_identity(a: Optional[str], b: Optional[str]) -> bool:
    # Creator identities are wallet addresses, whose hex case is not significant
    if a is None or b is None:
        return False
    return a.lower() == b.lower()


@dataclass
class RoomSession:
    room_id: str
    authority_id: Optional[str] = None
    current_media_ref: Optional[str] = None
    current_position: float = 0.0
    is_playing: bool = False
    last_active: float = field(default_factory=time.monotonic)

    def touch(self):
        self.last_active = time.monotonic()

    def persisted_view(self) -> dict:
        return {"mediaRef": self.current_media_ref, "position": self.current_position}


class RoomSessionStore:
    """Authoritative playback snapshot per room.

    Callers serialize access per room; the store itself does no locking.
    """

    def __init__(self):
        self._sessions: Dict[str, RoomSession] = {}

    def get(self, room_id: str) -> Optional[RoomSession]:
        return self._sessions.get(room_id)

    def get_or_create(self, room_id: str, authority_id: Optional[str] = None) -> RoomSession:
        session = self._sessions.get(room_id)
        if session is None:
            session = RoomSession(room_id=room_id, authority_id=authority_id)
            self._sessions[room_id] = session
            logger.debug(f"Created session for room {room_id} (authority: {authority_id})")
        return session

    def hydrate(self, room_id: str, snapshot: Optional[dict], authority_id: Optional[str]) -> RoomSession:
        """Create the session for a room from its persisted snapshot.

        Restored sessions start paused; play state is not persisted.
        """
        session = self.get_or_create(room_id, authority_id)
        if snapshot and snapshot.get("mediaRef"):
            session.current_media_ref = snapshot["mediaRef"]
            session.current_position = clamp_position(snapshot.get("position", 0.0))
        return session

    def apply_media_change(self, room_id: str, media_ref: str) -> RoomSession:
        session = self.get_or_create(room_id)
        session.current_media_ref = media_ref
        session.current_position = 0.0
        session.is_playing = False
        session.touch()
        return session

    def apply_seek(self, room_id: str, position: float, requester_id: Optional[str]) -> bool:
        """Commit ``position`` if ``requester_id`` holds the room's authority.

        Returns whether the session changed. Out-of-range positions are clamped.
        """
        session = self.get_or_create(room_id)
        session.touch()
        if not same_identity(requester_id, session.authority_id):
            logger.debug(f"Ignoring seek from {requester_id} in room {room_id} (authority: {session.authority_id})")
            return False
        session.current_position = clamp_position(position)
        return True

    def apply_playback(self, room_id: str, playing: bool) -> RoomSession:
        session = self.get_or_create(room_id)
        session.is_playing = bool(playing)
        session.touch()
        return session

    def snapshot(self, room_id: str) -> Optional[dict]:
        session = self._sessions.get(room_id)
        if session is None or session.current_media_ref is None:
            return None
        return {
            "mediaRef": session.current_media_ref,
            "position": session.current_position,
            "isPlaying": session.is_playing,
        }

    def evict(self, room_id: str) -> bool:
        return self._sessions.pop(room_id, None) is not None

    def idle_rooms(self, idle_seconds: float, now: Optional[float] = None) -> List[str]:
        now = time.monotonic() if now is None else now
        return [room_id for room_id, s in self._sessions.items() if now - s.last_active >= idle_seconds]

    def __len__(self):
        return len(self._sessions)

    def __contains__(self, room_id: str):
        return room_id in self._sessions
