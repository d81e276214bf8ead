import json
import math
from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


class EnvelopeError(ValueError):
    """An inbound frame that cannot be relayed (bad JSON, unknown type, missing roomId)."""


class EnvelopeType(str, Enum):
    JOIN = "join"
    MEDIA_CHANGE = "media-change"
    PLAYBACK = "playback"
    SEEK = "seek"
    VOLUME = "volume"
    SIGNAL = "signal"
    CHAT = "chat"
    # Peer negotiation messages sent by the video chat client, routed like SIGNAL
    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "ice-candidate"
    NEW_PEER = "new-peer"
    # Video peer announcement, relayed to the whole room
    JOIN_VIDEO = "join-video"


POINT_TO_POINT_TYPES = {
    EnvelopeType.SIGNAL,
    EnvelopeType.OFFER,
    EnvelopeType.ANSWER,
    EnvelopeType.ICE_CANDIDATE,
    EnvelopeType.NEW_PEER,
}


class Envelope(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    type: EnvelopeType
    room_id: str = Field(alias="roomId", min_length=1)
    sender_id: Optional[str] = Field(default=None, alias="senderId")
    url: Optional[str] = None
    playing: Optional[bool] = None
    time: Optional[float] = None
    volume: Optional[float] = None
    to: Optional[str] = None
    from_: Optional[str] = Field(default=None, alias="from")

    # Kind-specific fields never reject an envelope. A value of the wrong type
    # reads as absent: the raw object is still relayed, only the session
    # mutation is skipped.

    @field_validator("url", "to", "from_", mode="plain")
    @classmethod
    def keep_strings(cls, value):
        return value if isinstance(value, str) and value else None

    @field_validator("playing", mode="plain")
    @classmethod
    def keep_bools(cls, value):
        return value if isinstance(value, bool) else None

    @field_validator("time", "volume", mode="plain")
    @classmethod
    def keep_numbers(cls, value):
        # JSON numbers only; booleans and numeric strings do not count. Infinity is
        # kept for clamping, NaN is not a position.
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        if math.isnan(value):
            return None
        return float(value)

    @property
    def is_point_to_point(self) -> bool:
        return self.type in POINT_TO_POINT_TYPES


class SyncState(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: str = "sync-state"
    room_id: str = Field(alias="roomId")
    url: str
    time: float
    playing: bool = False

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


def parse_envelope(raw: str) -> Tuple[Envelope, dict]:
    """Parse one inbound text frame.

    Returns the validated envelope together with the original JSON object, which
    is what gets forwarded so that opaque fields (sdp, candidate, nickname...)
    reach peers untouched.
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise EnvelopeError(f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise EnvelopeError("envelope must be a JSON object")
    try:
        envelope = Envelope.model_validate(data)
    except ValidationError as e:
        raise EnvelopeError(f"invalid envelope: {e.errors()[0]['msg']}") from e
    return envelope, data
