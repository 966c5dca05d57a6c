"""
Pydantic schemas for wire frames and HTTP responses.

This module contains:
- MessageRecord, the shared chat message entity
- One model per WebSocket frame kind, joined into a closed tagged union
- parse_frame / encode_frame for the JSON text wire format
- Response models for the HTTP side channel
"""

import json
import uuid
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from relay.scheduler import now_ms


USERNAME_MIN_LENGTH = 2
USERNAME_MAX_LENGTH = 20

# Largest value a signed 64-bit INTEGER column holds
MAX_TIMESTAMP_MS = 2**63 - 1


def new_message_id() -> str:
    """Generate a globally unique message id."""
    return f"{now_ms()}-{uuid.uuid4().hex[:12]}"


class PresenceStatus(str, Enum):
    """Presence state of a session."""
    ONLINE = "online"
    AWAY = "away"
    OFFLINE = "offline"


class ErrorCode(str, Enum):
    """Machine-readable reason carried by error frames."""
    INVALID_FRAME = "invalid_frame"
    NAME_IN_USE = "name_in_use"
    NOT_JOINED = "not_joined"
    CLEAR_REFUSED = "clear_refused"


class FrameError(Exception):
    """Raised when an inbound frame is malformed or carries an unknown tag."""

    def __init__(self, reason: str, detail: str):
        super().__init__(detail)
        self.reason = reason
        self.detail = detail


# =============================================================================
# Shared Entities
# =============================================================================

class MessageRecord(BaseModel):
    """
    A chat message as stored in history and relayed to clients.

    The id is assigned once by the sender; two records with the same id
    are the same logical message.
    """
    id: str = Field(
        default_factory=new_message_id,
        min_length=1,
        max_length=64,
        description="Sender-assigned unique message identifier"
    )
    text: str = Field(..., description="Message text")
    author: str = Field(
        ...,
        alias="username",
        serialization_alias="username",
        description="Display name of the author"
    )
    timestamp: int = Field(
        default_factory=now_ms,
        ge=0,
        le=MAX_TIMESTAMP_MS,
        description="Sender-assigned time in milliseconds since epoch"
    )

    model_config = {"populate_by_name": True}


class PresenceEntry(BaseModel):
    """One participant in a users_list snapshot."""
    username: str
    status: PresenceStatus
    last_seen: int = Field(..., alias="lastSeen", serialization_alias="lastSeen")

    model_config = {"populate_by_name": True}


def validate_username(v: str) -> str:
    """Strip and length-check a claimed display name."""
    v = v.strip()
    if len(v) < USERNAME_MIN_LENGTH:
        raise ValueError(f"username must be at least {USERNAME_MIN_LENGTH} characters")
    if len(v) > USERNAME_MAX_LENGTH:
        raise ValueError(f"username must be at most {USERNAME_MAX_LENGTH} characters")
    return v


# =============================================================================
# Frames
# =============================================================================

class JoinFrame(BaseModel):
    """Client claims a display name for this connection."""
    type: Literal["join"] = "join"
    username: str
    timestamp: int = Field(default_factory=now_ms)

    @field_validator("username")
    @classmethod
    def check_username(cls, v: str) -> str:
        return validate_username(v)


class MessageFrame(BaseModel):
    """
    A chat message.

    client→server: submission (username is informational, the server uses
    the session's name). server→all: broadcast and delivery echo.
    """
    type: Literal["message"] = "message"
    id: str = Field(default_factory=new_message_id, min_length=1, max_length=64)
    text: str
    username: Optional[str] = None
    timestamp: int = Field(default_factory=now_ms, ge=0, le=MAX_TIMESTAMP_MS)

    @classmethod
    def from_record(cls, record: MessageRecord) -> "MessageFrame":
        return cls(id=record.id, text=record.text, username=record.author, timestamp=record.timestamp)


class HistoryFrame(BaseModel):
    """Recent history, sent once per new connection."""
    type: Literal["history"] = "history"
    messages: list[MessageRecord] = Field(default_factory=list)


class UserJoinedFrame(BaseModel):
    type: Literal["user_joined"] = "user_joined"
    username: str
    online_count: int = Field(..., alias="onlineCount", serialization_alias="onlineCount")
    timestamp: int = Field(default_factory=now_ms)

    model_config = {"populate_by_name": True}


class UserLeftFrame(BaseModel):
    type: Literal["user_left"] = "user_left"
    username: str
    online_count: int = Field(..., alias="onlineCount", serialization_alias="onlineCount")
    timestamp: int = Field(default_factory=now_ms)

    model_config = {"populate_by_name": True}


class OnlineCountFrame(BaseModel):
    type: Literal["online_count"] = "online_count"
    count: int
    timestamp: int = Field(default_factory=now_ms)


class UserStatusFrame(BaseModel):
    """Away/online transition, reported by clients and broadcast by the relay."""
    type: Literal["user_status"] = "user_status"
    username: Optional[str] = None
    status: PresenceStatus
    timestamp: int = Field(default_factory=now_ms)


class UsersListFrame(BaseModel):
    """Full presence snapshot sent to a newly admitted connection."""
    type: Literal["users_list"] = "users_list"
    users: list[PresenceEntry] = Field(default_factory=list)


class ClearChatFrame(BaseModel):
    type: Literal["clear_chat"] = "clear_chat"
    username: Optional[str] = None
    timestamp: int = Field(default_factory=now_ms)


class HeartbeatFrame(BaseModel):
    type: Literal["heartbeat"] = "heartbeat"
    timestamp: int = Field(default_factory=now_ms)


class HeartbeatAckFrame(BaseModel):
    type: Literal["heartbeat_ack"] = "heartbeat_ack"
    timestamp: int = Field(default_factory=now_ms)


class ErrorFrame(BaseModel):
    type: Literal["error"] = "error"
    message: str
    code: Optional[ErrorCode] = None


Frame = Annotated[
    Union[
        JoinFrame,
        MessageFrame,
        HistoryFrame,
        UserJoinedFrame,
        UserLeftFrame,
        OnlineCountFrame,
        UserStatusFrame,
        UsersListFrame,
        ClearChatFrame,
        HeartbeatFrame,
        HeartbeatAckFrame,
        ErrorFrame,
    ],
    Field(discriminator="type"),
]

_frame_adapter: TypeAdapter = TypeAdapter(Frame)

FRAME_TYPES = frozenset({
    "join", "message", "history", "user_joined", "user_left", "online_count",
    "user_status", "users_list", "clear_chat", "heartbeat", "heartbeat_ack", "error",
})

# Frames a client may send to the relay
CLIENT_FRAME_TYPES = (JoinFrame, MessageFrame, UserStatusFrame, ClearChatFrame, HeartbeatFrame)


def parse_frame(raw: Union[str, bytes]) -> BaseModel:
    """
    Decode one JSON text frame into its typed model.

    Raises:
        FrameError: payload is not JSON, not an object, has an unknown
            type tag, or fails validation for its tag.
    """
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise FrameError("malformed", f"Invalid JSON: {e}")

    if not isinstance(payload, dict):
        raise FrameError("malformed", "Frame must be a JSON object")

    frame_type = payload.get("type")
    if not isinstance(frame_type, str) or frame_type not in FRAME_TYPES:
        raise FrameError("unknown_type", f"Unknown frame type: {frame_type!r}")

    try:
        return _frame_adapter.validate_python(payload)
    except ValidationError as e:
        raise FrameError("invalid", f"Invalid {frame_type} frame: {e.errors()[0]['msg']}")


def encode_frame(frame: BaseModel) -> str:
    """Serialize a frame model to its JSON wire form."""
    return frame.model_dump_json(by_alias=True)


# =============================================================================
# HTTP Response Models
# =============================================================================

class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class MessagesSinceResponse(BaseModel):
    """
    Response model for the GET /messages catch-up query.

    Contains:
    - data: messages newer than `since`, oldest first
    - count: number of messages returned
    - since / after_id: the cursor the query was made with
    """
    data: list[MessageRecord] = Field(default_factory=list, description="Messages newer than since")
    count: int = Field(..., ge=0, description="Number of messages returned")
    since: int = Field(..., ge=0, description="Exclusive lower timestamp bound")
    after_id: Optional[str] = Field(None, description="Tie-break id within the since millisecond")


class StatsResponse(BaseModel):
    """
    Response model for GET /stats.

    - total_messages: entries currently in the history log
    - online_count: sessions currently present (online, away or in grace)
    - first_message_ts / last_message_ts: null when history is empty
    """
    total_messages: int = Field(..., ge=0)
    online_count: int = Field(..., ge=0)
    first_message_ts: Optional[int] = Field(None)
    last_message_ts: Optional[int] = Field(None)
