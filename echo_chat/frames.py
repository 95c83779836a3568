"""Wire frames for the /ws endpoint.

Inbound frames are a closed tagged union keyed by ``type``; every payload is
validated here before it reaches the dispatcher, so handlers only ever see
well-formed frames. Outbound frames are built from the models below and
serialized with camelCase keys to match the client.
"""

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel

from .ws_constants import (
    MSG_AUTH,
    MSG_AUTH_ERROR,
    MSG_AUTH_SUCCESS,
    MSG_ERROR,
    MSG_GROTTO_CHAT,
    MSG_GROTTO_CHAT_MESSAGE,
    MSG_HEARTBEAT,
    MSG_HEARTBEAT_ACK,
    MSG_JOIN_STREAM,
    MSG_LEAVE_STREAM,
    MSG_STREAM_CHAT,
    MSG_STREAM_CHAT_MESSAGE,
    MSG_STREAM_JOINED,
    MSG_STREAM_LEFT,
    MSG_WORLD_CHAT,
    MSG_WORLD_CHAT_MESSAGE,
)

MAX_MESSAGE_LENGTH = 1000
STREAM_NAME_PATTERN = r"^[A-Za-z0-9\s_-]{3,50}$"
USERNAME_PATTERN = r"^[A-Za-z0-9_-]{3,30}$"
MAX_GROTTO_PARTICIPANTS = 10

StreamName = Annotated[str, Field(pattern=STREAM_NAME_PATTERN)]
Username = Annotated[str, Field(pattern=USERNAME_PATTERN)]


class _ChatText(BaseModel):
    message: str = Field(..., min_length=1, max_length=MAX_MESSAGE_LENGTH)

    @field_validator("message")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("message must not be blank")
        return v


# ── Inbound ──────────────────────────────────────────────────────────

class AuthFrame(BaseModel):
    type: Literal["auth"]
    token: str = Field(..., min_length=1, max_length=4096)


class WorldChatFrame(_ChatText):
    type: Literal["world_chat"]


class StreamChatFrame(_ChatText):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["stream_chat"]
    stream_name: StreamName = Field(..., alias="streamName")


class GrottoChatFrame(_ChatText):
    type: Literal["grotto_chat"]
    participants: list[Username] = Field(..., min_length=1, max_length=MAX_GROTTO_PARTICIPANTS)


class JoinStreamFrame(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["join_stream"]
    stream_name: StreamName = Field(..., alias="streamName")


class LeaveStreamFrame(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["leave_stream"]
    stream_name: StreamName = Field(..., alias="streamName")


class HeartbeatFrame(BaseModel):
    type: Literal["heartbeat"]


InboundFrame = Annotated[
    Union[
        AuthFrame,
        WorldChatFrame,
        StreamChatFrame,
        GrottoChatFrame,
        JoinStreamFrame,
        LeaveStreamFrame,
        HeartbeatFrame,
    ],
    Field(discriminator="type"),
]

_inbound_adapter = TypeAdapter(InboundFrame)

INBOUND_TYPES = frozenset({
    MSG_AUTH,
    MSG_WORLD_CHAT,
    MSG_STREAM_CHAT,
    MSG_GROTTO_CHAT,
    MSG_JOIN_STREAM,
    MSG_LEAVE_STREAM,
    MSG_HEARTBEAT,
})


def parse_inbound(payload: dict):
    """Validate a decoded JSON object into one of the inbound frame models.

    Raises ``pydantic.ValidationError`` when the payload does not match the
    shape for its ``type``. Callers are expected to have already checked that
    ``type`` is one of INBOUND_TYPES.
    """
    return _inbound_adapter.validate_python(payload)


# ── Outbound ─────────────────────────────────────────────────────────

class _Outbound(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Reaction(_Outbound):
    emoji: str
    users: list[str] = Field(default_factory=list)


class PublicChatMessage(_Outbound):
    id: str
    message: str
    username: str
    user_avatar: str
    chat_type: Literal["world", "stream", "grotto"]
    stream_name: str | None = None
    timestamp: datetime
    reactions: list[Reaction] = Field(default_factory=list)
    is_system_message: bool = False
    system_message_type: str | None = None
    is_deleted: bool = False


class AuthSuccess(_Outbound):
    type: Literal["auth_success"] = MSG_AUTH_SUCCESS
    user: dict


class AuthErrorFrame(_Outbound):
    type: Literal["auth_error"] = MSG_AUTH_ERROR
    message: str


class WorldChatMessage(_Outbound):
    type: Literal["world_chat_message"] = MSG_WORLD_CHAT_MESSAGE
    data: PublicChatMessage


class StreamChatMessage(_Outbound):
    type: Literal["stream_chat_message"] = MSG_STREAM_CHAT_MESSAGE
    stream_name: str
    data: PublicChatMessage


class GrottoChatMessage(_Outbound):
    type: Literal["grotto_chat_message"] = MSG_GROTTO_CHAT_MESSAGE
    participants: list[str]
    data: PublicChatMessage


class StreamJoined(_Outbound):
    type: Literal["stream_joined"] = MSG_STREAM_JOINED
    stream_name: str


class StreamLeft(_Outbound):
    type: Literal["stream_left"] = MSG_STREAM_LEFT
    stream_name: str


class HeartbeatAck(_Outbound):
    type: Literal["heartbeat_ack"] = MSG_HEARTBEAT_ACK


class ErrorFrame(_Outbound):
    type: Literal["error"] = MSG_ERROR
    message: str
