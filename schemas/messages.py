"""Signaling protocol: one JSON object per WebSocket frame, discriminated by ``type``.

Client and server messages form two closed unions. Anything that fails to
validate against the union is a protocol error, never a silent fallthrough.
"""
from typing import Annotated, Any, Literal, Optional, Union, get_args

from pydantic import Field, TypeAdapter

from schemas.rooms import ChatMessage, IceServer, ParticipantSummary, WireModel


# --- Client -> server ---

class JoinRoomMessage(WireModel):
    type: Literal["join-room"] = "join-room"
    room_id: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=64)

class OfferMessage(WireModel):
    type: Literal["offer"] = "offer"
    target: str
    sdp: Any
    name: Optional[str] = None

class AnswerMessage(WireModel):
    type: Literal["answer"] = "answer"
    target: str
    sdp: Any
    name: Optional[str] = None

class IceCandidateMessage(WireModel):
    type: Literal["ice-candidate"] = "ice-candidate"
    target: str
    candidate: Any

class VideoStateMessage(WireModel):
    type: Literal["video-state-changed"] = "video-state-changed"
    room_id: Optional[str] = None
    is_video_enabled: bool

class AudioStateMessage(WireModel):
    type: Literal["audio-state-changed"] = "audio-state-changed"
    room_id: Optional[str] = None
    is_audio_enabled: bool

class ScreenShareStartedMessage(WireModel):
    type: Literal["screen-share-started"] = "screen-share-started"
    room_id: Optional[str] = None

class ScreenShareStoppedMessage(WireModel):
    type: Literal["screen-share-stopped"] = "screen-share-stopped"
    room_id: Optional[str] = None

class SendChatMessage(WireModel):
    type: Literal["send-message"] = "send-message"
    room_id: Optional[str] = None
    message: str = Field(min_length=1, max_length=4000)

class SendEmojiMessage(WireModel):
    type: Literal["send-emoji"] = "send-emoji"
    room_id: Optional[str] = None
    emoji: str = Field(min_length=1, max_length=16)


ClientMessage = Annotated[
    Union[
        JoinRoomMessage,
        OfferMessage,
        AnswerMessage,
        IceCandidateMessage,
        VideoStateMessage,
        AudioStateMessage,
        ScreenShareStartedMessage,
        ScreenShareStoppedMessage,
        SendChatMessage,
        SendEmojiMessage,
    ],
    Field(discriminator="type"),
]


# --- Server -> client ---

class JoinedEvent(WireModel):
    type: Literal["joined"] = "joined"
    id: str
    room_id: str
    ice_servers: list[IceServer] = []

class ExistingUsersEvent(WireModel):
    type: Literal["existing-users"] = "existing-users"
    users: list[ParticipantSummary]

class PreviousMessagesEvent(WireModel):
    type: Literal["previous-messages"] = "previous-messages"
    messages: list[ChatMessage]

class UserJoinedEvent(WireModel):
    type: Literal["user-joined"] = "user-joined"
    id: str
    name: str
    is_screen_sharing: bool = False

class OfferEvent(WireModel):
    type: Literal["offer"] = "offer"
    caller: str
    sdp: Any
    name: Optional[str] = None

class AnswerEvent(WireModel):
    type: Literal["answer"] = "answer"
    answerer: str
    sdp: Any
    name: Optional[str] = None

class IceCandidateEvent(WireModel):
    type: Literal["ice-candidate"] = "ice-candidate"
    from_: str = Field(alias="from")
    candidate: Any

class UserVideoStateEvent(WireModel):
    type: Literal["user-video-state-changed"] = "user-video-state-changed"
    user_id: str
    is_video_enabled: bool

class UserAudioStateEvent(WireModel):
    type: Literal["user-audio-state-changed"] = "user-audio-state-changed"
    user_id: str
    is_audio_enabled: bool

class UserScreenShareStartedEvent(WireModel):
    type: Literal["user-screen-share-started"] = "user-screen-share-started"
    user_id: str

class UserScreenShareStoppedEvent(WireModel):
    type: Literal["user-screen-share-stopped"] = "user-screen-share-stopped"
    user_id: str

class ReceiveMessageEvent(ChatMessage):
    type: Literal["receive-message"] = "receive-message"

class ReceiveEmojiEvent(WireModel):
    type: Literal["receive-emoji"] = "receive-emoji"
    user_id: str
    emoji: str

class UserDisconnectedEvent(WireModel):
    type: Literal["user-disconnected"] = "user-disconnected"
    user_id: str

class RelayFailedEvent(WireModel):
    type: Literal["relay-failed"] = "relay-failed"
    target: str
    kind: Literal["offer", "answer", "ice-candidate"]

class RoomExpiredEvent(WireModel):
    type: Literal["room-expired"] = "room-expired"
    room_id: str

class ErrorEvent(WireModel):
    type: Literal["error"] = "error"
    detail: str


ServerMessage = Annotated[
    Union[
        JoinedEvent,
        ExistingUsersEvent,
        PreviousMessagesEvent,
        UserJoinedEvent,
        OfferEvent,
        AnswerEvent,
        IceCandidateEvent,
        UserVideoStateEvent,
        UserAudioStateEvent,
        UserScreenShareStartedEvent,
        UserScreenShareStoppedEvent,
        ReceiveMessageEvent,
        ReceiveEmojiEvent,
        UserDisconnectedEvent,
        RelayFailedEvent,
        RoomExpiredEvent,
        ErrorEvent,
    ],
    Field(discriminator="type"),
]

CLIENT_MESSAGE_TYPES = get_args(get_args(ClientMessage)[0])
SERVER_MESSAGE_TYPES = get_args(get_args(ServerMessage)[0])

client_message_adapter = TypeAdapter(ClientMessage)
server_message_adapter = TypeAdapter(ServerMessage)


def parse_client_message(data: Union[str, bytes]):
    """Validate a raw frame into one of the client message models. Raises ``ValidationError``."""
    return client_message_adapter.validate_json(data)


def parse_server_message(data: Union[str, bytes]):
    """Validate a raw frame into one of the server message models. Raises ``ValidationError``."""
    return server_message_adapter.validate_json(data)


def check_handlers(handlers: dict, message_types: tuple, owner: str):
    """Fail fast when a handler table does not cover every message kind."""
    missing = [t.__name__ for t in message_types if t not in handlers]
    if missing:
        raise RuntimeError(f"{owner} has no handler for: {', '.join(missing)}")
