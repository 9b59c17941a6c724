from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from datetime import datetime, timezone
from typing import Optional


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class WireModel(BaseModel):
    """Base for everything that crosses the wire: snake_case in Python, camelCase in JSON."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class Participant(WireModel):
    id: str
    name: str
    mic_enabled: bool = True
    camera_enabled: bool = True
    is_screen_sharing: bool = False

    def summary(self) -> "ParticipantSummary":
        return ParticipantSummary(id=self.id, name=self.name, is_screen_sharing=self.is_screen_sharing)


class ParticipantSummary(WireModel):
    id: str
    name: str
    is_screen_sharing: bool = False


class ChatMessage(WireModel):
    id: str
    room_id: str
    text: str
    user_id: str
    sender_name: str
    timestamp: str


class IceServer(WireModel):
    urls: str


class CreateRoomResponse(BaseModel):
    room_id: str

class RoomDetailsResponse(BaseModel):
    room_id: str
    created_at: str
    participants: list[Participant]
    participant_count: int
    screen_sharer: Optional[str] = None

class IceServersResponse(BaseModel):
    ice_servers: list[IceServer]

class MessagesResponse(BaseModel):
    room_id: str
    messages: list[ChatMessage]

class TranscriptRequest(BaseModel):
    transcript: Optional[str] = None

class TopicsResponse(BaseModel):
    topics: list[str]

class SummaryResponse(BaseModel):
    summary: str
