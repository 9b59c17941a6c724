from fastapi import APIRouter, Depends, HTTPException, Request
from schemas.rooms import CreateRoomResponse, RoomDetailsResponse, IceServersResponse, MessagesResponse, SummaryResponse, TopicsResponse, TranscriptRequest
import asyncio
import random
import string
from typing import Optional
from backend import PersistenceUnavailable
from constants import ROOM_CODE_LENGTH
from hub import SignalingHub
from services.topics import (
    MIN_SUMMARY_CONTENT_LENGTH,
    MIN_TOPICS_CONTENT_LENGTH,
    SummaryServiceUnavailable,
    TopicServiceUnavailable,
    format_transcript,
    suggest_topics,
    summarize_chat,
)
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


def get_hub(request: Request) -> SignalingHub:
    return request.app.state.hub


def generate_room_code(length: int = ROOM_CODE_LENGTH) -> str:
    return ''.join(random.choices(string.ascii_uppercase + string.digits, k=length))


async def load_history(hub: SignalingHub, room_id: str) -> list:
    if hub.chat_store is None:
        return []
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(None, hub.chat_store.get_messages, room_id)
    except PersistenceUnavailable as e:
        logger.error(f"Chat history unavailable for room {room_id}: {e}")
        raise HTTPException(status_code=503, detail="Chat history unavailable")


@rooms_router.post("/", response_model=CreateRoomResponse)
async def create_room(hub: SignalingHub = Depends(get_hub)):
    # Rooms come to life on the first join; this only hands out a code nobody is using
    for _ in range(10):
        room_id = generate_room_code()
        if hub.get_room(room_id) is None:
            logger.info(f"Generated room code {room_id}")
            return CreateRoomResponse(room_id=room_id)
    logger.error("Could not generate a free room code after 10 attempts")
    raise HTTPException(status_code=500, detail="Failed to create room")


@rooms_router.get("/ice-servers", response_model=IceServersResponse)
async def get_ice_servers(hub: SignalingHub = Depends(get_hub)):
    return IceServersResponse(ice_servers=hub.ice_servers)


@rooms_router.get("/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(room_id: str, hub: SignalingHub = Depends(get_hub)):
    """
    Live roster of a room.

    Returns 404 when nobody is currently in the room: rooms exist only while
    they have members.
    """
    room = hub.get_room(room_id)
    if room is None:
        logger.info(f"Room details failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")

    participants = list(room.participants.values())
    logger.info(f"Room details retrieved for {room_id}: {len(participants)} participants")
    return RoomDetailsResponse(
        room_id=room_id,
        created_at=room.created_at,
        participants=participants,
        participant_count=len(participants),
        screen_sharer=room.screen_sharer,
    )


@rooms_router.get("/{room_id}/messages", response_model=MessagesResponse)
async def get_room_messages(room_id: str, hub: SignalingHub = Depends(get_hub)):
    messages = await load_history(hub, room_id)
    return MessagesResponse(room_id=room_id, messages=messages)


async def resolve_transcript(hub: SignalingHub, room_id: str, body: Optional[TranscriptRequest], min_length: int) -> str:
    """Use the caller's transcript, else the stored history. 400 when it is too short to work with."""
    transcript = body.transcript if body and body.transcript else None
    if transcript is None:
        transcript = format_transcript(await load_history(hub, room_id))
    if len(transcript.strip()) < min_length:
        raise HTTPException(status_code=400, detail="Not enough chat content yet")
    return transcript


@rooms_router.post("/{room_id}/topics", response_model=TopicsResponse)
async def get_topic_suggestions(room_id: str, body: Optional[TranscriptRequest] = None, hub: SignalingHub = Depends(get_hub)):
    transcript = await resolve_transcript(hub, room_id, body, MIN_TOPICS_CONTENT_LENGTH)
    try:
        topics = await suggest_topics(transcript)
    except TopicServiceUnavailable as e:
        logger.warning(f"Topic suggestions failed for room {room_id}: {e}")
        raise HTTPException(status_code=503, detail="Topic suggestions unavailable")
    logger.info(f"Suggested {len(topics)} topics for room {room_id}")
    return TopicsResponse(topics=topics)


@rooms_router.post("/{room_id}/summary", response_model=SummaryResponse)
async def get_chat_summary(room_id: str, body: Optional[TranscriptRequest] = None, hub: SignalingHub = Depends(get_hub)):
    transcript = await resolve_transcript(hub, room_id, body, MIN_SUMMARY_CONTENT_LENGTH)
    try:
        summary = await summarize_chat(transcript)
    except SummaryServiceUnavailable as e:
        logger.warning(f"Chat summary failed for room {room_id}: {e}")
        raise HTTPException(status_code=503, detail="Chat summary unavailable")
    logger.info(f"Summarized {len(transcript)} characters of chat for room {room_id}")
    return SummaryResponse(summary=summary)
