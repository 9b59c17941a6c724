"""Signaling hub: per-room rosters and relay of negotiation and presence messages.

The hub never looks inside SDP or candidate payloads. Every roster mutation of
a room runs under that room's lock, so joins, flag changes and leaves are
serialized per room while different rooms proceed independently.
"""
import asyncio
import time
import uuid
from functools import partial
from typing import Callable, Dict, Optional

from backend import PersistenceUnavailable
from constants import ROOM_IDLE_TIMEOUT, STUN_URL
from logging_config import get_logger
from schemas.messages import (
    CLIENT_MESSAGE_TYPES,
    AnswerEvent,
    AnswerMessage,
    AudioStateMessage,
    ErrorEvent,
    ExistingUsersEvent,
    IceCandidateEvent,
    IceCandidateMessage,
    JoinedEvent,
    JoinRoomMessage,
    OfferEvent,
    OfferMessage,
    PreviousMessagesEvent,
    ReceiveEmojiEvent,
    ReceiveMessageEvent,
    RelayFailedEvent,
    RoomExpiredEvent,
    ScreenShareStartedMessage,
    ScreenShareStoppedMessage,
    SendChatMessage,
    SendEmojiMessage,
    UserAudioStateEvent,
    UserDisconnectedEvent,
    UserJoinedEvent,
    UserScreenShareStartedEvent,
    UserScreenShareStoppedEvent,
    UserVideoStateEvent,
    VideoStateMessage,
    check_handlers,
)
from schemas.rooms import ChatMessage, IceServer, Participant, WireModel, utc_now_iso

logger = get_logger(__name__)


class Connection:
    """One attached transport. Owns at most one participant in at most one room."""

    def __init__(self, connection_id: str, websocket):
        self.id = connection_id
        self.websocket = websocket
        self.room_id: Optional[str] = None
        self.name: Optional[str] = None

    def __repr__(self):
        return f"Connection({self.id[:8]}, room={self.room_id})"


class Room:
    def __init__(self, room_id: str):
        self.room_id = room_id
        self.participants: Dict[str, Participant] = {}
        self.connections: Dict[str, Connection] = {}
        self.lock = asyncio.Lock()
        self.closed = False
        self.created_at = utc_now_iso()
        self.last_activity = time.monotonic()

    def touch(self):
        self.last_activity = time.monotonic()

    def is_idle(self, timeout: float, now: Optional[float] = None) -> bool:
        """A lone member with no traffic for ``timeout`` seconds.

        Two or more members may be in a call whose media flows peer to peer
        without any signaling, so such rooms never count as idle.
        """
        if not timeout or len(self.participants) > 1:
            return False
        now = time.monotonic() if now is None else now
        return now - self.last_activity >= timeout

    @property
    def screen_sharer(self) -> Optional[str]:
        for participant in self.participants.values():
            if participant.is_screen_sharing:
                return participant.id
        return None

    def others(self, participant_id: Optional[str]):
        return [conn for pid, conn in self.connections.items() if pid != participant_id]


class SignalingHub:
    def __init__(
        self,
        chat_store=None,
        ice_servers: Optional[list] = None,
        idle_timeout: float = ROOM_IDLE_TIMEOUT,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ):
        self.rooms: Dict[str, Room] = {}
        self.chat_store = chat_store
        self.ice_servers = ice_servers if ice_servers is not None else [IceServer(urls=STUN_URL)]
        self.idle_timeout = idle_timeout
        self._id_factory = id_factory
        self._handlers = {
            JoinRoomMessage: self.join,
            OfferMessage: self._relay_offer,
            AnswerMessage: self._relay_answer,
            IceCandidateMessage: self._relay_ice_candidate,
            VideoStateMessage: self._on_video_state,
            AudioStateMessage: self._on_audio_state,
            ScreenShareStartedMessage: self._on_screen_share_started,
            ScreenShareStoppedMessage: self._on_screen_share_stopped,
            SendChatMessage: self._on_chat_message,
            SendEmojiMessage: self._on_emoji,
        }
        check_handlers(self._handlers, CLIENT_MESSAGE_TYPES, "SignalingHub")

    # --- Connection lifecycle ---

    def connect(self, websocket) -> Connection:
        conn = Connection(self._id_factory(), websocket)
        logger.info(f"Connection {conn.id} attached")
        return conn

    async def handle(self, conn: Connection, message):
        if not isinstance(message, JoinRoomMessage):
            room = self._room_of(conn)
            if room is None:
                await self.send_error(conn, f"Join a room before sending '{message.type}'")
                return
            room.touch()
        await self._handlers[type(message)](conn, message)

    async def join(self, conn: Connection, message: JoinRoomMessage):
        if conn.room_id is not None:
            await self.send_error(conn, f"Already joined room {conn.room_id}")
            return

        room_id = message.room_id
        while True:
            room = self.rooms.get(room_id)
            if room is None:
                room = self.rooms[room_id] = Room(room_id)
                logger.info(f"Room {room_id} created")
            async with room.lock:
                # Lost a race with the last member leaving; take the fresh room instead
                if room.closed:
                    continue
                existing = [p.summary() for p in room.participants.values()]
                participant = Participant(id=conn.id, name=message.name)
                room.participants[conn.id] = participant
                room.connections[conn.id] = conn
                room.touch()
                conn.room_id = room_id
                conn.name = message.name
                logger.info(f"User {conn.id} ({message.name}) joined room {room_id} ({len(room.participants)} members)")

                await self._send(conn, JoinedEvent(id=conn.id, room_id=room_id, ice_servers=self.ice_servers))
                await self._send(conn, ExistingUsersEvent(users=existing))
                await self._broadcast(room, UserJoinedEvent(id=conn.id, name=message.name), exclude=conn.id)
            break

        # The store may be slow; keep the room unlocked while reading it
        if self.chat_store is not None:
            history = await self._load_history(room_id)
            if history is not None and conn.room_id == room_id:
                await self._send(conn, PreviousMessagesEvent(messages=history))

    async def disconnect(self, conn: Connection):
        """Remove the connection's participant. Safe to call more than once."""
        room_id = conn.room_id
        conn.room_id = None
        if room_id is None:
            logger.info(f"Connection {conn.id} detached before joining a room")
            return
        room = self.rooms.get(room_id)
        if room is None:
            return

        async with room.lock:
            participant = room.participants.pop(conn.id, None)
            room.connections.pop(conn.id, None)
            if participant is None:
                return
            logger.info(f"User {conn.id} ({participant.name}) left room {room_id}")
            if participant.is_screen_sharing:
                await self._broadcast(room, UserScreenShareStoppedEvent(user_id=conn.id))
            await self._broadcast(room, UserDisconnectedEvent(user_id=conn.id))
            if not room.participants:
                room.closed = True
                if self.rooms.get(room_id) is room:
                    del self.rooms[room_id]
                logger.info(f"Room {room_id} is empty and closed")

    # --- Relay ---

    async def _relay_offer(self, conn: Connection, message: OfferMessage):
        event = OfferEvent(caller=conn.id, sdp=message.sdp, name=message.name or conn.name)
        await self._relay(conn, message.target, event, "offer")

    async def _relay_answer(self, conn: Connection, message: AnswerMessage):
        event = AnswerEvent(answerer=conn.id, sdp=message.sdp, name=message.name or conn.name)
        await self._relay(conn, message.target, event, "answer")

    async def _relay_ice_candidate(self, conn: Connection, message: IceCandidateMessage):
        event = IceCandidateEvent(from_=conn.id, candidate=message.candidate)
        await self._relay(conn, message.target, event, "ice-candidate")

    async def _relay(self, conn: Connection, target_id: str, event: WireModel, kind: str):
        room = self._room_of(conn)
        target = room.connections.get(target_id) if room else None
        if target is not None and target_id != conn.id and await self._send(target, event):
            logger.debug(f"Relayed {kind} from {conn.id} to {target_id} in room {conn.room_id}")
            return
        logger.info(f"Relay miss: {kind} from {conn.id} to {target_id} in room {conn.room_id}")
        await self._send(conn, RelayFailedEvent(target=target_id, kind=kind))

    # --- Presence flags ---

    async def set_flag(self, conn: Connection, flag: str, value: bool):
        room = self._room_of(conn)
        if room is None:
            return
        async with room.lock:
            participant = room.participants.get(conn.id)
            if participant is None:
                return
            if flag == "mic":
                participant.mic_enabled = value
                event = UserAudioStateEvent(user_id=conn.id, is_audio_enabled=value)
            elif flag == "camera":
                participant.camera_enabled = value
                event = UserVideoStateEvent(user_id=conn.id, is_video_enabled=value)
            elif flag == "screenSharing":
                sharer = room.screen_sharer
                if value and sharer not in (None, conn.id):
                    logger.warning(f"User {conn.id} started screen share while {sharer} is sharing in room {room.room_id}")
                participant.is_screen_sharing = value
                event = UserScreenShareStartedEvent(user_id=conn.id) if value else UserScreenShareStoppedEvent(user_id=conn.id)
            else:
                raise ValueError(f"Unknown flag: {flag}")
            logger.debug(f"User {conn.id} set {flag}={value} in room {room.room_id}")
            await self._broadcast(room, event, exclude=conn.id)

    async def _on_video_state(self, conn: Connection, message: VideoStateMessage):
        await self.set_flag(conn, "camera", message.is_video_enabled)

    async def _on_audio_state(self, conn: Connection, message: AudioStateMessage):
        await self.set_flag(conn, "mic", message.is_audio_enabled)

    async def _on_screen_share_started(self, conn: Connection, message: ScreenShareStartedMessage):
        await self.set_flag(conn, "screenSharing", True)

    async def _on_screen_share_stopped(self, conn: Connection, message: ScreenShareStoppedMessage):
        await self.set_flag(conn, "screenSharing", False)

    # --- Chat and reactions ---

    async def send_chat_message(self, conn: Connection, text: str) -> Optional[ChatMessage]:
        room = self._room_of(conn)
        if room is None:
            return None
        message = ChatMessage(
            id=uuid.uuid4().hex,
            room_id=room.room_id,
            text=text,
            user_id=conn.id,
            sender_name=conn.name,
            timestamp=utc_now_iso(),
        )
        if self.chat_store is not None:
            await self._save_message(message)
        await self._broadcast(room, ReceiveMessageEvent(**message.model_dump()), exclude=conn.id)
        return message

    async def send_reaction(self, conn: Connection, emoji: str):
        room = self._room_of(conn)
        if room is None:
            return
        await self._broadcast(room, ReceiveEmojiEvent(user_id=conn.id, emoji=emoji), exclude=conn.id)

    async def _on_chat_message(self, conn: Connection, message: SendChatMessage):
        await self.send_chat_message(conn, message.message)

    async def _on_emoji(self, conn: Connection, message: SendEmojiMessage):
        await self.send_reaction(conn, message.emoji)

    async def _save_message(self, message: ChatMessage):
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, partial(self.chat_store.save_message, message))
        except PersistenceUnavailable as e:
            logger.warning(f"Chat message {message.id} not persisted: {e}")

    async def _load_history(self, room_id: str) -> Optional[list]:
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(self.chat_store.get_messages, room_id))
        except PersistenceUnavailable as e:
            logger.warning(f"Chat history unavailable for room {room_id}: {e}")
            return None

    # --- Idle rooms ---

    async def expire_idle_rooms(self, now: Optional[float] = None) -> list:
        """Dismantle every room left to a single silent member for ``idle_timeout`` seconds."""
        expired = []
        for room in list(self.rooms.values()):
            if not room.is_idle(self.idle_timeout, now):
                continue
            async with room.lock:
                if room.closed:
                    continue
                logger.info(f"Room {room.room_id} idle for {self.idle_timeout}s, shutting down room")
                members = list(room.connections.values())
                for member in members:
                    member.room_id = None
                room.participants.clear()
                room.connections.clear()
                room.closed = True
                if self.rooms.get(room.room_id) is room:
                    del self.rooms[room.room_id]
            for member in members:
                await self._send(member, RoomExpiredEvent(room_id=room.room_id))
                await self._close(member, reason="Room expired")
            expired.append(room.room_id)
        return expired

    async def run_idle_sweeper(self, interval: float):
        logger.info(f"Starting idle room sweeper (timeout={self.idle_timeout}s, interval={interval}s)")
        try:
            while True:
                await asyncio.sleep(interval)
                try:
                    await self.expire_idle_rooms()
                except Exception as e:
                    logger.error(f"Error while expiring idle rooms: {e}", exc_info=True)
        except asyncio.CancelledError:
            logger.info("Idle room sweeper cancelled")
            raise

    # --- Queries ---

    def get_room(self, room_id: str) -> Optional[Room]:
        return self.rooms.get(room_id)

    def _room_of(self, conn: Connection) -> Optional[Room]:
        if conn.room_id is None:
            return None
        room = self.rooms.get(conn.room_id)
        if room is None or conn.id not in room.connections:
            return None
        return room

    # --- Transport ---

    async def send_error(self, conn: Connection, detail: str):
        logger.info(f"Protocol error for {conn.id}: {detail}")
        await self._send(conn, ErrorEvent(detail=detail))

    async def _broadcast(self, room: Room, event: WireModel, exclude: Optional[str] = None):
        recipients = room.others(exclude)
        send_tasks = [self._send(conn, event) for conn in recipients]
        await asyncio.gather(*send_tasks, return_exceptions=True)
        logger.debug(f"Broadcast {getattr(event, 'type', '?')} to {len(recipients)} members of room {room.room_id}")

    async def _send(self, conn: Connection, event: WireModel) -> bool:
        try:
            await conn.websocket.send_json(event.to_wire())
            return True
        except Exception as e:
            # Includes RuntimeError if the socket closed mid-send
            logger.warning(f"Send to {conn.id} failed: {e}")
            return False

    async def _close(self, conn: Connection, reason: str):
        try:
            await conn.websocket.close(code=1008, reason=reason)
        except Exception as e:
            logger.debug(f"Error closing WebSocket for {conn.id}: {e}")
