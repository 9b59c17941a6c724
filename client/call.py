"""Client side of a room: roster view, chat transcript and one session per peer."""
import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from client.media import MediaDevices
from client.negotiator import SessionNegotiator
from client.peer import create_peer_connection
from client.tracks import TrackController
from constants import REACTION_DISPLAY_SECONDS
from logging_config import get_logger
from schemas.messages import (
    SERVER_MESSAGE_TYPES,
    AnswerEvent,
    ErrorEvent,
    ExistingUsersEvent,
    IceCandidateEvent,
    JoinedEvent,
    JoinRoomMessage,
    OfferEvent,
    PreviousMessagesEvent,
    ReceiveEmojiEvent,
    ReceiveMessageEvent,
    RelayFailedEvent,
    RoomExpiredEvent,
    ScreenShareStoppedMessage,
    SendChatMessage,
    SendEmojiMessage,
    UserAudioStateEvent,
    UserDisconnectedEvent,
    UserJoinedEvent,
    UserScreenShareStartedEvent,
    UserScreenShareStoppedEvent,
    UserVideoStateEvent,
    check_handlers,
)
from schemas.rooms import ChatMessage, Participant, utc_now_iso

logger = get_logger(__name__)


@dataclass
class Reaction:
    user_id: str
    emoji: str
    issued_at: float = field(default_factory=time.monotonic)


class RosterView:
    """Local picture of who is in the room, kept in step with the hub's pushes."""

    def __init__(self):
        self.participants: Dict[str, Participant] = {}

    def __contains__(self, participant_id: str) -> bool:
        return participant_id in self.participants

    def __len__(self) -> int:
        return len(self.participants)

    def ids(self) -> List[str]:
        return list(self.participants)

    def get(self, participant_id: str) -> Optional[Participant]:
        return self.participants.get(participant_id)

    def replace(self, participants: List[Participant]):
        self.participants = {p.id: p for p in participants}

    def add(self, participant: Participant) -> bool:
        if participant.id in self.participants:
            return False
        self.participants[participant.id] = participant
        return True

    def remove(self, participant_id: str) -> Optional[Participant]:
        return self.participants.pop(participant_id, None)

    def update(self, participant_id: str, **flags) -> bool:
        participant = self.participants.get(participant_id)
        if participant is None:
            logger.debug(f"Flag update for unknown participant {participant_id}")
            return False
        for name, value in flags.items():
            setattr(participant, name, value)
        return True


class CallClient:
    def __init__(
        self,
        signaling,
        devices: Optional[MediaDevices] = None,
        peer_factory: Callable = create_peer_connection,
        on_event: Optional[Callable[[str, dict], None]] = None,
        reaction_timeout: float = REACTION_DISPLAY_SECONDS,
    ):
        self.signaling = signaling
        self.peer_factory = peer_factory
        self.on_event = on_event
        self.reaction_timeout = reaction_timeout
        self.local_id: Optional[str] = None
        self.room_id: Optional[str] = None
        self.name: Optional[str] = None
        self.ice_servers: list = []
        self.roster = RosterView()
        self.sessions: Dict[str, SessionNegotiator] = {}
        self.transcript: List[ChatMessage] = []
        self.reactions: List[Reaction] = []
        self.tracks = TrackController(devices or MediaDevices(), self.signaling.send, lambda: list(self.sessions.values()))
        self._early_candidates: Dict[str, deque] = {}
        self._handlers = {
            JoinedEvent: self._on_joined,
            ExistingUsersEvent: self._on_existing_users,
            PreviousMessagesEvent: self._on_previous_messages,
            UserJoinedEvent: self._on_user_joined,
            OfferEvent: self._on_offer,
            AnswerEvent: self._on_answer,
            IceCandidateEvent: self._on_ice_candidate,
            UserVideoStateEvent: self._on_video_state,
            UserAudioStateEvent: self._on_audio_state,
            UserScreenShareStartedEvent: self._on_screen_share_started,
            UserScreenShareStoppedEvent: self._on_screen_share_stopped,
            ReceiveMessageEvent: self._on_chat_message,
            ReceiveEmojiEvent: self._on_emoji,
            UserDisconnectedEvent: self._on_user_disconnected,
            RelayFailedEvent: self._on_relay_failed,
            RoomExpiredEvent: self._on_room_expired,
            ErrorEvent: self._on_error,
        }
        check_handlers(self._handlers, SERVER_MESSAGE_TYPES, "CallClient")

    # --- Public API ---

    async def join(self, room_id: str, name: str):
        self.room_id = room_id
        self.name = name
        self.tracks.room_id = room_id
        await self.signaling.send(JoinRoomMessage(room_id=room_id, name=name))

    async def run(self):
        """Dispatch hub messages until the signaling connection closes."""
        async for message in self.signaling.messages():
            try:
                await self.handle(message)
            except Exception as e:
                logger.error(f"Error handling {message.type}: {e}", exc_info=True)

    async def handle(self, message):
        await self._handlers[type(message)](message)

    async def start_call(self):
        """Acquire camera and microphone, then call everyone already in the room."""
        await self.tracks.start_call()
        for peer_id in self.roster.ids():
            await self._call(peer_id)

    async def leave_call(self, announce: bool = True):
        """Close every session and stop every local track before returning.

        With ``announce`` off a running screen share ends without telling the
        hub, for when the hub has already dropped this connection.
        """
        sessions = list(self.sessions.values())
        self.sessions.clear()
        self._early_candidates.clear()
        await asyncio.gather(*(session.close() for session in sessions))
        was_sharing = self.tracks.is_screen_sharing
        self.tracks.stop_all()
        if was_sharing and announce:
            await self.signaling.send(ScreenShareStoppedMessage(room_id=self.room_id))
        logger.info(f"Left call, closed {len(sessions)} sessions")

    async def leave(self):
        await self.leave_call()
        await self.signaling.close()
        self.roster.replace([])
        self.local_id = None

    async def send_chat(self, text: str) -> ChatMessage:
        # The hub does not echo messages back to their author
        message = ChatMessage(
            id=uuid.uuid4().hex,
            room_id=self.room_id,
            text=text,
            user_id=self.local_id or "",
            sender_name=self.name,
            timestamp=utc_now_iso(),
        )
        self.transcript.append(message)
        await self.signaling.send(SendChatMessage(room_id=self.room_id, message=text))
        return message

    async def send_reaction(self, emoji: str):
        self.reactions.append(Reaction(user_id=self.local_id or "", emoji=emoji))
        await self.signaling.send(SendEmojiMessage(room_id=self.room_id, emoji=emoji))

    async def toggle_mic(self, enabled: bool) -> bool:
        return await self.tracks.toggle_mic(enabled)

    async def toggle_camera(self, enabled: bool) -> bool:
        accepted = await self.tracks.toggle_camera(enabled)
        if not accepted and not enabled:
            self._emit("rejected", {"action": "camera-off", "reason": "Stop screen sharing first"})
        return accepted

    async def start_screen_share(self):
        return await self.tracks.start_screen_share()

    async def stop_screen_share(self):
        await self.tracks.stop_screen_share()

    def active_reactions(self, now: Optional[float] = None) -> List[Reaction]:
        now = time.monotonic() if now is None else now
        self.reactions = [r for r in self.reactions if now - r.issued_at < self.reaction_timeout]
        return self.reactions

    # --- Sessions ---

    def _create_session(self, peer_id: str) -> SessionNegotiator:
        peer_connection = self.peer_factory(self.ice_servers)
        session = SessionNegotiator(self.local_id, peer_id, peer_connection, self.signaling.send, local_name=self.name)
        self.sessions[peer_id] = session
        for candidate in self._early_candidates.pop(peer_id, ()):
            session.pending_candidates.append(candidate)
        return session

    async def _call(self, peer_id: str):
        if peer_id in self.sessions or peer_id == self.local_id:
            return
        session = self._create_session(peer_id)
        await session.start(self.tracks.local_tracks())

    async def _close_session(self, peer_id: str):
        session = self.sessions.pop(peer_id, None)
        self._early_candidates.pop(peer_id, None)
        if session is not None:
            await session.close()

    # --- Handlers ---

    async def _on_joined(self, event: JoinedEvent):
        self.local_id = event.id
        self.room_id = event.room_id
        self.tracks.room_id = event.room_id
        self.ice_servers = event.ice_servers
        logger.info(f"Joined room {event.room_id} as {event.id}")

    async def _on_existing_users(self, event: ExistingUsersEvent):
        self.roster.replace([Participant(id=u.id, name=u.name, is_screen_sharing=u.is_screen_sharing) for u in event.users])
        self._emit("roster", {"participants": self.roster.ids()})
        if self.tracks.in_call:
            for peer_id in self.roster.ids():
                await self._call(peer_id)

    async def _on_previous_messages(self, event: PreviousMessagesEvent):
        known = {m.id for m in self.transcript}
        history = [m for m in event.messages if m.id not in known]
        self.transcript = history + self.transcript

    async def _on_user_joined(self, event: UserJoinedEvent):
        added = self.roster.add(Participant(id=event.id, name=event.name, is_screen_sharing=event.is_screen_sharing))
        if not added:
            return
        self._emit("participant-joined", {"id": event.id, "name": event.name})
        if self.tracks.in_call:
            await self._call(event.id)

    async def _on_offer(self, event: OfferEvent):
        peer_id = event.caller
        if not self.tracks.in_call:
            logger.info(f"Dropping offer from {peer_id}: local media not ready")
            # Those candidates belong to the dropped offer
            self._early_candidates.pop(peer_id, None)
            return
        if peer_id not in self.roster:
            self.roster.add(Participant(id=peer_id, name=event.name or peer_id))
        session = self.sessions.get(peer_id) or self._create_session(peer_id)
        await session.handle_offer(event.sdp, self.tracks.local_tracks())

    async def _on_answer(self, event: AnswerEvent):
        session = self.sessions.get(event.answerer)
        if session is None:
            logger.warning(f"Answer from {event.answerer} with no session")
            return
        await session.handle_answer(event.sdp)

    async def _on_ice_candidate(self, event: IceCandidateEvent):
        session = self.sessions.get(event.from_)
        if session is None:
            # Keep it until the session exists; ordering per peer is preserved
            self._early_candidates.setdefault(event.from_, deque()).append(event.candidate)
            return
        await session.add_remote_candidate(event.candidate)

    async def _on_video_state(self, event: UserVideoStateEvent):
        self.roster.update(event.user_id, camera_enabled=event.is_video_enabled)

    async def _on_audio_state(self, event: UserAudioStateEvent):
        self.roster.update(event.user_id, mic_enabled=event.is_audio_enabled)

    async def _on_screen_share_started(self, event: UserScreenShareStartedEvent):
        self.roster.update(event.user_id, is_screen_sharing=True)
        self._emit("screen-share-started", {"userId": event.user_id})

    async def _on_screen_share_stopped(self, event: UserScreenShareStoppedEvent):
        self.roster.update(event.user_id, is_screen_sharing=False)
        self._emit("screen-share-stopped", {"userId": event.user_id})

    async def _on_chat_message(self, event: ReceiveMessageEvent):
        message = ChatMessage(**event.model_dump(exclude={"type"}))
        self.transcript.append(message)
        self._emit("message", {"id": message.id, "senderName": message.sender_name})

    async def _on_emoji(self, event: ReceiveEmojiEvent):
        self.reactions.append(Reaction(user_id=event.user_id, emoji=event.emoji))
        self._emit("reaction", {"userId": event.user_id, "emoji": event.emoji})

    async def _on_user_disconnected(self, event: UserDisconnectedEvent):
        participant = self.roster.remove(event.user_id)
        await self._close_session(event.user_id)
        if participant is not None:
            self._emit("participant-left", {"id": participant.id, "name": participant.name})

    async def _on_relay_failed(self, event: RelayFailedEvent):
        logger.warning(f"Hub could not deliver {event.kind} to {event.target}")
        await self._close_session(event.target)

    async def _on_room_expired(self, event: RoomExpiredEvent):
        logger.info(f"Room {event.room_id} expired")
        # The hub already removed us and is closing the socket
        await self.leave_call(announce=False)
        self.roster.replace([])
        self._emit("room-expired", {"roomId": event.room_id})

    async def _on_error(self, event: ErrorEvent):
        logger.warning(f"Hub reported an error: {event.detail}")
        self._emit("error", {"detail": event.detail})

    def _emit(self, name: str, payload: dict):
        if self.on_event is not None:
            self.on_event(name, payload)
