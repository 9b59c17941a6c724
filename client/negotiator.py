"""Per-peer session negotiation.

One ``SessionNegotiator`` drives the offer/answer/candidate exchange with one
remote participant:

    idle --start()--> offer-sent --answer--> stable
    idle --offer----> stable (answer sent)
    stable --renegotiate()--> offer-sent
    any --close()--> closed

Offer collisions ("glare") are settled by a fixed role per pair: the side with
the lexicographically smaller participant id is polite and rolls back its own
offer; the other side keeps its offer and re-sends it, since the polite side
may never have seen it.
"""
import asyncio
from collections import deque
from enum import Enum
from typing import Callable, Iterable, Optional

from logging_config import get_logger
from schemas.messages import AnswerMessage, IceCandidateMessage, OfferMessage

logger = get_logger(__name__)


class NegotiationState(str, Enum):
    IDLE = "idle"
    OFFER_SENT = "offer-sent"
    STABLE = "stable"
    CLOSED = "closed"


class SessionNegotiator:
    def __init__(self, local_id: str, peer_id: str, peer_connection, send: Callable, local_name: Optional[str] = None):
        self.local_id = local_id
        self.peer_id = peer_id
        self.peer_connection = peer_connection
        self.local_name = local_name
        self.state = NegotiationState.IDLE
        self.pending_candidates: deque = deque()
        self.remote_description_applied = False
        self.tracks_attached = False
        self._send = send
        self._local_offer: Optional[dict] = None
        # An offer answered during a collision; the other side sends it once more
        self._answered_collision_offer = None
        self._renegotiation_needed = False
        self._lock = asyncio.Lock()
        peer_connection.on_local_candidate = self.send_local_candidate

    def __repr__(self):
        return f"SessionNegotiator({self.local_id[:8]}->{self.peer_id[:8]}, {self.state.value})"

    @property
    def polite(self) -> bool:
        return self.local_id < self.peer_id

    @property
    def active(self) -> bool:
        return self.state in (NegotiationState.STABLE, NegotiationState.OFFER_SENT)

    def attach_tracks(self, tracks: Iterable):
        if self.tracks_attached:
            return
        for track in tracks:
            self.peer_connection.add_track(track)
        self.tracks_attached = True

    async def start(self, tracks: Iterable):
        """Call the remote participant: attach local media and send the first offer."""
        async with self._lock:
            if self.state != NegotiationState.IDLE:
                logger.debug(f"{self!r}: start ignored")
                return
            self.attach_tracks(tracks)
            await self._send_offer()

    async def handle_offer(self, sdp, tracks: Iterable):
        async with self._lock:
            if self.state == NegotiationState.CLOSED:
                return
            if sdp is not None and sdp == self._answered_collision_offer:
                self._answered_collision_offer = None
                logger.debug(f"{self!r}: re-sent offer already answered, ignored")
                return
            if self.state == NegotiationState.OFFER_SENT:
                if not self.polite:
                    logger.info(f"{self!r}: offer collision, keeping our offer")
                    await self._send(OfferMessage(target=self.peer_id, sdp=self._local_offer, name=self.local_name))
                    return
                logger.info(f"{self!r}: offer collision, rolling back our offer")
                await self.peer_connection.rollback()
                self._local_offer = None
                self._answered_collision_offer = sdp
                if self.remote_description_applied:
                    # Mid-call: whatever our offer carried still has to be negotiated
                    self._renegotiation_needed = True

            self.attach_tracks(tracks)
            await self._apply_remote_description(sdp)
            answer = await self.peer_connection.create_answer()
            self.state = NegotiationState.STABLE
            await self._send(AnswerMessage(target=self.peer_id, sdp=answer, name=self.local_name))
            logger.info(f"{self!r}: answered offer")
            # Our own pending change still needs a round of its own
            if self._renegotiation_needed:
                await self._send_offer()

    async def handle_answer(self, sdp):
        async with self._lock:
            if self.state != NegotiationState.OFFER_SENT:
                logger.warning(f"{self!r}: ignoring answer received in state {self.state.value}")
                return
            await self._apply_remote_description(sdp)
            self.state = NegotiationState.STABLE
            self._local_offer = None
            self._answered_collision_offer = None
            logger.info(f"{self!r}: negotiation complete")
            if self._renegotiation_needed:
                await self._send_offer()

    async def add_remote_candidate(self, candidate):
        async with self._lock:
            if self.state == NegotiationState.CLOSED:
                return
            if not self.remote_description_applied:
                self.pending_candidates.append(candidate)
                logger.debug(f"{self!r}: queued candidate ({len(self.pending_candidates)} pending)")
                return
            await self.peer_connection.add_ice_candidate(candidate)

    async def send_local_candidate(self, candidate):
        if self.state == NegotiationState.CLOSED:
            return
        await self._send(IceCandidateMessage(target=self.peer_id, candidate=candidate))

    async def renegotiate(self):
        """Start a fresh offer/answer round, or schedule one if a round is in flight."""
        async with self._lock:
            if self.state == NegotiationState.STABLE:
                await self._send_offer()
            elif self.state == NegotiationState.OFFER_SENT:
                self._renegotiation_needed = True

    async def replace_track(self, kind: str, track):
        """Substitute the outgoing track of ``kind`` without touching the transport."""
        if not self.active:
            return
        replaced = await self.peer_connection.replace_track(kind, track)
        if not replaced:
            # Nothing of this kind was negotiated yet: add it and negotiate again
            self.peer_connection.add_track(track)
            await self.renegotiate()

    async def close(self):
        if self.state == NegotiationState.CLOSED:
            return
        self.state = NegotiationState.CLOSED
        self.pending_candidates.clear()
        self._local_offer = None
        await self.peer_connection.close()
        logger.info(f"{self!r}: closed")

    async def _send_offer(self):
        self._renegotiation_needed = False
        self._local_offer = await self.peer_connection.create_offer()
        self.state = NegotiationState.OFFER_SENT
        await self._send(OfferMessage(target=self.peer_id, sdp=self._local_offer, name=self.local_name))
        logger.info(f"{self!r}: offer sent")

    async def _apply_remote_description(self, sdp):
        await self.peer_connection.set_remote_description(sdp)
        self.remote_description_applied = True
        flushed = 0
        while self.pending_candidates:
            await self.peer_connection.add_ice_candidate(self.pending_candidates.popleft())
            flushed += 1
        if flushed:
            logger.debug(f"{self!r}: flushed {flushed} queued candidates")
