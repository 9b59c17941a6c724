"""aiortc-backed peer connection used by the session negotiator.

Descriptions and candidates cross this boundary as plain dicts in the browser
JSON shape (``{"type", "sdp"}`` and ``{"candidate", "sdpMid", "sdpMLineIndex"}``)
so the hub can relay them verbatim.
"""
from typing import Callable, Dict, Optional

from aiortc import MediaStreamTrack, RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from logging_config import get_logger

logger = get_logger(__name__)


def description_to_dict(description: RTCSessionDescription) -> dict:
    return {"type": description.type, "sdp": description.sdp}


def candidate_from_dict(data: dict):
    line = data.get("candidate") or ""
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]
    candidate = candidate_from_sdp(line)
    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate


class AiortcPeerConnection:
    def __init__(self, ice_servers: Optional[list] = None):
        self.ice_servers = ice_servers or []
        self.local_tracks: Dict[str, MediaStreamTrack] = {}
        self.remote_tracks: Dict[str, MediaStreamTrack] = {}
        # aiortc gathers candidates into the SDP, so this only fires for trickling backends
        self.on_local_candidate: Optional[Callable] = None
        self.on_remote_track: Optional[Callable[[MediaStreamTrack], None]] = None
        self._pc = self._create()

    def _create(self) -> RTCPeerConnection:
        config = RTCConfiguration(iceServers=[RTCIceServer(urls=server.urls) for server in self.ice_servers])
        pc = RTCPeerConnection(configuration=config)

        @pc.on("track")
        def on_track(track):
            logger.debug(f"Remote {track.kind} track received")
            self.remote_tracks[track.kind] = track
            if self.on_remote_track:
                self.on_remote_track(track)

        @pc.on("connectionstatechange")
        async def on_connectionstatechange():
            logger.info(f"Peer connection state is {pc.connectionState}")

        return pc

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    def add_track(self, track: MediaStreamTrack):
        self.local_tracks[track.kind] = track
        self._pc.addTrack(track)

    async def replace_track(self, kind: str, track: MediaStreamTrack) -> bool:
        """Swap the outgoing track of ``kind`` in place. False if nothing of that kind is being sent."""
        for sender in self._pc.getSenders():
            if sender.kind == kind:
                sender.replaceTrack(track)
                self.local_tracks[kind] = track
                return True
        return False

    async def create_offer(self) -> dict:
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        return description_to_dict(self._pc.localDescription)

    async def create_answer(self) -> dict:
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        return description_to_dict(self._pc.localDescription)

    async def set_remote_description(self, description: dict):
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=description["sdp"], type=description["type"]))

    async def add_ice_candidate(self, candidate: Optional[dict]):
        if not candidate or not candidate.get("candidate"):
            # End-of-candidates marker
            return
        await self._pc.addIceCandidate(candidate_from_dict(candidate))

    async def rollback(self):
        """Discard the pending local offer.

        aiortc has no "rollback" description type. Before any remote
        description was applied the connection is simply rebuilt with the same
        outgoing tracks. Once a transport exists it is kept: only the pending
        offer is dropped and the connection returns to "stable" with its
        current descriptions.
        """
        if self._pc.remoteDescription is not None:
            logger.debug("Rolling back local offer on the established peer connection")
            # aiortc 1.x keeps these private; there is no public way back to "stable"
            self._pc._RTCPeerConnection__pendingLocalDescription = None
            self._pc._RTCPeerConnection__setSignalingState("stable")
            return
        logger.debug("Rolling back local offer by rebuilding the peer connection")
        await self._pc.close()
        self.remote_tracks.clear()
        self._pc = self._create()
        for track in self.local_tracks.values():
            self._pc.addTrack(track)

    async def close(self):
        await self._pc.close()


def create_peer_connection(ice_servers: Optional[list] = None) -> AiortcPeerConnection:
    return AiortcPeerConnection(ice_servers)
