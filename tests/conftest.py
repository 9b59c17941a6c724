"""
Shared fixtures: fake transports, fake media and an in-process hub loopback.
"""

import itertools
from collections import deque

import pytest

from backend import PersistenceUnavailable
from client.call import CallClient
from client.media import LocalTracks, MediaAccessError
from hub import SignalingHub
from schemas.messages import server_message_adapter


class FakeWebSocket:
    """Hub-side stand-in for a Starlette WebSocket."""

    def __init__(self):
        self.sent = []
        self.closed = None

    async def send_json(self, data):
        if self.closed:
            raise RuntimeError("WebSocket is closed")
        self.sent.append(data)

    async def close(self, code=1000, reason=None):
        self.closed = (code, reason)

    def of_type(self, message_type):
        return [m for m in self.sent if m["type"] == message_type]

    def types(self):
        return [m["type"] for m in self.sent]


class FakeChatStore:
    def __init__(self, fail=False):
        self.messages = {}
        self.fail = fail

    def ping(self):
        if self.fail:
            raise PersistenceUnavailable("store down")
        return True

    def save_message(self, message):
        if self.fail:
            raise PersistenceUnavailable("store down")
        self.messages.setdefault(message.room_id, []).append(message)
        return True

    def get_messages(self, room_id, limit=None):
        if self.fail:
            raise PersistenceUnavailable("store down")
        return list(self.messages.get(room_id, []))


class FakeTrack:
    """Mimics the parts of aiortc's MediaStreamTrack the controller touches."""

    def __init__(self, kind, label):
        self.kind = kind
        self.label = label
        self.enabled = True
        self.readyState = "live"
        self._listeners = {}

    def on(self, event, handler):
        self._listeners.setdefault(event, []).append(handler)
        return handler

    def stop(self):
        if self.readyState == "ended":
            return
        self.readyState = "ended"
        for handler in self._listeners.get("ended", []):
            handler()

    def __repr__(self):
        return f"FakeTrack({self.label})"


class FakeDevices:
    def __init__(self, fail_with=None):
        self.fail_with = fail_with
        self.user_media_calls = 0
        self.screens = []

    async def get_user_media(self):
        self.user_media_calls += 1
        if self.fail_with:
            raise MediaAccessError(self.fail_with)
        return LocalTracks(audio=FakeTrack("audio", "microphone"), video=FakeTrack("video", "camera"))

    async def get_display_media(self):
        screen = FakeTrack("video", f"screen-{len(self.screens)}")
        self.screens.append(screen)
        return screen


class FakePeerConnection:
    """Tracks WebRTC signaling state and refuses the transitions a browser would refuse."""

    def __init__(self, ice_servers=None):
        self.ice_servers = ice_servers
        self.signaling_state = "stable"
        self.senders = {}
        self.added_tracks = []
        self.replaced = []
        self.local_description = None
        self.remote_description = None
        self.candidates = []
        self.rollbacks = 0
        self.rebuilds = 0
        self.stable_local_description = None
        self.offers = 0
        self.answers = 0
        self.closed = False
        self.on_local_candidate = None

    def add_track(self, track):
        self.added_tracks.append(track)
        self.senders[track.kind] = track

    async def replace_track(self, kind, track):
        if kind not in self.senders:
            return False
        self.senders[kind] = track
        self.replaced.append((kind, track))
        return True

    async def create_offer(self):
        assert self.signaling_state == "stable", f"createOffer in {self.signaling_state}"
        self.offers += 1
        self.local_description = {"type": "offer", "sdp": f"offer-{id(self)}-{self.offers}"}
        self.signaling_state = "have-local-offer"
        return dict(self.local_description)

    async def create_answer(self):
        assert self.signaling_state == "have-remote-offer", f"createAnswer in {self.signaling_state}"
        self.answers += 1
        self.local_description = {"type": "answer", "sdp": f"answer-{id(self)}-{self.answers}"}
        self.signaling_state = "stable"
        self.stable_local_description = self.local_description
        return dict(self.local_description)

    async def set_remote_description(self, description):
        if description["type"] == "offer":
            assert self.signaling_state == "stable", "remote offer while holding a local offer"
            self.signaling_state = "have-remote-offer"
        else:
            assert self.signaling_state == "have-local-offer", "answer without a local offer"
            self.signaling_state = "stable"
            self.stable_local_description = self.local_description
        self.remote_description = description

    async def add_ice_candidate(self, candidate):
        assert self.remote_description is not None, "candidate before remote description"
        self.candidates.append(candidate)

    async def rollback(self):
        assert self.signaling_state == "have-local-offer", f"rollback in {self.signaling_state}"
        self.rollbacks += 1
        if self.remote_description is None:
            # Never negotiated: replaced by a fresh connection carrying the same senders
            self.rebuilds += 1
        self.local_description = self.stable_local_description
        self.signaling_state = "stable"

    async def close(self):
        self.closed = True


class LoopbackSocket(FakeWebSocket):
    """Hub-side socket that queues validated server messages for a client."""

    def __init__(self):
        super().__init__()
        self.inbox = deque()

    async def send_json(self, data):
        await super().send_json(data)
        self.inbox.append(server_message_adapter.validate_python(data))


class LoopbackSignaling:
    """Client-side channel wired straight into an in-process hub."""

    def __init__(self, hub):
        self.hub = hub
        self.socket = LoopbackSocket()
        self.conn = hub.connect(self.socket)
        self.sent = []
        self.closed = False

    @property
    def inbox(self):
        return self.socket.inbox

    async def send(self, message):
        self.sent.append(message)
        if not self.closed:
            await self.hub.handle(self.conn, message)

    async def messages(self):
        while self.inbox:
            yield self.inbox.popleft()

    async def close(self):
        self.closed = True
        await self.hub.disconnect(self.conn)


class MeshMember:
    def __init__(self, hub, devices=None):
        self.signaling = LoopbackSignaling(hub)
        self.devices = devices or FakeDevices()
        self.peers = []
        self.events = []
        self.client = CallClient(
            self.signaling,
            devices=self.devices,
            peer_factory=self._make_peer,
            on_event=lambda name, payload: self.events.append((name, payload)),
        )

    def _make_peer(self, ice_servers):
        peer = FakePeerConnection(ice_servers)
        self.peers.append(peer)
        return peer

    @property
    def id(self):
        return self.signaling.conn.id


async def pump(*members):
    """Deliver queued hub messages until every member's inbox is empty."""
    progressed = True
    while progressed:
        progressed = False
        for member in members:
            while member.signaling.inbox:
                await member.client.handle(member.signaling.inbox.popleft())
                progressed = True


def sequential_ids(*ids):
    iterator = iter(ids)
    return lambda: next(iterator)


@pytest.fixture
def chat_store():
    return FakeChatStore()


@pytest.fixture
def hub():
    counter = itertools.count()
    return SignalingHub(idle_timeout=300, id_factory=lambda: f"conn{next(counter):03d}")


@pytest.fixture
def make_member(hub):
    def factory(devices=None):
        return MeshMember(hub, devices)
    return factory
