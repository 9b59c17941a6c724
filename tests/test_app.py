from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from app import create_app
from conftest import FakeChatStore
from hub import SignalingHub
from schemas.rooms import ChatMessage
from services.topics import SummaryServiceUnavailable, TopicServiceUnavailable


def make_client(chat_store=None):
    hub = SignalingHub(chat_store=chat_store, idle_timeout=0)
    return TestClient(create_app(hub)), hub


def join(ws, room_id, name):
    ws.send_json({"type": "join-room", "roomId": room_id, "name": name})
    joined = ws.receive_json()
    existing = ws.receive_json()
    assert joined["type"] == "joined"
    assert existing["type"] == "existing-users"
    return joined["id"], existing["users"]


def stored_message(text, sender="Alice"):
    return ChatMessage(
        id=f"m-{text}",
        room_id="ABCD",
        text=text,
        user_id="u1",
        sender_name=sender,
        timestamp="2024-01-01T00:00:00+00:00",
    )


class TestSignalingSocket:
    def test_two_peers_meet_and_exchange_offer(self):
        client, _ = make_client()
        with client:
            with client.websocket_connect("/ws") as alice:
                alice_id, users = join(alice, "ABCD", "Alice")
                assert users == []

                with client.websocket_connect("/ws") as bob:
                    bob_id, users = join(bob, "ABCD", "Bob")
                    assert users == [{"id": alice_id, "name": "Alice", "isScreenSharing": False}]
                    assert alice.receive_json() == {
                        "type": "user-joined", "id": bob_id, "name": "Bob", "isScreenSharing": False
                    }

                    sdp = {"type": "offer", "sdp": "v=0"}
                    alice.send_json({"type": "offer", "target": bob_id, "sdp": sdp, "name": "Alice"})
                    assert bob.receive_json() == {"type": "offer", "caller": alice_id, "sdp": sdp, "name": "Alice"}

                    bob.send_json({"type": "ice-candidate", "target": alice_id, "candidate": {"candidate": ""}})
                    assert alice.receive_json() == {"type": "ice-candidate", "from": bob_id, "candidate": {"candidate": ""}}

                assert alice.receive_json() == {"type": "user-disconnected", "userId": bob_id}

    def test_invalid_frame_gets_error_and_connection_survives(self):
        client, _ = make_client()
        with client:
            with client.websocket_connect("/ws") as ws:
                ws.send_text("not json")
                assert ws.receive_json() == {"type": "error", "detail": "Invalid message"}

                ws.send_json({"type": "teleport", "roomId": "ABCD"})
                assert ws.receive_json()["type"] == "error"

                ws.send_json({"type": "join-room", "roomId": "ABCD", "name": ""})
                assert ws.receive_json()["type"] == "error"

                join(ws, "ABCD", "Alice")

    def test_message_before_join_is_rejected(self):
        client, _ = make_client()
        with client:
            with client.websocket_connect("/ws") as ws:
                ws.send_json({"type": "send-message", "roomId": "ABCD", "message": "hi"})
                reply = ws.receive_json()
                assert reply["type"] == "error"
                assert "send-message" in reply["detail"]

    def test_relay_to_unknown_target_is_reported(self):
        client, _ = make_client()
        with client:
            with client.websocket_connect("/ws") as ws:
                join(ws, "ABCD", "Alice")
                ws.send_json({"type": "answer", "target": "ghost", "sdp": {}})
                assert ws.receive_json() == {"type": "relay-failed", "target": "ghost", "kind": "answer"}

    def test_late_joiner_receives_chat_history(self):
        client, _ = make_client(chat_store=FakeChatStore())
        with client:
            with client.websocket_connect("/ws") as alice:
                join(alice, "ABCD", "Alice")
                assert alice.receive_json() == {"type": "previous-messages", "messages": []}
                alice.send_json({"type": "send-message", "roomId": "ABCD", "message": "hello"})
                # Frames on one socket are handled in order, so the save is done once this comes back
                alice.send_json({"type": "offer", "target": "ghost", "sdp": {}})
                assert alice.receive_json()["type"] == "relay-failed"

                with client.websocket_connect("/ws") as carol:
                    join(carol, "ABCD", "Carol")
                    history = carol.receive_json()
                    assert history["type"] == "previous-messages"
                    assert [(m["senderName"], m["text"]) for m in history["messages"]] == [("Alice", "hello")]

    def test_room_disappears_after_last_leave(self):
        client, hub = make_client()
        with client:
            with client.websocket_connect("/ws") as ws:
                join(ws, "ABCD", "Alice")
                assert client.get("/rooms/ABCD").status_code == 200
            assert client.get("/rooms/ABCD").status_code == 404
            assert hub.get_room("ABCD") is None


class TestRoomsApi:
    def test_create_room_returns_unused_code(self):
        client, _ = make_client()
        with client:
            response = client.post("/rooms/")
        assert response.status_code == 200
        room_id = response.json()["room_id"]
        assert len(room_id) == 6
        assert room_id == room_id.upper()

    def test_create_room_gives_up_when_codes_collide(self):
        client, hub = make_client()
        with client:
            with client.websocket_connect("/ws") as ws:
                join(ws, "AAAAAA", "Alice")
                with patch("routers.rooms.generate_room_code", return_value="AAAAAA"):
                    response = client.post("/rooms/")
        assert response.status_code == 500

    def test_ice_servers(self):
        client, _ = make_client()
        with client:
            response = client.get("/rooms/ice-servers")
        assert response.json() == {"ice_servers": [{"urls": "stun:stun.l.google.com:19302"}]}

    def test_room_details_reflect_presence_flags(self):
        client, _ = make_client()
        with client:
            with client.websocket_connect("/ws") as ws:
                alice_id, _ = join(ws, "ABCD", "Alice")
                ws.send_json({"type": "audio-state-changed", "roomId": "ABCD", "isAudioEnabled": False})
                ws.send_json({"type": "screen-share-started", "roomId": "ABCD"})
                # Round trip through the socket so both flag changes are applied
                ws.send_json({"type": "answer", "target": "ghost", "sdp": {}})
                ws.receive_json()

                details = client.get("/rooms/ABCD").json()

        assert details["participant_count"] == 1
        assert details["screen_sharer"] == alice_id
        participant = details["participants"][0]
        assert participant["micEnabled"] is False
        assert participant["isScreenSharing"] is True

    def test_unknown_room_is_404(self):
        client, _ = make_client()
        with client:
            assert client.get("/rooms/NOPE").status_code == 404

    def test_messages_from_store(self):
        store = FakeChatStore()
        store.save_message(stored_message("first"))
        store.save_message(stored_message("second"))
        client, _ = make_client(chat_store=store)
        with client:
            response = client.get("/rooms/ABCD/messages")
        body = response.json()
        assert body["room_id"] == "ABCD"
        assert [m["text"] for m in body["messages"]] == ["first", "second"]

    def test_messages_without_store_are_empty(self):
        client, _ = make_client()
        with client:
            assert client.get("/rooms/ABCD/messages").json()["messages"] == []

    def test_messages_store_down_is_503(self):
        client, _ = make_client(chat_store=FakeChatStore(fail=True))
        with client:
            assert client.get("/rooms/ABCD/messages").status_code == 503


class TestTopicsApi:
    def test_topics_from_explicit_transcript(self):
        client, _ = make_client()
        mock = AsyncMock(return_value=["Travel", "Food"])
        with client, patch("routers.rooms.suggest_topics", mock):
            response = client.post("/rooms/ABCD/topics", json={"transcript": "Alice: where to eat in Lisbon?"})
        assert response.status_code == 200
        assert response.json() == {"topics": ["Travel", "Food"]}
        mock.assert_awaited_once_with("Alice: where to eat in Lisbon?")

    def test_topics_fall_back_to_stored_history(self):
        store = FakeChatStore()
        store.save_message(stored_message("hello"))
        store.save_message(stored_message("hi there", sender="Bob"))
        client, _ = make_client(chat_store=store)
        mock = AsyncMock(return_value=["Greetings"])
        with client, patch("routers.rooms.suggest_topics", mock):
            response = client.post("/rooms/ABCD/topics")
        assert response.status_code == 200
        mock.assert_awaited_once_with("Alice: hello\nBob: hi there")

    def test_topics_without_content_is_400(self):
        client, _ = make_client()
        mock = AsyncMock()
        with client, patch("routers.rooms.suggest_topics", mock):
            response = client.post("/rooms/ABCD/topics", json={})
        assert response.status_code == 400
        mock.assert_not_awaited()

    @pytest.mark.parametrize("error", [TopicServiceUnavailable("timeout"), TopicServiceUnavailable("not configured")])
    def test_topic_service_failure_is_503(self, error):
        client, _ = make_client()
        with client, patch("routers.rooms.suggest_topics", AsyncMock(side_effect=error)):
            response = client.post("/rooms/ABCD/topics", json={"transcript": "Alice: where to eat in Lisbon?"})
        assert response.status_code == 503

    def test_short_transcript_is_400(self):
        client, _ = make_client()
        mock = AsyncMock()
        with client, patch("routers.rooms.suggest_topics", mock):
            response = client.post("/rooms/ABCD/topics", json={"transcript": "Alice: hi"})
        assert response.status_code == 400
        mock.assert_not_awaited()


LONG_TRANSCRIPT = "Alice: shall we meet on Friday?\nBob: Friday works, the usual place at noon."


class TestSummaryApi:
    def test_summary_from_explicit_transcript(self):
        client, _ = make_client()
        mock = AsyncMock(return_value="Alice and Bob agree to meet on Friday at noon.")
        with client, patch("routers.rooms.summarize_chat", mock):
            response = client.post("/rooms/ABCD/summary", json={"transcript": LONG_TRANSCRIPT})
        assert response.status_code == 200
        assert response.json() == {"summary": "Alice and Bob agree to meet on Friday at noon."}
        mock.assert_awaited_once_with(LONG_TRANSCRIPT)

    def test_summary_falls_back_to_stored_history(self):
        store = FakeChatStore()
        store.save_message(stored_message("are we still on for the trip next weekend?"))
        store.save_message(stored_message("yes, I booked the train", sender="Bob"))
        client, _ = make_client(chat_store=store)
        mock = AsyncMock(return_value="Trip confirmed.")
        with client, patch("routers.rooms.summarize_chat", mock):
            response = client.post("/rooms/ABCD/summary")
        assert response.status_code == 200
        mock.assert_awaited_once_with("Alice: are we still on for the trip next weekend?\nBob: yes, I booked the train")

    def test_content_enough_for_topics_is_too_short_for_summary(self):
        client, _ = make_client()
        mock = AsyncMock()
        with client, patch("routers.rooms.summarize_chat", mock):
            response = client.post("/rooms/ABCD/summary", json={"transcript": "Alice: where to eat in Lisbon?"})
        assert response.status_code == 400
        mock.assert_not_awaited()

    def test_summary_service_failure_is_503(self):
        client, _ = make_client()
        mock = AsyncMock(side_effect=SummaryServiceUnavailable("timeout"))
        with client, patch("routers.rooms.summarize_chat", mock):
            response = client.post("/rooms/ABCD/summary", json={"transcript": LONG_TRANSCRIPT})
        assert response.status_code == 503
