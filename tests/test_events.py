import pytest
from starlette.websockets import WebSocketDisconnect

from conftest import auth, make_user

from streamania.core.cache import CacheClient
from streamania.core.events import ALL_TOPICS, EventHub
from streamania.services.identity import AUTH_STATE_TOPIC, SessionContext


def test_subscribe_and_unsubscribe():
    hub = EventHub()
    received = []
    unsubscribe = hub.subscribe("quiz.active", lambda topic, payload: received.append(payload))

    hub.publish("quiz.active", {"active": None})
    hub.publish("stream.active", {"active": None})
    unsubscribe()
    hub.publish("quiz.active", {"active": {"id": "q"}})

    assert received == [{"active": None}]
    unsubscribe()
    hub.publish("quiz.active", {"active": None})
    assert len(received) == 1


def test_wildcard_listener_sees_every_topic():
    hub = EventHub()
    topics = []
    hub.subscribe(ALL_TOPICS, lambda topic, payload: topics.append(topic))

    hub.publish("chat.message", {})
    hub.publish("session", {})

    assert topics == ["chat.message", "session"]


def test_failing_listener_does_not_stop_delivery():
    hub = EventHub()
    received = []

    def broken(topic, payload):
        raise RuntimeError("listener bug")

    hub.subscribe("chat.message", broken)
    hub.subscribe("chat.message", lambda topic, payload: received.append(payload))

    hub.publish("chat.message", {"event": "created"})

    assert received == [{"event": "created"}]


def test_session_context_tracks_auth_state(session_factory, db, hub):
    user = make_user(db, "dana", wallet=40)
    sessions = SessionContext(session_factory, hub)
    snapshots = []
    sessions.subscribe(snapshots.append)
    sessions.start()
    sessions.start()

    hub.publish(AUTH_STATE_TOPIC, {"user_id": user.id, "event": "signed_in"})

    # Starting twice must not register a second listener.
    assert len(snapshots) == 1
    assert snapshots[-1].identity.email == "dana@example.com"
    assert snapshots[-1].profile.wallet == 40
    assert sessions.get(user.id).profile.username == "dana"

    hub.publish(AUTH_STATE_TOPIC, {"user_id": user.id, "event": "signed_out"})

    assert snapshots[-1].identity is None
    assert sessions.get(user.id) is None

    sessions.stop()
    hub.publish(AUTH_STATE_TOPIC, {"user_id": user.id, "event": "signed_in"})
    assert len(snapshots) == 2


def test_rate_limit_window():
    cache = CacheClient()
    assert cache.check_rate_limit("k", 2)
    assert cache.check_rate_limit("k", 2)
    assert not cache.check_rate_limit("k", 2)
    assert cache.check_rate_limit("other", 2)
    cache.reset()
    assert cache.check_rate_limit("k", 2)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_websocket_rejects_bad_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws?token=bad") as websocket:
            websocket.receive_json()


def test_websocket_heartbeat_and_quiz_broadcast(client, admin, viewer):
    admin_token, _ = admin
    viewer_token, _ = viewer
    quiz = client.post(
        "/quizzes/",
        json={"question": "Q?", "options": [{"text": "A"}, {"text": "B"}], "correct_option_id": "0"},
        headers=auth(admin_token),
    ).json()

    with client.websocket_connect(f"/ws?token={viewer_token}") as websocket:
        websocket.send_json({"type": "heartbeat"})
        assert websocket.receive_json() == {"type": "pong"}

        client.post(f"/quizzes/{quiz['id']}/activate", headers=auth(admin_token))

        message = websocket.receive_json()
        assert message["type"] == "quiz.active"
        assert message["active"]["id"] == quiz["id"]
        assert "correct_option_id" not in message["active"]
