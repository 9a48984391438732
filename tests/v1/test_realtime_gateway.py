import pytest
from starlette.websockets import WebSocketDisconnect

from tests.conftest import make_token


def test_unauthenticated_socket_is_closed(client):
    with client.websocket_connect("/api/v1/ws") as websocket:
        message = websocket.receive_json()
        assert message == {"event": "connection.error", "data": {"message": "Unauthorized"}}
        with pytest.raises(WebSocketDisconnect) as exc_info:
            websocket.receive_json()
    assert exc_info.value.code == 1008


def test_bad_token_is_rejected(client):
    token = make_token("carol", secret="not-the-secret")
    with client.websocket_connect(f"/api/v1/ws?token={token}") as websocket:
        assert websocket.receive_json()["event"] == "connection.error"


def test_thread_room_receives_new_posts(client, auth_headers, api_users):
    created = client.post(
        "/api/v1/threads",
        json={"title": "Live thread", "body": "opening"},
        headers=auth_headers("alice"),
    ).json()
    thread_id = created["thread"]["id"]

    with client.websocket_connect(
        "/api/v1/ws", headers={"Authorization": auth_headers("carol")["Authorization"]}
    ) as websocket:
        assert websocket.receive_json() == {
            "event": "connection.success",
            "data": {"userId": api_users["carol"]},
        }

        websocket.send_json({"event": "joinThread", "data": {"threadId": thread_id}})
        assert websocket.receive_json() == {
            "event": "thread.joined",
            "data": {"threadId": thread_id},
        }

        reply = client.post(
            f"/api/v1/threads/{thread_id}/posts",
            json={"body": "live reply"},
            headers=auth_headers("bob"),
        ).json()

        event = websocket.receive_json()
        assert event["event"] == "post.created"
        assert event["data"]["post"]["id"] == reply["id"]
        assert websocket.receive_json()["event"] == "post.created.global"

        websocket.send_json({"event": "leaveThread", "data": {"threadId": thread_id}})
        assert websocket.receive_json()["event"] == "thread.left"


def test_invalid_room_requests(client, auth_headers):
    token = auth_headers("carol")["Authorization"].removeprefix("Bearer ")
    with client.websocket_connect(f"/api/v1/ws?token={token}") as websocket:
        websocket.receive_json()

        websocket.send_json({"event": "joinThread", "data": {}})
        assert websocket.receive_json() == {
            "event": "error",
            "data": {"message": "Invalid threadId."},
        }

        websocket.send_json({"event": "dance"})
        assert websocket.receive_json()["event"] == "error"
