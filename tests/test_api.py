"""Tests for the agora HTTP and WebSocket API."""

import pytest
from fastapi.testclient import TestClient
from fastapi import WebSocketDisconnect

from agora import fanout
from agora.api import app
from agora.protocol import CLOSE_UNAUTHENTICATED
from agora.testing import RecordingTransport
from agora.transport import set_transport


@pytest.fixture
def client():
    """Create test client."""
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c


@pytest.fixture
def server(client, alice):
    response = client.post("/servers", json={"name": "Guild"}, headers=alice["headers"])
    assert response.status_code == 201
    return response.json()


def _join(client, server, owner, user):
    invite = client.post(f"/servers/{server['id']}/invites", json={}, headers=owner["headers"])
    response = client.post(f"/invites/{invite.json()['code']}/join", headers=user["headers"])
    assert response.status_code == 200


class TestHealth:
    def test_health_check(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_response_time_header(self, client):
        response = client.get("/health")
        assert "X-Response-Time-Ms" in response.headers

    def test_metrics_requires_auth(self, client):
        assert client.get("/metrics").status_code == 401

    def test_metrics(self, client, alice):
        client.get("/health")
        response = client.get("/metrics", headers=alice["headers"])
        assert response.status_code == 200
        data = response.json()
        assert "health" in data["requests"]
        assert data["registry_backend"] == "memory"
        assert "fanout" in data


class TestAuth:
    def test_register_and_me(self, client):
        response = client.post(
            "/auth/register",
            json={"email": "dana@example.com", "username": "dana", "password": "long-enough"},
        )
        assert response.status_code == 201
        body = response.json()
        assert body["user"]["username"] == "dana"

        me = client.get("/auth/me", headers={"Authorization": f"Bearer {body['token']}"})
        assert me.status_code == 200
        assert me.json()["email"] == "dana@example.com"

    def test_duplicate_email(self, client, alice):
        response = client.post(
            "/auth/register",
            json={"email": "alice@example.com", "username": "alice2", "password": "long-enough"},
        )
        assert response.status_code == 409

    def test_short_password(self, client):
        response = client.post(
            "/auth/register",
            json={"email": "e@example.com", "username": "eve", "password": "short"},
        )
        assert response.status_code == 400

    def test_login(self, client, alice):
        response = client.post(
            "/auth/login", json={"email": "alice@example.com", "password": "correct-horse"}
        )
        assert response.status_code == 200
        assert response.json()["user"]["id"] == alice["user"]["id"]

    def test_login_wrong_password(self, client, alice):
        response = client.post(
            "/auth/login", json={"email": "alice@example.com", "password": "wrong-horse"}
        )
        assert response.status_code == 401

    @pytest.mark.parametrize(
        "headers",
        [{}, {"Authorization": "Bearer not-a-token"}, {"Authorization": "Basic abc"}],
    )
    def test_unauthenticated(self, client, headers):
        response = client.get("/servers", headers=headers)
        assert response.status_code == 401
        assert "detail" in response.json()

    def test_malformed_body_is_invalid_input(self, client):
        response = client.post("/auth/login", json={"email": "x@example.com"})
        assert response.status_code == 400
        assert response.json()["detail"].startswith("Invalid request")


class TestServers:
    def test_create_server(self, server):
        assert server["name"] == "Guild"
        assert server["member_count"] == 1
        assert [c["name"] for c in server["channels"]] == ["general"]

    def test_list_servers(self, client, alice, bob, server):
        assert [s["id"] for s in client.get("/servers", headers=alice["headers"]).json()] == [
            server["id"]
        ]
        assert client.get("/servers", headers=bob["headers"]).json() == []

    def test_non_member_forbidden(self, client, bob, server):
        response = client.get(f"/servers/{server['id']}", headers=bob["headers"])
        assert response.status_code == 403

    def test_unknown_server(self, client, alice):
        response = client.get("/servers/does-not-exist", headers=alice["headers"])
        assert response.status_code == 404

    def test_create_channel(self, client, alice, server):
        response = client.post(
            f"/servers/{server['id']}/channels",
            json={"name": "Off Topic"},
            headers=alice["headers"],
        )
        assert response.status_code == 201
        assert response.json()["name"] == "off-topic"

        channels = client.get(f"/servers/{server['id']}/channels", headers=alice["headers"]).json()
        assert [c["name"] for c in channels] == ["general", "off-topic"]

    def test_member_cannot_create_channel(self, client, alice, bob, server):
        _join(client, server, alice, bob)
        response = client.post(
            f"/servers/{server['id']}/channels", json={"name": "mine"}, headers=bob["headers"]
        )
        assert response.status_code == 403

    def test_members(self, client, alice, bob, server):
        _join(client, server, alice, bob)
        members = client.get(f"/servers/{server['id']}/members", headers=bob["headers"]).json()
        assert {m["username"]: m["role"] for m in members} == {"alice": "owner", "bob": "member"}


class TestMessages:
    def _url(self, server):
        return f"/servers/{server['id']}/channels/{server['channels'][0]['id']}/messages"

    def test_send_and_list(self, client, alice, server):
        for text in ("one", "two", "three"):
            response = client.post(
                self._url(server), json={"content": text}, headers=alice["headers"]
            )
            assert response.status_code == 201

        page = client.get(self._url(server), headers=alice["headers"]).json()
        assert sorted(m["content"] for m in page["messages"]) == ["one", "three", "two"]
        timestamps = [m["created_at"] for m in page["messages"]]
        assert timestamps == sorted(timestamps, reverse=True)
        assert page["has_more"] is False
        assert page["next_cursor"] is None

    def test_cursor_round_trip(self, client, alice, server):
        for i in range(5):
            client.post(self._url(server), json={"content": f"m{i}"}, headers=alice["headers"])

        collected = []
        params = {"limit": 2}
        while True:
            page = client.get(self._url(server), params=params, headers=alice["headers"]).json()
            collected.extend(m["content"] for m in page["messages"])
            if not page["has_more"]:
                break
            params = {"limit": 2, "before": page["next_cursor"]}

        # Sends within one millisecond share a cursor value, so only uniqueness is exact
        assert len(collected) == len(set(collected))
        assert set(collected) <= {"m0", "m1", "m2", "m3", "m4"}

    def test_limit_out_of_range_is_clamped(self, client, alice, server):
        client.post(self._url(server), json={"content": "hi"}, headers=alice["headers"])
        response = client.get(self._url(server), params={"limit": 0}, headers=alice["headers"])
        assert response.status_code == 200
        assert len(response.json()["messages"]) == 1

    def test_non_integer_limit(self, client, alice, server):
        response = client.get(self._url(server), params={"limit": "lots"}, headers=alice["headers"])
        assert response.status_code == 400

    @pytest.mark.parametrize("before", ["100000000000000000000", "-1"])
    def test_cursor_out_of_range(self, client, alice, bob, server, before):
        response = client.get(self._url(server), params={"before": before}, headers=alice["headers"])
        assert response.status_code == 400

        conversation_id = client.post(
            "/dms", json={"recipient_id": bob["user"]["id"]}, headers=alice["headers"]
        ).json()["id"]
        response = client.get(
            f"/dms/{conversation_id}/messages", params={"before": before}, headers=alice["headers"]
        )
        assert response.status_code == 400

    @pytest.mark.parametrize("content", ["", "   ", "x" * 2001])
    def test_invalid_content(self, client, alice, server, content):
        response = client.post(self._url(server), json={"content": content}, headers=alice["headers"])
        assert response.status_code == 400

    def test_non_member_cannot_post(self, client, bob, server):
        response = client.post(self._url(server), json={"content": "hi"}, headers=bob["headers"])
        assert response.status_code == 403

    def test_delivery_failure_does_not_fail_send(self, client, alice, server, memory_registry):
        channel_id = server["channels"][0]["id"]
        transport = RecordingTransport(failing={"c1"})
        set_transport(transport)
        client.portal.call(memory_registry.connect, "c1", alice["user"]["id"])
        client.portal.call(memory_registry.subscribe, "c1", channel_id)

        response = client.post(self._url(server), json={"content": "hi"}, headers=alice["headers"])
        client.portal.call(fanout.drain_pending)

        assert response.status_code == 201
        assert transport.attempts == ["c1"]


class TestInvites:
    def test_invite_lifecycle(self, client, alice, bob, server):
        created = client.post(
            f"/servers/{server['id']}/invites", json={"max_uses": 1}, headers=alice["headers"]
        )
        assert created.status_code == 201
        code = created.json()["code"]

        info = client.get(f"/invites/{code}")
        assert info.status_code == 200
        assert info.json()["server_name"] == "Guild"

        joined = client.post(f"/invites/{code}/join", headers=bob["headers"])
        assert joined.status_code == 200
        assert joined.json()["member_count"] == 2

        assert client.get(f"/invites/{code}").status_code == 410

    def test_unknown_invite(self, client):
        assert client.get("/invites/ZZZZZZZZ").status_code == 404

    def test_already_member(self, client, alice, server):
        code = client.post(
            f"/servers/{server['id']}/invites", json={}, headers=alice["headers"]
        ).json()["code"]
        assert client.post(f"/invites/{code}/join", headers=alice["headers"]).status_code == 409

    def test_list_and_delete(self, client, alice, server):
        code = client.post(
            f"/servers/{server['id']}/invites", json={}, headers=alice["headers"]
        ).json()["code"]

        listed = client.get(f"/servers/{server['id']}/invites", headers=alice["headers"]).json()
        assert [i["code"] for i in listed] == [code]

        response = client.delete(f"/servers/{server['id']}/invites/{code}", headers=alice["headers"])
        assert response.status_code == 204
        assert client.get(f"/invites/{code}").status_code == 404

    def test_join_by_name(self, client, alice, bob, server):
        response = client.post(
            f"/servers/{server['id']}/passwords",
            json={"password": "let-me-in"},
            headers=alice["headers"],
        )
        assert response.status_code == 201

        denied = client.post(
            "/servers/join",
            json={"server_name": "Guild", "password": "nope"},
            headers=bob["headers"],
        )
        assert denied.status_code == 401

        joined = client.post(
            "/servers/join",
            json={"server_name": "Guild", "password": "let-me-in"},
            headers=bob["headers"],
        )
        assert joined.status_code == 200
        assert joined.json()["id"] == server["id"]


class TestDirectMessages:
    def test_conversation_flow(self, client, alice, bob):
        started = client.post(
            "/dms", json={"recipient_id": bob["user"]["id"]}, headers=alice["headers"]
        )
        assert started.status_code == 200
        conversation_id = started.json()["id"]

        sent = client.post(
            f"/dms/{conversation_id}/messages", json={"content": "hey"}, headers=alice["headers"]
        )
        assert sent.status_code == 201

        inbox = client.get("/dms", headers=bob["headers"]).json()
        assert inbox[0]["id"] == conversation_id
        assert inbox[0]["last_message_preview"] == "hey"
        assert inbox[0]["other_username"] == "alice"

        page = client.get(f"/dms/{conversation_id}/messages", headers=bob["headers"]).json()
        assert [m["content"] for m in page["messages"]] == ["hey"]

    def test_outsider_forbidden(self, client, alice, bob, make_user):
        carol = make_user("carol")
        conversation_id = client.post(
            "/dms", json={"recipient_id": bob["user"]["id"]}, headers=alice["headers"]
        ).json()["id"]

        response = client.get(f"/dms/{conversation_id}", headers=carol["headers"])
        assert response.status_code == 403

    def test_search_users(self, client, alice, bob):
        response = client.get("/users/search", params={"q": "bo"}, headers=alice["headers"])
        assert [u["username"] for u in response.json()] == ["bob"]


class TestRealtime:
    """End-to-end delivery over the WebSocket endpoint."""

    def test_rejects_missing_token(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws"):
                pass
        assert exc_info.value.code == CLOSE_UNAUTHENTICATED

    def test_rejects_bad_token(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws?token=bogus"):
                pass
        assert exc_info.value.code == CLOSE_UNAUTHENTICATED

    def test_channel_message_is_pushed(self, client, alice, bob, server):
        _join(client, server, alice, bob)
        channel_id = server["channels"][0]["id"]

        with client.websocket_connect(f"/ws?token={bob['token']}") as ws:
            hello = ws.receive_json()
            assert hello["status"] == "connected"

            ws.send_json({"action": "subscribe", "channel_id": channel_id})
            assert ws.receive_json() == {"status": "subscribed", "channel_id": channel_id}

            sent = client.post(
                f"/servers/{server['id']}/channels/{channel_id}/messages",
                json={"content": "hello bob"},
                headers=alice["headers"],
            ).json()

            event = ws.receive_json()
            assert event == {"type": "new_message", "message": sent}

    def test_dm_is_pushed(self, client, alice, bob):
        conversation_id = client.post(
            "/dms", json={"recipient_id": bob["user"]["id"]}, headers=alice["headers"]
        ).json()["id"]

        with client.websocket_connect(f"/ws?token={bob['token']}") as ws:
            ws.receive_json()
            ws.send_json({"action": "subscribe", "channel_id": conversation_id})
            ws.receive_json()

            sent = client.post(
                f"/dms/{conversation_id}/messages",
                json={"content": "psst"},
                headers=alice["headers"],
            ).json()

            assert ws.receive_json() == {"type": "new_dm", "message": sent}

    def test_subscribe_errors_are_replies(self, client, alice, bob, server):
        channel_id = server["channels"][0]["id"]

        with client.websocket_connect(f"/ws?token={bob['token']}") as ws:
            ws.receive_json()

            ws.send_text("not json")
            assert ws.receive_json() == {"error": "invalid message format", "status_code": 400}

            ws.send_json({"action": "subscribe"})
            assert ws.receive_json() == {"error": "channel_id required", "status_code": 400}

            ws.send_json({"action": "subscribe", "channel_id": channel_id})
            assert ws.receive_json()["status_code"] == 403

            ws.send_json({"action": "unsubscribe", "channel_id": channel_id})
            assert ws.receive_json() == {"status": "unsubscribed", "channel_id": channel_id}

    def test_binary_frames(self, client, alice, server):
        channel_id = server["channels"][0]["id"]

        with client.websocket_connect(f"/ws?token={alice['token']}") as ws:
            ws.receive_json()

            ws.send_bytes(b'{"action": "subscribe", "channel_id": "%s"}' % channel_id.encode())
            assert ws.receive_json() == {"status": "subscribed", "channel_id": channel_id}

            ws.send_bytes(b"\x80\x81")
            assert ws.receive_json() == {"error": "invalid message format", "status_code": 400}

            ws.send_bytes(b'{"channel_id": "x"}')
            assert ws.receive_json() == {"error": "invalid message format", "status_code": 400}

            ws.send_json({"action": "unsubscribe", "channel_id": channel_id})
            assert ws.receive_json() == {"status": "unsubscribed", "channel_id": channel_id}

    def test_unsubscribed_connection_gets_nothing(self, client, alice, server):
        channel_id = server["channels"][0]["id"]
        url = f"/servers/{server['id']}/channels/{channel_id}/messages"

        with client.websocket_connect(f"/ws?token={alice['token']}") as ws:
            ws.receive_json()
            ws.send_json({"action": "subscribe", "channel_id": channel_id})
            ws.receive_json()
            ws.send_json({"action": "unsubscribe", "channel_id": channel_id})
            ws.receive_json()

            client.post(url, json={"content": "quiet"}, headers=alice["headers"])
            client.portal.call(fanout.drain_pending)

            # The next frame answers this request, not a pushed event
            ws.send_json({"action": "unsubscribe", "channel_id": channel_id})
            assert ws.receive_json() == {"status": "unsubscribed", "channel_id": channel_id}
