from __future__ import annotations

from typing import Any

from starlette.testclient import WebSocketTestSession

from app.main import app
from app.monitoring.metrics import (
    signaling_connections,
    signaling_messages_total,
    signaling_protocol_errors_total,
)
from stagecast.realtime import SessionCoordinationService, get_signaling_service


def _register(connection: WebSocketTestSession, user_id: str, role: str, stream_id: str) -> None:
    connection.send_json(
        {"type": "register", "payload": {"userId": user_id, "role": role, "streamId": stream_id}}
    )
    # the reply to the query proves the register frame was processed
    _sync(connection, user_id)


def _sync(connection: WebSocketTestSession, user_id: str) -> list[str]:
    """Round-trip a peer_list query; every earlier frame of this socket is then handled."""

    connection.send_json({"type": "peer_list", "payload": {"peers": [], "from": user_id}})
    reply = connection.receive_json()
    assert reply["type"] == "peer_list", reply
    return reply["payload"]["peers"]


def _assert_nothing_pending(connection: WebSocketTestSession, user_id: str) -> None:
    connection.send_json({"type": "peer_list", "payload": {"peers": [], "from": user_id}})
    assert connection.receive_json()["type"] == "peer_list"


def _envelope(kind: str, **payload: Any) -> dict[str, Any]:
    if "sender" in payload:
        payload["from"] = payload.pop("sender")
    return {"type": kind, "payload": payload}


def test_health_endpoint(client) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_signal_is_relayed_unchanged_to_target_only(client) -> None:
    with client.websocket_connect("/ws/signal") as host, client.websocket_connect(
        "/ws/signal"
    ) as viewer, client.websocket_connect("/ws/signal") as other:
        _register(host, "H1", "host", "H1")
        _register(viewer, "V1", "viewer", "H1")
        _register(other, "V2", "viewer", "H1")

        offer = _envelope(
            "signal", to="H1", sender="V1", signal={"type": "offer", "sdp": "v=0\r\n"}, hint=7
        )
        viewer.send_json(offer)

        assert host.receive_json() == offer
        _sync(viewer, "V1")
        _assert_nothing_pending(other, "V2")


def test_request_approve_and_qa_stream_scenario(client) -> None:
    with client.websocket_connect("/ws/signal") as host, client.websocket_connect(
        "/ws/signal"
    ) as viewer, client.websocket_connect("/ws/signal") as other:
        _register(host, "H1", "host", "H1")
        _register(viewer, "V1", "viewer", "H1")
        _register(other, "V2", "viewer", "H1")

        viewer.send_json(_envelope("request", to="H1", sender="V1"))
        assert host.receive_json() == _envelope("request", to="H1", sender="V1")
        _sync(viewer, "V1")
        _assert_nothing_pending(other, "V2")

        host.send_json(_envelope("approve", to="V1", sender="H1"))
        assert viewer.receive_json() == _envelope("approve", to="V1", sender="H1")

        viewer.send_json(_envelope("qa_stream", sender="V1", to=None))
        assert host.receive_json()["type"] == "qa_stream"
        assert other.receive_json() == _envelope("qa_stream", sender="V1", to=None)
        _assert_nothing_pending(viewer, "V1")


def test_muted_viewer_chat_and_request_are_suppressed(client) -> None:
    with client.websocket_connect("/ws/signal") as host, client.websocket_connect(
        "/ws/signal"
    ) as viewer:
        _register(host, "H1", "host", "H1")
        _register(viewer, "V1", "viewer", "H1")

        host.send_json({"type": "mute", "payload": {"userId": "V1"}})
        _sync(host, "H1")

        chat = _envelope("chat", sender="V1", to="H1", text="hello", sentBy="Viewer One")
        viewer.send_json(chat)
        viewer.send_json(_envelope("request", to="H1", sender="V1"))

        assert viewer.receive_json() == _envelope("deny", to="V1", sender="H1")
        _sync(viewer, "V1")
        _assert_nothing_pending(host, "H1")

        host.send_json({"type": "unmute", "payload": {"userId": "V1"}})
        _sync(host, "H1")

        viewer.send_json(chat)
        assert viewer.receive_json() == chat
        assert host.receive_json() == chat


def test_keepalive_ping_is_answered(client) -> None:
    with client.websocket_connect("/ws/signal") as connection:
        connection.send_json({"type": "ping"})
        assert connection.receive_json() == {"type": "pong"}

        # pong frames are swallowed
        connection.send_json({"type": "pong"})
        _register(connection, "H1", "host", "H1")


def test_invalid_frames_keep_connection_open(client) -> None:
    with client.websocket_connect("/ws/signal") as connection:
        _register(connection, "H1", "host", "H1")

        connection.send_text("definitely not json")
        connection.send_json({"type": "teleport", "payload": {}})
        connection.send_json({"type": "signal", "payload": {"to": "V1"}})

        assert _sync(connection, "H1") == []

    assert signaling_protocol_errors_total.value("malformed_json") == 1
    assert signaling_protocol_errors_total.value("unknown_type") == 1
    assert signaling_protocol_errors_total.value("invalid_payload") == 1


def test_binary_frame_is_dropped_and_connection_stays_open(client) -> None:
    with client.websocket_connect("/ws/signal") as connection:
        _register(connection, "H1", "host", "H1")

        connection.send_bytes(b'{"type":"chat"}')

        assert _sync(connection, "H1") == []

    assert signaling_protocol_errors_total.value("binary_frame") == 1


def test_frames_before_register_are_ignored(client) -> None:
    with client.websocket_connect("/ws/signal") as host, client.websocket_connect(
        "/ws/signal"
    ) as stranger:
        _register(host, "H1", "host", "H1")

        stranger.send_json(_envelope("chat", sender="H1", text="spoofed"))
        stranger.send_json({"type": "ping"})
        assert stranger.receive_json() == {"type": "pong"}

        _assert_nothing_pending(host, "H1")

    assert signaling_messages_total.value("chat", "unregistered") == 1


def test_disconnect_removes_participant(client) -> None:
    with client.websocket_connect("/ws/signal") as host:
        _register(host, "H1", "host", "H1")

        with client.websocket_connect("/ws/signal") as viewer:
            _register(viewer, "V1", "viewer", "H1")
            assert _sync(host, "H1") == ["V1"]

        assert _sync(host, "H1") == []
        host.send_json(_envelope("signal", to="V1", sender="H1", signal={"type": "answer"}))
        _sync(host, "H1")

    assert signaling_messages_total.value("signal", "dropped") == 1
    assert signaling_connections.value("signal") == 0


def test_reregistering_identity_replaces_old_socket(client, service: SessionCoordinationService) -> None:
    with client.websocket_connect("/ws/signal") as host:
        _register(host, "H1", "host", "H1")

        with client.websocket_connect("/ws/signal") as first:
            _register(first, "V1", "viewer", "H1")

            with client.websocket_connect("/ws/signal") as second:
                _register(second, "V1", "viewer", "H1")

                host.send_json(_envelope("signal", to="V1", sender="H1", signal={"n": 1}))
                assert second.receive_json()["payload"]["signal"] == {"n": 1}

        # the stale socket closing must not evict the second registration,
        # which itself is gone once its own socket closed
        assert _sync(host, "H1") == []


def test_broadcast_scope_can_be_limited_to_session(client) -> None:
    scoped = SessionCoordinationService(scope_broadcasts=True)
    app.dependency_overrides[get_signaling_service] = lambda: scoped

    with client.websocket_connect("/ws/signal") as host_a, client.websocket_connect(
        "/ws/signal"
    ) as host_b:
        _register(host_a, "HA", "host", "HA")
        _register(host_b, "HB", "host", "HB")

        chat = _envelope("chat", sender="HA", to="HA", text="only for A")
        host_a.send_json(chat)
        assert host_a.receive_json() == chat
        _assert_nothing_pending(host_b, "HB")


def test_metrics_endpoint_reports_signaling_counters(client) -> None:
    with client.websocket_connect("/ws/signal") as connection:
        _register(connection, "H1", "host", "H1")

    response = client.get("/metrics")

    assert response.status_code == 200
    body = response.text
    assert 'signaling_messages_total{type="register",outcome="applied"} 1' in body
    assert 'signaling_messages_total{type="peer_list",outcome="routed"} 1' in body
    assert 'signaling_deliveries_total{type="peer_list"} 1' in body
