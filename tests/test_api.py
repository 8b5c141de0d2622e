from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from cuemix.api.server import create_app


@pytest.fixture
def client(orchestrator):
    app = create_app(orchestrator)
    with TestClient(app) as test_client:
        yield test_client


def create(client, kind, config, node_id):
    response = client.post("/nodes", json={"kind": kind, "config": config, "id": node_id})
    assert response.status_code == 201, response.text
    return response.json()["id"]


def build_show(client) -> None:
    create(client, "source", {"uri": "test://smpte"}, "cam-a")
    create(client, "source", {"uri": "test://ball"}, "cam-b")
    create(client, "mixer", {"slots": 2}, "program")
    create(client, "destination", {"type": "fake"}, "monitor")
    for payload in (
        {"src": "cam-a", "dst": "program", "slot": 0, "config": {"video::alpha": 1.0}},
        {"src": "program", "dst": "monitor"},
    ):
        response = client.post("/connections", json=payload)
        assert response.status_code == 201, response.text


def test_healthz_and_profiles(client) -> None:
    health = client.get("/healthz").json()
    assert health["status"] == "ok"
    assert health["backend"] == "dry-run"

    profiles = client.get("/profiles").json()["profiles"]
    assert {"default", "live", "rehearsal"} <= set(profiles)


def test_graph_reflects_rest_commands(client) -> None:
    build_show(client)
    response = client.post("/nodes/cam-a/schedule", json={"cueTime": "2024-05-01T20:00:05Z", "duration": 30})
    assert response.status_code == 200
    assert [entry["action"] for entry in response.json()["entries"]] == ["activate", "deactivate"]

    graph = client.get("/graph").json()

    assert [node["id"] for node in graph["nodes"]] == ["cam-a", "cam-b", "monitor", "program"]
    assert [(conn["src"], conn["dst"], conn["slot"]) for conn in graph["connections"]] == [
        ("program", "monitor", None),
        ("cam-a", "program", 0),
    ]
    assert graph["schedule"][0]["due"] == "2024-05-01T20:00:05+00:00"

    assert client.delete("/nodes/cam-a/schedule").json() == {"removed": 2}


def test_error_codes_map_to_http_status(client) -> None:
    build_show(client)

    duplicate = client.post("/nodes", json={"kind": "source", "config": {"uri": "test://"}, "id": "cam-a"})
    assert duplicate.status_code == 400
    assert duplicate.json()["detail"]["code"] == "E_INVALID_CONFIG"

    occupied = client.post("/connections", json={"src": "cam-b", "dst": "program", "slot": 0})
    assert occupied.status_code == 409
    assert occupied.json()["detail"]["code"] == "E_INVALID_TOPOLOGY"

    unknown = client.post("/nodes/ghost/state", json={"target": "started"})
    assert unknown.status_code == 404
    assert unknown.json()["detail"]["code"] == "E_UNKNOWN_NODE"

    missing = client.post("/connections/remove", json={"src": "cam-b", "dst": "program", "slot": 1})
    assert missing.status_code == 404
    assert missing.json()["detail"]["code"] == "E_UNKNOWN_CONNECTION"


def test_state_requests(client) -> None:
    build_show(client)

    started = client.post("/nodes/cam-a/state", json={"target": "Started"})
    assert started.json() == {"id": "cam-a", "state": "started"}

    again = client.post("/nodes/cam-a/state", json={"target": "started"})
    assert again.status_code == 409
    assert again.json()["detail"]["code"] == "E_ILLEGAL_TRANSITION"


def test_failover_endpoints(client, orchestrator) -> None:
    build_show(client)
    for node_id in ("cam-a", "cam-b"):
        client.post(f"/nodes/{node_id}/state", json={"target": "started"})

    bound = client.post("/failover", json={"mixer": "program", "slot": 0, "primary": "cam-a", "backups": ["cam-b"]})
    assert bound.status_code == 201
    assert bound.json()["active"] == "cam-a"

    orchestrator.adapter.fail(orchestrator.graph.node("cam-a").handle)
    orchestrator.failover.process_pending()

    graph = client.get("/graph").json()
    assert graph["failover"][0]["active"] == "cam-b"
    refused = client.post("/failover/rearm", json={"mixer": "program", "slot": 0})
    assert refused.status_code == 409

    removed = client.post("/failover/remove", json={"mixer": "program", "slot": 0})
    assert removed.status_code == 200
    assert client.get("/graph").json()["failover"] == []


def test_control_point_endpoints(client) -> None:
    build_show(client)

    added = client.post(
        "/nodes/program/control-points",
        json={"property": "video::alpha", "slot": 0, "id": "fade", "time": "2024-05-01T20:01:00Z", "value": 0.0, "mode": "interpolate"},
    )
    assert added.status_code == 201, added.text
    assert added.json()["id"] == "fade"

    program = [node for node in client.get("/graph").json()["nodes"] if node["id"] == "program"][0]
    assert program["control_points"][0]["property"] == "video::alpha"

    assert client.delete("/nodes/program/control-points/fade").status_code == 200
    assert client.delete("/nodes/program/control-points/fade").status_code == 400


def test_remove_node_endpoint(client) -> None:
    build_show(client)

    assert client.delete("/nodes/cam-a").json() == {"removed": "cam-a"}
    assert client.delete("/nodes/cam-a").status_code == 404


def test_generic_command_endpoint(client) -> None:
    created = client.post("/command", json={"type": "create_node", "kind": "mixer", "nodeId": "mix"})
    assert created.json() == {"result": "mix"}

    inspected = client.post("/command", json={"type": "inspect"}).json()["result"]
    assert [node["id"] for node in inspected["nodes"]] == ["mix"]

    unknown = client.post("/command", json={"type": "explode"})
    assert unknown.status_code == 400

    malformed = client.post("/command", json={"type": "connect", "src": "mix"})
    assert malformed.status_code == 400
    assert malformed.json()["detail"]["code"] == "E_INVALID_CONFIG"


def receive_until(websocket, frame_type: str):
    frames = []
    while True:
        frame = websocket.receive_json()
        frames.append(frame)
        if frame["type"] == frame_type:
            return frames


def test_event_stream_snapshot_commands_and_events(client) -> None:
    create(client, "mixer", {}, "program")

    with client.websocket_connect("/events") as websocket:
        snapshot = websocket.receive_json()
        assert snapshot["type"] == "snapshot"
        assert [node["id"] for node in snapshot["payload"]["nodes"]] == ["program"]

        websocket.send_json(
            {
                "type": "command",
                "id": "req-1",
                "command": {"type": "create_node", "kind": "source", "config": {"uri": "test://"}, "id": "cam"},
            }
        )
        frames = receive_until(websocket, "result")
        assert frames[-1] == {"type": "result", "id": "req-1", "payload": "cam"}

        websocket.send_json(
            {"type": "command", "id": "req-2", "command": {"type": "connect", "src": "cam", "dst": "cam"}}
        )
        error = receive_until(websocket, "error")[-1]
        assert error["id"] == "req-2"
        assert error["code"] == "E_INVALID_TOPOLOGY"

        websocket.send_json({"type": "ping"})
        assert receive_until(websocket, "pong")[-1]["type"] == "pong"

        client.post("/nodes/cam/state", json={"target": "started"})
        states = []
        while len(states) < 2:
            frame = websocket.receive_json()
            if frame["type"] == "event" and frame["payload"]["kind"] == "state-changed":
                assert frame["payload"]["node_id"] == "cam"
                states.append(frame["payload"]["state"])

    assert states == ["starting", "started"]
