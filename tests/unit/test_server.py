"""Tests for the FastAPI server."""

from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from canvas_core.canvas import Canvas
from canvas_core.collaboration import CollaborationHub
from canvas_server.main import create_app

from builders import SAMPLE_DOCUMENT


@pytest.fixture
def canvas() -> Canvas:
    return Canvas(max_history=0)


@pytest.fixture
def hub() -> CollaborationHub:
    return CollaborationHub()


@pytest.fixture
def client(canvas: Canvas, hub: CollaborationHub) -> TestClient:
    return TestClient(create_app(canvas, hub))


def _create_node(client: TestClient, x: float = 0, y: float = 0) -> dict:
    response = client.post("/api/nodes", json={"x": x, "y": y})
    assert response.status_code == 200
    return response.json()["node"]


def test_health(client: TestClient) -> None:
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_canvas_state(client: TestClient) -> None:
    state = client.get("/api/canvas").json()
    assert state["canvasName"] == "Untitled Canvas"
    assert len(state["groups"]) == 3
    assert state["canUndo"] is False


def test_node_crud(client: TestClient) -> None:
    node = _create_node(client, 10, 20)
    assert (node["x"], node["y"]) == (10, 20)
    assert node["content"]["type"] == "text"

    response = client.patch(f"/api/nodes/{node['id']}", json={
        "content": {"type": "text", "value": "Hello"},
        "tags": ["idea"],
        "width": 50,
    })
    updated = response.json()["node"]
    assert updated["content"]["value"] == "Hello"
    assert updated["tags"] == ["idea"]
    assert updated["width"] == 100

    assert client.get(f"/api/nodes/{node['id']}").status_code == 200
    assert client.delete(f"/api/nodes/{node['id']}").status_code == 200
    assert client.get(f"/api/nodes/{node['id']}").status_code == 404
    assert client.delete(f"/api/nodes/{node['id']}").status_code == 404


def test_invalid_content_is_rejected(client: TestClient) -> None:
    node = _create_node(client)
    response = client.patch(f"/api/nodes/{node['id']}", json={"content": {"type": "hologram"}})
    assert response.status_code == 422


def test_duplicate_node(client: TestClient) -> None:
    node = _create_node(client, 100, 100)
    copy = client.post(f"/api/nodes/{node['id']}/duplicate").json()["node"]
    assert (copy["x"], copy["y"]) == (120, 120)
    assert client.post("/api/nodes/missing/duplicate").status_code == 404


def test_connections(client: TestClient, canvas: Canvas) -> None:
    a = _create_node(client, 0, 0)
    b = _create_node(client, 400, 0)
    response = client.post("/api/connections", json={"fromNodeId": a["id"], "toNodeId": b["id"], "fromPoint": "right"})
    assert response.status_code == 200
    connection = response.json()["connection"]
    assert connection["fromPoint"] == "right"

    duplicate = client.post("/api/connections", json={"fromNodeId": b["id"], "toNodeId": a["id"]})
    assert duplicate.status_code == 409
    unknown = client.post("/api/connections", json={"fromNodeId": a["id"], "toNodeId": "ghost"})
    assert unknown.status_code == 404

    client.delete(f"/api/nodes/{a['id']}")
    assert client.get(f"/api/connections/{connection['id']}").status_code == 404
    assert canvas.store.connections == []


def test_groups(client: TestClient) -> None:
    a = _create_node(client)
    group = client.post("/api/groups", json={"name": "Team", "color": "#111111", "nodeIds": [a["id"]]}).json()["group"]
    assert group["nodes"] == [a["id"]]
    assert client.get(f"/api/nodes/{a['id']}").json()["node"]["groupId"] == group["id"]

    renamed = client.patch(f"/api/groups/{group['id']}", json={"name": "Crew"}).json()["group"]
    assert renamed["name"] == "Crew"

    assert client.delete(f"/api/groups/{group['id']}").status_code == 200
    assert client.get(f"/api/nodes/{a['id']}").json()["node"]["groupId"] is None
    assert client.delete(f"/api/groups/{group['id']}").status_code == 404


def test_undo_redo(client: TestClient) -> None:
    assert client.post("/api/undo").json()["success"] is False
    node = _create_node(client)
    assert client.post("/api/undo").json()["success"] is True
    assert client.get(f"/api/nodes/{node['id']}").status_code == 404
    assert client.post("/api/redo").json()["success"] is True
    assert client.get(f"/api/nodes/{node['id']}").status_code == 200


def test_search_and_tags(client: TestClient) -> None:
    client.post("/api/canvas/import", json=SAMPLE_DOCUMENT)
    found = client.get("/api/nodes/search", params={"q": "python"}).json()["nodes"]
    assert [n["id"] for n in found] == ["n1"]
    tagged = client.get("/api/nodes/search", params={"tag": "lang"}).json()["nodes"]
    assert {n["id"] for n in tagged} == {"n1", "n2"}
    assert client.get("/api/tags").json()["tags"] == ["lang", "web"]


def test_import_export(client: TestClient) -> None:
    response = client.post("/api/canvas/import", json=SAMPLE_DOCUMENT)
    assert response.status_code == 200
    exported = client.get("/api/canvas/export").json()
    assert exported["canvasName"] == "Roadmap"
    assert [n["id"] for n in exported["nodes"]] == ["n1", "n2", "n3"]
    assert exported["transform"] == {"x": 10, "y": 20, "scale": 1.5}


def test_malformed_import_is_400(client: TestClient, canvas: Canvas) -> None:
    node = _create_node(client)
    bad = {"nodes": [{"id": "a"}], "connections": [{"fromNodeId": "a", "toNodeId": "ghost"}]}
    response = client.post("/api/canvas/import", json=bad)
    assert response.status_code == 400
    assert response.json()["detail"]["issues"]
    assert [n.id for n in canvas.store.nodes] == [node["id"]]


def test_validate_endpoint(client: TestClient) -> None:
    summary = client.get("/api/canvas/validate").json()["summary"]
    assert summary["valid"] is True
    assert summary["info"] == 1


def test_save_and_open(client: TestClient, tmp_path: Path) -> None:
    _create_node(client, 5, 5)
    path = tmp_path / "saved.json"
    assert client.post("/api/canvas/save", json={"filePath": str(path)}).status_code == 200
    client.post("/api/canvas/import", json={"nodes": [], "connections": []})

    opened = client.post("/api/canvas/open", json={"filePath": str(path)}).json()
    assert len(opened["canvas"]["nodes"]) == 1
    assert client.post("/api/canvas/open", json={"filePath": str(tmp_path / "nope.json")}).status_code == 404
    assert client.post("/api/canvas/save", json={}).status_code == 400


def test_organize_and_fit(client: TestClient, canvas: Canvas) -> None:
    a = _create_node(client, 0, 0)
    assert client.post("/api/layout/organize", json={"nodeIds": [a["id"]]}).status_code == 400
    b = _create_node(client, 0, 0)

    response = client.post("/api/layout/organize", json={"nodeIds": [a["id"], b["id"]]})
    assert response.status_code == 200
    assert set(response.json()["positions"]) == {a["id"], b["id"]}

    fit = client.post("/api/viewport/fit", json={"width": 1000, "height": 800})
    assert fit.status_code == 200
    assert fit.json()["transform"]["scale"] == canvas.transform.scale


def test_fit_empty_canvas_is_400(client: TestClient) -> None:
    assert client.post("/api/viewport/fit", json={"width": 1000, "height": 800}).status_code == 400


def test_collaboration_flow(client: TestClient) -> None:
    _create_node(client)
    created = client.post("/api/collab/canvases", json={"name": "Shared", "userId": "alice"}).json()
    canvas_id = created["canvasId"]
    assert created["userId"] == "alice"

    joined = client.post(f"/api/collab/canvases/{canvas_id}/join", json={"userId": "bob", "userName": "Bob"})
    assert joined.status_code == 200
    assert len(joined.json()["canvas"]["data"]["nodes"]) == 1
    assert [p["color"] for p in joined.json()["participants"]] == ["#3B82F6", "#EF4444"]

    full = client.post(f"/api/collab/canvases/{canvas_id}/join", json={"userId": "carol"})
    assert full.status_code == 409

    outsider = client.put(f"/api/collab/canvases/{canvas_id}", json={"userId": "carol", "data": SAMPLE_DOCUMENT})
    assert outsider.status_code == 409
    update = client.put(f"/api/collab/canvases/{canvas_id}", json={"userId": "bob", "data": SAMPLE_DOCUMENT})
    assert update.status_code == 200

    presence = client.post(f"/api/collab/canvases/{canvas_id}/presence",
                           json={"userId": "bob", "cursor": {"x": 1, "y": 2}}).json()["presence"]
    assert presence["cursor"] == {"x": 1, "y": 2}

    assert client.post(f"/api/collab/canvases/{canvas_id}/leave", json={"userId": "bob"}).status_code == 200
    participants = client.get(f"/api/collab/canvases/{canvas_id}/participants").json()["participants"]
    assert [p["userId"] for p in participants] == ["alice"]


def test_unknown_shared_canvas_is_404(client: TestClient) -> None:
    assert client.post("/api/collab/canvases/canvas-nope/join", json={"userId": "bob"}).status_code == 404


def _next_event(websocket, event: str) -> dict:
    message = websocket.receive_json()
    while message["event"] != event:
        message = websocket.receive_json()
    return message


def test_shared_canvas_websocket_relays_presence(canvas: Canvas, hub: CollaborationHub) -> None:
    with TestClient(create_app(canvas, hub)) as client:
        canvas_id = client.post("/api/collab/canvases", json={"userId": "alice"}).json()["canvasId"]
        with client.websocket_connect(f"/ws/{canvas_id}?userId=alice") as websocket:
            websocket.send_json({"event": "presence_update",
                                 "payload": {"presence": {"userId": "alice", "cursor": {"x": 3, "y": 4}}}})
            message = websocket.receive_json()
            assert message["event"] == "presence_update"
            assert message["payload"]["presence"]["cursor"] == {"x": 3, "y": 4}

            websocket.send_json({"event": "bogus", "payload": {}})
            assert websocket.receive_json()["event"] == "error"


def test_websocket_for_unknown_canvas_is_refused(client: TestClient) -> None:
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/canvas-nope"):
            pass


def test_open_invalid_utf8_is_400(client: TestClient, tmp_path: Path) -> None:
    path = tmp_path / "binary.json"
    path.write_bytes(b'{"nodes": [], "canvasName": "\xff"}')
    response = client.post("/api/canvas/open", json={"filePath": str(path)})
    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "import_malformed"


def test_patch_can_clear_comment(client: TestClient) -> None:
    node = _create_node(client)
    commented = client.patch(f"/api/nodes/{node['id']}", json={"comment": "check this"}).json()["node"]
    assert commented["comment"] == "check this"

    cleared = client.patch(f"/api/nodes/{node['id']}", json={"comment": None}).json()["node"]
    assert cleared["comment"] is None
    assert cleared["x"] == node["x"]


def test_socket_messages_act_as_the_connected_user(canvas: Canvas, hub: CollaborationHub) -> None:
    with TestClient(create_app(canvas, hub)) as client:
        canvas_id = client.post("/api/collab/canvases", json={"userId": "alice"}).json()["canvasId"]
        client.post(f"/api/collab/canvases/{canvas_id}/join", json={"userId": "bob"})
        with client.websocket_connect(f"/ws/{canvas_id}?userId=alice") as websocket:
            websocket.send_json({"event": "canvas_update",
                                 "payload": {"data": {"nodes": [], "connections": []}, "updatedBy": "bob"}})
            update = _next_event(websocket, "canvas_update")
            assert update["payload"]["updatedBy"] == "alice"

            websocket.send_json({"event": "user_left", "payload": {"userId": "bob"}})
            assert _next_event(websocket, "user_left")["payload"]["userId"] == "alice"
        assert hub.get(canvas_id).participants == ["bob"]


def test_listen_only_socket_cannot_send(canvas: Canvas, hub: CollaborationHub) -> None:
    with TestClient(create_app(canvas, hub)) as client:
        canvas_id = client.post("/api/collab/canvases", json={"userId": "alice"}).json()["canvasId"]
        with client.websocket_connect(f"/ws/{canvas_id}") as websocket:
            websocket.send_json({"event": "user_left", "payload": {"userId": "alice"}})
            assert websocket.receive_json()["event"] == "error"
        assert hub.get(canvas_id).participants == ["alice"]


def test_socket_for_non_participant_is_refused(client: TestClient) -> None:
    canvas_id = client.post("/api/collab/canvases", json={"userId": "alice"}).json()["canvasId"]
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect(f"/ws/{canvas_id}?userId=mallory"):
            pass
