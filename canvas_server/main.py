"""
Infinite Canvas Server - FastAPI Application

This is the main entry point for the canvas backend.
It provides:
- REST API for the server's canvas (nodes, connections, groups, undo/redo,
  layout, fit-to-screen, import/export, file ops)
- Collaboration API for shared canvases (create/join/update/presence/leave)
- WebSocket channels: /ws for local change notifications and
  /ws/{canvas_id} for a shared canvas's messages
- CORS configuration for local frontend development
"""
import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from canvas_core import config, search
from canvas_core.canvas import Canvas
from canvas_core.collaboration import (
    CANVAS_UPDATE,
    PRESENCE_UPDATE,
    USER_LEFT,
    CollaborationHub,
    generate_user_id,
    graph_data,
)
from canvas_core.errors import (
    CanvasFull,
    CanvasNotFound,
    CollaborationError,
    ImportMalformed,
    LayoutCancelled,
    NotAParticipant,
)
from canvas_core.events import GraphChanged
from canvas_core.models import (
    CreateConnectionRequest,
    CreateGroupRequest,
    CreateNodeRequest,
    UpdateGroupRequest,
    UpdateNodeRequest,
)
from canvas_core import persistence
from canvas_core.validation import validate_graph, validation_summary

from .websocket_manager import LOCAL_CHANNEL, WebSocketManager


# --- Async change notification ---
# Bridge between sync canvas/hub callbacks and async WebSocket broadcasts

async def change_broadcaster(app: FastAPI):
    """Background task that forwards queued messages to WebSocket channels."""
    queue: asyncio.Queue = app.state.outbox
    ws_manager: WebSocketManager = app.state.ws_manager
    while True:
        channel, message = await queue.get()
        await ws_manager.broadcast(channel, message)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan handler for startup/shutdown tasks."""
    broadcaster_task = asyncio.create_task(change_broadcaster(app))

    yield

    # Cleanup
    broadcaster_task.cancel()
    try:
        await broadcaster_task
    except asyncio.CancelledError:
        pass


def create_app(canvas: Optional[Canvas] = None, hub: Optional[CollaborationHub] = None) -> FastAPI:
    """Build the app around a canvas and a collaboration hub (fresh ones by default)."""
    app = FastAPI(
        title="Infinite Canvas API",
        description="Backend API for the infinite-canvas diagramming tool",
        version="1.0.0",
        lifespan=lifespan,
    )

    # CORS for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.canvas = canvas or Canvas()
    app.state.hub = hub or CollaborationHub()
    app.state.ws_manager = WebSocketManager()
    app.state.outbox = asyncio.Queue()

    def on_canvas_change(message: GraphChanged):
        app.state.outbox.put_nowait(
            (LOCAL_CHANNEL, {"type": "canvas_updated", "origin": message.origin.value,
                             "description": message.description})
        )

    def on_channel_message(canvas_id: str, message: dict):
        app.state.outbox.put_nowait((canvas_id, message))

    app.state.canvas.bus.subscribe(GraphChanged, on_canvas_change)
    app.state.hub.subscribe(on_channel_message)

    _register_routes(app)
    return app


def collaboration_http_error(e: CollaborationError) -> HTTPException:
    if isinstance(e, CanvasNotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, (CanvasFull, NotAParticipant)):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


def import_http_error(e: ImportMalformed) -> HTTPException:
    return HTTPException(status_code=400, detail=e.to_dict())


def _state(canvas: Canvas) -> dict:
    return {
        **persistence.to_document(canvas).to_json_dict(),
        "selection": list(canvas.selection),
        "canUndo": canvas.history.can_undo,
        "canRedo": canvas.history.can_redo,
    }


def _dump(model) -> dict:
    return model.model_dump(mode="json", by_alias=True)


# --- Request models ---

class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


class RenameCanvasRequest(CamelModel):
    name: str


class FileRequest(CamelModel):
    file_path: Optional[str] = None


class OrganizeRequest(CamelModel):
    node_ids: list[str] = Field(default_factory=list)


class ViewportRequest(CamelModel):
    width: float
    height: float


class SelectionRequest(CamelModel):
    node_ids: list[str] = Field(default_factory=list)


class CreateSharedCanvasRequest(CamelModel):
    name: Optional[str] = None
    data: Optional[dict[str, Any]] = None  # defaults to the server canvas
    user_id: Optional[str] = None


class JoinRequest(CamelModel):
    user_id: Optional[str] = None
    user_name: Optional[str] = None


class UpdateSharedCanvasRequest(CamelModel):
    user_id: str
    data: dict[str, Any]


class Cursor(BaseModel):
    x: float
    y: float


class PresenceRequest(CamelModel):
    user_id: str
    cursor: Optional[Cursor] = None
    user_name: Optional[str] = None


class LeaveRequest(CamelModel):
    user_id: str


def _canvas(request: Request) -> Canvas:
    return request.app.state.canvas


def _hub(request: Request) -> CollaborationHub:
    return request.app.state.hub


def _register_routes(app: FastAPI):

    # --- Health Check ---

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "ok", "connections": app.state.ws_manager.connection_count}

    # --- Canvas State ---

    @app.get("/api/canvas")
    async def get_canvas(request: Request):
        """Get the current canvas state."""
        return _state(_canvas(request))

    @app.patch("/api/canvas")
    async def rename_canvas(request: Request, body: RenameCanvasRequest):
        canvas = _canvas(request)
        canvas.name = body.name
        return {"success": True, "canvasName": canvas.name}

    @app.post("/api/canvas/selection")
    async def set_selection(request: Request, body: SelectionRequest):
        canvas = _canvas(request)
        canvas.select(body.node_ids)
        return {"success": True, "selection": list(canvas.selection)}

    @app.get("/api/canvas/validate")
    async def validate_canvas(request: Request):
        """
        Validate the current canvas for structural issues.

        Returns a list of issues (errors, warnings, info) and a summary.
        """
        store = _canvas(request).store
        issues = validate_graph(store.nodes, store.connections, store.groups)
        return {
            "success": True,
            "issues": [issue.to_dict() for issue in issues],
            "summary": validation_summary(issues),
        }

    # --- Import / Export / Files ---

    @app.get("/api/canvas/export")
    async def export_canvas(request: Request):
        return persistence.to_document(_canvas(request)).to_json_dict()

    @app.post("/api/canvas/import")
    async def import_canvas(request: Request, body: dict[str, Any]):
        """Replace the canvas with an exported document (all-or-nothing)."""
        canvas = _canvas(request)
        try:
            persistence.import_canvas(canvas, body)
        except ImportMalformed as e:
            raise import_http_error(e)
        return {"success": True, "canvas": _state(canvas)}

    @app.post("/api/canvas/open")
    async def open_canvas(request: Request, body: FileRequest):
        """Open a canvas from a JSON file."""
        if not body.file_path:
            raise HTTPException(status_code=400, detail="filePath is required")
        canvas = _canvas(request)
        try:
            persistence.open_canvas(canvas, body.file_path)
        except FileNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except ImportMalformed as e:
            raise import_http_error(e)
        return {"success": True, "canvas": _state(canvas)}

    @app.post("/api/canvas/save")
    async def save_canvas(request: Request, body: FileRequest):
        """Save the canvas to a JSON file."""
        if not body.file_path:
            raise HTTPException(status_code=400, detail="filePath is required")
        try:
            path = persistence.save_canvas(_canvas(request), body.file_path)
        except OSError as e:
            raise HTTPException(status_code=500, detail=f"Failed to save: {e}")
        return {"success": True, "filePath": str(path)}

    # --- Undo/Redo ---

    @app.post("/api/undo")
    async def undo(request: Request):
        """Undo the last action."""
        canvas = _canvas(request)
        if canvas.undo() is not None:
            return {"success": True, "canvas": _state(canvas)}
        return {"success": False, "message": "Nothing to undo"}

    @app.post("/api/redo")
    async def redo(request: Request):
        """Redo the last undone action."""
        canvas = _canvas(request)
        if canvas.redo() is not None:
            return {"success": True, "canvas": _state(canvas)}
        return {"success": False, "message": "Nothing to redo"}

    # --- Node Operations ---

    @app.post("/api/nodes")
    async def create_node(request: Request, body: CreateNodeRequest):
        """Create a new node with default content."""
        node = _canvas(request).store.create_node(body.x, body.y)
        return {"success": True, "node": _dump(node)}

    # Search endpoint MUST be before the parameterized route
    @app.get("/api/nodes/search")
    async def search_nodes(
        request: Request,
        q: Optional[str] = Query(default=None),
        tag: Optional[str] = Query(default=None),
    ):
        """Search nodes by content text and/or tag."""
        nodes = _canvas(request).store.nodes
        if tag:
            nodes = search.nodes_with_tag(nodes, tag)
        if q:
            nodes = search.search_by_content(nodes, q)
        return {"success": True, "nodes": [_dump(n) for n in nodes]}

    @app.get("/api/tags")
    async def list_tags(request: Request):
        return {"success": True, "tags": search.all_tags(_canvas(request).store.nodes)}

    @app.get("/api/nodes/{node_id}")
    async def get_node(request: Request, node_id: str):
        """Get a specific node."""
        node = _canvas(request).store.get_node(node_id)
        if node:
            return {"success": True, "node": _dump(node)}
        raise HTTPException(status_code=404, detail="Node not found")

    @app.patch("/api/nodes/{node_id}")
    async def update_node(request: Request, node_id: str, body: UpdateNodeRequest):
        """Update a node (partial)."""
        try:
            node = _canvas(request).store.update_node(node_id, **body.changes())
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if node:
            return {"success": True, "node": _dump(node)}
        raise HTTPException(status_code=404, detail="Node not found")

    @app.delete("/api/nodes/{node_id}")
    async def delete_node(request: Request, node_id: str):
        """Delete a node, its connections and its group membership."""
        if _canvas(request).store.delete_node(node_id):
            return {"success": True}
        raise HTTPException(status_code=404, detail="Node not found")

    @app.post("/api/nodes/{node_id}/duplicate")
    async def duplicate_node(request: Request, node_id: str):
        copy = _canvas(request).store.duplicate_node(node_id)
        if copy:
            return {"success": True, "node": _dump(copy)}
        raise HTTPException(status_code=404, detail="Node not found")

    # --- Connection Operations ---

    @app.post("/api/connections")
    async def create_connection(request: Request, body: CreateConnectionRequest):
        """Connect two nodes."""
        store = _canvas(request).store
        for node_id in (body.from_node_id, body.to_node_id):
            if not store.has_node(node_id):
                raise HTTPException(status_code=404, detail=f"Node not found: {node_id}")

        connection = store.create_connection(
            body.from_node_id, body.to_node_id, body.from_point, body.to_point
        )
        if connection is None:
            raise HTTPException(status_code=409, detail="Self-connection or nodes already connected")
        return {"success": True, "connection": _dump(connection)}

    @app.get("/api/connections/{connection_id}")
    async def get_connection(request: Request, connection_id: str):
        connection = _canvas(request).store.get_connection(connection_id)
        if connection:
            return {"success": True, "connection": _dump(connection)}
        raise HTTPException(status_code=404, detail="Connection not found")

    @app.delete("/api/connections/{connection_id}")
    async def delete_connection(request: Request, connection_id: str):
        """Delete a connection."""
        if _canvas(request).store.delete_connection(connection_id):
            return {"success": True}
        raise HTTPException(status_code=404, detail="Connection not found")

    # --- Group Operations ---

    @app.post("/api/groups")
    async def create_group(request: Request, body: CreateGroupRequest):
        """Create a group, moving the listed nodes into it."""
        group = _canvas(request).create_group(body.name, body.color, body.node_ids)
        return {"success": True, "group": _dump(group)}

    @app.patch("/api/groups/{group_id}")
    async def update_group(request: Request, group_id: str, body: UpdateGroupRequest):
        group = _canvas(request).store.update_group(
            group_id, name=body.name, color=body.color, node_ids=body.node_ids
        )
        if group:
            return {"success": True, "group": _dump(group)}
        raise HTTPException(status_code=404, detail="Group not found")

    @app.delete("/api/groups/{group_id}")
    async def delete_group(request: Request, group_id: str):
        """Delete a group; its nodes stay."""
        if _canvas(request).store.delete_group(group_id):
            return {"success": True}
        raise HTTPException(status_code=404, detail="Group not found")

    # --- Layout / Viewport ---

    @app.post("/api/layout/organize")
    async def organize(request: Request, body: OrganizeRequest):
        """Force-directed layout of the given nodes (or the selection), one undo step."""
        canvas = _canvas(request)
        node_ids = body.node_ids or list(canvas.selection)
        try:
            result = await canvas.organize_async(node_ids)
        except LayoutCancelled as e:
            raise HTTPException(status_code=409, detail=str(e))
        if result is None:
            raise HTTPException(status_code=400, detail="Need at least 2 nodes to organize")
        return {
            "success": True,
            "iterations": result.iterations,
            "converged": result.converged,
            "positions": {nid: {"x": x, "y": y} for nid, (x, y) in result.positions.items()},
        }

    @app.post("/api/viewport/fit")
    async def fit_to_screen(request: Request, body: ViewportRequest):
        """Transform that fits every node into a viewport of the given size."""
        canvas = _canvas(request)
        canvas.set_viewport(body.width, body.height)
        if not canvas.fit_to_screen():
            raise HTTPException(status_code=400, detail="Canvas has no nodes")
        return {"success": True, "transform": _dump(canvas.transform)}

    # --- Collaboration ---

    @app.post("/api/collab/canvases")
    async def create_shared_canvas(request: Request, body: CreateSharedCanvasRequest):
        """Share canvas data (the server canvas by default); the creator joins it."""
        canvas = _canvas(request)
        user_id = body.user_id or generate_user_id()
        data = body.data if body.data is not None else graph_data(canvas.store.snapshot())
        try:
            canvas_id = _hub(request).create(body.name or canvas.name, data, user_id)
        except ImportMalformed as e:
            raise import_http_error(e)
        return {"success": True, "canvasId": canvas_id, "userId": user_id}

    @app.post("/api/collab/canvases/{canvas_id}/join")
    async def join_shared_canvas(request: Request, canvas_id: str, body: JoinRequest):
        user_id = body.user_id or generate_user_id()
        try:
            result = _hub(request).join(canvas_id, user_id, body.user_name)
        except CollaborationError as e:
            raise collaboration_http_error(e)
        return {"success": True, "userId": user_id, **result.to_dict()}

    @app.put("/api/collab/canvases/{canvas_id}")
    async def update_shared_canvas(request: Request, canvas_id: str, body: UpdateSharedCanvasRequest):
        try:
            _hub(request).update_data(canvas_id, body.data, body.user_id)
        except CollaborationError as e:
            raise collaboration_http_error(e)
        except ImportMalformed as e:
            raise import_http_error(e)
        return {"success": True}

    @app.post("/api/collab/canvases/{canvas_id}/presence")
    async def update_presence(request: Request, canvas_id: str, body: PresenceRequest):
        cursor = (body.cursor.x, body.cursor.y) if body.cursor else None
        try:
            presence = _hub(request).update_presence(canvas_id, body.user_id, cursor, body.user_name)
        except CollaborationError as e:
            raise collaboration_http_error(e)
        return {"success": True, "presence": presence.to_dict()}

    @app.get("/api/collab/canvases/{canvas_id}/participants")
    async def list_participants(request: Request, canvas_id: str):
        try:
            participants = _hub(request).participants(canvas_id)
        except CollaborationError as e:
            raise collaboration_http_error(e)
        return {"success": True, "participants": [p.to_dict() for p in participants]}

    @app.post("/api/collab/canvases/{canvas_id}/leave")
    async def leave_shared_canvas(request: Request, canvas_id: str, body: LeaveRequest):
        try:
            _hub(request).leave(canvas_id, body.user_id)
        except CollaborationError as e:
            raise collaboration_http_error(e)
        return {"success": True}

    # --- WebSocket ---

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """
        WebSocket endpoint for local canvas updates.

        Clients connect here to receive canvas_updated events.
        """
        ws_manager: WebSocketManager = app.state.ws_manager
        await ws_manager.connect(websocket)

        try:
            while True:
                data = await websocket.receive_text()
                if data == "ping":
                    await websocket.send_text('{"type": "pong"}')
        except WebSocketDisconnect:
            await ws_manager.disconnect(websocket)

    @app.websocket("/ws/{canvas_id}")
    async def shared_canvas_socket(
        websocket: WebSocket,
        canvas_id: str,
        user_id: Optional[str] = Query(default=None, alias="userId"),
    ):
        """
        Channel of a shared canvas.

        Receives canvas_update / presence_update / user_left messages. A socket
        opened with ?userId= of a participant may also send messages of the
        same shape; they are applied as that participant whatever user id
        the payload claims. Sockets without a userId only listen.
        """
        ws_manager: WebSocketManager = app.state.ws_manager
        hub: CollaborationHub = app.state.hub
        try:
            shared = hub.get(canvas_id)
        except CanvasNotFound:
            await websocket.close(code=4404)
            return
        if user_id is not None and user_id not in shared.participants:
            await websocket.close(code=4403)
            return

        await ws_manager.connect(websocket, canvas_id)
        try:
            while True:
                data = await websocket.receive_text()
                if data == "ping":
                    await websocket.send_text('{"type": "pong"}')
                    continue
                try:
                    if user_id is None:
                        raise ValueError("Read-only connection; reconnect with ?userId= to send")
                    _handle_client_message(hub, canvas_id, user_id, data)
                except (ValueError, KeyError, TypeError, CollaborationError, ImportMalformed) as e:
                    logger.debug("Rejected message on {}: {}", canvas_id, e)
                    await websocket.send_json({"event": "error", "payload": {"message": str(e)}})
        except WebSocketDisconnect:
            await ws_manager.disconnect(websocket, canvas_id)


def _handle_client_message(hub: CollaborationHub, canvas_id: str, user_id: str, text: str):
    """Apply one client->hub channel message (JSON text) on behalf of user_id."""
    message = json.loads(text)
    event, payload = message["event"], message.get("payload") or {}
    if event == CANVAS_UPDATE:
        hub.update_data(canvas_id, payload["data"], user_id)
    elif event == PRESENCE_UPDATE:
        presence = payload["presence"]
        cursor = presence.get("cursor")
        hub.update_presence(canvas_id, user_id,
                            (cursor["x"], cursor["y"]) if cursor else None, presence.get("userName"))
    elif event == USER_LEFT:
        hub.leave(canvas_id, user_id)
    else:
        raise ValueError(f"Unknown event: {event}")


app = create_app()


# --- Run with uvicorn ---

if __name__ == "__main__":
    import uvicorn
    from canvas_core.logging_config import configure_logging

    configure_logging()
    uvicorn.run(app, host=config.HOST, port=config.PORT)
