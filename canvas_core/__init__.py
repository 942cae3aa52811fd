"""
Infinite Canvas Core - graph engine for the infinite-canvas diagramming tool.

Data model, graph store, undo/redo history, viewport geometry, force-directed
layout and the interaction state machine, shared by the HTTP server and CLI.
"""

from .models import (
    # Enums
    AnchorSide,
    # Content variants
    TextContent,
    ImageContent,
    Link,
    LinkContent,
    VideoContent,
    # Core models
    Node,
    Connection,
    Group,
    Transform,
    SelectionBox,
    GraphSnapshot,
    CanvasDocument,
    # Request models (for API)
    CreateNodeRequest,
    UpdateNodeRequest,
    CreateConnectionRequest,
    CreateGroupRequest,
    UpdateGroupRequest,
)

from .errors import (
    CanvasError,
    ImportMalformed,
    StorageExhausted,
    LayoutCancelled,
    CollaborationError,
    CanvasNotFound,
    CanvasFull,
    NotAParticipant,
)
from .events import EventBus, ChangeOrigin, GraphChanged
from .store import GraphStore
from .history import HistoryManager
from .canvas import Canvas
from .validation import validate_graph, ValidationIssue, IssueSeverity
from .layout import force_layout, organize, organize_async, LayoutResult, LayoutTask
from .interaction import InteractionController, InteractionState
from .persistence import export_canvas, import_canvas, save_canvas, open_canvas, AutoSaver
from .collaboration import CollaborationHub, CollaborationSession

__all__ = [
    # Enums
    "AnchorSide",
    # Models
    "TextContent",
    "ImageContent",
    "Link",
    "LinkContent",
    "VideoContent",
    "Node",
    "Connection",
    "Group",
    "Transform",
    "SelectionBox",
    "GraphSnapshot",
    "CanvasDocument",
    # Request models
    "CreateNodeRequest",
    "UpdateNodeRequest",
    "CreateConnectionRequest",
    "CreateGroupRequest",
    "UpdateGroupRequest",
    # Errors
    "CanvasError",
    "ImportMalformed",
    "StorageExhausted",
    "LayoutCancelled",
    "CollaborationError",
    "CanvasNotFound",
    "CanvasFull",
    "NotAParticipant",
    # State
    "EventBus",
    "ChangeOrigin",
    "GraphChanged",
    "GraphStore",
    "HistoryManager",
    "Canvas",
    # Validation
    "validate_graph",
    "ValidationIssue",
    "IssueSeverity",
    # Layout
    "force_layout",
    "organize",
    "organize_async",
    "LayoutResult",
    "LayoutTask",
    # Interaction
    "InteractionController",
    "InteractionState",
    # Persistence
    "export_canvas",
    "import_canvas",
    "save_canvas",
    "open_canvas",
    "AutoSaver",
    # Collaboration
    "CollaborationHub",
    "CollaborationSession",
]
