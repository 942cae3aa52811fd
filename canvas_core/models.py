"""
Core data models for canvases.

These models define the canonical schema for a canvas:
- Nodes with position, size, typed content, tags and an optional group
- Connections between two nodes, optionally anchored to a side of each
- Groups clustering nodes under a name and color
- The viewport transform and the transient selection rectangle

Field Naming Convention:
- Python attributes are snake_case
- JSON serialization outputs camelCase (`fromNodeId`, `groupId`, `createdAt`)
  to stay compatible with exported canvas files
- Group members serialize as `nodes` for the same reason

All graph entities are frozen. Mutations produce replacements via
`model_copy(update=...)` or `model_validate`, so snapshots can share
entities instead of deep-copying them.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union
import uuid

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


# Node size floor (prevents degenerate geometry)
MIN_NODE_WIDTH = 100.0
MIN_NODE_HEIGHT = 60.0
DEFAULT_NODE_WIDTH = 200.0
DEFAULT_NODE_HEIGHT = 120.0
DEFAULT_NODE_COLOR = "#ffffff"
DEFAULT_NODE_TEXT = '<p style="font-size: 14px;">Double-click to edit</p>'
DEFAULT_CONNECTION_COLOR = "#000000"

# Viewport zoom bounds
MIN_SCALE = 0.1
MAX_SCALE = 3.0

DEFAULT_CANVAS_NAME = "Untitled Canvas"


class AnchorSide(str, Enum):
    """Sides of a node a connection can attach to."""
    TOP = "top"
    RIGHT = "right"
    BOTTOM = "bottom"
    LEFT = "left"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_node_id() -> str:
    """Generate a unique node ID."""
    return f"node-{uuid.uuid4().hex[:12]}"


def generate_connection_id() -> str:
    """Generate a unique connection ID."""
    return f"conn-{uuid.uuid4().hex[:12]}"


def generate_group_id() -> str:
    """Generate a unique group ID."""
    return f"group-{uuid.uuid4().hex[:12]}"


class FrozenModel(BaseModel):
    """Immutable model with camelCase JSON aliases."""
    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )


# --- Content variants ---

class TextContent(FrozenModel):
    """Rich text (HTML or plain string)."""
    type: Literal["text"] = "text"
    value: str = DEFAULT_NODE_TEXT


class ImageContent(FrozenModel):
    """One or more image references."""
    type: Literal["image"] = "image"
    images: tuple[str, ...] = ()
    title: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def convert_legacy_value(cls, data: Any) -> Any:
        """Older files store a single image URL in `value`."""
        if isinstance(data, dict) and not data.get("images") and data.get("value"):
            data = {**data, "images": [data["value"]]}
        return data


class Link(FrozenModel):
    url: str
    title: str = ""


class LinkContent(FrozenModel):
    """One or more titled links."""
    type: Literal["link"] = "link"
    links: tuple[Link, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def convert_legacy_value(cls, data: Any) -> Any:
        """Older files store a single URL in `value` with an optional `title`."""
        if isinstance(data, dict) and not data.get("links") and data.get("value"):
            data = {**data, "links": [{"url": data["value"], "title": data.get("title") or ""}]}
        return data


class VideoContent(FrozenModel):
    """One or more video references."""
    type: Literal["video"] = "video"
    videos: tuple[str, ...] = ()
    title: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def convert_legacy_value(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("videos") and data.get("value"):
            data = {**data, "videos": [data["value"]]}
        return data


NodeContent = Annotated[
    Union[TextContent, ImageContent, LinkContent, VideoContent],
    Field(discriminator="type"),
]


def content_text(content: NodeContent) -> str:
    """Flatten any content variant to searchable text."""
    if isinstance(content, TextContent):
        return content.value
    if isinstance(content, ImageContent):
        return " ".join([content.title or "", *content.images])
    if isinstance(content, LinkContent):
        return " ".join(f"{link.title} {link.url}" for link in content.links)
    if isinstance(content, VideoContent):
        return " ".join([content.title or "", *content.videos])
    raise TypeError(f"Unknown content variant: {type(content).__name__}")


# --- Graph entities ---

class Node(FrozenModel):
    """A positioned, sized content unit on the canvas."""
    id: str = Field(default_factory=generate_node_id)
    x: float = 0
    y: float = 0
    width: float = DEFAULT_NODE_WIDTH
    height: float = DEFAULT_NODE_HEIGHT
    content: NodeContent = Field(default_factory=TextContent)
    group_id: Optional[str] = None
    color: str = DEFAULT_NODE_COLOR
    tags: frozenset[str] = frozenset()
    comment: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("width")
    @classmethod
    def clamp_width(cls, value: float) -> float:
        return max(MIN_NODE_WIDTH, value)

    @field_validator("height")
    @classmethod
    def clamp_height(cls, value: float) -> float:
        return max(MIN_NODE_HEIGHT, value)

    @field_validator("created_at", "updated_at")
    @classmethod
    def assume_utc(cls, value: datetime) -> datetime:
        """Naive timestamps from older files are treated as UTC."""
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    @model_validator(mode="after")
    def check_timestamps(self) -> "Node":
        if self.updated_at < self.created_at:
            raise ValueError("updatedAt must not precede createdAt")
        return self

    @field_serializer("tags")
    def serialize_tags(self, tags: frozenset[str]) -> list[str]:
        return sorted(tags)

    def center(self) -> tuple[float, float]:
        """Get the center point of the node."""
        return (self.x + self.width / 2, self.y + self.height / 2)

    def bounds(self) -> tuple[float, float, float, float]:
        """Get the bounding box (x, y, right, bottom)."""
        return (self.x, self.y, self.x + self.width, self.y + self.height)


class Connection(FrozenModel):
    """
    A directed link between two nodes.

    Accepts `from`/`to` and `source`/`target` on input for backward compatibility.
    """
    id: str = Field(default_factory=generate_connection_id)
    from_node_id: str
    to_node_id: str
    from_point: Optional[AnchorSide] = None  # None means the side is chosen at render time
    to_point: Optional[AnchorSide] = None
    color: str = DEFAULT_CONNECTION_COLOR

    @model_validator(mode="before")
    @classmethod
    def convert_legacy_fields(cls, data: Any) -> Any:
        """Convert legacy endpoint names and drop non-side anchors ("center", "auto")."""
        if isinstance(data, dict):
            data = dict(data)
            for legacy, current in (("from", "fromNodeId"), ("source", "fromNodeId"),
                                    ("to", "toNodeId"), ("target", "toNodeId")):
                if legacy in data and current not in data and _snake(current) not in data:
                    data[current] = data.pop(legacy)
            for key in ("fromPoint", "toPoint", "from_point", "to_point"):
                if key in data and data[key] not in [side.value for side in AnchorSide]:
                    data[key] = None
        return data

    def pair_key(self) -> frozenset[str]:
        """Unordered node pair this connection links."""
        return frozenset((self.from_node_id, self.to_node_id))

    def touches(self, node_id: str) -> bool:
        return node_id in (self.from_node_id, self.to_node_id)


def _snake(name: str) -> str:
    return "".join(f"_{c.lower()}" if c.isupper() else c for c in name)


class Group(FrozenModel):
    """A named, colored cluster of nodes."""
    id: str = Field(default_factory=generate_group_id)
    name: str = "Group"
    color: str = "#3b82f6"
    node_ids: tuple[str, ...] = Field(default=(), alias="nodes")

    @field_validator("node_ids")
    @classmethod
    def dedupe_members(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(dict.fromkeys(value))


def default_groups() -> list[Group]:
    """Preset groups every new canvas starts with."""
    return [
        Group(id="coral", name="Coral Group", color="#f87171"),
        Group(id="blue", name="Blue Group", color="#3b82f6"),
        Group(id="green", name="Green Group", color="#10b981"),
    ]


# --- Viewport state (never snapshotted) ---

class Transform(FrozenModel):
    """Pan/zoom state mapping world coordinates to screen coordinates."""
    x: float = 0
    y: float = 0
    scale: float = 1.0

    @field_validator("scale")
    @classmethod
    def clamp_scale(cls, value: float) -> float:
        return min(MAX_SCALE, max(MIN_SCALE, value))


class SelectionBox(FrozenModel):
    """Drag-select rectangle in world coordinates."""
    start_x: float = 0
    start_y: float = 0
    end_x: float = 0
    end_y: float = 0
    is_active: bool = False

    def normalized(self) -> tuple[float, float, float, float]:
        """Get (min_x, min_y, max_x, max_y) regardless of drag direction."""
        return (
            min(self.start_x, self.end_x),
            min(self.start_y, self.end_y),
            max(self.start_x, self.end_x),
            max(self.start_y, self.end_y),
        )


@dataclass(frozen=True)
class GraphSnapshot:
    """Immutable capture of the graph collections used by undo/redo."""
    nodes: tuple[Node, ...] = ()
    connections: tuple[Connection, ...] = ()
    groups: tuple[Group, ...] = ()
    taken_at: datetime = field(default_factory=utcnow, compare=False)


class CanvasDocument(FrozenModel):
    """
    The persisted/exported canvas structure.
    This is what gets saved to/loaded from JSON files.
    """
    canvas_name: str = DEFAULT_CANVAS_NAME
    nodes: list[Node] = Field(default_factory=list)
    connections: list[Connection] = Field(default_factory=list)
    groups: list[Group] = Field(default_factory=list)
    transform: Transform = Field(default_factory=Transform)

    def to_json_dict(self) -> dict:
        """Convert to JSON-serializable dict with camelCase field names."""
        return self.model_dump(mode="json", by_alias=True)


# --- API Request Models ---

class CreateNodeRequest(BaseModel):
    """Request to create a new node."""
    x: float = 0
    y: float = 0


class UpdateNodeRequest(BaseModel):
    """Request to update an existing node (partial update)."""
    x: Optional[float] = None
    y: Optional[float] = None
    width: Optional[float] = None
    height: Optional[float] = None
    content: Optional[NodeContent] = None
    color: Optional[str] = None
    tags: Optional[list[str]] = None
    comment: Optional[str] = None

    def changes(self) -> dict:
        """Only the fields the client actually sent; an explicit null comment clears it."""
        sent = self.model_dump(exclude_unset=True)
        return {k: v for k, v in sent.items() if v is not None or k == "comment"}


class CreateConnectionRequest(BaseModel):
    """Request to create a new connection."""
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    from_node_id: str
    to_node_id: str
    from_point: Optional[AnchorSide] = None
    to_point: Optional[AnchorSide] = None


class CreateGroupRequest(BaseModel):
    """Request to create a group from existing nodes."""
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    name: str
    color: str = "#3b82f6"
    node_ids: list[str] = Field(default_factory=list)


class UpdateGroupRequest(BaseModel):
    """Request to update a group (partial update)."""
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    name: Optional[str] = None
    color: Optional[str] = None
    node_ids: Optional[list[str]] = None
