"""
Canvas geometry - pure functions for the viewport and connection routing.

Provides:
- screen <-> world conversion under a pan/zoom Transform
- zoom about a screen point (the world point under the cursor stays put)
- fit-to-bounds for a set of nodes
- anchor point resolution on node sides, with a smart fallback side
- cubic bezier control points for connection curves
- rectangle intersection helpers used by hit-testing and layout

Nothing here mutates its inputs.
"""

import math
from dataclasses import dataclass
from typing import Iterable, NamedTuple, Optional, Sequence, TYPE_CHECKING

from .models import MAX_SCALE, MIN_SCALE, AnchorSide, Transform

if TYPE_CHECKING:
    from .models import Connection, Node, SelectionBox


ZOOM_STEP = 1.2          # zoom in/out buttons and shortcuts
WHEEL_ZOOM_IN = 1.1
WHEEL_ZOOM_OUT = 0.9
FIT_PADDING = 100
FIT_MAX_ZOOM = 2.0
CONTROL_POINT_FACTOR = 0.4
CONTROL_POINT_CAP = 120


class Point(NamedTuple):
    x: float
    y: float


Rect = tuple[float, float, float, float]  # (left, top, right, bottom)


# --- Viewport ---

def screen_to_world(point: tuple[float, float], transform: Transform) -> Point:
    """(screen - translation) / scale"""
    return Point(
        (point[0] - transform.x) / transform.scale,
        (point[1] - transform.y) / transform.scale,
    )


def world_to_screen(point: tuple[float, float], transform: Transform) -> Point:
    return Point(
        point[0] * transform.scale + transform.x,
        point[1] * transform.scale + transform.y,
    )


def clamp_scale(scale: float) -> float:
    return min(MAX_SCALE, max(MIN_SCALE, scale))


def zoom_at_point(transform: Transform, screen_point: tuple[float, float], factor: float) -> Transform:
    """
    Scale by factor (clamped to bounds) keeping the world point under
    screen_point at the same screen position.
    """
    world = screen_to_world(screen_point, transform)
    scale = clamp_scale(transform.scale * factor)
    return Transform(
        x=screen_point[0] - world.x * scale,
        y=screen_point[1] - world.y * scale,
        scale=scale,
    )


def pan(transform: Transform, dx: float, dy: float) -> Transform:
    return Transform(x=transform.x + dx, y=transform.y + dy, scale=transform.scale)


def bounding_box(nodes: Iterable["Node"]) -> Optional[Rect]:
    """Axis-aligned box around all node rectangles, or None for no nodes."""
    boxes = [n.bounds() for n in nodes]
    if not boxes:
        return None
    return (
        min(b[0] for b in boxes),
        min(b[1] for b in boxes),
        max(b[2] for b in boxes),
        max(b[3] for b in boxes),
    )


def fit_to_bounds(
    nodes: Iterable["Node"],
    viewport_width: float,
    viewport_height: float,
    padding: float = FIT_PADDING,
    max_zoom: float = FIT_MAX_ZOOM,
) -> Optional[Transform]:
    """
    Transform that shows every node, centered, with padding around the content.

    Returns None when there are no nodes or the viewport is empty.
    """
    box = bounding_box(nodes)
    if box is None or viewport_width <= 0 or viewport_height <= 0:
        return None

    min_x, min_y = box[0] - padding, box[1] - padding
    content_width = box[2] + padding - min_x
    content_height = box[3] + padding - min_y

    scale = clamp_scale(min(viewport_width / content_width, viewport_height / content_height, max_zoom))
    return Transform(
        x=(viewport_width - content_width * scale) / 2 - min_x * scale,
        y=(viewport_height - content_height * scale) / 2 - min_y * scale,
        scale=scale,
    )


# --- Anchors ---

def side_midpoint(node: "Node", side: AnchorSide | str) -> Point:
    """Midpoint of one side of the node rectangle."""
    side = AnchorSide(side)
    if side == AnchorSide.TOP:
        return Point(node.x + node.width / 2, node.y)
    if side == AnchorSide.RIGHT:
        return Point(node.x + node.width, node.y + node.height / 2)
    if side == AnchorSide.BOTTOM:
        return Point(node.x + node.width / 2, node.y + node.height)
    return Point(node.x, node.y + node.height / 2)


def smart_side(node: "Node", other: "Node") -> AnchorSide:
    """Side of node facing other, from the angle between their centers."""
    (cx, cy), (ox, oy) = node.center(), other.center()
    degrees = math.degrees(math.atan2(oy - cy, ox - cx))
    if -45 <= degrees <= 45:
        return AnchorSide.RIGHT
    if 45 < degrees <= 135:
        return AnchorSide.BOTTOM
    if degrees > 135 or degrees <= -135:
        return AnchorSide.LEFT
    return AnchorSide.TOP


def anchor_point(node: "Node", side: Optional[AnchorSide | str], other: Optional["Node"] = None) -> Point:
    """
    Where a connection attaches to node.

    With no stored side, the side facing `other` is used (legacy
    connections); with neither, the node center.
    """
    if side:
        return side_midpoint(node, side)
    if other is not None:
        return side_midpoint(node, smart_side(node, other))
    return Point(*node.center())


def best_target_side(source: "Node", target: "Node", source_side: Optional[AnchorSide | str]) -> AnchorSide:
    """
    Side of target to attach to when a connection is completed.

    Uses the side opposite source_side when the target lies in that
    direction, otherwise the side facing the source along the dominant axis.
    """
    (sx, sy), (tx, ty) = source.center(), target.center()
    dx, dy = tx - sx, ty - sy

    if source_side == AnchorSide.RIGHT and dx > 0:
        return AnchorSide.LEFT
    if source_side == AnchorSide.LEFT and dx < 0:
        return AnchorSide.RIGHT
    if source_side == AnchorSide.BOTTOM and dy > 0:
        return AnchorSide.TOP
    if source_side == AnchorSide.TOP and dy < 0:
        return AnchorSide.BOTTOM

    if abs(dx) > abs(dy):
        return AnchorSide.LEFT if dx > 0 else AnchorSide.RIGHT
    return AnchorSide.TOP if dy > 0 else AnchorSide.BOTTOM


# --- Connection curves ---

_OUTWARD = {
    AnchorSide.TOP: (0, -1),
    AnchorSide.RIGHT: (1, 0),
    AnchorSide.BOTTOM: (0, 1),
    AnchorSide.LEFT: (-1, 0),
}


def bezier_control_points(
    from_anchor: tuple[float, float],
    to_anchor: tuple[float, float],
    from_side: Optional[AnchorSide | str] = None,
    to_side: Optional[AnchorSide | str] = None,
    factor: float = CONTROL_POINT_FACTOR,
    cap: float = CONTROL_POINT_CAP,
) -> tuple[Point, Point]:
    """
    Control points for a cubic curve between two anchors.

    Offset magnitude is min(distance * factor, cap). Each control point
    moves outward along its anchor's side; an unset side follows the
    dominant axis of the from->to vector.
    """
    dx = to_anchor[0] - from_anchor[0]
    dy = to_anchor[1] - from_anchor[1]
    offset = min(math.hypot(dx, dy) * factor, cap)

    def direction(side, sign: int) -> tuple[float, float]:
        if side:
            return _OUTWARD[AnchorSide(side)]
        if abs(dx) > abs(dy):
            return (sign * (1 if dx > 0 else -1), 0)
        return (0, sign * (1 if dy > 0 else -1))

    ux1, uy1 = direction(from_side, 1)
    ux2, uy2 = direction(to_side, -1)
    return (
        Point(from_anchor[0] + ux1 * offset, from_anchor[1] + uy1 * offset),
        Point(to_anchor[0] + ux2 * offset, to_anchor[1] + uy2 * offset),
    )


@dataclass(frozen=True)
class BezierPath:
    """Cubic curve from start to end."""
    start: Point
    control1: Point
    control2: Point
    end: Point

    def to_svg(self) -> str:
        return (f"M {self.start.x} {self.start.y} "
                f"C {self.control1.x} {self.control1.y}, "
                f"{self.control2.x} {self.control2.y}, {self.end.x} {self.end.y}")

    def point_at(self, t: float) -> Point:
        u = 1 - t
        return Point(
            u ** 3 * self.start.x + 3 * u * u * t * self.control1.x
            + 3 * u * t * t * self.control2.x + t ** 3 * self.end.x,
            u ** 3 * self.start.y + 3 * u * u * t * self.control1.y
            + 3 * u * t * t * self.control2.y + t ** 3 * self.end.y,
        )


def connection_path(connection: "Connection", from_node: "Node", to_node: "Node") -> BezierPath:
    """Curve for a stored connection between its two nodes."""
    start = anchor_point(from_node, connection.from_point, to_node)
    end = anchor_point(to_node, connection.to_point, from_node)
    c1, c2 = bezier_control_points(start, end, connection.from_point, connection.to_point)
    return BezierPath(start, c1, c2, end)


def preview_path(from_node: "Node", from_side: Optional[AnchorSide | str], pointer: tuple[float, float]) -> BezierPath:
    """Curve from an anchor to the pointer while a connection is being drawn."""
    start = anchor_point(from_node, from_side)
    end = Point(*pointer)
    c1, c2 = bezier_control_points(start, end, from_side, None)
    return BezierPath(start, c1, c2, end)


# --- Rectangles ---

def overlap(a: Rect, b: Rect) -> tuple[float, float]:
    """Overlap extent of two rectangles on each axis (0 when apart)."""
    return (
        max(0.0, min(a[2], b[2]) - max(a[0], b[0])),
        max(0.0, min(a[3], b[3]) - max(a[1], b[1])),
    )


def rects_intersect(a: Rect, b: Rect) -> bool:
    """True for a non-zero overlap on both axes (touching edges do not count)."""
    ox, oy = overlap(a, b)
    return ox > 0 and oy > 0


def nodes_in_box(nodes: Iterable["Node"], box: "SelectionBox") -> list["Node"]:
    """Nodes whose rectangle intersects the selection box."""
    rect = box.normalized()
    return [n for n in nodes if rects_intersect(n.bounds(), rect)]


def contains_point(rect: Rect, point: tuple[float, float]) -> bool:
    return rect[0] <= point[0] <= rect[2] and rect[1] <= point[1] <= rect[3]


def node_at(nodes: Sequence["Node"], world_point: tuple[float, float]) -> Optional["Node"]:
    """Topmost node (last drawn) under a world point."""
    for node in reversed(nodes):
        if contains_point(node.bounds(), world_point):
            return node
    return None
