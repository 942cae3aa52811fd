"""
Interaction controller - pointer/keyboard state machine for a Canvas.

States:
- IDLE: nothing in progress
- PANNING: middle button, or alt + left button on the background
- RECT_SELECTING: left button on the background; selects on release
- DRAGGING_NODE: left button on a node body; commits one move on release
- RESIZING_NODE: left button on a node's resize handle
- CONNECTING: started from a node's anchor control, completed by
  clicking another node, cancelled by Escape or a background click

Drag and resize only update preview geometry while the pointer moves.
The store sees a single mutation when the gesture ends.
"""

import math
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Callable, Optional

from loguru import logger

from . import geometry
from .canvas import Canvas
from .models import (
    MIN_NODE_HEIGHT,
    MIN_NODE_WIDTH,
    AnchorSide,
    Connection,
    SelectionBox,
)


DRAG_THRESHOLD = 5        # screen px before a press becomes a drag
ANCHOR_HIT_RADIUS = 8     # screen px around a side midpoint
RESIZE_HANDLE_SIZE = 12   # screen px square at the bottom-right corner


class InteractionState(str, Enum):
    IDLE = "idle"
    PANNING = "panning"
    RECT_SELECTING = "rect_selecting"
    DRAGGING_NODE = "dragging_node"
    RESIZING_NODE = "resizing_node"
    CONNECTING = "connecting"


class Button(IntEnum):
    LEFT = 0
    MIDDLE = 1
    RIGHT = 2


class HitKind(str, Enum):
    BACKGROUND = "background"
    NODE = "node"
    ANCHOR = "anchor"
    RESIZE_HANDLE = "resize_handle"


@dataclass(frozen=True)
class HitTarget:
    kind: HitKind
    node_id: Optional[str] = None
    side: Optional[AnchorSide] = None


BACKGROUND = HitTarget(HitKind.BACKGROUND)


# --- Events ---

@dataclass(frozen=True)
class PointerDown:
    screen: tuple[float, float]
    button: Button = Button.LEFT
    modifier: bool = False   # alt: pan with the left button
    shift: bool = False      # add/remove from selection
    target: Optional[HitTarget] = None  # hit-tested by the controller when None


@dataclass(frozen=True)
class PointerMove:
    screen: tuple[float, float]


@dataclass(frozen=True)
class PointerUp:
    screen: tuple[float, float]


@dataclass(frozen=True)
class PointerCancel:
    pass


@dataclass(frozen=True)
class KeyPress:
    key: str
    ctrl: bool = False
    shift: bool = False


@dataclass(frozen=True)
class Wheel:
    screen: tuple[float, float]
    delta_x: float = 0
    delta_y: float = 0
    zoom: bool = False  # ctrl/meta held, or a pinch gesture


# (key, ctrl, shift) -> command
KEY_BINDINGS: dict[tuple[str, bool, bool], str] = {
    ("n", False, False): "add_node",
    ("g", False, False): "add_group",
    ("delete", False, False): "delete_selection",
    ("backspace", False, False): "delete_selection",
    ("d", True, False): "duplicate",
    ("z", True, False): "undo",
    ("z", True, True): "redo",
    ("y", True, False): "redo",
    ("g", True, False): "group_selection",
    ("f", False, True): "fit_to_screen",
    ("=", False, False): "zoom_in",
    ("+", False, False): "zoom_in",
    ("+", False, True): "zoom_in",
    ("-", False, False): "zoom_out",
    ("o", True, True): "organize",
    ("escape", False, False): "cancel",
}


def hit_test(canvas: Canvas, screen: tuple[float, float]) -> HitTarget:
    """
    What is under a screen point: an anchor control, a resize handle,
    a node body or the background. Topmost node wins.
    """
    transform = canvas.transform
    world = geometry.screen_to_world(screen, transform)
    scale = transform.scale

    for node in reversed(canvas.visible_nodes()):
        for side in AnchorSide:
            ax, ay = geometry.world_to_screen(geometry.side_midpoint(node, side), transform)
            if math.hypot(screen[0] - ax, screen[1] - ay) <= ANCHOR_HIT_RADIUS:
                return HitTarget(HitKind.ANCHOR, node.id, side)

        right, bottom = node.x + node.width, node.y + node.height
        handle = RESIZE_HANDLE_SIZE / scale
        if right - handle <= world.x <= right and bottom - handle <= world.y <= bottom:
            return HitTarget(HitKind.RESIZE_HANDLE, node.id)

        if geometry.contains_point(node.bounds(), world):
            return HitTarget(HitKind.NODE, node.id)

    return BACKGROUND


class InteractionController:
    """
    Turns pointer/keyboard events into canvas mutations.

    Owns only gesture state. Every data change goes through the canvas
    store, so it lands in the undo history as one step per gesture.
    """

    def __init__(self, canvas: Canvas):
        self.canvas = canvas
        self.state = InteractionState.IDLE

        self._press_screen: Optional[tuple[float, float]] = None
        self._last_screen: Optional[tuple[float, float]] = None
        self._moved = False

        # Dragging: node id -> top-left at press time / live preview
        self._drag_origin: dict[str, tuple[float, float]] = {}
        self.drag_preview: dict[str, tuple[float, float]] = {}

        # Resizing
        self._resize_node: Optional[str] = None
        self.resize_preview: Optional[tuple[float, float]] = None

        # Connecting
        self.connect_from: Optional[str] = None
        self.connect_side: Optional[AnchorSide] = None
        self.pointer_world: Optional[geometry.Point] = None

        self._commands: dict[str, Callable[[], Any]] = {
            "add_node": canvas.add_node_at_center,
            "add_group": canvas.add_group,
            "delete_selection": canvas.delete_selection,
            "duplicate": canvas.duplicate_selection,
            "undo": canvas.undo,
            "redo": canvas.redo,
            "group_selection": self._group_selection,
            "fit_to_screen": canvas.fit_to_screen,
            "zoom_in": canvas.zoom_in,
            "zoom_out": canvas.zoom_out,
            "cancel": self.cancel,
            "organize": canvas.organize,
        }

    # --- Dispatch ---

    def handle(self, event) -> None:
        if isinstance(event, PointerDown):
            self.pointer_down(event)
        elif isinstance(event, PointerMove):
            self.pointer_move(event)
        elif isinstance(event, PointerUp):
            self.pointer_up(event)
        elif isinstance(event, PointerCancel):
            self.abort()
        elif isinstance(event, KeyPress):
            self.key_press(event)
        elif isinstance(event, Wheel):
            self.wheel(event)
        else:
            raise TypeError(f"Unsupported event: {type(event).__name__}")

    @property
    def commands(self) -> list[str]:
        return list(self._commands)

    def execute(self, command: str) -> Any:
        """Run a named command from the keyboard/menu surface."""
        action = self._commands.get(command)
        if action is None:
            raise ValueError(f"Unknown command: {command}")
        logger.debug("Command: {}", command)
        return action()

    def _group_selection(self) -> bool:
        if self.canvas.group_selection():
            return True
        self.canvas.add_group()
        return False

    # --- Pointer ---

    def _world(self, screen: tuple[float, float]) -> geometry.Point:
        return geometry.screen_to_world(screen, self.canvas.transform)

    def pointer_down(self, event: PointerDown):
        target = event.target or hit_test(self.canvas, event.screen)
        self._press_screen = self._last_screen = event.screen
        self._moved = False

        if self.state == InteractionState.CONNECTING:
            self._finish_connecting(target)
            return
        if self.state != InteractionState.IDLE:
            return

        if event.button == Button.MIDDLE or (
            event.button == Button.LEFT and event.modifier and target.kind == HitKind.BACKGROUND
        ):
            self.state = InteractionState.PANNING
            return
        if event.button != Button.LEFT:
            return

        if target.kind == HitKind.BACKGROUND:
            self.canvas.clear_selection()
            world = self._world(event.screen)
            self.canvas.selection_box = SelectionBox(
                start_x=world.x, start_y=world.y, end_x=world.x, end_y=world.y, is_active=True
            )
            self.state = InteractionState.RECT_SELECTING

        elif target.kind == HitKind.ANCHOR:
            self.connect_from = target.node_id
            self.connect_side = target.side
            self.pointer_world = self._world(event.screen)
            self.state = InteractionState.CONNECTING

        elif target.kind == HitKind.RESIZE_HANDLE:
            node = self.canvas.store.get_node(target.node_id)
            if node is None:
                return
            self._resize_node = node.id
            self.resize_preview = (node.width, node.height)
            self.canvas.select([node.id])
            self.state = InteractionState.RESIZING_NODE

        elif target.kind == HitKind.NODE:
            if event.shift:
                self.canvas.toggle_selected(target.node_id)
            elif target.node_id not in self.canvas.selection:
                self.canvas.select([target.node_id])
            self._drag_origin = {n.id: (n.x, n.y) for n in self.canvas.selected_nodes()}
            self.drag_preview = dict(self._drag_origin)
            self.state = InteractionState.DRAGGING_NODE

    def pointer_move(self, event: PointerMove):
        last, self._last_screen = self._last_screen, event.screen
        if self._press_screen is not None and not self._moved:
            dx = event.screen[0] - self._press_screen[0]
            dy = event.screen[1] - self._press_screen[1]
            self._moved = math.hypot(dx, dy) >= DRAG_THRESHOLD

        if self.state == InteractionState.PANNING and last is not None:
            self.canvas.transform = geometry.pan(
                self.canvas.transform, event.screen[0] - last[0], event.screen[1] - last[1]
            )

        elif self.state == InteractionState.RECT_SELECTING:
            world = self._world(event.screen)
            self.canvas.selection_box = self.canvas.selection_box.model_copy(
                update={"end_x": world.x, "end_y": world.y}
            )

        elif self.state == InteractionState.DRAGGING_NODE and self._moved:
            scale = self.canvas.transform.scale
            dx = (event.screen[0] - self._press_screen[0]) / scale
            dy = (event.screen[1] - self._press_screen[1]) / scale
            self.drag_preview = {nid: (x + dx, y + dy) for nid, (x, y) in self._drag_origin.items()}

        elif self.state == InteractionState.RESIZING_NODE:
            node = self.canvas.store.get_node(self._resize_node)
            if node is not None:
                world = self._world(event.screen)
                self.resize_preview = (
                    max(MIN_NODE_WIDTH, world.x - node.x),
                    max(MIN_NODE_HEIGHT, world.y - node.y),
                )

        elif self.state == InteractionState.CONNECTING:
            self.pointer_world = self._world(event.screen)

    def pointer_up(self, event: PointerUp):
        if self.state == InteractionState.RECT_SELECTING:
            world = self._world(event.screen)
            box = self.canvas.selection_box.model_copy(update={"end_x": world.x, "end_y": world.y})
            self.canvas.select(n.id for n in geometry.nodes_in_box(self.canvas.visible_nodes(), box))
            self.canvas.selection_box = SelectionBox()

        elif self.state == InteractionState.DRAGGING_NODE:
            if self._moved:
                self.canvas.store.move_nodes(self.drag_preview)

        elif self.state == InteractionState.RESIZING_NODE:
            if self._moved and self.resize_preview is not None:
                width, height = self.resize_preview
                self.canvas.store.update_node(self._resize_node, width=width, height=height)

        elif self.state == InteractionState.CONNECTING:
            # Press on an anchor, release over another node
            if self._moved:
                target = hit_test(self.canvas, event.screen)
                if target.node_id not in (None, self.connect_from):
                    self._finish_connecting(target)
            self._press_screen = None
            return

        self._reset()

    # --- Keyboard / wheel ---

    def key_press(self, event: KeyPress):
        command = KEY_BINDINGS.get((event.key.lower(), event.ctrl, event.shift))
        if command is None:
            return
        if command != "cancel" and self.state != InteractionState.IDLE:
            return
        self.execute(command)

    def wheel(self, event: Wheel):
        if event.zoom:
            factor = geometry.WHEEL_ZOOM_OUT if event.delta_y > 0 else geometry.WHEEL_ZOOM_IN
            self.canvas.transform = geometry.zoom_at_point(self.canvas.transform, event.screen, factor)
        else:
            self.canvas.transform = geometry.pan(self.canvas.transform, -event.delta_x, -event.delta_y)

    # --- Connecting ---

    def preview_path(self) -> Optional[geometry.BezierPath]:
        """Curve from the source anchor to the pointer while connecting."""
        if self.state != InteractionState.CONNECTING or self.pointer_world is None:
            return None
        source = self.canvas.store.get_node(self.connect_from)
        if source is None:
            return None
        return geometry.preview_path(source, self.connect_side, self.pointer_world)

    def _finish_connecting(self, target: HitTarget) -> Optional[Connection]:
        store = self.canvas.store
        connection = None
        if target.node_id is not None and target.node_id != self.connect_from:
            source = store.get_node(self.connect_from)
            dest = store.get_node(target.node_id)
            if source is not None and dest is not None:
                to_side = target.side or geometry.best_target_side(source, dest, self.connect_side)
                connection = store.create_connection(source.id, dest.id, self.connect_side, to_side)
        elif target.node_id == self.connect_from:
            # Clicking the source again keeps the connection pending
            return None

        self._reset()
        return connection

    # --- Reset ---

    def cancel(self):
        """Escape: abort the current gesture, or clear the selection when idle."""
        if self.state == InteractionState.IDLE:
            self.canvas.clear_selection()
        self.abort()

    def abort(self):
        """Drop the current gesture without touching the graph."""
        self.canvas.selection_box = SelectionBox()
        self._reset()

    def _reset(self):
        self.state = InteractionState.IDLE
        self._press_screen = self._last_screen = None
        self._moved = False
        self._drag_origin = {}
        self.drag_preview = {}
        self._resize_node = None
        self.resize_preview = None
        self.connect_from = None
        self.connect_side = None
        self.pointer_world = None
