"""
Canvas - one editable canvas: graph, history, viewport and selection.

A Canvas is an explicit owned object. Everything that works on a canvas
(the interaction controller, layout, persistence, collaboration, the HTTP
server) receives it by reference; there is no module-level instance.
"""

from typing import Iterable, Optional

from loguru import logger

from . import config, geometry, layout
from .events import (
    ChangeOrigin,
    EventBus,
    GraphChanged,
    HighlightGroup,
    LayoutCompleted,
    OpenGroupDialog,
    SelectionChanged,
    TransformChanged,
)
from .history import HistoryManager
from .models import (
    DEFAULT_CANVAS_NAME,
    DEFAULT_NODE_HEIGHT,
    DEFAULT_NODE_WIDTH,
    GraphSnapshot,
    Group,
    Node,
    SelectionBox,
    Transform,
    default_groups,
)
from .search import TagFilter
from .store import GraphStore

DEFAULT_VIEWPORT = (1280.0, 800.0)


class Canvas:
    """
    Owns a GraphStore, its HistoryManager and the ephemeral view state.

    View state (transform, selection, selection box, highlighted group,
    tag filter) is never part of a history snapshot.
    """

    def __init__(
        self,
        name: str = DEFAULT_CANVAS_NAME,
        bus: Optional[EventBus] = None,
        max_history: Optional[int] = None,
        with_default_groups: bool = True,
    ):
        self.name = name
        self.bus = bus or EventBus()
        self.store = GraphStore(self.bus)
        if with_default_groups:
            self.store.replace_all([], [], default_groups(), origin=ChangeOrigin.IMPORT)
        self.history = HistoryManager(
            self.store, config.HISTORY_LIMIT if max_history is None else max_history
        )

        self._transform = Transform()
        self._selection: tuple[str, ...] = ()
        self.selection_box = SelectionBox()
        self.viewport: tuple[float, float] = DEFAULT_VIEWPORT
        self.highlighted_group: Optional[str] = None
        self.tag_filter = TagFilter()

        self.bus.subscribe(GraphChanged, self._on_graph_changed)

    def _on_graph_changed(self, message: GraphChanged):
        # Undo/redo or remote updates may remove selected nodes
        alive = {n.id for n in message.snapshot.nodes}
        if any(node_id not in alive for node_id in self._selection):
            self.select(node_id for node_id in self._selection if node_id in alive)

    # --- View state ---

    @property
    def transform(self) -> Transform:
        return self._transform

    @transform.setter
    def transform(self, value: Transform):
        if value != self._transform:
            self._transform = value
            self.bus.publish(TransformChanged(value))

    def set_viewport(self, width: float, height: float):
        self.viewport = (width, height)

    @property
    def selection(self) -> tuple[str, ...]:
        return self._selection

    def select(self, node_ids: Iterable[str]):
        """Replace the selection with the given (existing) node ids."""
        selection = tuple(nid for nid in dict.fromkeys(node_ids) if self.store.has_node(nid))
        if selection != self._selection:
            self._selection = selection
            self.bus.publish(SelectionChanged(selection))

    def toggle_selected(self, node_id: str):
        if node_id in self._selection:
            self.select(nid for nid in self._selection if nid != node_id)
        else:
            self.select([*self._selection, node_id])

    def clear_selection(self):
        self.select(())

    def selected_nodes(self) -> list[Node]:
        return [n for n in (self.store.get_node(nid) for nid in self._selection) if n is not None]

    def highlight_group(self, group_id: Optional[str]):
        self.highlighted_group = group_id
        self.bus.publish(HighlightGroup(group_id))

    def filter_by_tag(self, tag: Optional[str]):
        self.tag_filter.apply(self.store.nodes, tag)

    def visible_nodes(self) -> list[Node]:
        return self.tag_filter.visible(self.store.nodes)

    def viewport_center(self) -> geometry.Point:
        """World point at the middle of the viewport."""
        width, height = self.viewport
        return geometry.screen_to_world((width / 2, height / 2), self._transform)

    # --- Commands ---

    def add_node(self, x: float, y: float, **fields) -> Node:
        node = self.store.create_node(x, y, **fields)
        self.select([node.id])
        return node

    def add_node_at_center(self) -> Node:
        """New node centered in the current viewport."""
        cx, cy = self.viewport_center()
        return self.add_node(cx - DEFAULT_NODE_WIDTH / 2, cy - DEFAULT_NODE_HEIGHT / 2)

    def add_group(self):
        """Ask the UI for a new (empty) group's name and color."""
        self.bus.publish(OpenGroupDialog(()))

    def group_selection(self) -> bool:
        """Ask the UI to group the selected nodes; False with nothing selected."""
        if not self._selection:
            return False
        self.bus.publish(OpenGroupDialog(self._selection))
        return True

    def create_group(self, name: str, color: str, node_ids: Iterable[str] = ()) -> Group:
        return self.store.create_group(name, color, node_ids)

    def delete_selection(self) -> int:
        count = self.store.delete_nodes(self._selection)
        self.clear_selection()
        return count

    def duplicate_selection(self) -> list[Node]:
        copies = [c for c in (self.store.duplicate_node(nid) for nid in self._selection) if c is not None]
        if copies:
            self.select(c.id for c in copies)
        return copies

    def undo(self) -> Optional[GraphSnapshot]:
        return self.history.undo()

    def redo(self) -> Optional[GraphSnapshot]:
        return self.history.redo()

    def zoom_in(self):
        width, height = self.viewport
        self.transform = geometry.zoom_at_point(self._transform, (width / 2, height / 2), geometry.ZOOM_STEP)

    def zoom_out(self):
        width, height = self.viewport
        self.transform = geometry.zoom_at_point(self._transform, (width / 2, height / 2), 1 / geometry.ZOOM_STEP)

    def fit_to_screen(self) -> bool:
        """Fit all nodes into the viewport; False for an empty canvas."""
        fitted = geometry.fit_to_bounds(self.store.nodes, *self.viewport)
        if fitted is None:
            return False
        self.transform = fitted
        return True

    def _organize_targets(self, node_ids: Optional[Iterable[str]]) -> list[str]:
        return list(self._selection if node_ids is None else node_ids)

    def _layout_done(self, result: Optional[layout.LayoutResult]):
        if result is not None:
            self.bus.publish(LayoutCompleted(tuple(result.positions), result.iterations, result.converged))

    def organize(self, node_ids: Optional[Iterable[str]] = None) -> Optional[layout.LayoutResult]:
        """Force-directed layout of the selection (or node_ids), one undo step."""
        targets = self._organize_targets(node_ids)
        if len(targets) < 2:
            logger.debug("organize: need at least two nodes, got {}", len(targets))
            return None
        result = layout.organize(self.store, targets)
        self._layout_done(result)
        return result

    def organize_task(self, node_ids: Optional[Iterable[str]] = None) -> layout.LayoutTask:
        """Cancellable background layout; await task.run() to commit."""
        return layout.LayoutTask(self.store, self._organize_targets(node_ids))

    async def organize_async(self, node_ids: Optional[Iterable[str]] = None) -> Optional[layout.LayoutResult]:
        result = await self.organize_task(node_ids).run()
        self._layout_done(result)
        return result
