"""Shared test fixtures."""

import pytest

from canvas_core.canvas import Canvas
from canvas_core.events import EventBus, GraphChanged
from canvas_core.models import Connection, Group, Node
from canvas_core.store import GraphStore

from builders import make_node


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def store(bus: EventBus) -> GraphStore:
    return GraphStore(bus)


@pytest.fixture
def changes(bus: EventBus) -> list[GraphChanged]:
    """Every GraphChanged published on the bus."""
    received: list[GraphChanged] = []
    bus.subscribe(GraphChanged, received.append)
    return received


@pytest.fixture
def canvas() -> Canvas:
    """Empty canvas (preset groups only) with unbounded history."""
    return Canvas(max_history=0)


@pytest.fixture
def two_nodes(canvas: Canvas) -> tuple[Node, Node]:
    """Two overlapping 200x120 nodes at (0, 0) and (10, 10)."""
    first = canvas.store.create_node(0, 0)
    second = canvas.store.create_node(10, 10)
    return first, second


@pytest.fixture
def sample_graph() -> tuple[list[Node], list[Connection], list[Group]]:
    nodes = [
        make_node("a", 0, 0, group_id="g"),
        make_node("b", 300, 0, group_id="g"),
        make_node("c", 0, 300),
    ]
    connections = [Connection(id="ab", from_node_id="a", to_node_id="b")]
    groups = [Group(id="g", name="G", node_ids=("a", "b"))]
    return nodes, connections, groups
