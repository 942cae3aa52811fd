"""Tests for the force-directed layout engine."""

import asyncio
import itertools

import pytest

from canvas_core import layout
from canvas_core.canvas import Canvas
from canvas_core.errors import LayoutCancelled
from canvas_core.events import LayoutCompleted
from canvas_core.geometry import rects_intersect
from canvas_core.models import Connection

from builders import make_node


def _boxes(nodes, positions):
    return {n.id: (positions[n.id][0], positions[n.id][1],
                   positions[n.id][0] + n.width, positions[n.id][1] + n.height) for n in nodes}


def _assert_no_overlap(nodes, positions):
    boxes = _boxes(nodes, positions)
    for a, b in itertools.combinations(boxes, 2):
        assert not rects_intersect(boxes[a], boxes[b]), f"{a} overlaps {b}"


def test_fewer_than_two_nodes_is_empty() -> None:
    result = layout.force_layout([make_node("a")])
    assert result.positions == {}
    assert result.iterations == 0


def test_stacked_nodes_end_up_apart() -> None:
    nodes = [make_node(f"n{i}", 0, 0) for i in range(6)]
    result = layout.force_layout(nodes)
    assert set(result.positions) == {n.id for n in nodes}
    _assert_no_overlap(nodes, result.positions)


def test_positions_are_integers() -> None:
    nodes = [make_node("a", 0.3, 0.7), make_node("b", 10.2, 5.9), make_node("c", 400.5, 0)]
    result = layout.force_layout(nodes)
    for x, y in result.positions.values():
        assert x == int(x) and y == int(y)


def test_mixed_sizes_do_not_overlap() -> None:
    nodes = [
        make_node("big", 0, 0, 600, 400),
        make_node("wide", 50, 50, 900, 100),
        make_node("small", 100, 100),
        make_node("tall", 20, 20, 100, 700),
    ]
    connections = [Connection(from_node_id="big", to_node_id="small")]
    result = layout.force_layout(nodes, connections)
    _assert_no_overlap(nodes, result.positions)


def test_layout_is_deterministic() -> None:
    nodes = [make_node(f"n{i}", i * 30, i * 20) for i in range(5)]
    connections = [Connection(from_node_id="n0", to_node_id="n1"), Connection(from_node_id="n1", to_node_id="n2")]
    first = layout.force_layout(nodes, connections)
    second = layout.force_layout(nodes, connections)
    assert first.positions == second.positions
    assert first.iterations == second.iterations


def test_springs_pull_distant_connected_nodes_closer() -> None:
    nodes = [make_node("a", 0, 0), make_node("b", 5000, 0)]
    connected = layout.force_layout(nodes, [Connection(from_node_id="a", to_node_id="b")])
    free = layout.force_layout(nodes)
    gap = abs(connected.positions["b"][0] - connected.positions["a"][0])
    free_gap = abs(free.positions["b"][0] - free.positions["a"][0])
    assert gap < free_gap


def test_iterations_are_capped() -> None:
    nodes = [make_node(f"n{i}", i, i) for i in range(4)]
    result = layout.force_layout(nodes)
    assert 1 <= result.iterations <= layout.MAX_ITERATIONS
    if not result.converged:
        assert result.iterations == layout.MAX_ITERATIONS


def test_cancellation_raises() -> None:
    nodes = [make_node("a"), make_node("b")]
    with pytest.raises(LayoutCancelled):
        layout.force_layout(nodes, should_cancel=lambda: True)


def test_separate_overlaps_moves_along_smaller_axis() -> None:
    bodies = layout._bodies([make_node("a", 0, 0), make_node("b", 190, 0)])
    positions = {"a": [0.0, 0.0], "b": [190.0, 0.0]}
    passes = layout.separate_overlaps(positions, bodies)
    assert passes >= 1
    assert positions["a"][1] == positions["b"][1] == 0
    assert positions["b"][0] - (positions["a"][0] + 200) >= 0


def test_organize_commits_one_undo_step(canvas: Canvas) -> None:
    ids = [canvas.store.create_node(i * 5, i * 5).id for i in range(4)]
    past = len(canvas.history.past)
    completed = []
    canvas.bus.subscribe(LayoutCompleted, completed.append)

    result = canvas.organize(ids)

    assert len(canvas.history.past) == past + 1
    _assert_no_overlap(canvas.store.nodes, {n.id: (n.x, n.y) for n in canvas.store.nodes})
    assert completed and completed[0].iterations == result.iterations
    canvas.undo()
    assert [(n.x, n.y) for n in canvas.store.nodes] == [(i * 5, i * 5) for i in range(4)]


def test_organize_uses_selection_by_default(canvas: Canvas) -> None:
    a = canvas.store.create_node(0, 0)
    b = canvas.store.create_node(0, 0)
    c = canvas.store.create_node(0, 0)
    canvas.select([a.id, b.id])
    result = canvas.organize()
    assert set(result.positions) == {a.id, b.id}
    assert (canvas.store.get_node(c.id).x, canvas.store.get_node(c.id).y) == (0, 0)


def test_organize_needs_two_nodes(canvas: Canvas) -> None:
    node = canvas.store.create_node(0, 0)
    past = len(canvas.history.past)
    assert canvas.organize([node.id]) is None
    assert len(canvas.history.past) == past


def test_async_layout_commits(canvas: Canvas) -> None:
    ids = [canvas.store.create_node(0, 0).id for _ in range(3)]
    result = asyncio.run(canvas.organize_async(ids))
    assert result is not None
    _assert_no_overlap(canvas.store.nodes, {n.id: (n.x, n.y) for n in canvas.store.nodes})


def test_cancelled_async_layout_commits_nothing(canvas: Canvas) -> None:
    ids = [canvas.store.create_node(0, 0).id for _ in range(3)]
    before = canvas.store.snapshot()
    past = len(canvas.history.past)
    task = canvas.organize_task(ids)
    task.cancel()

    with pytest.raises(LayoutCancelled):
        asyncio.run(task.run())

    assert task.cancelled
    assert canvas.store.snapshot() == before
    assert len(canvas.history.past) == past
