"""
Force-directed layout for a subset of canvas nodes.

Simulates physical forces on the selected nodes:
- All nodes repel each other (like charged particles), twice as hard
  when their boxes are close enough to overlap
- Connected nodes are held near a rest length (springs)
- Members of the same group drift toward the group's centroid

After the simulation settles, separation passes push apart any boxes that
still overlap, and a final placement sweep guarantees none do.

The layout functions never touch the store; `organize` / `organize_async`
commit the result as a single move_nodes change.
"""

import asyncio
import math
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Iterable, Optional

from loguru import logger

from .errors import LayoutCancelled
from .geometry import overlap, rects_intersect

if TYPE_CHECKING:
    from .models import Connection, Node
    from .store import GraphStore


# Simulation constants
REPULSION_STRENGTH = 50000
OVERLAP_REPULSION_MULTIPLIER = 2
OVERLAP_MARGIN = 30
SPRING_STRENGTH = 0.01
SPRING_LENGTH = 150
GROUP_ATTRACTION = 0.005
DAMPING = 0.85
MAX_VELOCITY = 50
CONVERGENCE_THRESHOLD = 0.5  # average per-node movement
MAX_ITERATIONS = 300
EPSILON = 1e-9

# Overlap resolution
SEPARATION_PASSES = 50
SEPARATION_PADDING = 20


@dataclass
class _Body:
    """Point mass at a node's center."""
    id: str
    x: float
    y: float
    width: float
    height: float
    group_id: Optional[str]
    mass: float
    vx: float = 0.0
    vy: float = 0.0


@dataclass
class LayoutResult:
    """Outcome of one layout run. positions are top-left corners."""
    positions: dict[str, tuple[float, float]] = field(default_factory=dict)
    iterations: int = 0
    converged: bool = False
    separation_passes: int = 0


def _bodies(nodes: list["Node"]) -> dict[str, _Body]:
    return {
        n.id: _Body(
            id=n.id,
            x=n.x + n.width / 2,
            y=n.y + n.height / 2,
            width=n.width,
            height=n.height,
            group_id=n.group_id,
            mass=math.sqrt(n.width * n.height) / 10,
        )
        for n in nodes
    }


def _apply_repulsion(bodies: list[_Body]):
    for i, a in enumerate(bodies):
        for b in bodies[i + 1:]:
            dx = b.x - a.x
            dy = b.y - a.y
            distance = math.sqrt(dx * dx + dy * dy)
            if distance < EPSILON:
                continue

            min_required = (a.width + b.width) / 2 + (a.height + b.height) / 2 + OVERLAP_MARGIN
            force = REPULSION_STRENGTH / (distance * distance)
            if distance < min_required:
                force *= OVERLAP_REPULSION_MULTIPLIER

            fx = dx / distance * force
            fy = dy / distance * force
            a.vx -= fx / a.mass
            a.vy -= fy / a.mass
            b.vx += fx / b.mass
            b.vy += fy / b.mass


def _apply_springs(bodies: dict[str, _Body], edges: list[tuple[str, str]]):
    for from_id, to_id in edges:
        a, b = bodies[from_id], bodies[to_id]
        dx = b.x - a.x
        dy = b.y - a.y
        distance = math.sqrt(dx * dx + dy * dy)
        if distance < EPSILON:
            continue

        # Hooke's law: negative when closer than the rest length
        force = SPRING_STRENGTH * (distance - SPRING_LENGTH)
        fx = dx / distance * force
        fy = dy / distance * force
        a.vx += fx
        a.vy += fy
        b.vx -= fx
        b.vy -= fy


def _group_centers(members: dict[str, list[_Body]]) -> dict[str, tuple[float, float]]:
    return {
        group_id: (sum(b.x for b in group) / len(group), sum(b.y for b in group) / len(group))
        for group_id, group in members.items()
    }


def _apply_group_cohesion(members: dict[str, list[_Body]], centers: dict[str, tuple[float, float]]):
    for group_id, group in members.items():
        cx, cy = centers[group_id]
        for body in group:
            dx = cx - body.x
            dy = cy - body.y
            distance = math.sqrt(dx * dx + dy * dy)
            if distance < EPSILON:
                continue
            force = GROUP_ATTRACTION * distance
            body.vx += dx / distance * force
            body.vy += dy / distance * force


def _integrate(bodies: list[_Body]) -> float:
    """Cap speeds, move every body, return the average movement."""
    total = 0.0
    for body in bodies:
        speed = math.sqrt(body.vx * body.vx + body.vy * body.vy)
        if speed > MAX_VELOCITY:
            body.vx = body.vx / speed * MAX_VELOCITY
            body.vy = body.vy / speed * MAX_VELOCITY
        body.x += body.vx
        body.y += body.vy
        total += abs(body.vx) + abs(body.vy)
    return total / len(bodies)


def _box(position: tuple[float, float], body: _Body) -> tuple[float, float, float, float]:
    x, y = position
    return (x, y, x + body.width, y + body.height)


def separate_overlaps(
    positions: dict[str, list[float]],
    bodies: dict[str, _Body],
    passes: int = SEPARATION_PASSES,
    padding: float = SEPARATION_PADDING,
) -> int:
    """
    Push overlapping boxes apart along the axis of smaller overlap,
    half the distance each. Modifies positions in-place.

    Returns the number of passes run.
    """
    ids = list(positions)
    for pass_number in range(1, passes + 1):
        found = False
        for i, id_a in enumerate(ids):
            for id_b in ids[i + 1:]:
                pos_a, pos_b = positions[id_a], positions[id_b]
                a, b = bodies[id_a], bodies[id_b]
                overlap_x, overlap_y = overlap(_box(pos_a, a), _box(pos_b, b))
                if overlap_x <= 0 or overlap_y <= 0:
                    continue

                found = True
                if overlap_x < overlap_y:
                    move = (overlap_x + padding) / 2
                    sign = -1 if pos_a[0] + a.width / 2 < pos_b[0] + b.width / 2 else 1
                    pos_a[0] += sign * move
                    pos_b[0] -= sign * move
                else:
                    move = (overlap_y + padding) / 2
                    sign = -1 if pos_a[1] + a.height / 2 < pos_b[1] + b.height / 2 else 1
                    pos_a[1] += sign * move
                    pos_b[1] -= sign * move
        if not found:
            return pass_number
    return passes


def _sweep_remaining_overlaps(
    positions: dict[str, list[float]],
    bodies: dict[str, _Body],
    padding: float = SEPARATION_PADDING,
):
    """
    Move each node below every earlier node it still overlaps.

    Earlier nodes never move again, so afterwards no pair overlaps.
    """
    placed: list[str] = []
    for node_id in positions:
        body = bodies[node_id]
        while True:
            box = _box(positions[node_id], body)
            hits = [other for other in placed
                    if rects_intersect(box, _box(positions[other], bodies[other]))]
            if not hits:
                break
            bottom = max(positions[other][1] + bodies[other].height for other in hits)
            positions[node_id][1] = math.ceil(bottom + padding)
        placed.append(node_id)


def force_layout(
    nodes: Iterable["Node"],
    connections: Iterable["Connection"] = (),
    should_cancel: Optional[Callable[[], bool]] = None,
) -> LayoutResult:
    """
    Arrange nodes using a force-directed simulation.

    Args:
        nodes: Nodes to arrange (their group_id drives group cohesion)
        connections: Connections; only those with both ends in nodes act as springs
        should_cancel: Polled once per iteration; returning True aborts the run

    Returns:
        LayoutResult with integer top-left positions for every node.
        Fewer than two nodes yields an empty result.

    Raises:
        LayoutCancelled: should_cancel returned True
    """
    nodes = list(nodes)
    if len(nodes) < 2:
        return LayoutResult()

    bodies = _bodies(nodes)
    body_list = list(bodies.values())
    edges = [(c.from_node_id, c.to_node_id) for c in connections
             if c.from_node_id in bodies and c.to_node_id in bodies and c.from_node_id != c.to_node_id]

    # Only groups with at least two members in the selection pull together
    members: dict[str, list[_Body]] = {}
    for body in body_list:
        if body.group_id:
            members.setdefault(body.group_id, []).append(body)
    members = {gid: group for gid, group in members.items() if len(group) > 1}
    centers = _group_centers(members)

    iterations = 0
    converged = False
    while iterations < MAX_ITERATIONS and not converged:
        if should_cancel is not None and should_cancel():
            raise LayoutCancelled(f"Layout cancelled after {iterations} iterations")
        iterations += 1

        for body in body_list:
            body.vx *= DAMPING
            body.vy *= DAMPING

        _apply_repulsion(body_list)
        _apply_springs(bodies, edges)
        _apply_group_cohesion(members, centers)

        converged = _integrate(body_list) < CONVERGENCE_THRESHOLD
        centers = _group_centers(members)

    # Back from centers to top-left corners
    positions = {b.id: [b.x - b.width / 2, b.y - b.height / 2] for b in body_list}
    passes = separate_overlaps(positions, bodies)
    for position in positions.values():
        position[0] = round(position[0])
        position[1] = round(position[1])
    _sweep_remaining_overlaps(positions, bodies)

    return LayoutResult(
        positions={node_id: (x, y) for node_id, (x, y) in positions.items()},
        iterations=iterations,
        converged=converged,
        separation_passes=passes,
    )


def _selection(store: "GraphStore", node_ids: Iterable[str]) -> tuple[list["Node"], list["Connection"]]:
    nodes = [n for n in (store.get_node(nid) for nid in dict.fromkeys(node_ids)) if n is not None]
    return nodes, store.connections_within(n.id for n in nodes)


def _commit(store: "GraphStore", result: LayoutResult):
    moved = store.move_nodes(result.positions)
    logger.info(
        "Force-directed layout completed in {} iterations ({}), {} node(s) moved",
        result.iterations, "converged" if result.converged else "max iterations reached", moved,
    )


def organize(store: "GraphStore", node_ids: Iterable[str]) -> Optional[LayoutResult]:
    """
    Run the layout on the given nodes and commit their new positions as one change.

    Returns None when fewer than two of the ids exist.
    """
    nodes, connections = _selection(store, node_ids)
    if len(nodes) < 2:
        return None
    result = force_layout(nodes, connections)
    _commit(store, result)
    return result


class LayoutTask:
    """
    Layout run on a worker thread, cancellable until it commits.

    The simulation works on the snapshot of nodes taken when run() starts;
    the store is only written once, from the event loop, after the
    simulation finished without being cancelled.
    """

    def __init__(self, store: "GraphStore", node_ids: Iterable[str]):
        self._store = store
        self._node_ids = list(node_ids)
        self._cancelled = threading.Event()

    def cancel(self):
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    async def run(self) -> Optional[LayoutResult]:
        nodes, connections = _selection(self._store, self._node_ids)
        if len(nodes) < 2:
            return None

        result = await asyncio.to_thread(force_layout, nodes, connections, self._cancelled.is_set)
        if self._cancelled.is_set():
            raise LayoutCancelled("Layout cancelled before commit")
        _commit(self._store, result)
        return result


async def organize_async(store: "GraphStore", node_ids: Iterable[str]) -> Optional[LayoutResult]:
    """Like organize, but the simulation runs off the event loop."""
    return await LayoutTask(store, node_ids).run()
