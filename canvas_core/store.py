"""
Graph Store - authoritative state for nodes, connections and groups.

This module implements:
- O(1) node/connection/group lookups via index dictionaries
- Referential invariants (no dangling connection ends, no self-loops,
  one connection per unordered node pair, consistent group membership)
- Cascading deletes
- One commit notification per data-changing operation

Operations are total: an unknown id is logged at debug level and the call
becomes a no-op returning None/False/0. Nothing is committed for a no-op.
"""

from typing import Callable, Iterable, Mapping, Optional

from loguru import logger

from .errors import ImportMalformed
from .events import ChangeOrigin, EventBus, GraphChanged
from .models import (
    AnchorSide,
    Connection,
    GraphSnapshot,
    Group,
    Node,
    NodeContent,
    utcnow,
)
from .validation import IssueSeverity, repair_membership, validate_graph


DUPLICATE_OFFSET = 20

# Fields a caller may change through update_node. Group membership goes
# through the group operations so both sides stay in sync.
NODE_UPDATE_FIELDS = frozenset({"x", "y", "width", "height", "content", "color", "tags", "comment"})
CONNECTION_UPDATE_FIELDS = frozenset({"from_point", "to_point", "color"})


class GraphStore:
    """
    Owns the graph collections and keeps them consistent.

    Listeners:
    - on_commit(callback(snapshot)) fires once per local mutation; the
      HistoryManager uses it to push snapshots
    - the optional EventBus receives a GraphChanged for every change,
      including restores from undo/redo and remote replacements
    """

    def __init__(self, bus: Optional[EventBus] = None):
        self._bus = bus
        self._nodes: dict[str, Node] = {}
        self._connections: dict[str, Connection] = {}
        self._groups: dict[str, Group] = {}
        self._on_commit_callbacks: list[Callable[[GraphSnapshot], None]] = []

        # Indexes
        self._connections_by_node: dict[str, set[str]] = {}  # node_id -> connection ids
        self._connection_by_pair: dict[frozenset[str], str] = {}  # {a, b} -> connection id

        # Snapshot cache: collections untouched since the last snapshot are reused
        self._cached: GraphSnapshot = GraphSnapshot()
        self._stale: set[str] = set()

    # --- Index Management ---

    def _rebuild_indexes(self):
        """Rebuild all indexes from the current collections."""
        self._connections_by_node.clear()
        self._connection_by_pair.clear()
        for connection in self._connections.values():
            self._index_connection(connection)

    def _index_connection(self, connection: Connection):
        for node_id in (connection.from_node_id, connection.to_node_id):
            self._connections_by_node.setdefault(node_id, set()).add(connection.id)
        self._connection_by_pair[connection.pair_key()] = connection.id

    def _unindex_connection(self, connection: Connection):
        for node_id in (connection.from_node_id, connection.to_node_id):
            if node_id in self._connections_by_node:
                self._connections_by_node[node_id].discard(connection.id)
        self._connection_by_pair.pop(connection.pair_key(), None)

    # --- Listeners ---

    def on_commit(self, callback: Callable[[GraphSnapshot], None]):
        """Register a callback receiving the snapshot after each local mutation."""
        self._on_commit_callbacks.append(callback)

    def _commit(self, description: str, origin: ChangeOrigin = ChangeOrigin.LOCAL):
        snapshot = self.snapshot()
        for callback in self._on_commit_callbacks:
            callback(snapshot)
        logger.debug("Commit: {}", description)
        self._publish(snapshot, origin, description)

    def _publish(self, snapshot: GraphSnapshot, origin: ChangeOrigin, description: str):
        if self._bus is not None:
            self._bus.publish(GraphChanged(snapshot=snapshot, origin=origin, description=description))

    def _touch(self, *collections: str):
        self._stale.update(collections)

    # --- Snapshots ---

    def snapshot(self) -> GraphSnapshot:
        """
        Capture the current graph.

        Entities are immutable, so a snapshot only copies references, and
        only for collections that changed since the previous snapshot.
        """
        if self._stale:
            self._cached = GraphSnapshot(
                nodes=tuple(self._nodes.values()) if "nodes" in self._stale else self._cached.nodes,
                connections=(tuple(self._connections.values())
                             if "connections" in self._stale else self._cached.connections),
                groups=tuple(self._groups.values()) if "groups" in self._stale else self._cached.groups,
            )
            self._stale.clear()
        return self._cached

    def restore(self, snapshot: GraphSnapshot, origin: ChangeOrigin = ChangeOrigin.UNDO):
        """Replace the graph with a snapshot without committing it."""
        self._load(snapshot.nodes, snapshot.connections, snapshot.groups)
        self._cached = snapshot
        self._stale.clear()
        self._publish(snapshot, origin, f"restore ({origin.value})")

    def _load(self, nodes: Iterable[Node], connections: Iterable[Connection], groups: Iterable[Group]):
        self._nodes = {n.id: n for n in nodes}
        self._connections = {c.id: c for c in connections}
        self._groups = {g.id: g for g in groups}
        self._rebuild_indexes()
        self._touch("nodes", "connections", "groups")

    def replace_all(
        self,
        nodes: Iterable[Node],
        connections: Iterable[Connection],
        groups: Iterable[Group],
        origin: ChangeOrigin = ChangeOrigin.REMOTE,
    ):
        """
        Wholesale replacement of all collections (import, remote update).

        The incoming graph is validated first; on any error the store is
        left untouched and ImportMalformed is raised.
        """
        nodes, connections, groups = list(nodes), list(connections), list(groups)
        issues = [i for i in validate_graph(nodes, connections, groups)
                  if i.severity == IssueSeverity.ERROR]
        if issues:
            raise ImportMalformed(f"Graph has {len(issues)} structural error(s)", issues)

        nodes, groups = repair_membership(nodes, groups)
        self._load(nodes, connections, groups)
        self._commit(f"replace all ({origin.value})", origin)

    # --- Reads ---

    @property
    def nodes(self) -> list[Node]:
        return list(self._nodes.values())

    @property
    def connections(self) -> list[Connection]:
        return list(self._connections.values())

    @property
    def groups(self) -> list[Group]:
        return list(self._groups.values())

    def get_node(self, node_id: str) -> Optional[Node]:
        """Get a node by ID (O(1) lookup)."""
        return self._nodes.get(node_id)

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def get_group(self, group_id: str) -> Optional[Group]:
        return self._groups.get(group_id)

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes

    def connections_for_node(self, node_id: str) -> list[Connection]:
        """Get all connections incident to a node (O(1) index lookup)."""
        return [self._connections[cid] for cid in self._connections_by_node.get(node_id, ())
                if cid in self._connections]

    def connection_between(self, a: str, b: str) -> Optional[Connection]:
        """Find the connection linking two nodes in either direction."""
        connection_id = self._connection_by_pair.get(frozenset((a, b)))
        return self._connections.get(connection_id) if connection_id else None

    def connections_within(self, node_ids: Iterable[str]) -> list[Connection]:
        """Connections whose both endpoints are in node_ids."""
        wanted = set(node_ids)
        return [c for c in self._connections.values()
                if c.from_node_id in wanted and c.to_node_id in wanted]

    def group_of(self, node_id: str) -> Optional[Group]:
        node = self._nodes.get(node_id)
        if node is None or node.group_id is None:
            return None
        return self._groups.get(node.group_id)

    # --- Node Operations ---

    def create_node(self, x: float, y: float, **fields) -> Node:
        """Create a node with default text content, default size and fresh timestamps."""
        fields.pop("group_id", None)
        now = utcnow()
        node = Node(x=x, y=y, created_at=now, updated_at=now, **fields)
        self._nodes[node.id] = node
        self._touch("nodes")
        self._commit(f"create node {node.id}")
        return node

    def _stamped(self, node: Node, changes: dict) -> Node:
        """Validated replacement of a node with updatedAt bumped."""
        data = node.model_dump()
        data.update(changes)
        data["updated_at"] = max(utcnow(), node.created_at)
        return Node.model_validate(data)

    def update_node(self, node_id: str, **changes) -> Optional[Node]:
        """
        Merge fields into a node and bump its updatedAt.

        Unknown ids and unsupported fields are ignored. Width/height are
        clamped to the size floor by the model.
        """
        node = self._nodes.get(node_id)
        if node is None:
            logger.debug("update_node: unknown node {}", node_id)
            return None

        ignored = set(changes) - NODE_UPDATE_FIELDS
        if ignored:
            logger.debug("update_node: ignoring fields {}", sorted(ignored))
        changes = {k: v for k, v in changes.items() if k in NODE_UPDATE_FIELDS}
        if not changes:
            return node

        updated = self._stamped(node, changes)
        if updated.model_copy(update={"updated_at": node.updated_at}) == node:
            return node

        self._nodes[node_id] = updated
        self._touch("nodes")
        self._commit(f"update node {node_id}")
        return updated

    def set_content(self, node_id: str, content: NodeContent) -> Optional[Node]:
        return self.update_node(node_id, content=content)

    def set_comment(self, node_id: str, comment: Optional[str]) -> Optional[Node]:
        """Attach a comment; an empty or None comment removes it."""
        return self.update_node(node_id, comment=comment or None)

    def clear_comment(self, node_id: str) -> Optional[Node]:
        return self.update_node(node_id, comment=None)

    def add_tag(self, node_id: str, tag: str) -> Optional[Node]:
        node = self._nodes.get(node_id)
        if node is None or not tag.strip():
            return None
        return self.update_node(node_id, tags=node.tags | {tag.strip()})

    def remove_tag(self, node_id: str, tag: str) -> Optional[Node]:
        node = self._nodes.get(node_id)
        if node is None:
            return None
        return self.update_node(node_id, tags=node.tags - {tag})

    def move_nodes(self, positions: Mapping[str, tuple[float, float]]) -> int:
        """
        Set positions for several nodes as one change.

        Returns the number of nodes moved; unknown ids are skipped.
        """
        moved = 0
        for node_id, (x, y) in positions.items():
            node = self._nodes.get(node_id)
            if node is None:
                logger.debug("move_nodes: unknown node {}", node_id)
                continue
            if node.x == x and node.y == y:
                continue
            self._nodes[node_id] = node.model_copy(
                update={"x": x, "y": y, "updated_at": max(utcnow(), node.created_at)}
            )
            moved += 1

        if moved:
            self._touch("nodes")
            self._commit(f"move {moved} node(s)")
        return moved

    def duplicate_node(self, node_id: str) -> Optional[Node]:
        """Copy a node with a visible offset, a fresh id and no group."""
        node = self._nodes.get(node_id)
        if node is None:
            logger.debug("duplicate_node: unknown node {}", node_id)
            return None

        now = utcnow()
        data = node.model_dump(exclude={"id", "group_id", "created_at", "updated_at"})
        data.update(x=node.x + DUPLICATE_OFFSET, y=node.y + DUPLICATE_OFFSET,
                    created_at=now, updated_at=now)
        copy = Node.model_validate(data)
        self._nodes[copy.id] = copy
        self._touch("nodes")
        self._commit(f"duplicate node {node_id}")
        return copy

    def delete_node(self, node_id: str) -> bool:
        """Delete a node, its incident connections and its group membership."""
        return self.delete_nodes([node_id]) == 1

    def delete_nodes(self, node_ids: Iterable[str]) -> int:
        """Delete several nodes with cascade as one change."""
        doomed = [nid for nid in dict.fromkeys(node_ids) if nid in self._nodes]
        if not doomed:
            return 0

        doomed_set = set(doomed)
        for node_id in doomed:
            del self._nodes[node_id]
            for connection_id in list(self._connections_by_node.get(node_id, ())):
                connection = self._connections.pop(connection_id, None)
                if connection:
                    self._unindex_connection(connection)
            self._connections_by_node.pop(node_id, None)

        for group in list(self._groups.values()):
            if doomed_set.intersection(group.node_ids):
                self._groups[group.id] = group.model_copy(
                    update={"node_ids": tuple(n for n in group.node_ids if n not in doomed_set)}
                )

        self._touch("nodes", "connections", "groups")
        self._commit(f"delete {len(doomed)} node(s)")
        return len(doomed)

    def clear(self):
        """Remove all nodes and connections; groups stay but lose their members."""
        if not self._nodes and not self._connections:
            return
        self._nodes.clear()
        self._connections.clear()
        self._groups = {gid: g.model_copy(update={"node_ids": ()}) for gid, g in self._groups.items()}
        self._rebuild_indexes()
        self._touch("nodes", "connections", "groups")
        self._commit("clear canvas")

    # --- Connection Operations ---

    def create_connection(
        self,
        from_node_id: str,
        to_node_id: str,
        from_point: Optional[AnchorSide | str] = None,
        to_point: Optional[AnchorSide | str] = None,
        color: Optional[str] = None,
    ) -> Optional[Connection]:
        """
        Connect two nodes.

        Rejected (returns None) for self-loops, unknown nodes, or when the
        unordered pair is already connected.
        """
        if from_node_id == to_node_id:
            logger.debug("create_connection: self-loop on {}", from_node_id)
            return None
        if from_node_id not in self._nodes or to_node_id not in self._nodes:
            logger.debug("create_connection: unknown endpoint {} -> {}", from_node_id, to_node_id)
            return None
        if self.connection_between(from_node_id, to_node_id) is not None:
            logger.debug("create_connection: {} and {} already connected", from_node_id, to_node_id)
            return None

        fields = {"from_node_id": from_node_id, "to_node_id": to_node_id,
                  "from_point": from_point, "to_point": to_point}
        if color:
            fields["color"] = color
        connection = Connection.model_validate(fields)
        self._connections[connection.id] = connection
        self._index_connection(connection)
        self._touch("connections")
        self._commit(f"connect {from_node_id} -> {to_node_id}")
        return connection

    def update_connection(self, connection_id: str, **changes) -> Optional[Connection]:
        """Change a connection's color or anchors."""
        connection = self._connections.get(connection_id)
        if connection is None:
            logger.debug("update_connection: unknown connection {}", connection_id)
            return None

        changes = {k: v for k, v in changes.items() if k in CONNECTION_UPDATE_FIELDS}
        updated = Connection.model_validate({**connection.model_dump(), **changes})
        if updated == connection:
            return connection

        self._connections[connection_id] = updated
        self._touch("connections")
        self._commit(f"update connection {connection_id}")
        return updated

    def delete_connection(self, connection_id: str) -> bool:
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            logger.debug("delete_connection: unknown connection {}", connection_id)
            return False
        self._unindex_connection(connection)
        self._touch("connections")
        self._commit(f"delete connection {connection_id}")
        return True

    # --- Group Operations ---

    def _set_group_membership(self, node_ids: list[str], group_id: Optional[str]):
        """
        Move nodes into group_id (or out of every group when None).

        Keeps node.group_id and the member lists in sync without committing.
        """
        moving = set(node_ids)
        for group in list(self._groups.values()):
            if group.id != group_id and moving.intersection(group.node_ids):
                self._groups[group.id] = group.model_copy(
                    update={"node_ids": tuple(n for n in group.node_ids if n not in moving)}
                )
        if group_id is not None:
            group = self._groups[group_id]
            self._groups[group_id] = group.model_copy(
                update={"node_ids": tuple(dict.fromkeys([*group.node_ids, *node_ids]))}
            )
        for node_id in node_ids:
            self._nodes[node_id] = self._nodes[node_id].model_copy(update={"group_id": group_id})
        self._touch("nodes", "groups")

    def create_group(self, name: str, color: str, node_ids: Iterable[str] = ()) -> Group:
        """Create a group and move the listed nodes into it (from any prior group)."""
        members = [nid for nid in dict.fromkeys(node_ids) if nid in self._nodes]
        group = Group(name=name, color=color)
        self._groups[group.id] = group
        self._set_group_membership(members, group.id)
        self._touch("groups")
        self._commit(f"create group {group.id} with {len(members)} node(s)")
        return self._groups[group.id]

    def update_group(
        self,
        group_id: str,
        name: Optional[str] = None,
        color: Optional[str] = None,
        node_ids: Optional[Iterable[str]] = None,
    ) -> Optional[Group]:
        """
        Rename/recolor a group, or replace its member list.

        Nodes dropped from the member list lose their groupId.
        """
        group = self._groups.get(group_id)
        if group is None:
            logger.debug("update_group: unknown group {}", group_id)
            return None

        before = (group, self.snapshot().nodes)
        updates = {}
        if name is not None:
            updates["name"] = name
        if color is not None:
            updates["color"] = color
        if updates:
            self._groups[group_id] = group.model_copy(update=updates)

        if node_ids is not None:
            members = [nid for nid in dict.fromkeys(node_ids) if nid in self._nodes]
            dropped = [nid for nid in self._groups[group_id].node_ids if nid not in set(members)]
            for node_id in dropped:
                if node_id in self._nodes:
                    self._nodes[node_id] = self._nodes[node_id].model_copy(update={"group_id": None})
            self._groups[group_id] = self._groups[group_id].model_copy(update={"node_ids": ()})
            self._set_group_membership(members, group_id)

        self._touch("groups")
        if (self._groups[group_id], self.snapshot().nodes) == before:
            return self._groups[group_id]
        self._commit(f"update group {group_id}")
        return self._groups[group_id]

    def delete_group(self, group_id: str) -> bool:
        """Delete a group; its members stay on the canvas with groupId cleared."""
        group = self._groups.pop(group_id, None)
        if group is None:
            logger.debug("delete_group: unknown group {}", group_id)
            return False
        for node_id in group.node_ids:
            node = self._nodes.get(node_id)
            if node is not None and node.group_id == group_id:
                self._nodes[node_id] = node.model_copy(update={"group_id": None})
        self._touch("nodes", "groups")
        self._commit(f"delete group {group_id}")
        return True

    def assign_nodes_to_group(self, node_ids: Iterable[str], group_id: str) -> bool:
        """Move existing nodes into an existing group."""
        if group_id not in self._groups:
            logger.debug("assign_nodes_to_group: unknown group {}", group_id)
            return False
        members = [nid for nid in dict.fromkeys(node_ids) if nid in self._nodes]
        if not members:
            return False
        if all(self._nodes[nid].group_id == group_id for nid in members):
            return False
        self._set_group_membership(members, group_id)
        self._commit(f"assign {len(members)} node(s) to group {group_id}")
        return True

    def add_node_to_group(self, node_id: str, group_id: str) -> bool:
        return self.assign_nodes_to_group([node_id], group_id)

    def remove_nodes_from_groups(self, node_ids: Iterable[str]) -> int:
        """Take nodes out of whatever group they are in."""
        members = [nid for nid in dict.fromkeys(node_ids)
                   if nid in self._nodes and self._nodes[nid].group_id is not None]
        if not members:
            return 0
        self._set_group_membership(members, None)
        self._commit(f"ungroup {len(members)} node(s)")
        return len(members)

