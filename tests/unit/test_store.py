"""Tests for GraphStore mutations, cascades and commit notifications."""

import pytest

from canvas_core.errors import ImportMalformed
from canvas_core.events import ChangeOrigin, GraphChanged
from canvas_core.models import AnchorSide, Connection, Group, LinkContent
from canvas_core.store import GraphStore

from builders import make_node


def test_create_node_defaults(store: GraphStore, changes: list[GraphChanged]) -> None:
    node = store.create_node(10, 20)
    assert (node.x, node.y, node.width, node.height) == (10, 20, 200, 120)
    assert node.created_at == node.updated_at
    assert store.get_node(node.id) == node
    assert len(changes) == 1
    assert changes[0].origin == ChangeOrigin.LOCAL


def test_create_node_ignores_group_id(store: GraphStore) -> None:
    node = store.create_node(0, 0, group_id="nowhere")
    assert node.group_id is None


def test_update_node_merges_and_bumps_updated_at(store: GraphStore) -> None:
    node = store.create_node(0, 0)
    updated = store.update_node(node.id, color="#ff0000", x=50)
    assert updated.color == "#ff0000"
    assert updated.x == 50
    assert updated.y == 0
    assert updated.updated_at >= node.updated_at
    assert updated.created_at == node.created_at


def test_update_node_clamps_size(store: GraphStore) -> None:
    node = store.create_node(0, 0)
    updated = store.update_node(node.id, width=20, height=20)
    assert (updated.width, updated.height) == (100, 60)


def test_update_node_unknown_id_is_noop(store: GraphStore, changes: list[GraphChanged]) -> None:
    assert store.update_node("missing", x=1) is None
    assert changes == []


def test_update_node_without_change_does_not_commit(store: GraphStore, changes: list[GraphChanged]) -> None:
    node = store.create_node(0, 0)
    store.update_node(node.id, x=0, color=node.color)
    store.update_node(node.id, group_id="g")
    assert len(changes) == 1


def test_content_comment_and_tags(store: GraphStore) -> None:
    node = store.create_node(0, 0)
    content = LinkContent.model_validate({"links": [{"url": "https://a.b", "title": "AB"}]})
    assert store.set_content(node.id, content).content == content
    assert store.set_comment(node.id, "note").comment == "note"
    assert store.clear_comment(node.id).comment is None
    assert store.add_tag(node.id, " idea ").tags == frozenset({"idea"})
    assert store.add_tag(node.id, "   ") is None
    assert store.remove_tag(node.id, "idea").tags == frozenset()


def test_move_nodes_is_one_commit(store: GraphStore, changes: list[GraphChanged]) -> None:
    a = store.create_node(0, 0)
    b = store.create_node(0, 0)
    changes.clear()
    moved = store.move_nodes({a.id: (5, 5), b.id: (10, 10), "missing": (1, 1)})
    assert moved == 2
    assert len(changes) == 1
    assert (store.get_node(b.id).x, store.get_node(b.id).y) == (10, 10)


def test_move_nodes_to_same_position_does_not_commit(store: GraphStore, changes: list[GraphChanged]) -> None:
    a = store.create_node(3, 4)
    changes.clear()
    assert store.move_nodes({a.id: (3, 4)}) == 0
    assert changes == []


def test_duplicate_node_offsets_and_leaves_group(store: GraphStore) -> None:
    node = store.create_node(100, 100, color="#123456")
    group = store.create_group("G", "#000000", [node.id])
    copy = store.duplicate_node(node.id)
    assert copy.id != node.id
    assert (copy.x, copy.y) == (120, 120)
    assert copy.color == "#123456"
    assert copy.group_id is None
    assert copy.id not in store.get_group(group.id).node_ids


def test_connection_rules(store: GraphStore) -> None:
    a = store.create_node(0, 0)
    b = store.create_node(300, 0)
    connection = store.create_connection(a.id, b.id, "right", "left")
    assert connection.from_point == AnchorSide.RIGHT
    assert connection.to_point == AnchorSide.LEFT

    assert store.create_connection(a.id, a.id) is None
    assert store.create_connection(b.id, a.id) is None
    assert store.create_connection(a.id, "missing") is None
    assert len(store.connections) == 1
    assert store.connection_between(b.id, a.id) == connection


def test_update_and_delete_connection(store: GraphStore) -> None:
    a = store.create_node(0, 0)
    b = store.create_node(300, 0)
    connection = store.create_connection(a.id, b.id)
    updated = store.update_connection(connection.id, color="#ff0000", to_point="top")
    assert updated.color == "#ff0000"
    assert updated.to_point == AnchorSide.TOP
    assert store.delete_connection(connection.id) is True
    assert store.delete_connection(connection.id) is False
    assert store.connections_for_node(a.id) == []
    # The pair can be connected again
    assert store.create_connection(b.id, a.id) is not None


def test_delete_node_cascades(store: GraphStore) -> None:
    a = store.create_node(0, 0)
    b = store.create_node(300, 0)
    c = store.create_node(600, 0)
    store.create_connection(a.id, b.id)
    store.create_connection(b.id, c.id)
    group = store.create_group("G", "#000000", [a.id, b.id])

    assert store.delete_node(b.id) is True
    assert store.connections == []
    assert store.get_group(group.id).node_ids == (a.id,)
    assert store.connections_for_node(a.id) == []
    assert store.delete_node(b.id) is False


def test_delete_nodes_is_one_commit(store: GraphStore, changes: list[GraphChanged]) -> None:
    ids = [store.create_node(i * 300, 0).id for i in range(3)]
    changes.clear()
    assert store.delete_nodes([*ids[:2], "missing"]) == 2
    assert len(changes) == 1
    assert [n.id for n in store.nodes] == [ids[2]]


def test_clear_keeps_groups_without_members(store: GraphStore) -> None:
    a = store.create_node(0, 0)
    group = store.create_group("G", "#000000", [a.id])
    store.clear()
    assert store.nodes == []
    assert store.connections == []
    assert store.get_group(group.id).node_ids == ()


def test_group_membership_stays_consistent(store: GraphStore) -> None:
    a = store.create_node(0, 0)
    b = store.create_node(300, 0)
    first = store.create_group("First", "#111111", [a.id, b.id])
    second = store.create_group("Second", "#222222", [b.id])

    assert store.get_group(first.id).node_ids == (a.id,)
    assert store.get_group(second.id).node_ids == (b.id,)
    assert store.group_of(b.id).id == second.id

    assert store.assign_nodes_to_group([a.id], second.id) is True
    assert store.get_group(first.id).node_ids == ()
    assert store.get_node(a.id).group_id == second.id
    assert store.assign_nodes_to_group([a.id], second.id) is False

    assert store.remove_nodes_from_groups([a.id, b.id]) == 2
    assert store.get_group(second.id).node_ids == ()
    assert store.get_node(a.id).group_id is None


def test_update_group_replaces_members(store: GraphStore) -> None:
    a = store.create_node(0, 0)
    b = store.create_node(300, 0)
    group = store.create_group("G", "#000000", [a.id])
    updated = store.update_group(group.id, name="Renamed", node_ids=[b.id])
    assert updated.name == "Renamed"
    assert updated.node_ids == (b.id,)
    assert store.get_node(a.id).group_id is None
    assert store.get_node(b.id).group_id == group.id
    assert store.update_group("missing", name="x") is None


def test_delete_group_keeps_nodes(store: GraphStore) -> None:
    a = store.create_node(0, 0)
    group = store.create_group("G", "#000000", [a.id])
    assert store.delete_group(group.id) is True
    assert store.get_node(a.id).group_id is None
    assert store.delete_group(group.id) is False


def test_snapshot_shares_unchanged_collections(store: GraphStore) -> None:
    a = store.create_node(0, 0)
    store.create_node(300, 0)
    store.create_group("G", "#000000")
    before = store.snapshot()
    store.update_node(a.id, x=10)
    after = store.snapshot()
    assert after.groups is before.groups
    assert after.connections is before.connections
    assert after.nodes is not before.nodes
    # The untouched node is the very same object
    assert after.nodes[1] is before.nodes[1]


def test_replace_all_validates_before_changing(store: GraphStore, sample_graph) -> None:
    nodes, connections, groups = sample_graph
    store.replace_all(nodes, connections, groups)
    assert {n.id for n in store.nodes} == {"a", "b", "c"}

    dangling = [Connection(id="bad", from_node_id="a", to_node_id="zzz")]
    with pytest.raises(ImportMalformed) as excinfo:
        store.replace_all(nodes, dangling, groups)
    assert excinfo.value.issues
    assert [c.id for c in store.connections] == ["ab"]


def test_replace_all_repairs_membership(store: GraphStore) -> None:
    nodes = [make_node("a"), make_node("b", 300, 0, group_id="g")]
    groups = [Group(id="g", name="G", node_ids=("a",))]
    store.replace_all(nodes, [], groups)
    assert store.get_node("a").group_id == "g"
    assert set(store.get_group("g").node_ids) == {"a", "b"}


def test_replace_all_publishes_origin(store: GraphStore, changes: list[GraphChanged]) -> None:
    store.replace_all([make_node("a")], [], [], origin=ChangeOrigin.IMPORT)
    assert changes[-1].origin == ChangeOrigin.IMPORT


def test_commit_listener_receives_snapshot(store: GraphStore) -> None:
    snapshots = []
    store.on_commit(snapshots.append)
    node = store.create_node(0, 0)
    assert snapshots[-1].nodes == (node,)
