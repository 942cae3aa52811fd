"""Tests for the canvas data models."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from canvas_core.models import (
    AnchorSide,
    CanvasDocument,
    Connection,
    Group,
    ImageContent,
    LinkContent,
    Node,
    SelectionBox,
    TextContent,
    Transform,
    UpdateNodeRequest,
    VideoContent,
    content_text,
    default_groups,
)

from builders import T0, make_node


def test_node_defaults() -> None:
    node = Node()
    assert node.id.startswith("node-")
    assert (node.width, node.height) == (200, 120)
    assert node.color == "#ffffff"
    assert isinstance(node.content, TextContent)
    assert "Double-click to edit" in node.content.value
    assert node.group_id is None
    assert node.tags == frozenset()


def test_node_size_is_clamped_to_floor() -> None:
    node = Node(width=10, height=5)
    assert (node.width, node.height) == (100, 60)


def test_node_is_frozen() -> None:
    node = make_node("a")
    with pytest.raises(ValidationError):
        node.x = 5


def test_updated_at_cannot_precede_created_at() -> None:
    with pytest.raises(ValidationError):
        Node(created_at=T0, updated_at=T0 - timedelta(seconds=1))


def test_naive_timestamps_are_utc() -> None:
    node = Node.model_validate({"createdAt": "2024-01-01T00:00:00", "updatedAt": "2024-01-01T00:00:00"})
    assert node.created_at.utcoffset() == timedelta(0)


def test_node_serializes_camel_case_and_sorted_tags() -> None:
    node = make_node("a", group_id="g", tags=frozenset({"b", "a"}))
    data = node.model_dump(mode="json", by_alias=True)
    assert data["groupId"] == "g"
    assert data["tags"] == ["a", "b"]
    assert "createdAt" in data and "updatedAt" in data


def test_content_is_discriminated_by_type() -> None:
    node = Node.model_validate({"content": {"type": "video", "videos": ["v.mp4"]}})
    assert isinstance(node.content, VideoContent)
    with pytest.raises(ValidationError):
        Node.model_validate({"content": {"type": "audio"}})


def test_legacy_single_value_content() -> None:
    """Older files store one URL in `value`."""
    image = ImageContent.model_validate({"type": "image", "value": "a.png"})
    link = LinkContent.model_validate({"type": "link", "value": "https://x.org", "title": "X"})
    assert image.images == ("a.png",)
    assert link.links[0].url == "https://x.org"
    assert link.links[0].title == "X"


def test_content_text_flattens_every_variant() -> None:
    assert content_text(TextContent(value="hello")) == "hello"
    assert "Cat" in content_text(ImageContent(images=("c.png",), title="Cat"))
    link = LinkContent.model_validate({"links": [{"url": "https://a.b", "title": "AB"}]})
    assert "https://a.b" in content_text(link) and "AB" in content_text(link)


def test_connection_accepts_legacy_endpoint_names() -> None:
    connection = Connection.model_validate({"from": "a", "to": "b"})
    assert (connection.from_node_id, connection.to_node_id) == ("a", "b")
    connection = Connection.model_validate({"source": "a", "target": "b"})
    assert (connection.from_node_id, connection.to_node_id) == ("a", "b")


def test_connection_drops_non_side_anchors() -> None:
    connection = Connection.model_validate({"fromNodeId": "a", "toNodeId": "b",
                                            "fromPoint": "center", "toPoint": "top"})
    assert connection.from_point is None
    assert connection.to_point == AnchorSide.TOP
    assert connection.color == "#000000"


def test_connection_pair_key_is_unordered() -> None:
    forward = Connection(from_node_id="a", to_node_id="b")
    backward = Connection(from_node_id="b", to_node_id="a")
    assert forward.pair_key() == backward.pair_key()


def test_group_members_serialize_as_nodes_and_dedupe() -> None:
    group = Group.model_validate({"name": "G", "nodes": ["a", "b", "a"]})
    assert group.node_ids == ("a", "b")
    assert group.model_dump(by_alias=True)["nodes"] == ("a", "b")


def test_default_groups() -> None:
    assert [g.color for g in default_groups()] == ["#f87171", "#3b82f6", "#10b981"]
    assert all(g.node_ids == () for g in default_groups())


def test_transform_scale_is_clamped() -> None:
    assert Transform(scale=10).scale == 3.0
    assert Transform(scale=0.01).scale == 0.1


def test_selection_box_normalized() -> None:
    box = SelectionBox(start_x=150, start_y=150, end_x=0, end_y=10)
    assert box.normalized() == (0, 10, 150, 150)


def test_document_round_trips_through_json_dict() -> None:
    document = CanvasDocument(nodes=[make_node("a")], groups=default_groups())
    data = document.to_json_dict()
    assert data["canvasName"] == "Untitled Canvas"
    assert CanvasDocument.model_validate(data) == document


def test_update_request_changes_only_sent_fields() -> None:
    assert UpdateNodeRequest.model_validate({"x": 5}).changes() == {"x": 5}
    assert UpdateNodeRequest.model_validate({"color": None}).changes() == {}
    assert UpdateNodeRequest.model_validate({"comment": None}).changes() == {"comment": None}
