"""
Canvas validation - Check graph data for structural issues.

Used before any wholesale replacement of the live graph (file import,
remote collaboration update). ERROR issues reject the data; WARNING issues
describe inconsistencies that `repair_membership` can fix deterministically.
"""

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from .models import Connection, Group, Node


class IssueSeverity(str, Enum):
    """Severity levels for validation issues."""
    ERROR = "error"      # Invalid state, data is rejected
    WARNING = "warning"  # Inconsistent but repairable
    INFO = "info"        # Informational, may be intentional


@dataclass
class ValidationIssue:
    """A single validation issue found in canvas data."""
    severity: IssueSeverity
    message: str
    node_id: str | None = None
    connection_id: str | None = None
    group_id: str | None = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        result = {
            "type": self.severity.value,
            "message": self.message
        }
        if self.node_id:
            result["node_id"] = self.node_id
        if self.connection_id:
            result["connection_id"] = self.connection_id
        if self.group_id:
            result["group_id"] = self.group_id
        return result


def validate_graph(
    nodes: Iterable["Node"],
    connections: Iterable["Connection"],
    groups: Iterable["Group"],
) -> list[ValidationIssue]:
    """
    Validate graph collections and return a list of issues.

    Checks for:
    - Duplicate node/connection/group ids - ERROR
    - Connections referencing missing nodes - ERROR
    - Self-referencing connections - ERROR
    - More than one connection per unordered node pair - ERROR
    - Group members referencing missing nodes - ERROR
    - Node groupId referencing a missing group - ERROR
    - Group membership not matching node groupId - WARNING
    - Empty canvas - INFO

    Args:
        nodes: Nodes to check
        connections: Connections to check
        groups: Groups to check

    Returns:
        List of ValidationIssue objects
    """
    nodes, connections, groups = list(nodes), list(connections), list(groups)
    issues: list[ValidationIssue] = []

    if not nodes:
        issues.append(ValidationIssue(
            severity=IssueSeverity.INFO,
            message="Canvas has no nodes"
        ))

    issues.extend(_duplicate_ids([n.id for n in nodes], "node"))
    issues.extend(_duplicate_ids([c.id for c in connections], "connection"))
    issues.extend(_duplicate_ids([g.id for g in groups], "group"))

    node_ids = {n.id for n in nodes}
    group_ids = {g.id for g in groups}

    # Connection references
    seen_pairs: set[frozenset[str]] = set()
    for connection in connections:
        for end, node_id in (("source", connection.from_node_id), ("target", connection.to_node_id)):
            if node_id not in node_ids:
                issues.append(ValidationIssue(
                    severity=IssueSeverity.ERROR,
                    message=f"Connection references non-existent {end} node: {node_id}",
                    connection_id=connection.id
                ))
        if connection.from_node_id == connection.to_node_id:
            issues.append(ValidationIssue(
                severity=IssueSeverity.ERROR,
                message="Self-referencing connection (node points to itself)",
                connection_id=connection.id,
                node_id=connection.from_node_id
            ))
        pair = connection.pair_key()
        if pair in seen_pairs:
            issues.append(ValidationIssue(
                severity=IssueSeverity.ERROR,
                message=f"Duplicate connection between {connection.from_node_id} and {connection.to_node_id}",
                connection_id=connection.id
            ))
        seen_pairs.add(pair)

    # Group references
    listed_in: dict[str, list[str]] = {}
    for group in groups:
        for member in group.node_ids:
            if member not in node_ids:
                issues.append(ValidationIssue(
                    severity=IssueSeverity.ERROR,
                    message=f"Group references non-existent node: {member}",
                    group_id=group.id
                ))
            listed_in.setdefault(member, []).append(group.id)

    for node in nodes:
        if node.group_id is not None and node.group_id not in group_ids:
            issues.append(ValidationIssue(
                severity=IssueSeverity.ERROR,
                message=f"Node references non-existent group: {node.group_id}",
                node_id=node.id
            ))
            continue
        listing = listed_in.get(node.id, [])
        if node.group_id is not None and listing != [node.group_id]:
            issues.append(ValidationIssue(
                severity=IssueSeverity.WARNING,
                message=f"Node groupId {node.group_id} does not match group membership {listing}",
                node_id=node.id,
                group_id=node.group_id
            ))
        elif node.group_id is None and listing:
            issues.append(ValidationIssue(
                severity=IssueSeverity.WARNING,
                message=f"Node is listed in group(s) {listing} but has no groupId",
                node_id=node.id
            ))

    return issues


def _duplicate_ids(ids: list[str], kind: str) -> list[ValidationIssue]:
    seen: set[str] = set()
    issues = []
    for entity_id in ids:
        if entity_id in seen:
            issues.append(ValidationIssue(
                severity=IssueSeverity.ERROR,
                message=f"Duplicate {kind} id: {entity_id}"
            ))
        seen.add(entity_id)
    return issues


def repair_membership(
    nodes: list["Node"],
    groups: list["Group"],
) -> tuple[list["Node"], list["Group"]]:
    """
    Make node groupIds and group member lists agree.

    A node's own groupId wins; a node without one joins the first group
    that lists it. Every node ends up in at most one member list.
    Assumes validate_graph reported no ERROR issues.
    """
    first_listing: dict[str, str] = {}
    for group in groups:
        for member in group.node_ids:
            first_listing.setdefault(member, group.id)

    owner = {n.id: n.group_id or first_listing.get(n.id) for n in nodes}

    fixed_nodes = [
        n if n.group_id == owner[n.id] else n.model_copy(update={"group_id": owner[n.id]})
        for n in nodes
    ]

    fixed_groups = []
    for group in groups:
        kept = [m for m in group.node_ids if owner.get(m) == group.id]
        added = [n.id for n in nodes if owner[n.id] == group.id and n.id not in kept]
        members = tuple(kept + added)
        fixed_groups.append(group if members == group.node_ids else group.model_copy(update={"node_ids": members}))

    return fixed_nodes, fixed_groups


def validation_summary(issues: list[ValidationIssue]) -> dict:
    """
    Create a summary of validation issues.

    Args:
        issues: List of validation issues

    Returns:
        Dictionary with counts by severity
    """
    return {
        "total": len(issues),
        "errors": len([i for i in issues if i.severity == IssueSeverity.ERROR]),
        "warnings": len([i for i in issues if i.severity == IssueSeverity.WARNING]),
        "info": len([i for i in issues if i.severity == IssueSeverity.INFO]),
        "valid": len([i for i in issues if i.severity == IssueSeverity.ERROR]) == 0
    }
