"""
Node search - find nodes by content, tag and creation date.

Plain functions over a node collection, so they work the same on the live
store (`store.nodes`) and on a history snapshot (`snapshot.nodes`).
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Iterable, Optional

from .models import Node, content_text


def searchable_text(node: Node) -> str:
    """Lower-cased text a query is matched against."""
    parts = [content_text(node.content)]
    parts.append(node.comment or "")
    parts.extend(sorted(node.tags))
    return " ".join(parts).lower()


def search_by_content(nodes: Iterable[Node], query: str) -> list[Node]:
    """
    Case-insensitive substring search over text, titles, links, comment and tags.

    An empty query matches nothing.
    """
    query = query.strip().lower()
    if not query:
        return []
    return [n for n in nodes if query in searchable_text(n)]


def _utc_day(moment: datetime) -> date:
    return moment.astimezone(timezone.utc).date()


def search_by_date(nodes: Iterable[Node], day: date) -> list[Node]:
    """Nodes created on the given (UTC) calendar day."""
    return [n for n in nodes if _utc_day(n.created_at) == day]


def nodes_in_range(nodes: Iterable[Node], start: datetime, end: datetime) -> list[Node]:
    """Nodes created within [start, end]. Naive bounds are taken as UTC."""
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)
    if end.tzinfo is None:
        end = end.replace(tzinfo=timezone.utc)
    return [n for n in nodes if start <= n.created_at <= end]


def distinct_dates(nodes: Iterable[Node]) -> list[date]:
    """Days on which nodes were created, most recent first."""
    return sorted({_utc_day(n.created_at) for n in nodes}, reverse=True)


def all_tags(nodes: Iterable[Node]) -> list[str]:
    """Get all unique tags, sorted."""
    tags: set[str] = set()
    for node in nodes:
        tags.update(node.tags)
    return sorted(tags)


def nodes_with_tag(nodes: Iterable[Node], tag: str) -> list[Node]:
    return [n for n in nodes if tag in n.tags]


@dataclass
class TagFilter:
    """
    Active tag filter; nodes without the tag are hidden.

    The filter is view state only and never changes the graph.
    """
    tag: Optional[str] = None
    hidden: frozenset[str] = field(default_factory=frozenset)

    def apply(self, nodes: Iterable[Node], tag: Optional[str]):
        """Set (or with None, clear) the filter tag and recompute hidden ids."""
        self.tag = tag
        if tag is None:
            self.hidden = frozenset()
        else:
            self.hidden = frozenset(n.id for n in nodes if tag not in n.tags)

    def clear(self):
        self.tag = None
        self.hidden = frozenset()

    @property
    def active(self) -> bool:
        return self.tag is not None

    def visible(self, nodes: Iterable[Node]) -> list[Node]:
        if not self.active:
            return list(nodes)
        return [n for n in nodes if n.id not in self.hidden]
