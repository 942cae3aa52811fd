"""
Event bus - typed messages between canvas components.

Components never dispatch global events. A `Canvas` owns one `EventBus`
and hands it to whatever needs to publish or listen (store, controller,
collaboration session, server). Handlers subscribe per message type and
also receive subclasses of that type.
"""

from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, TypeVar

from loguru import logger

from .models import GraphSnapshot, Transform


class ChangeOrigin(str, Enum):
    """Where a graph change came from."""
    LOCAL = "local"
    UNDO = "undo"
    REDO = "redo"
    REMOTE = "remote"
    IMPORT = "import"


@dataclass(frozen=True)
class Message:
    """Base class for bus messages."""


@dataclass(frozen=True)
class GraphChanged(Message):
    """Nodes, connections or groups changed."""
    snapshot: GraphSnapshot
    origin: ChangeOrigin = ChangeOrigin.LOCAL
    description: str = ""


@dataclass(frozen=True)
class SelectionChanged(Message):
    node_ids: tuple[str, ...]


@dataclass(frozen=True)
class TransformChanged(Message):
    transform: Transform


@dataclass(frozen=True)
class OpenGroupDialog(Message):
    """The user asked to group nodes; the UI should prompt for a name."""
    node_ids: tuple[str, ...]


@dataclass(frozen=True)
class HighlightGroup(Message):
    group_id: Optional[str]


@dataclass(frozen=True)
class LayoutCompleted(Message):
    node_ids: tuple[str, ...]
    iterations: int
    converged: bool


@dataclass(frozen=True)
class Notification(Message):
    """User-visible notice (import rejected, storage full, ...)."""
    level: str
    text: str


M = TypeVar("M", bound=Message)


class EventBus:
    """
    Synchronous publish/subscribe over message types.

    Handlers run in subscription order on the publisher's call stack.
    A failing handler is logged and does not stop delivery to the others.
    """

    def __init__(self):
        self._handlers: dict[type, list[Callable]] = defaultdict(list)

    def subscribe(self, message_type: type[M], handler: Callable[[M], None]) -> Callable[[], None]:
        """Register a handler; returns a function that unsubscribes it."""
        self._handlers[message_type].append(handler)

        def unsubscribe():
            handlers = self._handlers.get(message_type, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def publish(self, message: Message):
        """Deliver a message to handlers of its type and of its base types."""
        for message_type in type(message).__mro__:
            for handler in list(self._handlers.get(message_type, ())):
                try:
                    handler(message)
                except Exception:
                    logger.exception("Handler {} failed for {}", handler, type(message).__name__)

    def handler_count(self, message_type: type) -> int:
        return len(self._handlers.get(message_type, ()))
