"""
History Manager - linear undo/redo over graph snapshots.

Three slots:
- past: snapshots, oldest first
- present: the snapshot matching the live GraphStore
- future: undone snapshots, nearest at the end of the list

Snapshots share their (immutable) entities, so a commit costs one tuple of
references per changed collection instead of a deep copy of the graph.
"""

from typing import Callable, Optional

from loguru import logger

from .events import ChangeOrigin
from .models import GraphSnapshot
from .store import GraphStore


class HistoryManager:
    """
    Wraps a GraphStore with snapshot-based undo/redo.

    Every local store commit lands here through GraphStore.on_commit.
    Undo/redo restore the store directly and never commit.
    """

    def __init__(self, store: GraphStore, max_history: int = 0):
        self._store = store
        self._max_history = max_history  # 0 = unbounded
        self._past: list[GraphSnapshot] = []
        self._present: GraphSnapshot = store.snapshot()
        self._future: list[GraphSnapshot] = []
        self._on_state_changed: list[Callable[[], None]] = []
        store.on_commit(self.commit)

    # --- Properties ---

    @property
    def present(self) -> GraphSnapshot:
        return self._present

    @property
    def past(self) -> tuple[GraphSnapshot, ...]:
        return tuple(self._past)

    @property
    def future(self) -> tuple[GraphSnapshot, ...]:
        """Undone snapshots, nearest first."""
        return tuple(reversed(self._future))

    @property
    def can_undo(self) -> bool:
        """Check if undo is available."""
        return len(self._past) > 0

    @property
    def can_redo(self) -> bool:
        """Check if redo is available."""
        return len(self._future) > 0

    def on_state_changed(self, callback: Callable[[], None]):
        """Register a callback fired when undo/redo availability may have changed."""
        self._on_state_changed.append(callback)

    def _notify(self):
        for callback in self._on_state_changed:
            callback()

    # --- Transitions ---

    def commit(self, snapshot: GraphSnapshot):
        """Push the current present onto past and make snapshot the present."""
        self._past.append(self._present)
        self._present = snapshot
        self._future.clear()

        # Trim history if capped
        if self._max_history and len(self._past) > self._max_history:
            del self._past[: len(self._past) - self._max_history]

        self._notify()

    def undo(self) -> Optional[GraphSnapshot]:
        """Restore the previous snapshot; returns it, or None when there is nothing to undo."""
        if not self._past:
            return None

        self._future.append(self._present)
        self._present = self._past.pop()
        self._store.restore(self._present, ChangeOrigin.UNDO)
        logger.debug("Undo ({} left)", len(self._past))
        self._notify()
        return self._present

    def redo(self) -> Optional[GraphSnapshot]:
        """Re-apply the nearest undone snapshot; returns it, or None."""
        if not self._future:
            return None

        self._past.append(self._present)
        self._present = self._future.pop()
        self._store.restore(self._present, ChangeOrigin.REDO)
        logger.debug("Redo ({} left)", len(self._future))
        self._notify()
        return self._present

    def reset(self):
        """Forget all history; the store's current state becomes the present."""
        self._past.clear()
        self._future.clear()
        self._present = self._store.snapshot()
        self._notify()
