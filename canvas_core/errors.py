"""
Error taxonomy for the canvas engine.

Unknown ids passed to store mutations are not errors: they are validated
and ignored. Everything here is a condition the caller has to surface.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .validation import ValidationIssue


class CanvasError(Exception):
    """Base class for all canvas engine errors."""


class ImportMalformed(CanvasError):
    """Persisted canvas data failed structural validation."""

    def __init__(self, message: str, issues: list["ValidationIssue"] | None = None):
        super().__init__(message)
        self.issues = issues or []

    def to_dict(self) -> dict:
        return {
            "error": "import_malformed",
            "message": str(self),
            "issues": [issue.to_dict() for issue in self.issues],
        }


class StorageExhausted(CanvasError):
    """The autosave payload exceeds the configured storage capacity."""

    def __init__(self, size: int, limit: int):
        super().__init__(
            f"Canvas data is {size} bytes, storage limit is {limit} bytes; export the canvas to keep it"
        )
        self.size = size
        self.limit = limit


class LayoutCancelled(CanvasError):
    """A background layout run was cancelled before it committed."""


class CollaborationError(CanvasError):
    """Base class for collaboration transport failures."""


class CanvasNotFound(CollaborationError):
    """No shared canvas exists with the requested id."""


class CanvasFull(CollaborationError):
    """The shared canvas already has its maximum number of participants."""


class NotAParticipant(CollaborationError):
    """The user has not joined the shared canvas."""
