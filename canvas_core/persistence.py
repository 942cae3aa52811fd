"""
Canvas persistence - export/import, file save/open and autosave.

The on-disk format is the camelCase JSON document:

    {"canvasName": ..., "nodes": [...], "connections": [...],
     "groups": [...], "transform": {"x": ..., "y": ..., "scale": ...}}

Imports are all-or-nothing: the document is parsed and structurally
validated before anything in the live canvas changes.
"""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from loguru import logger
from pydantic import ValidationError

from . import config
from .errors import ImportMalformed, StorageExhausted
from .events import ChangeOrigin, GraphChanged, Notification
from .models import CanvasDocument, default_groups, utcnow
from .validation import IssueSeverity, ValidationIssue

if TYPE_CHECKING:
    from .canvas import Canvas


def to_document(canvas: "Canvas") -> CanvasDocument:
    """Capture the canvas as an exportable document."""
    snapshot = canvas.store.snapshot()
    return CanvasDocument(
        canvas_name=canvas.name,
        nodes=list(snapshot.nodes),
        connections=list(snapshot.connections),
        groups=list(snapshot.groups),
        transform=canvas.transform,
    )


def export_canvas(canvas: "Canvas") -> str:
    """Serialize the canvas to pretty-printed JSON."""
    return json.dumps(to_document(canvas).to_json_dict(), indent=2)


def _schema_issues(error: ValidationError) -> list[ValidationIssue]:
    return [
        ValidationIssue(
            severity=IssueSeverity.ERROR,
            message=f"{'.'.join(str(part) for part in e['loc'])}: {e['msg']}",
        )
        for e in error.errors()
    ]


def parse_document(data: str | bytes | dict[str, Any]) -> CanvasDocument:
    """
    Parse and schema-check a canvas document.

    Files without groups get the preset groups. Nodes without timestamps
    are stamped with the current time.

    Raises:
        ImportMalformed: not JSON, not an object, no node list, or a schema violation
    """
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ImportMalformed(f"Not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise ImportMalformed("Canvas data must be a JSON object")
    if not isinstance(data.get("nodes"), list) or not isinstance(data.get("connections", []), list):
        raise ImportMalformed("Canvas data must contain 'nodes' and 'connections' arrays")

    if "groups" not in data:
        data = {**data, "groups": [g.model_dump(by_alias=True) for g in default_groups()]}

    try:
        return CanvasDocument.model_validate(data)
    except ValidationError as e:
        issues = _schema_issues(e)
        raise ImportMalformed(f"Canvas data has {len(issues)} invalid field(s)", issues) from e


def load_document(canvas: "Canvas", document: CanvasDocument):
    """
    Replace the canvas contents with a parsed document.

    The store validates references first; on failure the canvas is
    unchanged. On success the undo history starts over from the loaded state.
    """
    try:
        canvas.store.replace_all(document.nodes, document.connections, document.groups,
                                 origin=ChangeOrigin.IMPORT)
    except ImportMalformed as e:
        logger.warning("Import rejected: {} ({} issue(s))", e, len(e.issues))
        raise

    canvas.name = document.canvas_name
    canvas.transform = document.transform
    canvas.clear_selection()
    canvas.history.reset()
    logger.info("Loaded canvas '{}' ({} nodes, {} connections, {} groups)",
                document.canvas_name, len(document.nodes), len(document.connections), len(document.groups))


def import_canvas(canvas: "Canvas", data: str | bytes | dict[str, Any]):
    """Parse, validate and load a document into canvas."""
    try:
        document = parse_document(data)
    except ImportMalformed as e:
        logger.warning("Import rejected: {}", e)
        raise
    load_document(canvas, document)


def save_canvas(canvas: "Canvas", file_path: str | Path) -> Path:
    """Write the canvas to a JSON file, creating parent directories."""
    path = Path(file_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(export_canvas(canvas))
    logger.info("Saved canvas to {}", path)
    return path


def open_canvas(canvas: "Canvas", file_path: str | Path):
    """Load a JSON file into canvas."""
    path = Path(file_path)
    if not path.exists():
        raise FileNotFoundError(f"Canvas file not found: {path}")

    import_canvas(canvas, path.read_bytes())


class AutoSaver:
    """
    Keeps a recovery copy of the canvas in a single file.

    The payload wraps the document with a save time:
    {"savedAt": "...", "canvas": {...}}. Copies older than max_age_days
    are ignored on load.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        limit: Optional[int] = None,
        max_age_days: int = config.AUTOSAVE_MAX_AGE_DAYS,
    ):
        self.path = Path(path) if path is not None else config.AUTOSAVE_PATH
        self.limit = limit if limit is not None else config.AUTOSAVE_LIMIT
        self.max_age = timedelta(days=max_age_days)
        self._unsubscribe = None

    def save(self, canvas: "Canvas") -> int:
        """
        Write the recovery copy; returns the number of bytes written.

        Raises:
            StorageExhausted: payload larger than the limit (nothing is written)
        """
        payload = json.dumps({
            "savedAt": utcnow().isoformat(),
            "canvas": to_document(canvas).to_json_dict(),
        }).encode("utf-8")

        if len(payload) > self.limit:
            logger.error("Autosave skipped: {} bytes exceeds limit of {}", len(payload), self.limit)
            raise StorageExhausted(len(payload), self.limit)

        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_bytes(payload)
        tmp.replace(self.path)
        logger.debug("Autosaved {} bytes to {}", len(payload), self.path)
        return len(payload)

    def load(self) -> Optional[CanvasDocument]:
        """The saved document, or None when missing, expired or unreadable."""
        if not self.path.exists():
            return None

        try:
            raw = json.loads(self.path.read_text())
            saved_at = datetime.fromisoformat(raw["savedAt"])
            if saved_at.tzinfo is None:
                saved_at = saved_at.replace(tzinfo=timezone.utc)
            document = parse_document(raw["canvas"])
        except (OSError, ValueError, KeyError, TypeError, ImportMalformed) as e:
            logger.warning("Ignoring unreadable autosave {}: {}", self.path, e)
            return None

        if utcnow() - saved_at > self.max_age:
            logger.info("Ignoring autosave from {} (older than {} days)", saved_at, self.max_age.days)
            return None
        return document

    def restore(self, canvas: "Canvas") -> bool:
        """Load the recovery copy into canvas if there is a usable one."""
        document = self.load()
        if document is None:
            return False
        load_document(canvas, document)
        return True

    def clear(self):
        self.path.unlink(missing_ok=True)

    def watch(self, canvas: "Canvas"):
        """
        Save after every graph change of canvas.

        A StorageExhausted failure is reported on the canvas bus as an
        error Notification so the UI can offer an export.
        """
        def on_change(_message: GraphChanged):
            try:
                self.save(canvas)
            except StorageExhausted as e:
                canvas.bus.publish(Notification(level="error", text=str(e)))

        self.unwatch()
        self._unsubscribe = canvas.bus.subscribe(GraphChanged, on_change)

    def unwatch(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
