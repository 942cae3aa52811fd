"""
Collaboration - shared canvases for up to two participants.

Two halves:
- CollaborationHub: the service side. Keeps shared canvases and presence
  in memory and publishes one message per change to subscribers of the
  canvas channel.
- CollaborationSession: the client side. Emits a canvas_update after each
  local change of a Canvas and applies inbound canvas_update messages from
  other participants by replacing the whole graph (last writer wins).

Channel messages are plain dicts:

    {"event": "canvas_update",   "payload": {"canvasId", "data", "updatedBy", "timestamp"}}
    {"event": "presence_update", "payload": {"canvasId", "presence", "timestamp"}}
    {"event": "user_left",       "payload": {"canvasId", "userId", "timestamp"}}
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, TYPE_CHECKING

from loguru import logger

from . import config
from .errors import CanvasFull, CanvasNotFound, ImportMalformed, NotAParticipant
from .events import ChangeOrigin, GraphChanged, Notification
from .models import DEFAULT_CANVAS_NAME, GraphSnapshot, utcnow
from .persistence import parse_document
from .validation import IssueSeverity, validate_graph

if TYPE_CHECKING:
    from .canvas import Canvas


CANVAS_UPDATE = "canvas_update"
PRESENCE_UPDATE = "presence_update"
USER_LEFT = "user_left"

PARTICIPANT_COLORS = ("#3B82F6", "#EF4444")  # blue for the first participant, red for the second

Message = dict[str, Any]
Subscriber = Callable[[str, Message], None]


def generate_canvas_id() -> str:
    return f"canvas-{uuid.uuid4().hex[:12]}"


def generate_user_id() -> str:
    return f"user-{uuid.uuid4().hex[:12]}"


def _message(event: str, canvas_id: str, **payload) -> Message:
    return {
        "event": event,
        "payload": {"canvasId": canvas_id, **payload, "timestamp": utcnow().isoformat()},
    }


def graph_data(snapshot: GraphSnapshot) -> dict:
    """The shared part of a canvas: nodes, connections and groups as JSON."""
    return {
        "nodes": [n.model_dump(mode="json", by_alias=True) for n in snapshot.nodes],
        "connections": [c.model_dump(mode="json", by_alias=True) for c in snapshot.connections],
        "groups": [g.model_dump(mode="json", by_alias=True) for g in snapshot.groups],
    }


def validated_graph_data(data: Any) -> dict:
    """
    Normalize shared canvas data, rejecting anything a store would reject.

    Raises:
        ImportMalformed: schema or reference errors
    """
    document = parse_document(data)
    errors = [i for i in validate_graph(document.nodes, document.connections, document.groups)
              if i.severity == IssueSeverity.ERROR]
    if errors:
        raise ImportMalformed(f"Shared canvas data has {len(errors)} structural error(s)", errors)
    return {key: value for key, value in document.to_json_dict().items()
            if key in ("nodes", "connections", "groups")}


@dataclass
class Presence:
    """A participant's identity and last known cursor."""
    user_id: str
    user_name: str
    color: str
    last_seen: datetime = field(default_factory=utcnow)
    cursor: Optional[tuple[float, float]] = None

    def to_dict(self) -> dict:
        result = {
            "userId": self.user_id,
            "userName": self.user_name,
            "color": self.color,
            "lastSeen": self.last_seen.isoformat(),
        }
        if self.cursor is not None:
            result["cursor"] = {"x": self.cursor[0], "y": self.cursor[1]}
        return result


@dataclass
class SharedCanvas:
    id: str
    name: str
    data: dict
    participants: list[str] = field(default_factory=list)
    max_participants: int = config.MAX_PARTICIPANTS
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "data": self.data,
            "participants": list(self.participants),
            "maxParticipants": self.max_participants,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass
class JoinResult:
    canvas: SharedCanvas
    participants: list[Presence]

    def to_dict(self) -> dict:
        return {
            "canvas": self.canvas.to_dict(),
            "participants": [p.to_dict() for p in self.participants],
        }


class CollaborationHub:
    """
    In-memory registry of shared canvases.

    Subscribers receive (canvas_id, message) for every published message.
    """

    def __init__(
        self,
        max_participants: int = config.MAX_PARTICIPANTS,
        presence_timeout: float = config.PRESENCE_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.max_participants = max_participants
        self.presence_timeout = timedelta(seconds=presence_timeout)
        self._clock = clock
        self._canvases: dict[str, SharedCanvas] = {}
        self._presence: dict[str, dict[str, Presence]] = {}  # canvas_id -> user_id -> presence
        self._subscribers: list[Subscriber] = []

    # --- Channel ---

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register for channel messages; returns an unsubscribe function."""
        self._subscribers.append(subscriber)

        def unsubscribe():
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    def _publish(self, canvas_id: str, message: Message):
        for subscriber in list(self._subscribers):
            subscriber(canvas_id, message)

    # --- Lookup ---

    def get(self, canvas_id: str) -> SharedCanvas:
        canvas = self._canvases.get(canvas_id)
        if canvas is None:
            raise CanvasNotFound(f"Canvas not found: {canvas_id}")
        return canvas

    def participants(self, canvas_id: str) -> list[Presence]:
        """Participants seen within the presence timeout, in join order."""
        canvas = self.get(canvas_id)
        now = self._clock()
        presence = self._presence.get(canvas_id, {})
        return [presence[uid] for uid in canvas.participants
                if uid in presence and now - presence[uid].last_seen < self.presence_timeout]

    def _color_for(self, canvas: SharedCanvas, user_id: str) -> str:
        index = canvas.participants.index(user_id)
        return PARTICIPANT_COLORS[min(index, len(PARTICIPANT_COLORS) - 1)]

    # --- Operations ---

    def create(self, name: Optional[str], data: Any, creator_id: str) -> str:
        """Share canvas data; the creator is the first participant."""
        now = self._clock()
        canvas = SharedCanvas(
            id=generate_canvas_id(),
            name=name or DEFAULT_CANVAS_NAME,
            data=validated_graph_data(data),
            participants=[creator_id],
            max_participants=self.max_participants,
            created_at=now,
            updated_at=now,
        )
        self._canvases[canvas.id] = canvas
        self._presence[canvas.id] = {
            creator_id: Presence(creator_id, "User 1", PARTICIPANT_COLORS[0], last_seen=now)
        }
        logger.info("Created shared canvas {} for {}", canvas.id, creator_id)
        return canvas.id

    def join(self, canvas_id: str, user_id: str, user_name: Optional[str] = None) -> JoinResult:
        """
        Join a shared canvas (rejoining is allowed).

        Raises:
            CanvasNotFound: unknown canvas id
            CanvasFull: already at capacity and user_id is not a participant
        """
        canvas = self.get(canvas_id)
        if user_id not in canvas.participants:
            if len(canvas.participants) >= canvas.max_participants:
                raise CanvasFull(f"Canvas is full (maximum {canvas.max_participants} participants)")
            canvas.participants.append(user_id)
            canvas.updated_at = self._clock()

        presence = Presence(
            user_id=user_id,
            user_name=user_name or f"User {canvas.participants.index(user_id) + 1}",
            color=self._color_for(canvas, user_id),
            last_seen=self._clock(),
        )
        self._presence.setdefault(canvas_id, {})[user_id] = presence
        logger.info("User {} joined canvas {}", user_id, canvas_id)
        self._publish(canvas_id, _message(PRESENCE_UPDATE, canvas_id, presence=presence.to_dict()))
        return JoinResult(canvas=canvas, participants=self.participants(canvas_id))

    def update_data(self, canvas_id: str, data: Any, user_id: str) -> SharedCanvas:
        """
        Replace the shared data and broadcast it.

        Raises:
            CanvasNotFound, NotAParticipant, ImportMalformed
        """
        canvas = self.get(canvas_id)
        if user_id not in canvas.participants:
            raise NotAParticipant(f"User {user_id} is not a participant of canvas {canvas_id}")

        canvas.data = validated_graph_data(data)
        canvas.updated_at = self._clock()
        logger.debug("Canvas {} updated by {}", canvas_id, user_id)
        self._publish(canvas_id, _message(CANVAS_UPDATE, canvas_id, data=canvas.data, updatedBy=user_id))
        return canvas

    def update_presence(
        self,
        canvas_id: str,
        user_id: str,
        cursor: Optional[tuple[float, float]] = None,
        user_name: Optional[str] = None,
    ) -> Presence:
        """Refresh a participant's presence (and cursor) and broadcast it."""
        self.get(canvas_id)
        presence = self._presence.get(canvas_id, {}).get(user_id)
        if presence is None:
            raise NotAParticipant(f"No presence for user {user_id} on canvas {canvas_id}")

        presence.last_seen = self._clock()
        if cursor is not None:
            presence.cursor = cursor
        if user_name:
            presence.user_name = user_name
        self._publish(canvas_id, _message(PRESENCE_UPDATE, canvas_id, presence=presence.to_dict()))
        return presence

    def leave(self, canvas_id: str, user_id: str):
        """Remove a participant and broadcast user_left."""
        canvas = self.get(canvas_id)
        self._presence.get(canvas_id, {}).pop(user_id, None)
        if user_id in canvas.participants:
            canvas.participants.remove(user_id)
            canvas.updated_at = self._clock()
        logger.info("User {} left canvas {}", user_id, canvas_id)
        self._publish(canvas_id, _message(USER_LEFT, canvas_id, userId=user_id))


class CollaborationSession:
    """
    Links a local Canvas to a shared canvas channel.

    publish(message) is called with a canvas_update after every change of
    the local graph except those that came from the channel itself.
    """

    def __init__(
        self,
        canvas: "Canvas",
        user_id: str,
        publish: Callable[[Message], None],
        canvas_id: str = "",
    ):
        self.canvas = canvas
        self.user_id = user_id
        self.canvas_id = canvas_id
        self._publish = publish
        self.peers: dict[str, dict] = {}  # user_id -> presence payload
        self._unsubscribe = canvas.bus.subscribe(GraphChanged, self._on_graph_changed)
        self._channel_unsubscribe: Optional[Callable[[], None]] = None

    def _on_graph_changed(self, message: GraphChanged):
        if message.origin == ChangeOrigin.REMOTE:
            return
        self._publish(_message(CANVAS_UPDATE, self.canvas_id,
                               data=graph_data(message.snapshot), updatedBy=self.user_id))

    def receive(self, message: Message) -> bool:
        """
        Apply an inbound channel message; returns True if local state changed.

        A canvas_update that fails validation leaves the canvas untouched and
        is reported as an error Notification on the canvas bus.
        """
        event = message.get("event")
        payload = message.get("payload") or {}

        if event == CANVAS_UPDATE:
            if payload.get("updatedBy") == self.user_id:
                return False
            try:
                document = parse_document(payload.get("data"))
                self.canvas.store.replace_all(document.nodes, document.connections, document.groups,
                                              origin=ChangeOrigin.REMOTE)
            except ImportMalformed as e:
                logger.warning("Rejected update from {}: {}", payload.get("updatedBy"), e)
                self.canvas.bus.publish(Notification(level="error", text=f"Remote update rejected: {e}"))
                return False
            return True

        if event == PRESENCE_UPDATE:
            presence = payload.get("presence") or {}
            user_id = presence.get("userId")
            if user_id and user_id != self.user_id:
                self.peers[user_id] = presence
                return True
            return False

        if event == USER_LEFT:
            return self.peers.pop(payload.get("userId"), None) is not None

        logger.debug("Ignoring channel message {}", event)
        return False

    def send_presence(self, cursor: Optional[tuple[float, float]] = None):
        presence = {"userId": self.user_id}
        if cursor is not None:
            presence["cursor"] = {"x": cursor[0], "y": cursor[1]}
        self._publish(_message(PRESENCE_UPDATE, self.canvas_id, presence=presence))

    def leave(self):
        self._publish(_message(USER_LEFT, self.canvas_id, userId=self.user_id))
        self.close()

    def close(self):
        """Stop emitting local changes and stop listening to the channel."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._channel_unsubscribe is not None:
            self._channel_unsubscribe()
            self._channel_unsubscribe = None


def hub_publisher(hub: CollaborationHub, canvas_id: str, user_id: str) -> Callable[[Message], None]:
    """
    Route a session's outbound messages to an in-process hub.

    canvas_update -> update_data, presence_update -> update_presence,
    user_left -> leave.
    """
    def publish(message: Message):
        event, payload = message["event"], message["payload"]
        if event == CANVAS_UPDATE:
            hub.update_data(canvas_id, payload["data"], user_id)
        elif event == PRESENCE_UPDATE:
            cursor = payload["presence"].get("cursor")
            hub.update_presence(canvas_id, user_id, (cursor["x"], cursor["y"]) if cursor else None)
        elif event == USER_LEFT:
            hub.leave(canvas_id, user_id)

    return publish


def connect_session(hub: CollaborationHub, canvas: "Canvas", canvas_id: str, user_id: str) -> CollaborationSession:
    """Session wired both ways to an in-process hub channel."""
    session = CollaborationSession(canvas, user_id, hub_publisher(hub, canvas_id, user_id), canvas_id)
    def deliver(channel_id: str, message: Message):
        if channel_id == canvas_id:
            session.receive(message)

    session._channel_unsubscribe = hub.subscribe(deliver)
    return session
