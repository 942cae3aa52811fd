"""
WebSocket Manager - Handles real-time connections and broadcasts.

Connections are grouped into channels, one per shared canvas id, plus the
"local" channel for the server's own canvas. A broadcast only reaches the
sockets of its channel.
"""
from fastapi import WebSocket
from loguru import logger
import json
import asyncio

LOCAL_CHANNEL = "local"


class WebSocketManager:
    """
    Manages WebSocket connections and per-channel broadcasts.

    Clients of a shared canvas receive its canvas_update, presence_update
    and user_left messages; local clients receive canvas_updated
    notifications whenever the server's canvas changes.
    """

    def __init__(self):
        self._channels: dict[str, set[WebSocket]] = {}
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, channel: str = LOCAL_CHANNEL):
        """Accept and register a new WebSocket connection on a channel."""
        await websocket.accept()
        async with self._lock:
            self._channels.setdefault(channel, set()).add(websocket)
        logger.info("WebSocket connected to {}. Total connections: {}", channel, self.connection_count)

    async def disconnect(self, websocket: WebSocket, channel: str = LOCAL_CHANNEL):
        """Remove a WebSocket connection."""
        async with self._lock:
            sockets = self._channels.get(channel)
            if sockets is not None:
                sockets.discard(websocket)
                if not sockets:
                    del self._channels[channel]
        logger.info("WebSocket disconnected from {}. Total connections: {}", channel, self.connection_count)

    async def broadcast(self, channel: str, message: dict):
        """
        Broadcast a message to every client of a channel.

        Failed sends (disconnected clients) are handled gracefully.
        """
        if not self._channels.get(channel):
            return

        # Serialize once for all clients
        message_text = json.dumps(message)

        # Track failed connections for cleanup
        failed: set[WebSocket] = set()

        async with self._lock:
            sockets = self._channels.get(channel, set())
            for websocket in sockets:
                try:
                    await websocket.send_text(message_text)
                except Exception as e:
                    logger.debug("Dropping WebSocket on {}: {}", channel, e)
                    failed.add(websocket)

            # Remove failed connections
            sockets -= failed

    @property
    def connection_count(self) -> int:
        """Get the number of active connections."""
        return sum(len(sockets) for sockets in self._channels.values())
