# backend/services/connection_manager.py

from __future__ import annotations

from typing import Dict, Set
from fastapi import WebSocket
import logging

logger = logging.getLogger(__name__)

# ============================================================================
# WEBSOCKET CHANNEL RELAY
# ============================================================================

class ConnectionManager:
    """
    Local end of the push layer: maps push channels to live WebSockets.

    The push backend (Redis Pub/Sub or Google Pub/Sub) delivers every event
    to every app instance; each instance forwards it only to its own sockets
    subscribed to that channel.

    Data Structures:
        channels: Maps channel -> Set of WebSocket connections
               Example: {"room-9f2c": {websocket1, websocket2}}

        connection_channels: Maps WebSocket -> Set of channels it's subscribed to
               Example: {websocket1: {"chats-public", "chats-alice"}}

        connection_users: Maps WebSocket -> username (None for anonymous)
    """

    def __init__(self) -> None:
        self.channels: Dict[str, Set[WebSocket]] = {}
        self.connection_channels: Dict[WebSocket, Set[str]] = {}
        self.connection_users: Dict[WebSocket, str | None] = {}

    async def connect(self, websocket: WebSocket, username: str | None = None) -> None:
        """Accept a new WebSocket connection. No channels are subscribed yet."""
        await websocket.accept()
        self.connection_channels[websocket] = set()
        self.connection_users[websocket] = username
        logger.info("✓ %s connected. Total: %d", username or "anonymous", len(self.connection_channels))

    def disconnect(self, websocket: WebSocket) -> None:
        """Forget a connection and drop it from every channel it was on."""
        if websocket not in self.connection_channels:
            return

        for channel in self.connection_channels.pop(websocket):
            sockets = self.channels.get(channel)
            if sockets is not None:
                sockets.discard(websocket)
                if not sockets:
                    del self.channels[channel]

        username = self.connection_users.pop(websocket, None)
        logger.info("✗ %s disconnected. Total: %d", username or "anonymous", len(self.connection_channels))

    def subscribe(self, websocket: WebSocket, channel: str) -> None:
        if websocket not in self.connection_channels:
            return  # Connection already closed
        self.channels.setdefault(channel, set()).add(websocket)
        self.connection_channels[websocket].add(channel)

    def unsubscribe(self, websocket: WebSocket, channel: str) -> None:
        if websocket not in self.connection_channels:
            return
        self.connection_channels[websocket].discard(channel)
        sockets = self.channels.get(channel)
        if sockets is not None:
            sockets.discard(websocket)
            if not sockets:
                del self.channels[channel]

    async def deliver(self, channel: str, message: dict) -> int:
        """
        Send a push event to every socket subscribed to ``channel``.

        Sockets that fail to receive are assumed dead and disconnected.
        Returns the number of sockets reached.
        """
        sockets = list(self.channels.get(channel, ()))
        delivered = 0
        for websocket in sockets:
            try:
                await websocket.send_json(message)
                delivered += 1
            except Exception as exc:
                logger.warning("Dropping socket on %s after failed send: %s", channel, exc)
                self.disconnect(websocket)
        return delivered
