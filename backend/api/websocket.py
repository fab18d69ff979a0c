# backend/api/websocket.py

from __future__ import annotations

import json
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from core import state
from core.errors import ChatError
from services.broadcast import PUBLIC_CHANNEL, user_channel
from services.content_filter import ROOM_ID_REGEX

logger = logging.getLogger(__name__)

router = APIRouter()

ROOM_CHANNEL_PREFIX = "room-"
USER_CHANNEL_PREFIX = "chats-"


async def authorize_channel(channel: str, username: Optional[str]) -> Optional[str]:
    """
    Check whether ``username`` (None when unauthenticated) may listen on ``channel``.

    Returns an error message, or None when the subscription is allowed.
    """
    if channel == PUBLIC_CHANNEL:
        return None

    if channel.startswith(ROOM_CHANNEL_PREFIX):
        room_id = channel[len(ROOM_CHANNEL_PREFIX):]
        if not ROOM_ID_REGEX.match(room_id):
            return "Invalid room ID format"
        try:
            room = await state.rooms.load(room_id)
        except ChatError as exc:
            return exc.message
        if room.is_private and not room.visible_to(username):
            return "Forbidden - not a member of this room"
        return None

    if channel.startswith(USER_CHANNEL_PREFIX):
        if username is None or channel != user_channel(username):
            return "Unauthorized - token required for this channel"
        return None

    return f"Unknown channel: {channel}"


# ============================================================================
# WEBSOCKET ENDPOINT
# ============================================================================

@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, username: Optional[str] = None, token: Optional[str] = None):
    """
    WebSocket endpoint for live push events.

    Protocol:
    =========

    Client -> Server Actions:
    -------------------------
    Subscribe:
        {"action": "subscribe", "channel": "room-9f2c..."}
        Response: {"type": "subscribed", "channel": "room-9f2c..."}

    Unsubscribe:
        {"action": "unsubscribe", "channel": "room-9f2c..."}
        Response: {"type": "unsubscribed", "channel": "room-9f2c..."}

    Server -> Client Messages:
    -------------------------
    Push Event:
        {"channel": "room-9f2c...", "event": "room-message", "data": {...}}

    Error:
        {"type": "error", "message": "..."}

    Channels:
    =========
    chats-public     open to anyone
    chats-{user}     requires ?username=&token= for that user
    room-{id}        room must exist; private rooms need an authenticated member

    Args:
        websocket: WebSocket connection object
        username: Query parameter, optional
        token: Query parameter, required together with username to authenticate
    """
    authenticated: Optional[str] = None
    if username and token:
        result = await state.tokens.validate(username, token)
        if result.valid:
            authenticated = username.lower()
        else:
            logger.info("WebSocket auth failed for %s, continuing anonymously", username)

    await state.connection_manager.connect(websocket, authenticated)

    try:
        while True:
            data = await websocket.receive_text()

            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "message": "Invalid JSON"})
                continue

            if not isinstance(message, dict):
                await websocket.send_json({"type": "error", "message": "Invalid JSON"})
                continue

            action = message.get("action")
            channel = message.get("channel")
            logger.debug("Websocket input: action=%s channel=%s", action, channel)

            if action not in ("subscribe", "unsubscribe"):
                await websocket.send_json({"type": "error", "message": f"Unknown action: {action}"})
                continue
            if not channel or not isinstance(channel, str):
                await websocket.send_json({"type": "error", "message": "Channel is required"})
                continue

            if action == "subscribe":
                error = await authorize_channel(channel, authenticated)
                if error:
                    await websocket.send_json({"type": "error", "message": error})
                    continue
                state.connection_manager.subscribe(websocket, channel)
                await websocket.send_json({"type": "subscribed", "channel": channel})
            else:
                state.connection_manager.unsubscribe(websocket, channel)
                await websocket.send_json({"type": "unsubscribed", "channel": channel})

    except WebSocketDisconnect:
        state.connection_manager.disconnect(websocket)
    except Exception as e:
        logger.error("WebSocket error: %s", e)
        state.connection_manager.disconnect(websocket)
