# backend/api/routes/chat_rooms.py

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, Union

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from core import state
from core.errors import InvalidArgument, Unauthorized
from models.models import (
    AuthenticateWithPasswordRequest,
    CreateRoomRequest,
    CreateUserRequest,
    GenerateTokenRequest,
    JoinLeaveRoomRequest,
    RefreshTokenRequest,
    SendMessageRequest,
    SetPasswordRequest,
    SwitchRoomRequest,
)
from services.broadcast import RoomsChanged
from services.rate_limiter import SENSITIVE_ACTIONS
from api.routes.utils import (
    extract_auth,
    parse_body,
    read_json_body,
    request_identifier,
    require_admin,
    require_auth,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat-rooms")

Handler = Callable[[Request, dict], Awaitable[Union[dict, JSONResponse]]]


def _created(payload: dict) -> JSONResponse:
    return JSONResponse(status_code=201, content=payload)


def _query(request: Request, name: str) -> str:
    value = request.query_params.get(name)
    if not value:
        logger.info("Missing %s parameter", name)
        raise InvalidArgument(f"{name} query parameter is required")
    return value


# ============================================================================
# GET ACTIONS
# ============================================================================

async def get_rooms(request: Request, body: dict) -> dict:
    """Rooms visible to ``?username=`` (public rooms only when anonymous)."""
    viewer = request.query_params.get("username") or None
    rooms = await state.rooms.list_visible(viewer.lower() if viewer else None)
    return {"rooms": [room.to_dict() for room in rooms]}


async def get_room(request: Request, body: dict) -> dict:
    room = await state.rooms.get(_query(request, "roomId"))
    return {"room": room.to_dict()}


async def get_messages(request: Request, body: dict) -> dict:
    messages = await state.messages.list(_query(request, "roomId"))
    return {"messages": [m.to_dict() for m in messages]}


async def get_bulk_messages(request: Request, body: dict) -> dict:
    room_ids = [rid.strip() for rid in _query(request, "roomIds").split(",") if rid.strip()]
    if not room_ids:
        raise InvalidArgument("At least one room ID is required")
    return await state.messages.list_bulk(room_ids)


async def get_room_users(request: Request, body: dict) -> dict:
    room = await state.rooms.load(_query(request, "roomId"))
    return {"users": await state.presence.list_active(room.id)}


async def get_users(request: Request, body: dict) -> dict:
    users = await state.users.search(request.query_params.get("search", ""))
    return {"users": [u.to_dict() for u in users]}


async def verify_token(request: Request, body: dict) -> dict:
    """Resolve the bearer token alone; no ``X-Username`` needed."""
    _, token = extract_auth(request)
    if not token:
        logger.info("Token verification failed: missing Authorization header")
        raise Unauthorized("Authorization token required")

    username, result, expired_at = await state.tokens.verify(token)
    if not result.valid:
        raise Unauthorized("Invalid authentication token")
    if result.expired:
        return {
            "valid": True,
            "username": username,
            "expired": True,
            "message": "Token is within grace period",
            "expiredAt": expired_at,
        }
    return {"valid": True, "username": username, "message": "Token is valid"}


async def check_password(request: Request, body: dict) -> dict:
    username = await require_auth(request)
    return {"hasPassword": await state.users.has_password(username), "username": username}


async def cleanup_presence(request: Request, body: dict) -> dict:
    await require_admin(request)
    rooms_updated = await state.presence.cleanup_all()
    state.events.emit(RoomsChanged())
    return {"success": True, "roomsUpdated": rooms_updated}


async def debug_presence(request: Request, body: dict) -> dict:
    await require_admin(request)
    presence_data = await state.presence.snapshot()
    rooms = await state.rooms.list_detailed()
    return {
        "presenceKeys": len(presence_data),
        "presenceData": presence_data,
        "rooms": [
            {"id": r.id, "name": r.name, "userCount": r.user_count, "users": r.users} for r in rooms
        ],
    }


# ============================================================================
# POST ACTIONS
# ============================================================================

async def create_room(request: Request, body: dict) -> JSONResponse:
    username = await require_auth(request, body)
    data = parse_body(CreateRoomRequest, body)
    room = await state.rooms.create(type=data.type, name=data.name, members=data.members, requested_by=username)
    return _created({"room": room.to_dict()})


async def join_room(request: Request, body: dict) -> dict:
    data = parse_body(JoinLeaveRoomRequest, body)
    if not data.room_id or not data.username:
        raise InvalidArgument("Room ID and username are required")
    await state.rooms.join(data.room_id, data.username)
    return {"success": True}


async def leave_room(request: Request, body: dict) -> dict:
    data = parse_body(JoinLeaveRoomRequest, body)
    if not data.room_id or not data.username:
        raise InvalidArgument("Room ID and username are required")
    await state.rooms.leave(data.room_id, data.username)
    return {"success": True}


async def switch_room(request: Request, body: dict) -> dict:
    data = parse_body(SwitchRoomRequest, body)
    if not data.username:
        raise InvalidArgument("Username is required")
    await state.rooms.switch(data.previous_room_id, data.next_room_id, data.username)
    return {"success": True}


async def send_message(request: Request, body: dict) -> JSONResponse:
    data = parse_body(SendMessageRequest, body)
    if not data.room_id or not data.username:
        raise InvalidArgument("Room ID and username are required")
    message = await state.messages.send(data.room_id, data.username, data.content)
    state.message_counter += 1
    return _created({"message": message.to_dict()})


async def create_user(request: Request, body: dict) -> JSONResponse:
    data = parse_body(CreateUserRequest, body)
    user, token, created = await state.users.create(data.username, data.password)
    payload = {"user": user.to_dict(), "token": token}
    return _created(payload) if created else JSONResponse(content=payload)


async def generate_token(request: Request, body: dict) -> JSONResponse:
    username = await require_auth(request, body)
    data = parse_body(GenerateTokenRequest, body)
    token = await state.tokens.issue(data.username or username, force=data.force)
    return _created({"token": token})


async def refresh_token(request: Request, body: dict) -> JSONResponse:
    data = parse_body(RefreshTokenRequest, body)
    if not data.username or not data.old_token:
        raise InvalidArgument("Username and oldToken are required")
    token, _ = await state.tokens.refresh(data.username, data.old_token)
    return _created({"token": token})


async def authenticate_with_password(request: Request, body: dict) -> dict:
    data = parse_body(AuthenticateWithPasswordRequest, body)
    token = await state.users.authenticate(data.username, data.password, data.old_token)
    return {"token": token, "username": data.username.lower()}


async def set_password(request: Request, body: dict) -> dict:
    username = await require_auth(request, body)
    data = parse_body(SetPasswordRequest, body)
    await state.users.set_password(username, data.password)
    return {"success": True}


async def list_tokens(request: Request, body: dict) -> dict:
    username = await require_auth(request, body)
    _, current = extract_auth(request)
    tokens = await state.tokens.list_tokens(username)
    return {
        "tokens": [{**t.to_dict(), "isCurrent": t.token == current} for t in tokens],
        "count": len(tokens),
    }


async def logout_current(request: Request, body: dict) -> dict:
    username = await require_auth(request, body)
    _, token = extract_auth(request)
    await state.tokens.revoke(token)
    logger.info("User %s logged out from current device", username)
    return {"success": True, "message": "Logged out from current session"}


async def logout_all_devices(request: Request, body: dict) -> dict:
    username = await require_auth(request, body)
    count = await state.tokens.revoke_all(username)
    return {"success": True, "message": f"Logged out from {count} devices", "deletedCount": count}


async def clear_all_messages(request: Request, body: dict) -> dict:
    username = await require_auth(request, body)
    rooms_cleared = await state.messages.clear_all(username)
    return {"success": True, "message": f"Cleared messages in {rooms_cleared} rooms", "roomsCleared": rooms_cleared}


async def reset_user_counts(request: Request, body: dict) -> dict:
    await require_admin(request, body)
    deleted = await state.presence.reset_all()
    state.events.emit(RoomsChanged())
    return {"success": True, "message": "All user counts reset", "deletedPresenceKeys": deleted}


# ============================================================================
# DELETE ACTIONS
# ============================================================================

async def delete_room(request: Request, body: dict) -> dict:
    username = await require_auth(request)
    await state.rooms.delete(_query(request, "roomId"), username)
    return {"success": True}


async def delete_message(request: Request, body: dict) -> dict:
    username = await require_auth(request)
    room_id = request.query_params.get("roomId")
    message_id = request.query_params.get("messageId")
    if not room_id or not message_id:
        raise InvalidArgument("roomId and messageId query parameters are required")
    await state.messages.delete(room_id, message_id, username)
    return {"success": True}


GET_ACTIONS: Dict[str, Handler] = {
    "getRooms": get_rooms,
    "getRoom": get_room,
    "getMessages": get_messages,
    "getBulkMessages": get_bulk_messages,
    "getRoomUsers": get_room_users,
    "getUsers": get_users,
    "verifyToken": verify_token,
    "checkPassword": check_password,
    "cleanupPresence": cleanup_presence,
    "debugPresence": debug_presence,
}

POST_ACTIONS: Dict[str, Handler] = {
    "createRoom": create_room,
    "joinRoom": join_room,
    "leaveRoom": leave_room,
    "switchRoom": switch_room,
    "sendMessage": send_message,
    "createUser": create_user,
    "generateToken": generate_token,
    "refreshToken": refresh_token,
    "authenticateWithPassword": authenticate_with_password,
    "setPassword": set_password,
    "listTokens": list_tokens,
    "logoutCurrent": logout_current,
    "logoutAllDevices": logout_all_devices,
    "clearAllMessages": clear_all_messages,
    "resetUserCounts": reset_user_counts,
}

DELETE_ACTIONS: Dict[str, Handler] = {
    "deleteRoom": delete_room,
    "deleteMessage": delete_message,
}


def _resolve(actions: Dict[str, Handler], action: str | None) -> Handler:
    handler = actions.get(action or "")
    if handler is None:
        logger.info("Invalid action: %s", action)
        raise InvalidArgument("Invalid action")
    return handler


# ============================================================================
# ROUTES
# ============================================================================

@router.get("")
async def chat_rooms_get(request: Request, action: str | None = None):
    return await _resolve(GET_ACTIONS, action)(request, {})


@router.post("")
async def chat_rooms_post(request: Request, action: str | None = None):
    """
    Action-style POST endpoint: ``/api/chat-rooms?action=<name>`` with a JSON body.

    Flow:
        1. Unknown action -> 400
        2. Sensitive actions pass the per-identifier rate limiter
        3. The handler authenticates itself when the action is protected
    """
    handler = _resolve(POST_ACTIONS, action)
    body = await read_json_body(request)

    if action in SENSITIVE_ACTIONS:
        await state.limiter.check_action(action, request_identifier(request, body))

    return await handler(request, body)


@router.delete("")
async def chat_rooms_delete(request: Request, action: str | None = None):
    return await _resolve(DELETE_ACTIONS, action)(request, {})
