# backend/api/routes/utils.py

from __future__ import annotations

import json
import logging
from typing import Optional, Tuple, Type, TypeVar

from fastapi import Request
from pydantic import BaseModel, ValidationError

from core import state
from core.errors import Forbidden, InvalidArgument, Unauthorized

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


async def read_json_body(request: Request) -> dict:
    """Request body as a dict. Empty or malformed bodies read as ``{}``."""
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = json.loads(raw)
    except ValueError:
        logger.info("Malformed JSON body on %s, treating as empty", request.url.path)
        return {}
    return body if isinstance(body, dict) else {}


def parse_body(model: Type[ModelT], body: dict) -> ModelT:
    try:
        return model.model_validate(body)
    except ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or "body"
        raise InvalidArgument(f"Invalid {field}: {first.get('msg', 'bad value')}")


def extract_auth(request: Request) -> Tuple[Optional[str], Optional[str]]:
    """
    ``(username, token)`` from ``X-Username`` and ``Authorization: Bearer``.

    Either value may be None when the header is missing.
    """
    token = None
    authorization = request.headers.get("authorization", "")
    if authorization.lower().startswith("bearer "):
        token = authorization[7:].strip() or None
    username = request.headers.get("x-username") or None
    return (username.lower() if username else None), token


def request_identifier(request: Request, body: dict) -> str:
    """Who a sensitive action is rate limited against."""
    candidate = body.get("username") if isinstance(body.get("username"), str) else None
    candidate = candidate or request.headers.get("x-username")
    if not candidate:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            candidate = forwarded.split(",")[0].strip()
    if not candidate and request.client:
        candidate = request.client.host
    return (candidate or "anon").lower()


async def require_auth(request: Request, body: Optional[dict] = None) -> str:
    """
    Validate the bearer token for ``X-Username`` and return the username.

    When the body names a user it has to be the authenticated one.
    """
    username, token = extract_auth(request)
    if not username or not token:
        raise Unauthorized("Unauthorized - missing credentials")

    result = await state.tokens.validate(username, token)
    if not result.valid:
        logger.info("Unauthorized: invalid token for %s", username)
        raise Unauthorized("Unauthorized - invalid token")

    claimed = (body or {}).get("username")
    if isinstance(claimed, str) and claimed and claimed.lower() != username:
        logger.info("Username mismatch: header %s, body %s", username, claimed)
        raise Unauthorized("Username mismatch")
    return username


async def require_admin(request: Request, body: Optional[dict] = None) -> str:
    username = await require_auth(request, body)
    if not state.rooms.is_admin(username):
        logger.info("Unauthorized: user %s is not the admin", username)
        raise Forbidden("Forbidden - admin only")
    return username
