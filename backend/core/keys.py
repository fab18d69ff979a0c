# backend/core/keys.py
"""Redis key layout shared by every chat service."""

import re

CHAT_ROOM_PREFIX = "chat:room:"  # chat:room:{room_id} -> Room JSON
CHAT_MESSAGES_PREFIX = "chat:messages:"  # chat:messages:{room_id} -> list of Message JSON, newest first
CHAT_USERS_PREFIX = "chat:users:"  # chat:users:{username} -> User JSON
CHAT_ROOM_PRESENCE_PREFIX = "chat:presence:"  # chat:presence:{room_id}:{username} -> timestamp (TTL)
PASSWORD_HASH_PREFIX = "chat:password:"  # chat:password:{username} -> bcrypt hash
AUTH_TOKEN_PREFIX = "chat:token:"

RATE_LIMIT_PREFIX = "rl:"
CHAT_BURST_PREFIX = "rl:chat:b:"


def room_key(room_id: str) -> str:
    return f"{CHAT_ROOM_PREFIX}{room_id}"


def messages_key(room_id: str) -> str:
    return f"{CHAT_MESSAGES_PREFIX}{room_id}"


def user_key(username: str) -> str:
    return f"{CHAT_USERS_PREFIX}{username}"


def presence_key(room_id: str, username: str) -> str:
    return f"{CHAT_ROOM_PRESENCE_PREFIX}{room_id}:{username}"


def presence_pattern(room_id: str = "*") -> str:
    return f"{CHAT_ROOM_PRESENCE_PREFIX}{room_id}:*"


def password_key(username: str) -> str:
    return f"{PASSWORD_HASH_PREFIX}{username}"


def token_key(token: str) -> str:
    """Reverse lookup: chat:token:{token} -> username."""
    return f"{AUTH_TOKEN_PREFIX}{token}"


def user_token_key(username: str, token: str) -> str:
    """Per-user index: chat:token:user:{username}:{token} -> created-at ms."""
    return f"{AUTH_TOKEN_PREFIX}user:{username}:{token}"


def user_token_pattern(username: str = "*", token: str = "*") -> str:
    return f"{AUTH_TOKEN_PREFIX}user:{username}:{token}"


def last_token_key(username: str = "*") -> str:
    """Grace record: chat:token:last:{username} -> {"token", "expiredAt"}."""
    return f"{AUTH_TOKEN_PREFIX}last:{username}"


def rate_limit_key(action: str, identifier: str) -> str:
    return f"{RATE_LIMIT_PREFIX}{action}:{identifier}"


def burst_key(kind: str, room_id: str, username: str) -> str:
    return f"{CHAT_BURST_PREFIX}{kind}:{room_id}:{username}"


def last_segment(key: str) -> str:
    return key.rsplit(":", 1)[-1]


def glob_escape(value: str) -> str:
    """Escape SCAN/KEYS glob metacharacters so ``value`` only matches itself."""
    return re.sub(r"([*?\[\]\\])", r"\\\1", value)
