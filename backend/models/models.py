# backend/models/models.py
from __future__ import annotations

from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Wire and storage models use camelCase keys (``createdAt``, ``userCount``)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


# ============================================================================
# STORED ENTITIES
# ============================================================================

class User(CamelModel):
    username: str
    last_active: int


class Room(CamelModel):
    id: str
    name: str
    type: Literal["public", "private"] = "public"
    created_at: int
    user_count: int = 0
    members: Optional[List[str]] = None

    @property
    def is_private(self) -> bool:
        return self.type == "private"

    def visible_to(self, username: Optional[str]) -> bool:
        """Public rooms are visible to everyone, private rooms only to their members."""
        if not self.is_private:
            return True
        if not username:
            return False
        return username.lower() in (self.members or [])


class RoomWithUsers(Room):
    users: List[str] = []


class Message(CamelModel):
    id: str
    room_id: str
    username: str
    content: str
    timestamp: int


class TokenStatus(str, Enum):
    VALID = "valid"
    VALID_EXPIRED = "valid_expired"
    INVALID = "invalid"


class TokenValidation(CamelModel):
    status: TokenStatus

    @property
    def valid(self) -> bool:
        return self.status is not TokenStatus.INVALID

    @property
    def expired(self) -> bool:
        return self.status is TokenStatus.VALID_EXPIRED


class TokenInfo(CamelModel):
    token: str
    created_at: int = 0


# ============================================================================
# REQUEST BODIES
# ============================================================================

class CreateUserRequest(CamelModel):
    username: str = ""
    password: Optional[str] = None


class CreateRoomRequest(CamelModel):
    name: Optional[str] = None
    type: str = "public"
    members: List[str] = []


class JoinLeaveRoomRequest(CamelModel):
    room_id: str = ""
    username: str = ""


class SwitchRoomRequest(CamelModel):
    previous_room_id: Optional[str] = None
    next_room_id: Optional[str] = None
    username: str = ""


class SendMessageRequest(CamelModel):
    room_id: str = ""
    username: str = ""
    content: str = ""


class GenerateTokenRequest(CamelModel):
    username: Optional[str] = None
    force: bool = False


class RefreshTokenRequest(CamelModel):
    username: str = ""
    old_token: str = ""


class AuthenticateWithPasswordRequest(CamelModel):
    username: str = ""
    password: str = ""
    old_token: Optional[str] = None


class SetPasswordRequest(CamelModel):
    password: str = ""
