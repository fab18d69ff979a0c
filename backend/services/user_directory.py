# backend/services/user_directory.py

from __future__ import annotations

import asyncio
import logging
import time
from typing import List, Optional, Tuple

import bcrypt
import redis.asyncio as redis

from core import keys
from core.config import settings
from core.errors import Conflict, Internal, InvalidArgument, Unauthorized
from models.models import User
from services.content_filter import USERNAME_REGEX, assert_valid_username, is_profane
from services.token_authority import TokenAuthority

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class UserDirectory:
    """
    User records, username search and optional passwords.

    User records never expire. Creation goes through ``SET NX`` so two
    requests racing to create the same name cannot both win; the loser
    re-reads and treats the user as found.
    """

    def __init__(
        self,
        client: redis.Redis,
        tokens: TokenAuthority,
        *,
        password_min_length: int = settings.PASSWORD_MIN_LENGTH,
        bcrypt_rounds: int = settings.PASSWORD_BCRYPT_ROUNDS,
    ):
        self.client = client
        self.tokens = tokens
        self.password_min_length = password_min_length
        self.bcrypt_rounds = bcrypt_rounds

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_new_username(self, username: Optional[str]) -> str:
        if not username:
            raise InvalidArgument("Username is required")
        if is_profane(username):
            logger.info("Username contains inappropriate language: %s", username)
            raise InvalidArgument("Username contains inappropriate language")
        if len(username) > settings.MAX_USERNAME_LENGTH:
            raise InvalidArgument(f"Username must be {settings.MAX_USERNAME_LENGTH} characters or less")
        if len(username) < settings.MIN_USERNAME_LENGTH:
            raise InvalidArgument(f"Username must be at least {settings.MIN_USERNAME_LENGTH} characters")
        return assert_valid_username(username)

    def _validate_password(self, password: str) -> None:
        if len(password) < self.password_min_length:
            raise InvalidArgument(f"Password must be at least {self.password_min_length} characters")

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def get(self, username: str) -> Optional[User]:
        raw = await self.client.get(keys.user_key(username.lower()))
        return User.model_validate_json(raw) if raw else None

    async def exists(self, username: str) -> bool:
        return bool(await self.client.exists(keys.user_key(username.lower())))

    async def ensure(self, username: str) -> User:
        """Fetch the user, creating the record on first contact."""
        username = username.lower()
        if is_profane(username):
            raise InvalidArgument("Username contains inappropriate language")
        if not USERNAME_REGEX.match(username):
            raise InvalidArgument("Invalid username format")

        user = await self.get(username)
        if user:
            return user

        user = User(username=username, last_active=_now_ms())
        if await self.client.set(keys.user_key(username), user.to_json(), nx=True):
            logger.info("User %s created on first contact", username)
            return user

        # Lost the race: someone else created it between GET and SET NX
        logger.info("User %s created concurrently, fetching existing record", username)
        user = await self.get(username)
        if user is None:
            logger.error("User %s existed momentarily but is now gone", username)
            raise Internal("Failed to send message due to temporary issue, please try again.")
        return user

    async def touch(self, username: str) -> None:
        user = User(username=username.lower(), last_active=_now_ms())
        await self.client.set(keys.user_key(user.username), user.to_json())

    async def all_usernames(self) -> List[str]:
        names = []
        async for key in self.client.scan_iter(match=f"{keys.CHAT_USERS_PREFIX}*", count=100):
            names.append(key[len(keys.CHAT_USERS_PREFIX):])
        return names

    async def search(self, query: str, limit: int = settings.USER_SEARCH_LIMIT) -> List[User]:
        if len(query) < settings.USER_SEARCH_MIN_LENGTH:
            return []

        pattern = f"{keys.CHAT_USERS_PREFIX}*{keys.glob_escape(query.lower())}*"
        found: List[str] = []
        async for key in self.client.scan_iter(match=pattern, count=100):
            found.append(key)
            if len(found) >= limit:
                break

        if not found:
            return []
        users = []
        for raw in await self.client.mget(found):
            if raw:
                users.append(User.model_validate_json(raw))
        logger.info("Found %d users matching %r", len(users), query)
        return users

    # ------------------------------------------------------------------
    # Accounts & passwords
    # ------------------------------------------------------------------

    async def _hash(self, password: str) -> str:
        salt = bcrypt.gensalt(rounds=self.bcrypt_rounds)
        hashed = await asyncio.to_thread(bcrypt.hashpw, password.encode("utf-8"), salt)
        return hashed.decode("utf-8")

    async def _verify(self, username: str, password: str) -> bool:
        stored = await self.client.get(keys.password_key(username))
        if not stored:
            return False
        return await asyncio.to_thread(bcrypt.checkpw, password.encode("utf-8"), stored.encode("utf-8"))

    async def create(self, username: Optional[str], password: Optional[str] = None) -> Tuple[User, str, bool]:
        """
        Create an account and issue its first token.

        Returns ``(user, token, created)``. When the name is taken but the
        caller supplied the right password, this is a login and ``created``
        is False.
        """
        username = self.validate_new_username(username)
        if password:
            self._validate_password(password)

        user = User(username=username, last_active=_now_ms())
        if not await self.client.set(keys.user_key(username), user.to_json(), nx=True):
            if password and await self._verify(username, password):
                logger.info("Password correct for existing user %s, logging in", username)
                existing = await self.get(username) or user
                return existing, await self.tokens.issue(username), False
            logger.info("Username already taken: %s", username)
            raise Conflict("Username already taken")

        if password:
            await self.client.set(keys.password_key(username), await self._hash(password))
            logger.info("Password hash stored for user: %s", username)

        token = await self.tokens.issue(username)
        logger.info("User created with auth token: %s", username)
        return user, token, True

    async def set_password(self, username: str, password: str) -> None:
        self._validate_password(password)
        await self.client.set(keys.password_key(username.lower()), await self._hash(password))
        logger.info("Password updated for user %s", username)

    async def has_password(self, username: str) -> bool:
        return bool(await self.client.exists(keys.password_key(username.lower())))

    async def authenticate(self, username: str, password: str, old_token: Optional[str] = None) -> str:
        username = (username or "").lower()
        if not username or not password:
            raise InvalidArgument("Username and password are required")

        if not await self.exists(username) or not await self._verify(username, password):
            logger.info("Password authentication failed for %s", username)
            raise Unauthorized("Invalid username or password")

        if old_token:
            # Only the caller's own token may be retired here
            if (await self.tokens.validate(username, old_token, allow_expired=True)).valid:
                await self.tokens.revoke(old_token)
            else:
                logger.info("Ignoring old token not held by %s", username)
        return await self.tokens.issue(username)
