# backend/services/token_authority.py
"""
Per-device bearer tokens.

Storage layout (see core/keys.py):
    chat:token:{token}                    -> username      (TTL = token TTL)
    chat:token:user:{username}:{token}    -> created-at ms (TTL = token TTL)
    chat:token:last:{username}            -> {"token", "expiredAt"} grace record

A user may hold any number of live tokens (one per device); issuing or
refreshing on one device never touches the others. Every successful
validation slides the token's expiry forward. Once a token has expired, the
grace record still lets that one token be exchanged for a new one until
``expiredAt + grace``.
"""

from __future__ import annotations

import json
import logging
import re
import secrets
import time
from typing import Callable, List, Optional, Tuple

import redis.asyncio as redis

from core import keys
from core.config import settings
from core.errors import NotFound, Unauthorized
from models.models import TokenInfo, TokenStatus, TokenValidation

logger = logging.getLogger(__name__)

VALID = TokenValidation(status=TokenStatus.VALID)
VALID_EXPIRED = TokenValidation(status=TokenStatus.VALID_EXPIRED)
INVALID = TokenValidation(status=TokenStatus.INVALID)


class TokenAuthority:
    def __init__(
        self,
        client: redis.Redis,
        *,
        ttl_seconds: int = settings.TOKEN_TTL_SECONDS,
        grace_seconds: int = settings.TOKEN_GRACE_PERIOD_SECONDS,
        token_bytes: int = settings.TOKEN_BYTES,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self.grace_seconds = grace_seconds
        self.token_bytes = token_bytes
        self.clock = clock
        self._token_format = re.compile(rf"[0-9a-f]{{{2 * token_bytes}}}")

    def is_well_formed(self, token: Optional[str]) -> bool:
        """Only hex strings of the minted length are ever looked up."""
        return bool(token) and self._token_format.fullmatch(token) is not None

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    async def _require_user(self, username: str) -> None:
        if not await self.client.exists(keys.user_key(username)):
            logger.info("User not found: %s", username)
            raise NotFound("User not found")

    async def _mint(self, username: str) -> str:
        token = secrets.token_hex(self.token_bytes)
        async with self.client.pipeline(transaction=False) as pipe:
            pipe.set(keys.user_token_key(username, token), self._now_ms(), ex=self.ttl_seconds)
            pipe.set(keys.token_key(token), username, ex=self.ttl_seconds)
            await pipe.execute()
        return token

    async def _store_last_token(self, username: str, token: str, expired_at_ms: int, ttl_seconds: int) -> None:
        record = json.dumps({"token": token, "expiredAt": expired_at_ms})
        await self.client.set(keys.last_token_key(username), record, ex=ttl_seconds)

    async def _read_last_token(self, key: str) -> Optional[dict]:
        raw = await self.client.get(key)
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.error("Unparsable grace record at %s", key)
            return None

    def _within_grace(self, record: dict, token: str) -> bool:
        grace_end = int(record.get("expiredAt", 0)) + self.grace_seconds * 1000
        return record.get("token") == token and self._now_ms() < grace_end

    async def issue(self, username: str, force: bool = False) -> str:
        """
        Issue an additional token for ``username``.

        ``force`` is kept for older clients; multiple live tokens are always
        allowed so there is nothing to force.
        """
        username = username.lower()
        await self._require_user(username)

        token = await self._mint(username)
        # Predictive grace record: once this token expires naturally it can
        # still be refreshed for the grace period.
        await self._store_last_token(
            username,
            token,
            self._now_ms() + self.ttl_seconds * 1000,
            self.ttl_seconds + self.grace_seconds,
        )
        logger.info("Token %s for user %s", "re-issued" if force else "generated", username)
        return token

    async def validate(self, username: Optional[str], token: Optional[str], allow_expired: bool = False) -> TokenValidation:
        if not username or not token:
            logger.info("Auth validation failed: missing username or token")
            return INVALID
        if not self.is_well_formed(token):
            logger.info("Auth validation failed: malformed token for user %s", username)
            return INVALID

        username = username.lower()

        # 1. Per-user index
        user_token_key = keys.user_token_key(username, token)
        if await self.client.exists(user_token_key):
            async with self.client.pipeline(transaction=False) as pipe:
                pipe.expire(user_token_key, self.ttl_seconds)
                pipe.expire(keys.token_key(token), self.ttl_seconds)
                await pipe.execute()
            return VALID

        # 2. Reverse mapping only: rebuild the index entry
        mapped = await self.client.get(keys.token_key(token))
        if mapped and mapped.lower() == username:
            async with self.client.pipeline(transaction=False) as pipe:
                pipe.expire(keys.token_key(token), self.ttl_seconds)
                pipe.set(user_token_key, self._now_ms(), ex=self.ttl_seconds)
                await pipe.execute()
            return VALID

        # 3. Grace window for refresh
        if allow_expired:
            record = await self._read_last_token(keys.last_token_key(username))
            if record and self._within_grace(record, token):
                logger.info("Auth validation: expired token for user %s within grace period", username)
                return VALID_EXPIRED

        logger.info("Auth validation failed for user %s", username)
        return INVALID

    async def refresh(self, username: str, old_token: str) -> Tuple[str, TokenValidation]:
        """Exchange ``old_token`` (live or within grace) for a new token."""
        username = username.lower()
        await self._require_user(username)

        result = await self.validate(username, old_token, allow_expired=True)
        if not result.valid:
            logger.info("Invalid old token provided for user: %s", username)
            raise Unauthorized("Invalid authentication token")

        await self.revoke(old_token)
        token = await self._mint(username)
        await self._store_last_token(username, old_token, self._now_ms(), self.grace_seconds)

        logger.info(
            "Token refreshed for user %s (was %s)", username, "expired" if result.expired else "valid"
        )
        return token, result

    async def revoke(self, token: str) -> bool:
        if not self.is_well_formed(token):
            return False

        username = await self.client.get(keys.token_key(token))
        deleted = await self.client.delete(keys.token_key(token))

        if username:
            index_keys = [keys.user_token_key(username.lower(), token)]
        else:
            # Reverse mapping already gone: find the index entry by token
            index_keys = [key async for key in self.client.scan_iter(match=keys.user_token_pattern("*", token), count=100)]
        if index_keys:
            deleted += await self.client.delete(*index_keys)

        owner = username.lower() if username else (index_keys[0].split(":")[3] if index_keys else None)
        if owner:
            record = await self._read_last_token(keys.last_token_key(owner))
            if record and record.get("token") == token:
                await self.client.delete(keys.last_token_key(owner))

        return deleted > 0

    async def _mapped_tokens(self, username: str) -> List[str]:
        """Tokens whose reverse mapping points at ``username``, indexed or not."""
        candidates = []
        async for key in self.client.scan_iter(match=f"{keys.AUTH_TOKEN_PREFIX}*", count=100):
            token = key[len(keys.AUTH_TOKEN_PREFIX):]
            if self.is_well_formed(token):
                candidates.append(token)
        if not candidates:
            return []

        owners = await self.client.mget([keys.token_key(token) for token in candidates])
        return [token for token, owner in zip(candidates, owners) if owner and owner.lower() == username]

    async def revoke_all(self, username: str) -> int:
        """Revoke every token of ``username`` (all devices) and its grace record."""
        username = username.lower()
        pattern = keys.user_token_pattern(keys.glob_escape(username))
        tokens = {keys.last_segment(key) async for key in self.client.scan_iter(match=pattern, count=100)}
        tokens.update(await self._mapped_tokens(username))

        async with self.client.pipeline(transaction=False) as pipe:
            for token in tokens:
                pipe.delete(keys.user_token_key(username, token))
                pipe.delete(keys.token_key(token))
            pipe.delete(keys.last_token_key(username))
            await pipe.execute()

        logger.info("Revoked %d tokens for user %s", len(tokens), username)
        return len(tokens)

    async def list_tokens(self, username: str) -> List[TokenInfo]:
        username = username.lower()
        tokens = []
        pattern = keys.user_token_pattern(keys.glob_escape(username))
        async for key in self.client.scan_iter(match=pattern, count=100):
            created_at = await self.client.get(key)
            tokens.append(TokenInfo(token=keys.last_segment(key), created_at=int(created_at or 0)))
        return sorted(tokens, key=lambda t: t.created_at)

    async def verify(self, token: str) -> Tuple[Optional[str], TokenValidation, Optional[int]]:
        """
        Resolve a bare token to its owner.

        Returns ``(username, validation, expired_at_ms)``; ``expired_at_ms`` is
        only set for tokens accepted through the grace window.
        """
        if not self.is_well_formed(token):
            logger.info("Token verification failed: malformed token")
            return None, INVALID, None

        mapped = await self.client.get(keys.token_key(token))
        if mapped:
            username = mapped.lower()
            await self.validate(username, token)
            return username, VALID, None

        async for key in self.client.scan_iter(match=keys.user_token_pattern("*", token), count=100):
            username = key.split(":")[3]
            # Restore the reverse mapping for faster lookups next time
            async with self.client.pipeline(transaction=False) as pipe:
                pipe.expire(key, self.ttl_seconds)
                pipe.set(keys.token_key(token), username, ex=self.ttl_seconds)
                await pipe.execute()
            return username, VALID, None

        async for key in self.client.scan_iter(match=keys.last_token_key("*"), count=100):
            record = await self._read_last_token(key)
            if record and self._within_grace(record, token):
                return keys.last_segment(key), VALID_EXPIRED, int(record["expiredAt"])

        return None, INVALID, None
