"""
Redis-backed store backends.

State and nonce tokens are stored with their expiry as the value and a Redis
TTL as a second guard. Single-use consumption is an atomic GET+DELETE in one
MULTI/EXEC pipeline, so two concurrent callbacks can never both observe a
live token.
"""

import json
import math
from datetime import datetime

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from gatehouse.auth.clock import Clock, utc_now
from gatehouse.auth.identity import Session
from gatehouse.auth.stores.protocol import DuplicateNonceError, StoreError
from gatehouse.logging_config import get_logger

logger = get_logger(__name__)

STATE_PREFIX = "gh:state:"
NONCE_PREFIX = "gh:nonce:"
SESSION_PREFIX = "gh:session:"


def _ttl(expires_at: datetime, now: datetime) -> int:
    """Redis TTL in whole seconds, rounded up so Redis never evicts early."""
    return math.ceil((expires_at - now).total_seconds())


class _RedisTokens:
    """Shared token logic for state and nonce stores."""

    def __init__(self, redis: aioredis.Redis, prefix: str, clock: Clock) -> None:
        self._redis = redis
        self._prefix = prefix
        self._clock = clock

    async def put(self, token: str, expires_at: datetime, *, unique: bool = False) -> bool:
        ttl = _ttl(expires_at, self._clock())
        if ttl <= 0:
            logger.warning("Refusing to store already-expired token", prefix=self._prefix)
            return True
        try:
            stored = await self._redis.set(
                self._prefix + token, expires_at.isoformat(), ex=ttl, nx=unique
            )
        except RedisError as e:
            raise StoreError(f"Failed to save token: {e}") from e
        # SET NX returns None when the key already exists
        return bool(stored)

    async def peek(self, token: str) -> bool:
        try:
            data = await self._redis.get(self._prefix + token)
        except RedisError as e:
            raise StoreError(f"Failed to read token: {e}") from e
        return self._live(data)

    async def take(self, token: str) -> bool:
        key = self._prefix + token
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.get(key)
                pipe.delete(key)
                results = await pipe.execute()
        except RedisError as e:
            raise StoreError(f"Failed to consume token: {e}") from e

        return self._live(results[0])

    def _live(self, data: str | None) -> bool:
        if data is None:
            return False
        try:
            expires_at = datetime.fromisoformat(data)
        except ValueError as e:
            raise StoreError("Corrupt token expiry in Redis") from e
        return self._clock() <= expires_at


class RedisStateStore:
    """Redis StateStore."""

    def __init__(self, redis: aioredis.Redis, clock: Clock = utc_now) -> None:
        self._tokens = _RedisTokens(redis, STATE_PREFIX, clock)

    async def save(self, state: str, expires_at: datetime) -> None:
        await self._tokens.put(state, expires_at)

    async def validate(self, state: str) -> bool:
        valid = await self._tokens.take(state)
        if not valid:
            logger.warning("State not found or expired")
        return valid


class RedisNonceStore:
    """Redis NonceStore. Saving uses SET NX so a nonce can only be issued once."""

    def __init__(self, redis: aioredis.Redis, clock: Clock = utc_now) -> None:
        self._tokens = _RedisTokens(redis, NONCE_PREFIX, clock)

    async def save(self, nonce: str, expires_at: datetime) -> None:
        if not await self._tokens.put(nonce, expires_at, unique=True):
            raise DuplicateNonceError("Nonce already exists")

    async def exists(self, nonce: str) -> bool:
        return await self._tokens.peek(nonce)

    async def consume(self, nonce: str) -> bool:
        return await self._tokens.take(nonce)


class RedisSessionStore:
    """Redis SessionStore. Key TTL tracks the session's own expiry."""

    def __init__(self, redis: aioredis.Redis, clock: Clock = utc_now) -> None:
        self._redis = redis
        self._clock = clock

    async def save(self, session: Session) -> None:
        ttl = _ttl(session.expires_at, self._clock())
        if ttl <= 0:
            raise StoreError("Refusing to save an expired session")
        try:
            await self._redis.set(
                SESSION_PREFIX + session.id,
                json.dumps(session.to_dict(), default=str),
                ex=ttl,
            )
        except RedisError as e:
            raise StoreError(f"Failed to save session: {e}") from e

    async def get(self, session_id: str) -> Session | None:
        try:
            data = await self._redis.get(SESSION_PREFIX + session_id)
        except RedisError as e:
            raise StoreError(f"Failed to read session: {e}") from e
        if data is None:
            return None
        try:
            return Session.from_dict(json.loads(data))
        except (ValueError, KeyError, TypeError) as e:
            raise StoreError("Corrupt session record in Redis") from e

    async def delete(self, session_id: str) -> None:
        try:
            await self._redis.delete(SESSION_PREFIX + session_id)
        except RedisError as e:
            raise StoreError(f"Failed to delete session: {e}") from e
