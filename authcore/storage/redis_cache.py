from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import redis.asyncio as aioredis

_STATE_VALID = "valid"
_STATE_INVALID = "invalid"


class RedisCache:
    """Advisory mirror of session validity keyed by ``(user_id, session_id)``.

    Only a stored ``invalid`` state is actionable; a missing key, a ``valid``
    key or a Redis error all mean "unknown" and callers go to the session
    store. Losing every key is therefore safe, just slower.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        default_ttl_seconds: int = 7 * 24 * 3600,
        client: Any = None,
    ):
        self.redis_url = redis_url
        self.default_ttl_seconds = default_ttl_seconds
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _state_key(user_id: str, session_id: str) -> str:
        return f"auth:session_state:{user_id}:{session_id}"

    @staticmethod
    def _user_key(user_id: str) -> str:
        return f"auth:user_sessions:{user_id}"

    def _ttl_seconds(self, expires_at: Optional[datetime]) -> int:
        """Seconds until ``expires_at``, clamped to at least 1.

        Naive timestamps are treated as UTC. Without an expiry the
        configured default (the session lifetime) applies.
        """

        if expires_at is None:
            return max(1, self.default_ttl_seconds)
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling the cache."""
        from redis import Redis

        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _write_state(
        self, user_id: str, session_id: str, state: str, expires_at: Optional[datetime]
    ) -> None:
        ttl = self._ttl_seconds(expires_at)
        user_key = self._user_key(user_id)
        pipe = self.client.pipeline()
        pipe.set(self._state_key(user_id, session_id), state, ex=ttl)
        # Track the session in the user's set for bulk clearing
        pipe.sadd(user_key, session_id)
        pipe.expire(user_key, max(ttl, self.default_ttl_seconds))
        await pipe.execute()

    async def remember_valid(
        self, user_id: str, session_id: str, expires_at: Optional[datetime]
    ) -> None:
        await self._write_state(user_id, session_id, _STATE_VALID, expires_at)

    async def mark_invalid(
        self, user_id: str, session_id: str, expires_at: Optional[datetime] = None
    ) -> None:
        await self._write_state(user_id, session_id, _STATE_INVALID, expires_at)

    async def is_known_invalid(self, user_id: str, session_id: str) -> bool:
        return await self.client.get(self._state_key(user_id, session_id)) == _STATE_INVALID

    async def clear_for_user(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        """Drop cached entries for a user's sessions.

        Args:
            user_id: User whose entries to drop
            except_session_id: Optional session whose entry is kept

        Returns:
            Number of entries dropped
        """
        user_key = self._user_key(user_id)
        session_ids = await self.client.smembers(user_key)
        if not session_ids:
            return 0

        cleared = 0
        pipe = self.client.pipeline()
        for session_id in session_ids:
            if except_session_id and session_id == except_session_id:
                continue
            pipe.delete(self._state_key(user_id, session_id))
            pipe.srem(user_key, session_id)
            cleared += 1
        await pipe.execute()
        return cleared

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.aclose()
