from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

REFRESH_TOKEN_KEY_PREFIX = "refresh_token:"


def refresh_token_key(token_id: str) -> str:
    return f"{REFRESH_TOKEN_KEY_PREFIX}{token_id}"


def _ttl_seconds(ttl_seconds: float) -> int:
    # Redis rejects zero or negative expiries
    return max(1, int(ttl_seconds))


class RedisCache:
    """Redis-backed index from refresh token IDs to their owning user."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def put_refresh_token(
        self, token_id: str, user_id: str, ttl_seconds: float
    ) -> None:
        await self.client.set(
            refresh_token_key(token_id), user_id, ex=_ttl_seconds(ttl_seconds)
        )

    async def get_refresh_token_user(self, token_id: str) -> Optional[str]:
        return await self.client.get(refresh_token_key(token_id))

    async def delete_refresh_token(self, token_id: str) -> None:
        await self.client.delete(refresh_token_key(token_id))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    under pytest, but exposes async methods so it can be awaited exactly like
    ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def put_refresh_token(
        self, token_id: str, user_id: str, ttl_seconds: float
    ) -> None:
        self._sync_client.set(
            refresh_token_key(token_id), user_id, ex=_ttl_seconds(ttl_seconds)
        )

    async def get_refresh_token_user(self, token_id: str) -> Optional[str]:
        return self._sync_client.get(refresh_token_key(token_id))

    async def delete_refresh_token(self, token_id: str) -> None:
        self._sync_client.delete(refresh_token_key(token_id))

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
