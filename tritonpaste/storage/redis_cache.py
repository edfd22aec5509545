from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for short-lived OAuth anti-forgery states."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Seconds until ``expires_at``, clamped to at least 1 for ``SET EX``."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""

        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_oauth_state(
        self, state: str, provider: str, expires_at: datetime
    ) -> None:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        payload = {"provider": provider, "expires_at": expires_at.isoformat()}
        await self.client.set(
            f"auth:oauth:{state}", json.dumps(payload), ex=self._ttl_seconds(expires_at)
        )

    async def pop_oauth_state(self, state: str) -> Optional[tuple[str, datetime]]:
        """Atomically get and delete an OAuth state so it can be used once.

        Returns:
            ``(provider, expires_at)`` or None if the state is unknown or expired
        """
        cached = await self.client.getdel(f"auth:oauth:{state}")
        if cached is None:
            return None
        try:
            data = json.loads(cached)
            expires_at = datetime.fromisoformat(data["expires_at"])
        except (json.JSONDecodeError, TypeError, KeyError, ValueError):
            return None
        return data.get("provider"), expires_at

    async def close(self) -> None:
        await self.client.aclose()
