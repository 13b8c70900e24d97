from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis import Redis

_PENDING_PREFIX = "auth:2fa_pending:"

# GET + DEL in one step for servers or clients without GETDEL
_POP_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""


def _decode_challenge(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if raw is None:
        return None
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None
    return data if isinstance(data, dict) and data.get("user_id") else None


def _encode_challenge(user_id: str, expires_at: datetime) -> str:
    return json.dumps({"user_id": user_id, "expires_at": expires_at.isoformat()})


class RedisCache:
    """Redis holder for short-lived pending two-factor challenges.

    A challenge maps the hash of the pending token to the user who passed the
    password step. Redis expiry enforces the TTL; consumption uses GETDEL so
    two concurrent verifications cannot both complete the same challenge.
    """

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
        """Seconds until ``expires_at``, clamped to at least 1 for Redis EX."""
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_pending_challenge(
        self, challenge_id: str, user_id: str, expires_at: datetime
    ) -> None:
        await self.client.set(
            f"{_PENDING_PREFIX}{challenge_id}",
            _encode_challenge(user_id, expires_at),
            ex=self._ttl_seconds(expires_at),
        )

    async def get_pending_challenge(self, challenge_id: str) -> Optional[Dict[str, Any]]:
        return _decode_challenge(await self.client.get(f"{_PENDING_PREFIX}{challenge_id}"))

    async def pop_pending_challenge(self, challenge_id: str) -> Optional[Dict[str, Any]]:
        key = f"{_PENDING_PREFIX}{challenge_id}"
        try:
            raw = await self.client.getdel(key)
        except AttributeError:
            raw = await self.client.eval(_POP_SCRIPT, 1, key)
        return _decode_challenge(raw)

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Same interface as :class:`RedisCache` over a synchronous client.

    Used in test mode so a pytest-managed event loop never owns the Redis
    connection; the async methods simply call through.
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
        self._sync_client.ping()

    async def set_pending_challenge(
        self, challenge_id: str, user_id: str, expires_at: datetime
    ) -> None:
        self._sync_client.set(
            f"{_PENDING_PREFIX}{challenge_id}",
            _encode_challenge(user_id, expires_at),
            ex=RedisCache._ttl_seconds(expires_at),
        )

    async def get_pending_challenge(self, challenge_id: str) -> Optional[Dict[str, Any]]:
        return _decode_challenge(self._sync_client.get(f"{_PENDING_PREFIX}{challenge_id}"))

    async def pop_pending_challenge(self, challenge_id: str) -> Optional[Dict[str, Any]]:
        key = f"{_PENDING_PREFIX}{challenge_id}"
        try:
            raw = self._sync_client.getdel(key)
        except AttributeError:
            raw = self._sync_client.eval(_POP_SCRIPT, 1, key)
        return _decode_challenge(raw)

    async def close(self) -> None:
        self._sync_client.close()
