from __future__ import annotations

import contextlib
import json
from typing import Any, AsyncIterator, Iterator, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from tenantgate.logging import get_logger
from tenantgate.storage.errors import CacheUnavailable

logger = get_logger(__name__)

REFRESH_KEY_PREFIX = "refresh:"
ORG_REFRESH_SET_PREFIX = "org-refresh:"
DISABLED_ORGS_SET = "orgs:disabled"
ORG_EPOCH_PREFIX = "org-epoch:"


def refresh_key(token: str) -> str:
    return f"{REFRESH_KEY_PREFIX}{token}"


def org_set_key(org_id: str) -> str:
    return f"{ORG_REFRESH_SET_PREFIX}{org_id}"


def org_epoch_key(org_id: str) -> str:
    return f"{ORG_EPOCH_PREFIX}{org_id}"


def decode_payload(raw: Optional[str]) -> Optional[dict]:
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        # Corrupted cache entry - treat as cache miss
        return None
    return data if isinstance(data, dict) else None


def decode_epoch(raw: Optional[str]) -> Optional[int]:
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


class RedisCache:
    """Revocation store: refresh sessions, per-org session index, org markers."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic get-and-delete of a refresh session that also drops it from its
    # org index, so a token is redeemed at most once and never half-removed.
    _CONSUME_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if not value then
  return false
end
redis.call('DEL', KEYS[1])
local ok, data = pcall(cjson.decode, value)
if ok and type(data) == 'table' and type(data['org_id']) == 'string' then
  redis.call('SREM', ARGV[1] .. data['org_id'], KEYS[1])
end
return value
"""

    # Reads the org index and deletes every member plus the index in one step.
    # Runs atomically relative to the MULTI/EXEC used by issue().
    _PURGE_ORG_SCRIPT = """
local members = redis.call('SMEMBERS', KEYS[1])
for _, key in ipairs(members) do
  redis.call('DEL', key)
end
redis.call('DEL', KEYS[1])
return #members
"""

    # Org epochs only move forward. A writer holding an older snapshot can
    # never roll the cached value back.
    _RAISE_EPOCH_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]))
local proposed = tonumber(ARGV[1])
if current and current >= proposed then
  return current
end
redis.call('SET', KEYS[1], ARGV[1])
return proposed
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._consume = self.client.register_script(self._CONSUME_SCRIPT)
        self._purge_org = self.client.register_script(self._PURGE_ORG_SCRIPT)
        self._raise_epoch = self.client.register_script(self._RAISE_EPOCH_SCRIPT)

    @contextlib.asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except RedisError as exc:
            logger.error("revocation_store_error", operation=operation, error=str(exc))
            raise CacheUnavailable(
                "revocation store unavailable", operation=operation
            ) from exc

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def close(self) -> None:
        await self.client.aclose()

    # refresh sessions

    async def store_refresh_session(
        self, token: str, payload: dict, ttl_seconds: int
    ) -> None:
        key = refresh_key(token)
        org_id = payload.get("org_id")
        async with self._guard("store_refresh_session"):
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.set(key, json.dumps(payload), ex=ttl_seconds)
                if org_id:
                    pipe.sadd(org_set_key(org_id), key)
                    pipe.expire(org_set_key(org_id), ttl_seconds)
                await pipe.execute()

    async def get_refresh_session(self, token: str) -> Optional[dict]:
        async with self._guard("get_refresh_session"):
            raw = await self.client.get(refresh_key(token))
        return decode_payload(raw)

    async def consume_refresh_session(self, token: str) -> Optional[dict]:
        async with self._guard("consume_refresh_session"):
            raw = await self._consume(
                keys=[refresh_key(token)], args=[ORG_REFRESH_SET_PREFIX]
            )
        return decode_payload(raw)

    async def delete_refresh_session(self, token: str) -> bool:
        return await self.consume_refresh_session(token) is not None

    async def purge_org_sessions(self, org_id: str) -> int:
        async with self._guard("purge_org_sessions"):
            removed = await self._purge_org(keys=[org_set_key(org_id)], args=[])
        return int(removed or 0)

    async def org_session_count(self, org_id: str) -> int:
        async with self._guard("org_session_count"):
            return int(await self.client.scard(org_set_key(org_id)))

    # org markers

    async def set_org_epoch(self, org_id: str, epoch: Optional[int]) -> None:
        async with self._guard("set_org_epoch"):
            if epoch is None:
                await self.client.delete(org_epoch_key(org_id))
                return
            await self._raise_epoch(keys=[org_epoch_key(org_id)], args=[int(epoch)])

    async def get_org_epoch(self, org_id: str) -> Optional[int]:
        async with self._guard("get_org_epoch"):
            raw = await self.client.get(org_epoch_key(org_id))
        return decode_epoch(raw)

    async def mark_org_disabled(self, org_id: str) -> None:
        async with self._guard("mark_org_disabled"):
            await self.client.sadd(DISABLED_ORGS_SET, str(org_id))

    async def mark_org_enabled(self, org_id: str) -> None:
        async with self._guard("mark_org_enabled"):
            await self.client.srem(DISABLED_ORGS_SET, str(org_id))

    async def is_org_disabled(self, org_id: str) -> bool:
        async with self._guard("is_org_disabled"):
            return bool(await self.client.sismember(DISABLED_ORGS_SET, str(org_id)))


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._consume = self.client.register_script(RedisCache._CONSUME_SCRIPT)
        self._purge_org = self.client.register_script(RedisCache._PURGE_ORG_SCRIPT)
        self._raise_epoch = self.client.register_script(RedisCache._RAISE_EPOCH_SCRIPT)

    @contextlib.contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except RedisError as exc:
            logger.error("revocation_store_error", operation=operation, error=str(exc))
            raise CacheUnavailable(
                "revocation store unavailable", operation=operation
            ) from exc

    def verify_connection(self) -> None:
        self.client.ping()

    async def close(self) -> None:
        self.client.close()

    async def store_refresh_session(
        self, token: str, payload: dict, ttl_seconds: int
    ) -> None:
        key = refresh_key(token)
        org_id = payload.get("org_id")
        with self._guard("store_refresh_session"):
            with self.client.pipeline(transaction=True) as pipe:
                pipe.set(key, json.dumps(payload), ex=ttl_seconds)
                if org_id:
                    pipe.sadd(org_set_key(org_id), key)
                    pipe.expire(org_set_key(org_id), ttl_seconds)
                pipe.execute()

    async def get_refresh_session(self, token: str) -> Optional[dict]:
        with self._guard("get_refresh_session"):
            raw = self.client.get(refresh_key(token))
        return decode_payload(raw)

    async def consume_refresh_session(self, token: str) -> Optional[dict]:
        with self._guard("consume_refresh_session"):
            raw = self._consume(keys=[refresh_key(token)], args=[ORG_REFRESH_SET_PREFIX])
        return decode_payload(raw)

    async def delete_refresh_session(self, token: str) -> bool:
        return await self.consume_refresh_session(token) is not None

    async def purge_org_sessions(self, org_id: str) -> int:
        with self._guard("purge_org_sessions"):
            removed = self._purge_org(keys=[org_set_key(org_id)], args=[])
        return int(removed or 0)

    async def org_session_count(self, org_id: str) -> int:
        with self._guard("org_session_count"):
            return int(self.client.scard(org_set_key(org_id)))

    async def set_org_epoch(self, org_id: str, epoch: Optional[int]) -> None:
        with self._guard("set_org_epoch"):
            if epoch is None:
                self.client.delete(org_epoch_key(org_id))
                return
            self._raise_epoch(keys=[org_epoch_key(org_id)], args=[int(epoch)])

    async def get_org_epoch(self, org_id: str) -> Optional[int]:
        with self._guard("get_org_epoch"):
            raw: Any = self.client.get(org_epoch_key(org_id))
        return decode_epoch(raw)

    async def mark_org_disabled(self, org_id: str) -> None:
        with self._guard("mark_org_disabled"):
            self.client.sadd(DISABLED_ORGS_SET, str(org_id))

    async def mark_org_enabled(self, org_id: str) -> None:
        with self._guard("mark_org_enabled"):
            self.client.srem(DISABLED_ORGS_SET, str(org_id))

    async def is_org_disabled(self, org_id: str) -> bool:
        with self._guard("is_org_disabled"):
            return bool(self.client.sismember(DISABLED_ORGS_SET, str(org_id)))
