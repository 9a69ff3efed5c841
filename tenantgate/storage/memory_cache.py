from __future__ import annotations

import json
import threading
import time
from typing import Dict, Optional, Set, Tuple

from tenantgate.storage.redis_cache import (
    decode_payload,
    org_set_key,
    refresh_key,
)


class MemoryCache:
    """In-process revocation store used when Redis is not configured.

    Mirrors the RedisCache contract key for key. Every operation runs under one
    lock, which gives the same all-or-nothing visibility that MULTI/EXEC and the
    Lua scripts give against Redis. Only valid for a single process.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: Dict[str, Tuple[str, Optional[float]]] = {}
        self._sets: Dict[str, Tuple[Set[str], Optional[float]]] = {}
        self._disabled_orgs: Set[str] = set()
        self._epochs: Dict[str, int] = {}

    @staticmethod
    def _deadline(ttl_seconds: Optional[int]) -> Optional[float]:
        if ttl_seconds is None:
            return None
        return time.monotonic() + max(1, int(ttl_seconds))

    @staticmethod
    def _alive(deadline: Optional[float]) -> bool:
        return deadline is None or deadline > time.monotonic()

    def _get(self, key: str) -> Optional[str]:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, deadline = entry
        if not self._alive(deadline):
            self._values.pop(key, None)
            return None
        return value

    def _members(self, key: str) -> Set[str]:
        entry = self._sets.get(key)
        if entry is None:
            return set()
        members, deadline = entry
        if not self._alive(deadline):
            self._sets.pop(key, None)
            return set()
        return members

    def _sweep(self) -> None:
        """Drop expired sessions and indexes that were never read again."""
        expired = [key for key, (_, deadline) in self._values.items() if not self._alive(deadline)]
        for key in expired:
            del self._values[key]
        expired = [key for key, (_, deadline) in self._sets.items() if not self._alive(deadline)]
        for key in expired:
            del self._sets[key]

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def store_refresh_session(
        self, token: str, payload: dict, ttl_seconds: int
    ) -> None:
        key = refresh_key(token)
        org_id = payload.get("org_id")
        with self._lock:
            self._sweep()
            self._values[key] = (json.dumps(payload), self._deadline(ttl_seconds))
            if org_id:
                members = self._members(org_set_key(org_id))
                members.add(key)
                self._sets[org_set_key(org_id)] = (members, self._deadline(ttl_seconds))

    async def get_refresh_session(self, token: str) -> Optional[dict]:
        with self._lock:
            raw = self._get(refresh_key(token))
        return decode_payload(raw)

    async def consume_refresh_session(self, token: str) -> Optional[dict]:
        key = refresh_key(token)
        with self._lock:
            raw = self._get(key)
            if raw is None:
                return None
            self._values.pop(key, None)
            payload = decode_payload(raw)
            org_id = payload.get("org_id") if payload else None
            if isinstance(org_id, str):
                self._members(org_set_key(org_id)).discard(key)
        return payload

    async def delete_refresh_session(self, token: str) -> bool:
        return await self.consume_refresh_session(token) is not None

    async def purge_org_sessions(self, org_id: str) -> int:
        with self._lock:
            members = self._members(org_set_key(org_id))
            for key in members:
                self._values.pop(key, None)
            self._sets.pop(org_set_key(org_id), None)
            return len(members)

    async def org_session_count(self, org_id: str) -> int:
        with self._lock:
            return len(self._members(org_set_key(org_id)))

    async def set_org_epoch(self, org_id: str, epoch: Optional[int]) -> None:
        with self._lock:
            if epoch is None:
                self._epochs.pop(str(org_id), None)
                return
            current = self._epochs.get(str(org_id))
            if current is None or int(epoch) > current:
                self._epochs[str(org_id)] = int(epoch)

    async def get_org_epoch(self, org_id: str) -> Optional[int]:
        with self._lock:
            return self._epochs.get(str(org_id))

    async def mark_org_disabled(self, org_id: str) -> None:
        with self._lock:
            self._disabled_orgs.add(str(org_id))

    async def mark_org_enabled(self, org_id: str) -> None:
        with self._lock:
            self._disabled_orgs.discard(str(org_id))

    async def is_org_disabled(self, org_id: str) -> bool:
        with self._lock:
            return str(org_id) in self._disabled_orgs
