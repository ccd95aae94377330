"""Cache storage backends: in-process memory and shared Redis.

Values are stored as JSON text so an entry is always replaced whole and never
aliased by callers.
"""

import json
import threading
from abc import ABC, abstractmethod

import redis


class CacheStore(ABC):
    """Entry + invalidation-epoch storage used by the cache layer."""

    name = "abstract"

    @abstractmethod
    def get(self, key: str) -> dict | None:
        """Return `{"value", "version", "expires_at"}` or None."""

    @abstractmethod
    def set(self, key: str, entry: dict, ttl_seconds: float) -> None: ...

    @abstractmethod
    def delete(self, key: str) -> None: ...

    @abstractmethod
    def get_epoch(self, tenant_id: str, scope: str) -> int: ...

    @abstractmethod
    def bump_epoch(self, tenant_id: str, scope: str) -> int: ...

    @abstractmethod
    def sweep(self, now: float) -> int:
        """Reclaim entries past their expiry; return how many were removed."""

    @abstractmethod
    def size(self) -> int: ...


class MemoryCacheStore(CacheStore):
    """Thread-safe per-process store."""

    name = "memory"

    def __init__(self) -> None:
        self._entries: dict[str, str] = {}
        self._expiry: dict[str, float] = {}
        self._epochs: dict[tuple[str, str], int] = {}
        self._lock = threading.RLock()

    def get(self, key: str) -> dict | None:
        with self._lock:
            raw = self._entries.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, entry: dict, ttl_seconds: float) -> None:
        raw = json.dumps(entry)
        with self._lock:
            self._entries[key] = raw
            self._expiry[key] = entry["expires_at"]

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)
            self._expiry.pop(key, None)

    def get_epoch(self, tenant_id: str, scope: str) -> int:
        with self._lock:
            return self._epochs.get((tenant_id, scope), 0)

    def bump_epoch(self, tenant_id: str, scope: str) -> int:
        with self._lock:
            epoch = self._epochs.get((tenant_id, scope), 0) + 1
            self._epochs[(tenant_id, scope)] = epoch
            return epoch

    def sweep(self, now: float) -> int:
        with self._lock:
            expired = [key for key, expires_at in self._expiry.items() if expires_at <= now]
            for key in expired:
                self._entries.pop(key, None)
                self._expiry.pop(key, None)
        return len(expired)

    def size(self) -> int:
        with self._lock:
            return len(self._entries)


class RedisCacheStore(CacheStore):
    """Shared store so every replica sees the same entries and epochs."""

    name = "redis"

    def __init__(self, client: redis.Redis, prefix: str = "rcm:cache") -> None:
        self.client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str) -> "RedisCacheStore":
        return cls(redis.Redis.from_url(url, decode_responses=True, socket_timeout=0.5))

    def _entry_key(self, key: str) -> str:
        return f"{self.prefix}:entry:{key}"

    def _epoch_key(self, tenant_id: str, scope: str) -> str:
        return f"{self.prefix}:epoch:{tenant_id}:{scope}"

    def get(self, key: str) -> dict | None:
        raw = self.client.get(self._entry_key(key))
        return json.loads(raw) if raw else None

    def set(self, key: str, entry: dict, ttl_seconds: float) -> None:
        self.client.setex(self._entry_key(key), max(1, int(ttl_seconds)), json.dumps(entry))

    def delete(self, key: str) -> None:
        self.client.delete(self._entry_key(key))

    def get_epoch(self, tenant_id: str, scope: str) -> int:
        return int(self.client.get(self._epoch_key(tenant_id, scope)) or 0)

    def bump_epoch(self, tenant_id: str, scope: str) -> int:
        # INCR is atomic on the server, so concurrent bumps never collapse.
        return int(self.client.incr(self._epoch_key(tenant_id, scope)))

    def sweep(self, now: float) -> int:
        # Redis expires keys itself (SETEX).
        return 0

    def size(self) -> int:
        count = 0
        for _ in self.client.scan_iter(match=f"{self.prefix}:entry:*", count=500):
            count += 1
        return count


def build_store(backend: str, redis_url: str) -> CacheStore:
    if backend == "redis":
        return RedisCacheStore.from_url(redis_url)
    return MemoryCacheStore()
