"""Epoch-versioned, single-flight cache for aggregates and registry lookups.

Entries are tagged with the tenant's invalidation epoch for their scope at the
time the computation started. `invalidate` only bumps the epoch, so older
entries turn stale immediately and are dropped lazily on their next read.
The cache never blocks a request: any backend failure degrades to computing
the value directly.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from rcmpay.common.logging import logger
from rcmpay.common.metrics import (
    cache_failures_total,
    cache_invalidations_total,
    cache_requests_total,
    cache_swept_total,
)
from rcmpay.services.cache.store import CacheStore

SCOPE_ANALYTICS = "analytics"
SCOPE_GATEWAYS = "gateways"
SCOPES = (SCOPE_ANALYTICS, SCOPE_GATEWAYS)


@dataclass(frozen=True)
class CacheKey:
    """(tenant, timeframe signature, query signature) within one scope."""

    tenant_id: str
    scope: str
    timeframe: str = "-"
    query: str = "-"

    @property
    def signature(self) -> str:
        return f"{self.scope}|{self.tenant_id}|{self.timeframe}|{self.query}"


class CacheLayer:
    """Memoizes JSON-serializable values per `CacheKey`."""

    def __init__(self, store: CacheStore, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self.clock = clock
        self._inflight: dict[tuple[str, int], asyncio.Future] = {}
        # Epoch bumps that failed against the backend; those tenants bypass the cache.
        self._pending_bumps: set[tuple[str, str]] = set()
        self._stats = {"hits": 0, "misses": 0, "stale": 0, "failures": 0, "invalidations": 0, "swept": 0}

    async def get_or_compute(
        self,
        key: CacheKey,
        compute: Callable[[], Awaitable[Any]],
        ttl_seconds: float,
    ) -> Any:
        if not self._flush_pending_bump(key.tenant_id, key.scope):
            return await compute()

        try:
            epoch = self.store.get_epoch(key.tenant_id, key.scope)
            entry = self.store.get(key.signature)
        except Exception as exc:
            self._record_failure("read", exc)
            return await compute()

        now = self.clock()
        if entry is not None:
            if entry["version"] == epoch and entry["expires_at"] > now:
                self._stats["hits"] += 1
                cache_requests_total.labels(scope=key.scope, result="hit").inc()
                return entry["value"]
            self._stats["stale"] += 1
            cache_requests_total.labels(scope=key.scope, result="stale").inc()
            self._discard(key.signature)
        else:
            self._stats["misses"] += 1
            cache_requests_total.labels(scope=key.scope, result="miss").inc()

        flight_key = (key.signature, epoch)
        flight = self._inflight.get(flight_key)
        if flight is not None:
            cache_requests_total.labels(scope=key.scope, result="joined").inc()
            try:
                return await asyncio.shield(flight)
            except asyncio.CancelledError:
                if not flight.cancelled():
                    raise
                # The leader was cancelled, not this caller: start over.
                return await self.get_or_compute(key, compute, ttl_seconds)

        flight = asyncio.get_running_loop().create_future()
        self._inflight[flight_key] = flight
        try:
            value = await compute()
        except asyncio.CancelledError:
            flight.cancel()
            raise
        except Exception as exc:
            flight.set_exception(exc)
            # Mark retrieved so an un-awaited flight does not warn.
            flight.exception()
            raise
        finally:
            self._inflight.pop(flight_key, None)

        try:
            self.store.set(
                key.signature,
                {"value": value, "version": epoch, "expires_at": now + ttl_seconds},
                ttl_seconds,
            )
        except Exception as exc:
            self._record_failure("write", exc)
        flight.set_result(value)
        return value

    def invalidate(self, tenant_id: str, scope: str | None = None) -> None:
        """Bump the tenant's epoch for one scope (or all scopes)."""

        for name in (scope,) if scope else SCOPES:
            try:
                epoch = self.store.bump_epoch(tenant_id, name)
            except Exception as exc:
                self._record_failure("invalidate", exc)
                self._pending_bumps.add((tenant_id, name))
                continue
            self._pending_bumps.discard((tenant_id, name))
            self._stats["invalidations"] += 1
            cache_invalidations_total.labels(scope=name).inc()
            logger.info("cache_invalidated tenant_id=%s scope=%s epoch=%s", tenant_id, name, epoch)

    def sweep(self) -> int:
        try:
            removed = self.store.sweep(self.clock())
        except Exception as exc:
            self._record_failure("sweep", exc)
            return 0
        if removed:
            self._stats["swept"] += removed
            cache_swept_total.inc(removed)
        return removed

    async def sweep_forever(self, interval_seconds: float) -> None:
        """Background loop reclaiming expired entries to bound memory."""

        while True:
            await asyncio.sleep(interval_seconds)
            removed = self.sweep()
            if removed:
                logger.info("cache_sweep removed=%s", removed)

    def stats(self) -> dict:
        try:
            size = self.store.size()
        except Exception as exc:
            self._record_failure("stats", exc)
            size = None
        lookups = self._stats["hits"] + self._stats["misses"] + self._stats["stale"]
        hit_rate = round(self._stats["hits"] / lookups, 4) if lookups else 0.0
        return {
            "backend": self.store.name,
            "size": size,
            "inflight": len(self._inflight),
            "hit_rate": hit_rate,
            **self._stats,
        }

    def _flush_pending_bump(self, tenant_id: str, scope: str) -> bool:
        """Retry a failed epoch bump; False while the tenant must bypass the cache."""

        if (tenant_id, scope) not in self._pending_bumps:
            return True
        self.invalidate(tenant_id, scope)
        return (tenant_id, scope) not in self._pending_bumps

    def _discard(self, signature: str) -> None:
        try:
            self.store.delete(signature)
        except Exception as exc:
            self._record_failure("delete", exc)

    def _record_failure(self, operation: str, exc: Exception) -> None:
        self._stats["failures"] += 1
        cache_failures_total.labels(operation=operation).inc()
        logger.warning("cache_backend_failure operation=%s error=%s", operation, exc)
