"""
Process-wide TTL caches with single-flight population.

Each component owns its caches (exchange rates, VAT results, tax rates, KYC
and sanctions results). Entries expire after a fixed time-to-live and are
never returned once stale. Concurrent misses on the same key share one
loader call instead of racing duplicate external requests.
"""

from __future__ import annotations

import asyncio
import functools
import time
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Generic,
    Hashable,
    Optional,
    Protocol,
    TypeVar,
)

V = TypeVar("V")

_MISSING = object()


class Cache(Protocol[V]):
    """Minimal cache contract; an external shared store can implement it."""

    def get(self, key: Hashable) -> Optional[V]:
        ...

    def set(self, key: Hashable, value: V) -> None:
        ...

    def invalidate(self, key: Hashable) -> None:
        ...


@dataclass
class _Entry(Generic[V]):
    value: V
    expires_at: float


@dataclass(frozen=True)
class CacheStats:
    name: str
    ttl: float
    total_entries: int
    valid_entries: int
    expired_entries: int
    hits: int
    misses: int
    loads: int


class TTLCache(Generic[V]):
    """
    In-memory keyed cache with a fixed time-to-live.

    ``clock`` returns seconds and defaults to ``time.monotonic``; tests
    substitute a controllable clock.
    """

    def __init__(
        self,
        ttl: float,
        name: str = "cache",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        self.ttl = ttl
        self.name = name
        self._clock = clock
        self._entries: dict[Hashable, _Entry[V]] = {}
        self._inflight: dict[Hashable, asyncio.Future] = {}
        self._hits = 0
        self._misses = 0
        self._loads = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: Hashable) -> bool:
        return self._lookup(key) is not _MISSING

    def _lookup(self, key: Hashable) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return _MISSING
        if entry.expires_at <= self._clock():
            del self._entries[key]
            return _MISSING
        return entry.value

    def get(self, key: Hashable) -> Optional[V]:
        """Return the cached value, or None when absent or expired."""
        value = self._lookup(key)
        if value is _MISSING:
            self._misses += 1
            return None
        self._hits += 1
        return value

    def set(self, key: Hashable, value: V) -> None:
        self._entries[key] = _Entry(value, self._clock() + self.ttl)

    def invalidate(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def clear_expired(self) -> int:
        """Drop expired entries. Returns how many were removed."""
        now = self._clock()
        stale = [k for k, e in self._entries.items() if e.expires_at <= now]
        for key in stale:
            del self._entries[key]
        return len(stale)

    async def get_or_load(
        self,
        key: Hashable,
        loader: Callable[[], Awaitable[V]],
        should_cache: Callable[[V], bool] = lambda _: True,
    ) -> V:
        """
        Return the cached value or populate it with ``loader()``.

        Callers that miss while a load for the same key is already running
        await that load rather than starting their own. The load runs as its
        own task, so cancelling any one caller (including the one that
        started it) leaves the others waiting on it. Loader failures are
        propagated to every waiter and nothing is cached.
        """
        value = self._lookup(key)
        if value is not _MISSING:
            self._hits += 1
            return value
        self._misses += 1

        pending = self._inflight.get(key)
        if pending is None:
            self._loads += 1
            pending = asyncio.ensure_future(self._load(key, loader, should_cache))
            self._inflight[key] = pending
            pending.add_done_callback(functools.partial(self._load_done, key))
        return await asyncio.shield(pending)

    async def _load(
        self,
        key: Hashable,
        loader: Callable[[], Awaitable[V]],
        should_cache: Callable[[V], bool],
    ) -> V:
        try:
            value = await loader()
        finally:
            self._inflight.pop(key, None)
        if should_cache(value):
            self.set(key, value)
        return value

    def _load_done(self, key: Hashable, task: asyncio.Future) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # Mark retrieved so a failure nobody awaited does not warn at GC.
            task.exception()

    def stats(self) -> CacheStats:
        now = self._clock()
        valid = sum(1 for e in self._entries.values() if e.expires_at > now)
        return CacheStats(
            name=self.name,
            ttl=self.ttl,
            total_entries=len(self._entries),
            valid_entries=valid,
            expired_entries=len(self._entries) - valid,
            hits=self._hits,
            misses=self._misses,
            loads=self._loads,
        )
