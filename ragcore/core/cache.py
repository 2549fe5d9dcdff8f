from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Hashable, Iterable, Optional

from ragcore.core.cancellation import CancellationToken

logger = logging.getLogger(__name__)

_MISSING = object()


def normalize_text(text: str) -> str:
    return " ".join(text.lower().split())


def _consume_exception(fut: asyncio.Future) -> None:
    # waiters re-raise it; this only silences "exception was never retrieved"
    if not fut.cancelled():
        fut.exception()


@dataclass(frozen=True)
class _Entry:
    value: Any
    stored_at: float
    expires_at: float
    tags: FrozenSet[str]


class TTLCache:
    """In-process TTL cache with single-flight loading.

    Entries are written once and replaced wholesale; they are never mutated.
    Concurrent ``get_or_load`` calls for the same missing key share one
    loader task, and every waiter receives the same value or exception.
    Failed loads are not cached.

    The shared load belongs to no single request: a loader must not close
    over a caller's ``CancellationToken``. Each waiter passes its own
    ``token`` instead, so cancelling one request only abandons that waiter.
    """

    def __init__(self, name: str, ttl: float, max_entries: int = 1000, clock=time.monotonic):
        self.name = name
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[Hashable, _Entry] = {}
        self._inflight: Dict[Hashable, asyncio.Future] = {}
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: Hashable, default: Any = None) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return default
        if entry.expires_at <= self._clock():
            del self._entries[key]
            return default
        return entry.value

    def set(self, key: Hashable, value: Any, tags: Iterable[str] = (), ttl: Optional[float] = None) -> None:
        now = self._clock()
        self._entries[key] = _Entry(
            value=value,
            stored_at=now,
            expires_at=now + (self.ttl if ttl is None else ttl),
            tags=frozenset(tags),
        )
        self._evict(now)

    async def get_or_load(
        self,
        key: Hashable,
        loader: Callable[[], Awaitable[Any]],
        tags: Iterable[str] = (),
        token: Optional[CancellationToken] = None,
    ) -> Any:
        value = self.get(key, _MISSING)
        if value is not _MISSING:
            self.hits += 1
            return value

        if token is not None:
            token.raise_if_cancelled()
        inflight = self._inflight.get(key)
        if inflight is None:
            self.misses += 1
            inflight = asyncio.ensure_future(self._load(key, loader, tuple(tags)))
            inflight.add_done_callback(_consume_exception)
            self._inflight[key] = inflight
        else:
            logger.debug("cache %s: joining in-flight load for %r", self.name, key)
        # shield: one waiter giving up must not cancel the shared load
        shared = asyncio.shield(inflight)
        if token is None:
            return await shared
        return await token.guard(shared)

    async def _load(self, key: Hashable, loader: Callable[[], Awaitable[Any]], tags) -> Any:
        try:
            value = await loader()
            self.set(key, value, tags=tags)
            return value
        finally:
            self._inflight.pop(key, None)

    def invalidate(self, key: Hashable) -> bool:
        return self._entries.pop(key, None) is not None

    def invalidate_tag(self, tag: str) -> int:
        stale = [k for k, e in self._entries.items() if tag in e.tags]
        for k in stale:
            del self._entries[k]
        if stale:
            logger.info("cache %s: invalidated %d entries tagged %s", self.name, len(stale), tag)
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()

    def _evict(self, now: float) -> None:
        expired = [k for k, e in self._entries.items() if e.expires_at <= now]
        for k in expired:
            del self._entries[k]
        overflow = len(self._entries) - self.max_entries
        if overflow > 0:
            oldest = sorted(self._entries.items(), key=lambda kv: kv[1].stored_at)[:overflow]
            for k, _ in oldest:
                del self._entries[k]
