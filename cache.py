"""
Generation Cache
================

Content-addressable store mapping a request fingerprint to a computed result.
At most one generation call runs per fingerprint: concurrent callers join the
in-flight computation instead of starting their own.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Protocol

from models import CacheEntry

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    def get(self, key: str) -> CacheEntry | None: ...

    def put(self, key: str, entry: CacheEntry) -> None: ...

    def delete(self, key: str) -> None: ...


class InMemoryStore:
    """Dict-backed store with an optional LRU bound (0 means unbounded)."""

    def __init__(self, max_entries: int = 0) -> None:
        self.max_entries = max_entries
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

    def get(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is not None and self.max_entries > 0:
            self._entries.move_to_end(key)
        return entry

    def put(self, key: str, entry: CacheEntry) -> None:
        self._entries[key] = entry
        self._entries.move_to_end(key)
        if self.max_entries > 0:
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Evicted cache entry %s", evicted[:12])

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


class GenerationCache:
    def __init__(self, store: KeyValueStore | None = None) -> None:
        self.store: KeyValueStore = store if store is not None else InMemoryStore()
        self._inflight: dict[str, asyncio.Future[Any]] = {}
        self.hits = 0
        self.misses = 0

    def lookup(self, fingerprint: str) -> CacheEntry | None:
        entry = self.store.get(fingerprint)
        if entry is not None:
            self.hits += 1
        return entry

    def pending(self, fingerprint: str) -> asyncio.Future[Any] | None:
        """Return the in-flight computation for a fingerprint, if any."""
        return self._inflight.get(fingerprint)

    def store_result(self, fingerprint: str, result: Any) -> CacheEntry:
        """Write (or replace) the entry for a fingerprint."""
        entry = CacheEntry(fingerprint=fingerprint, result=result)
        self.store.put(fingerprint, entry)
        return entry

    def invalidate(self, fingerprint: str) -> None:
        self.store.delete(fingerprint)

    async def compute(
        self,
        fingerprint: str,
        factory: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Run `factory` as the single computation for `fingerprint`.

        The result is written to the store before waiters are released.
        Failures are not cached and propagate to every waiter.
        """
        existing = self._inflight.get(fingerprint)
        if existing is not None:
            return await asyncio.shield(existing)

        self.misses += 1
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._inflight[fingerprint] = future
        try:
            result = await factory()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            if not future.done():
                future.set_exception(exc)
                # Mark retrieved: a failure with no joiners is not an orphan.
                future.exception()
            raise
        else:
            self.store_result(fingerprint, result)
            if not future.done():
                future.set_result(result)
            return result
        finally:
            if self._inflight.get(fingerprint) is future:
                del self._inflight[fingerprint]
