from __future__ import annotations

import threading
import time
from collections import OrderedDict
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

from layered_context.config import ContextEntry, LoadMode
from layered_context.file_manipulation import is_within
from layered_context.logging import logger

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator

    from layered_context.settings import CacheSettings


class CacheKey(BaseModel):
    """Identity of a cached run: where it started and which pipeline ran."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    start_directory: Path = Field(..., description="Resolved starting directory")
    mode: LoadMode = Field(default=LoadMode.STANDARD, description="Pipeline flavour")


class ResultStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    file_count: int = Field(..., ge=0, description="Entries kept in the composed document")
    total_bytes: int = Field(..., ge=0, description="UTF-8 bytes of the kept contents")
    elapsed_ms: float = Field(..., ge=0, description="Wall time of the run")
    truncated_count: int = Field(default=0, ge=0, description="Entries cut by the budget")


class CachedResult(BaseModel):
    """Output of one pipeline run.

    Attributes:
        key: Cache identity of the run.
        composed_document: The rendered document.
        entry_snapshot: Surviving entries, in document order.
        variables: Variable table of the run.
        stats: Counters of the run.
        created_at: Cache clock time the result was built at.
        errors: Human readable failures collected during the run.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    key: CacheKey
    composed_document: str
    entry_snapshot: tuple[ContextEntry, ...] = Field(default_factory=tuple)
    variables: dict[str, str] = Field(default_factory=dict)
    stats: ResultStats
    created_at: float
    errors: tuple[str, ...] = Field(default_factory=tuple)

    def source_paths(self) -> list[Path]:
        return [e.source_path for e in self.entry_snapshot]


class CacheStatistics(BaseModel):
    model_config = ConfigDict(frozen=True)

    entry_count: int = 0
    total_bytes: int = 0
    oldest_timestamp: float | None = None
    newest_timestamp: float | None = None


class ResultCache:
    """TTL + LRU mapping from `CacheKey` to `CachedResult`.

    Expiry is computed from each result's `created_at`: standard results live
    `ttl_seconds`, full project results `full_ttl_seconds`. Expired results are
    dropped lazily on access or by `clean_expired`. Concurrent misses on the
    same key go through `get_or_compute`, which runs the computation once and
    lets the other callers read its result.
    """

    def __init__(self, settings: CacheSettings, clock: Callable[[], float] = time.time) -> None:
        self.settings = settings
        self.clock = clock
        self._entries: OrderedDict[CacheKey, CachedResult] = OrderedDict()
        self._lock = threading.RLock()
        self._key_locks: dict[CacheKey, threading.Lock] = {}
        self._key_users: dict[CacheKey, int] = {}

    def ttl_for(self, mode: LoadMode) -> float:
        return self.settings.full_ttl_seconds if mode is LoadMode.FULL else self.settings.ttl_seconds

    def _expired(self, result: CachedResult, now: float) -> bool:
        return now - result.created_at > self.ttl_for(result.key.mode)

    def get(self, key: CacheKey) -> CachedResult | None:
        """Return the live result stored under `key`, or None on a miss."""
        with self._lock:
            result = self._entries.get(key)
            if result is None:
                return None
            if self._expired(result, self.clock()):
                del self._entries[key]
                logger.debug("cache_entry_expired", directory=str(key.start_directory), mode=key.mode.value)
                return None
            self._entries.move_to_end(key)
            return result

    def set(self, result: CachedResult) -> None:
        """Store `result`, replacing any previous result of the same key."""
        with self._lock:
            self._entries[result.key] = result
            self._entries.move_to_end(result.key)
            while len(self._entries) > self.settings.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("cache_entry_evicted", directory=str(evicted.start_directory), mode=evicted.mode.value)

    def invalidate(self, paths: Iterable[Path]) -> list[CacheKey]:
        """Evict every result whose snapshot holds one of `paths` or a file below one of them.

        Args:
            paths (Iterable[Path]): changed files or directories

        Returns:
            list[CacheKey]: the evicted keys
        """
        affected = [Path(p).expanduser().resolve() for p in paths]
        if not affected:
            return []
        with self._lock:
            evicted = [
                key
                for key, result in self._entries.items()
                if any(is_within(src, a) for src in result.source_paths() for a in affected)
            ]
            for key in evicted:
                del self._entries[key]
        if evicted:
            logger.info("cache_invalidated", evicted=len(evicted), paths=[str(p) for p in affected])
        return evicted

    def discard(self, key: CacheKey) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def clean_expired(self) -> int:
        """Drop expired results.

        Returns:
            int: number of results removed
        """
        now = self.clock()
        with self._lock:
            expired = [k for k, r in self._entries.items() if self._expired(r, now)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def statistics(self) -> CacheStatistics:
        with self._lock:
            results = list(self._entries.values())
        if not results:
            return CacheStatistics()
        stamps = [r.created_at for r in results]
        return CacheStatistics(
            entry_count=len(results),
            total_bytes=sum(len(r.composed_document.encode("utf-8")) for r in results),
            oldest_timestamp=min(stamps),
            newest_timestamp=max(stamps),
        )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    @contextmanager
    def _key_slot(self, key: CacheKey) -> Iterator[None]:
        """Hold the per-key lock, dropping it from the map once no caller uses it."""
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = self._key_locks[key] = threading.Lock()
            self._key_users[key] = self._key_users.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._lock:
                self._key_users[key] -= 1
                if not self._key_users[key]:
                    del self._key_users[key]
                    del self._key_locks[key]

    def _store_if(self, result: CachedResult, cacheable: Callable[[CachedResult], bool] | None) -> None:
        if cacheable is None or cacheable(result):
            self.set(result)

    def get_or_compute(
        self,
        key: CacheKey,
        compute: Callable[[], CachedResult],
        *,
        cacheable: Callable[[CachedResult], bool] | None = None,
    ) -> CachedResult:
        """Serve `key` from the cache or run `compute` once for all waiting callers.

        Args:
            key (CacheKey): the requested key
            compute (Callable[[], CachedResult]): the pipeline run producing the result
            cacheable (Callable[[CachedResult], bool] | None): results it rejects
                are returned but not stored

        Returns:
            CachedResult: the cached or freshly computed result
        """
        cached = self.get(key)
        if cached is not None:
            return cached
        with self._key_slot(key):
            # Another caller may have filled the key while this one waited.
            cached = self.get(key)
            if cached is not None:
                logger.debug("cache_single_flight_hit", directory=str(key.start_directory), mode=key.mode.value)
                return cached
            result = compute()
            self._store_if(result, cacheable)
            return result

    def recompute(
        self,
        key: CacheKey,
        compute: Callable[[], CachedResult],
        *,
        cacheable: Callable[[CachedResult], bool] | None = None,
    ) -> CachedResult:
        """Run `compute` under the key lock without reading the cache, then store its result."""
        with self._key_slot(key):
            self.discard(key)
            result = compute()
            self._store_if(result, cacheable)
            return result
