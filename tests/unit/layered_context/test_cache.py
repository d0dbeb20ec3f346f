from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from layered_context.cache import CachedResult, CacheKey, ResultCache, ResultStats
from layered_context.config import ContextEntry, LoadMode, ScopeType
from layered_context.settings import CacheSettings


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_result(
    start: str,
    mode: LoadMode = LoadMode.STANDARD,
    *,
    created_at: float = 1_000.0,
    sources: tuple[str, ...] = (),
    document: str = "doc\n",
) -> CachedResult:
    entries = tuple(
        ContextEntry(
            scope_type=ScopeType.DIRECTORY,
            source_path=Path(s),
            raw_content="x",
            priority_score=100,
            scope_label=".",
        )
        for s in sources
    )
    return CachedResult(
        key=CacheKey(start_directory=Path(start), mode=mode),
        composed_document=document,
        entry_snapshot=entries,
        stats=ResultStats(file_count=len(entries), total_bytes=len(entries), elapsed_ms=1.0),
        created_at=created_at,
    )


@pytest.mark.unit
def test_get_returns_live_result_and_expires_after_ttl() -> None:
    clock = FakeClock()
    cache = ResultCache(CacheSettings(ttl_seconds=60, full_ttl_seconds=30), clock)
    result = make_result("/repo")
    cache.set(result)

    clock.now = 1_060.0
    assert cache.get(result.key) is result

    clock.now = 1_060.5
    assert cache.get(result.key) is None
    assert result.key not in cache


@pytest.mark.unit
def test_full_mode_uses_shorter_ttl() -> None:
    clock = FakeClock()
    cache = ResultCache(CacheSettings(ttl_seconds=60, full_ttl_seconds=30), clock)
    standard = make_result("/repo")
    full = make_result("/repo", LoadMode.FULL)
    cache.set(standard)
    cache.set(full)

    clock.now = 1_045.0

    assert cache.get(standard.key) is standard
    assert cache.get(full.key) is None


@pytest.mark.unit
def test_set_replaces_result_of_same_key() -> None:
    cache = ResultCache(CacheSettings(), FakeClock())
    cache.set(make_result("/repo", document="old"))
    cache.set(make_result("/repo", document="new"))

    hit = cache.get(CacheKey(start_directory=Path("/repo")))

    assert hit is not None
    assert hit.composed_document == "new"
    assert len(cache) == 1


@pytest.mark.unit
def test_lru_eviction_beyond_max_entries() -> None:
    cache = ResultCache(CacheSettings(max_entries=2), FakeClock())
    a, b, c = make_result("/a"), make_result("/b"), make_result("/c")
    cache.set(a)
    cache.set(b)
    cache.get(a.key)
    cache.set(c)

    assert a.key in cache
    assert b.key not in cache
    assert c.key in cache


@pytest.mark.unit
def test_invalidate_matches_equal_and_contained_paths() -> None:
    cache = ResultCache(CacheSettings(), FakeClock())
    src = make_result("/repo/src", sources=("/repo/src/VIBEX.md",))
    docs = make_result("/repo/docs", sources=("/repo/docs/guide.md",))
    other = make_result("/elsewhere", sources=("/elsewhere/VIBEX.md",))
    for r in (src, docs, other):
        cache.set(r)

    evicted_file = cache.invalidate([Path("/repo/src/VIBEX.md")])
    evicted_dir = cache.invalidate([Path("/repo/docs")])

    assert evicted_file == [src.key]
    assert evicted_dir == [docs.key]
    assert other.key in cache


@pytest.mark.unit
def test_invalidate_ignores_unrelated_and_empty_paths() -> None:
    cache = ResultCache(CacheSettings(), FakeClock())
    result = make_result("/repo", sources=("/repo/VIBEX.md",))
    cache.set(result)

    assert cache.invalidate([]) == []
    assert cache.invalidate([Path("/repo/VIBEX.md.bak"), Path("/repo/src")]) == []
    assert result.key in cache


@pytest.mark.unit
def test_clean_expired_and_statistics() -> None:
    clock = FakeClock(now=2_000.0)
    cache = ResultCache(CacheSettings(ttl_seconds=60, full_ttl_seconds=30), clock)
    cache.set(make_result("/old", created_at=1_000.0, document="aaaa"))
    cache.set(make_result("/mid", created_at=1_990.0, document="bb"))
    cache.set(make_result("/new", created_at=1_995.0, document="é"))

    before = cache.statistics()
    removed = cache.clean_expired()
    after = cache.statistics()

    assert (before.entry_count, before.total_bytes) == (3, 8)
    assert (before.oldest_timestamp, before.newest_timestamp) == (1_000.0, 1_995.0)
    assert removed == 1
    assert after.entry_count == 2
    assert after.oldest_timestamp == 1_990.0


@pytest.mark.unit
def test_statistics_of_empty_cache() -> None:
    stats = ResultCache(CacheSettings(), FakeClock()).statistics()

    assert stats.entry_count == 0
    assert stats.oldest_timestamp is None


@pytest.mark.unit
def test_get_or_compute_does_not_store_rejected_results() -> None:
    cache = ResultCache(CacheSettings(), FakeClock())
    result = make_result("/repo")

    served = cache.get_or_compute(result.key, lambda: result, cacheable=lambda r: False)

    assert served is result
    assert result.key not in cache


@pytest.mark.unit
def test_get_or_compute_coalesces_concurrent_misses() -> None:
    cache = ResultCache(CacheSettings(), time.time)
    key = CacheKey(start_directory=Path("/repo"))
    calls = 0
    started = threading.Event()

    def compute() -> CachedResult:
        nonlocal calls
        calls += 1
        started.set()
        time.sleep(0.2)
        return make_result("/repo", created_at=time.time())

    results: list[CachedResult] = []

    def worker() -> None:
        results.append(cache.get_or_compute(key, compute))

    first = threading.Thread(target=worker)
    first.start()
    started.wait(5)
    others = [threading.Thread(target=worker) for _ in range(4)]
    for t in others:
        t.start()
    for t in [first, *others]:
        t.join(5)

    assert calls == 1
    assert len(results) == 5
    assert all(r is results[0] for r in results)
    assert cache._key_locks == {}


@pytest.mark.unit
def test_discard_and_clear() -> None:
    cache = ResultCache(CacheSettings(), FakeClock())
    a, b = make_result("/a"), make_result("/b")
    cache.set(a)
    cache.set(b)

    assert cache.discard(a.key)
    assert not cache.discard(a.key)
    cache.clear()
    assert len(cache) == 0


@pytest.mark.unit
def test_invalidate_resolves_relative_paths(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    root = tmp_path.resolve()
    cache = ResultCache(CacheSettings(), FakeClock())
    result = make_result(str(root), sources=(str(root / "VIBEX.md"),))
    cache.set(result)
    monkeypatch.chdir(root)

    assert cache.invalidate([Path("VIBEX.md")]) == [result.key]


@pytest.mark.unit
def test_key_locks_are_released_after_compute() -> None:
    cache = ResultCache(CacheSettings(), FakeClock())
    result = make_result("/repo")

    cache.get_or_compute(result.key, lambda: result)
    cache.get_or_compute(make_result("/other").key, lambda: make_result("/other"), cacheable=lambda r: False)
    cache.clear()

    assert cache._key_locks == {}
    assert cache._key_users == {}


@pytest.mark.unit
def test_key_lock_is_released_when_compute_raises() -> None:
    cache = ResultCache(CacheSettings(), FakeClock())
    key = CacheKey(start_directory=Path("/repo"))

    def compute() -> CachedResult:
        msg = "boom"
        raise RuntimeError(msg)

    with pytest.raises(RuntimeError):
        cache.get_or_compute(key, compute)

    assert cache._key_locks == {}


@pytest.mark.unit
def test_recompute_ignores_the_cached_result() -> None:
    cache = ResultCache(CacheSettings(), FakeClock())
    stale = make_result("/repo", document="stale\n")
    fresh = make_result("/repo", document="fresh\n")
    cache.set(stale)

    served = cache.recompute(stale.key, lambda: fresh)

    assert served is fresh
    assert cache.get(stale.key) is fresh
    assert cache._key_locks == {}


@pytest.mark.unit
def test_recompute_waits_for_a_running_compute() -> None:
    cache = ResultCache(CacheSettings(), FakeClock())
    key = CacheKey(start_directory=Path("/repo"))
    stale = make_result("/repo", document="stale\n")
    fresh = make_result("/repo", document="fresh\n")
    started = threading.Event()

    def slow() -> CachedResult:
        started.set()
        time.sleep(0.2)
        return stale

    loader = threading.Thread(target=cache.get_or_compute, args=(key, slow))
    loader.start()
    started.wait(5)
    served = cache.recompute(key, lambda: fresh)
    loader.join(5)

    assert served is fresh
    assert cache.get(key) is fresh
