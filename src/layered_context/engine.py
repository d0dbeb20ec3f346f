from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from threading import Lock
from typing import TYPE_CHECKING, Any, Self

from layered_context.cache import CacheKey, CachedResult, CacheStatistics, ResultCache, ResultStats
from layered_context.cancellation import CancellationToken
from layered_context.config import ContextEntry, LoadMode
from layered_context.discovery import FilesystemDiscoveryEngine
from layered_context.events import ChangeNotification, ContextEvent, EventBus
from layered_context.exceptions import LayeredContextError
from layered_context.file_manipulation import ensure_readable_directory
from layered_context.loaders import (
    DirectoryLoader,
    FullProjectLoader,
    GlobalLoader,
    ProjectLoader,
    ScopeLoader,
    SubdirectoryLoader,
    drop_claimed_paths,
)
from layered_context.logging import logger
from layered_context.ordering import order_entries, truncate_to_budget
from layered_context.output_construction import compose_document
from layered_context.settings import ContextSettings
from layered_context.store import STORE_CATEGORY, STORE_IMPORTANCE, STORE_KEY, ContextStore, JsonlContextStore
from layered_context.variables import VARIABLE_RESOLVERS, VariableInterpolator, build_variable_table

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping
    from concurrent.futures import Future
    from types import TracebackType

    from layered_context.discovery import DiscoveryEngine
    from layered_context.events import ChangeChannel

CANCELLED_MESSAGE = "context loading cancelled"


class ContextEngine:
    """Runs the discovery, merge and composition pipeline behind a result cache.

    Collaborators are injected; anything not given is built from `settings`.
    The engine owns a loader thread pool and, once `attach` is called, the
    consumer of a change channel: use it as a context manager or call `close`.

    Example:
        >>> with ContextEngine() as engine:
        ...     result = engine.load_context(Path.cwd())
        ...     print(result.composed_document)
    """

    def __init__(
        self,
        settings: ContextSettings | None = None,
        *,
        discovery_engine: DiscoveryEngine | None = None,
        store: ContextStore | None = None,
        cache: ResultCache | None = None,
        events: EventBus | None = None,
        variable_resolvers: Mapping[str, Callable[[], str]] | None = None,
        environ: Mapping[str, str] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or ContextSettings()
        self.discovery_engine = discovery_engine or FilesystemDiscoveryEngine()
        if store is None and self.settings.store_path is not None:
            store = JsonlContextStore(self.settings.store_path)
        self.store = store
        self.cache = cache if cache is not None else ResultCache(self.settings.cache, clock)
        self.events = events if events is not None else EventBus()
        self.variable_resolvers = dict(variable_resolvers or {})
        self.environ = environ
        self.clock = clock
        self._executor = ThreadPoolExecutor(max_workers=self.settings.max_workers, thread_name_prefix="context-loader")
        self._channel: ChangeChannel | None = None
        self._last_result: CachedResult | None = None
        self._last_lock = Lock()
        self._closed = False

    # public surface

    def load_context(self, directory: str | Path, cancel: CancellationToken | None = None) -> CachedResult:
        """Compose the standard context of `directory` (global, project, directory and subdirectory tiers).

        Args:
            directory (str | Path): starting directory
            cancel (CancellationToken | None): cooperative cancellation of the run

        Raises:
            UnreadableDirectoryError: if `directory` cannot be listed

        Returns:
            CachedResult: a cached result when one is still live, else a fresh one
        """
        return self._load(directory, LoadMode.STANDARD, cancel)

    def load_full_context(self, directory: str | Path, cancel: CancellationToken | None = None) -> CachedResult:
        """Compose the full project context of `directory`, scoring every discovered file.

        Same contract as `load_context`, with the full project budget and TTL.
        """
        return self._load(directory, LoadMode.FULL, cancel)

    def force_refresh(
        self,
        directory: str | Path,
        mode: LoadMode = LoadMode.STANDARD,
        cancel: CancellationToken | None = None,
    ) -> CachedResult:
        """Recompute the result of `directory`, bypassing and then replacing the cached one."""
        return self._load(directory, mode, cancel, refresh=True)

    def clear_cache(self) -> None:
        self.cache.clear()
        logger.info("cache_cleared")

    def clean_expired(self) -> int:
        return self.cache.clean_expired()

    def get_cache_statistics(self) -> CacheStatistics:
        return self.cache.statistics()

    def get_last_result(self) -> CachedResult | None:
        """Return the result most recently served by this engine, cached or not."""
        with self._last_lock:
            return self._last_result

    def handle_change(self, notification: ChangeNotification) -> list[CacheKey]:
        """Evict the cached results touching the changed paths.

        Args:
            notification (ChangeNotification): the change message

        Returns:
            list[CacheKey]: the evicted keys
        """
        evicted = self.cache.invalidate(notification.affected_paths)
        self.events.publish(
            ContextEvent.CONTEXT_UPDATED,
            {
                "update_type": notification.update_type,
                "affected_paths": list(notification.affected_paths),
                "evicted": evicted,
                "composed_result": notification.composed_result,
            },
        )
        return evicted

    def attach(self, channel: ChangeChannel) -> None:
        """Consume `channel` on its worker thread; notifications only ever touch the cache."""
        channel.start(self.handle_change)
        self._channel = channel

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._channel is not None:
            self._channel.close()
            self._channel = None
        self._executor.shutdown(wait=True)

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    # pipeline

    def _load(
        self,
        directory: str | Path,
        mode: LoadMode,
        cancel: CancellationToken | None,
        *,
        refresh: bool = False,
    ) -> CachedResult:
        start = ensure_readable_directory(Path(directory))
        key = CacheKey(start_directory=start, mode=mode)
        fetch = self.cache.recompute if refresh else self.cache.get_or_compute
        result = fetch(key, lambda: self._run(key, cancel), cacheable=is_cacheable)
        with self._last_lock:
            self._last_result = result
        return result

    def _loaders(self, mode: LoadMode) -> tuple[list[ScopeLoader], list[ScopeLoader]]:
        """Return the upper tiers and the discovery tier for `mode`, in tier order."""
        s = self.settings
        upper: list[ScopeLoader] = []
        if s.loader.enable_global:
            upper.append(GlobalLoader(s.loader))
        if s.loader.enable_project:
            upper.append(ProjectLoader(s.loader))
        if s.loader.enable_directory:
            upper.append(DirectoryLoader(s.loader))

        subdirectory = SubdirectoryLoader(self.discovery_engine, s.subdirectory_discovery, s.subdirectory_base_priority)
        if mode is LoadMode.FULL:
            return upper, [FullProjectLoader(self.discovery_engine, s.full_discovery, subdirectory, self.clock)]
        return upper, [subdirectory] if s.loader.enable_subdirectory else []

    def _run_loaders(
        self,
        loaders: list[ScopeLoader],
        start: Path,
        errors: list[str],
        cancel: CancellationToken,
    ) -> list[list[ContextEntry]]:
        """Run every loader on the thread pool; one entry list per loader, in `loaders` order."""
        submitted: list[tuple[ScopeLoader, list[str], Future[list[ContextEntry]]]] = []
        for loader in loaders:
            loader_errors: list[str] = []
            future = self._executor.submit(loader.load, start, errors=loader_errors, cancel=cancel)
            submitted.append((loader, loader_errors, future))

        # Collected in tier order so entries and errors do not depend on thread timing.
        results: list[list[ContextEntry]] = []
        for loader, loader_errors, future in submitted:
            try:
                results.append(future.result())
            except (LayeredContextError, OSError) as e:
                logger.warning("loader_failed", scope=loader.scope.value, error=str(e))
                loader_errors.append(f"Failed to load {loader.scope.value} context: {e}")
                results.append([])
            errors.extend(loader_errors)
        return results

    def _variable_table(self, errors: list[str]) -> dict[str, str]:
        resolvers = {**VARIABLE_RESOLVERS, **self.variable_resolvers}
        return build_variable_table(resolvers, errors)

    def _on_variable_resolved(self, name: str, value: str, source_path: Path) -> None:
        self.events.publish(
            ContextEvent.VARIABLE_RESOLVED,
            {"name": name, "value": value, "source_path": source_path},
        )

    def _run(self, key: CacheKey, cancel: CancellationToken | None) -> CachedResult:
        started = time.perf_counter()
        timeout = self.settings.timeout_seconds
        token = cancel.child(timeout) if cancel is not None else CancellationToken(timeout)
        errors: list[str] = []
        start = key.start_directory
        logger.info("context_load_started", directory=str(start), mode=key.mode.value)

        upper_loaders, discovery_loaders = self._loaders(key.mode)
        per_loader = self._run_loaders(upper_loaders + discovery_loaders, start, errors, token)
        upper = [e for batch in per_loader[: len(upper_loaders)] for e in batch]
        discovered = [e for batch in per_loader[len(upper_loaders) :] for e in batch]
        entries = upper + drop_claimed_paths(upper, discovered)

        table = self._variable_table(errors)
        interpolator = VariableInterpolator(table, self.environ, on_resolved=self._on_variable_resolved)
        entries = interpolator.interpolate_entries(entries)

        budget = self.settings.full_budget if key.mode is LoadMode.FULL else self.settings.budget
        kept, total_bytes, dropped = truncate_to_budget(
            order_entries(entries),
            max_bytes=budget.max_bytes,
            max_entries=budget.max_entries,
        )
        if dropped:
            logger.info("context_truncated", kept=len(kept), dropped=dropped, total_bytes=total_bytes)

        cancelled = token.cancelled
        if cancelled:
            reason = f"timed out after {timeout}s" if token.timed_out else "cancelled by caller"
            errors.append(f"{CANCELLED_MESSAGE}: {reason}")

        result = CachedResult(
            key=key,
            composed_document=compose_document(kept),
            entry_snapshot=tuple(kept),
            variables=table,
            stats=ResultStats(
                file_count=len(kept),
                total_bytes=total_bytes,
                elapsed_ms=(time.perf_counter() - started) * 1000,
                truncated_count=dropped,
            ),
            created_at=self.cache.clock(),
            errors=tuple(errors),
        )
        logger.info(
            "context_loaded",
            directory=str(start),
            mode=key.mode.value,
            files=result.stats.file_count,
            total_bytes=total_bytes,
            elapsed_ms=round(result.stats.elapsed_ms, 1),
            errors=len(errors),
        )

        if not cancelled:
            self._offer_to_store(result)
        self.events.publish(ContextEvent.CONTEXT_LOADED, {"key": key, "result": result})
        if errors:
            self.events.publish(ContextEvent.CONTEXT_ERROR, {"key": key, "errors": list(errors)})
        return result

    def _offer_to_store(self, result: CachedResult) -> None:
        if self.store is None:
            return
        value: dict[str, Any] = {
            "document": result.composed_document,
            "variables": result.variables,
            "stats": result.stats.model_dump(),
        }
        try:
            self.store.store(STORE_KEY, value, category=STORE_CATEGORY, importance=STORE_IMPORTANCE)
        except Exception as e:  # noqa: BLE001
            logger.warning("context_store_failed", error=str(e))


def is_cacheable(result: CachedResult) -> bool:
    """Cancelled or timed out runs are served once and never cached."""
    return not any(e.startswith(CANCELLED_MESSAGE) for e in result.errors)
