from __future__ import annotations

import os
import time
from typing import TYPE_CHECKING, Any, Protocol

from layered_context.config import (
    DIRECTORY_BASE_PRIORITY,
    DIRECTORY_DEPTH_DECAY,
    GLOBAL_PRIORITY,
    PROJECT_PRIORITY,
    SUBDIRECTORY_CONTEXT_BONUS,
    SUBDIRECTORY_DEPTH_DECAY,
    ClassifiedType,
    ContextEntry,
    DiscoveredFile,
    ScopeType,
)
from layered_context.exceptions import LoaderError
from layered_context.file_manipulation import find_project_root, iter_ancestors, read_context_file
from layered_context.logging import logger
from layered_context.scoring import score_file

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence
    from pathlib import Path

    from layered_context.cancellation import CancellationToken
    from layered_context.discovery import DiscoveryEngine
    from layered_context.settings import DiscoverySettings, LoaderSettings


class ScopeLoader(Protocol):
    """Loads the entries of one tier.

    Per-file read failures go to `errors`; a failure to enumerate the whole
    scope raises `LoaderError` (or `OSError`) and is recorded by the engine.
    """

    scope: ScopeType

    def load(
        self,
        start_directory: Path,
        *,
        errors: list[str],
        cancel: CancellationToken | None = None,
    ) -> list[ContextEntry]: ...


def _is_cancelled(cancel: CancellationToken | None) -> bool:
    return cancel is not None and cancel.cancelled


def load_candidate(
    path: Path,
    *,
    scope_type: ScopeType,
    priority: int,
    label: str,
    encoding: str,
    errors: list[str],
    metadata: dict[str, Any] | None = None,
) -> ContextEntry | None:
    """Read one candidate file into an entry.

    Args:
        path (Path): the candidate file
        scope_type (ScopeType): tier of the entry
        priority (int): priority of the entry
        label (str): scope label of the entry
        encoding (str): text encoding of the file
        errors (list[str]): run error list receiving read failures
        metadata (dict[str, Any] | None): extra provenance

    Returns:
        ContextEntry | None: the entry, or None if the file is absent or unreadable
    """
    try:
        found = read_context_file(path, encoding)
    except (OSError, UnicodeDecodeError) as e:
        msg = f"Failed to read {path}: {e}"
        logger.warning("context_file_unreadable", path=str(path), error=str(e))
        errors.append(msg)
        return None
    if found is None:
        return None
    content, st = found
    return ContextEntry(
        scope_type=scope_type,
        source_path=path,
        raw_content=content,
        priority_score=priority,
        scope_label=label,
        last_modified_at=st.st_mtime,
        metadata={
            "loader": scope_type.value,
            "file_name": path.name,
            "size": st.st_size,
            **(metadata or {}),
        },
    )


def entry_from_discovered(
    found: DiscoveredFile,
    *,
    scope_type: ScopeType,
    priority: int,
) -> ContextEntry:
    parent = found.relative_path.rsplit("/", 1)[0] if "/" in found.relative_path else "."
    return ContextEntry(
        scope_type=scope_type,
        source_path=found.path,
        raw_content=found.content,
        priority_score=priority,
        scope_label=parent,
        last_modified_at=found.modified_time,
        metadata={
            "loader": scope_type.value,
            "file_name": found.path.name,
            "relative_path": found.relative_path,
            "depth": found.depth,
            "classified_type": found.classified_type.value,
            "size": found.size,
            "gitignore_matched": found.gitignore_matched,
        },
    )


class GlobalLoader:
    """Reads the candidate file names from the user-wide context directory."""

    scope = ScopeType.GLOBAL

    def __init__(self, settings: LoaderSettings) -> None:
        self.settings = settings

    def load(
        self,
        start_directory: Path,  # noqa: ARG002
        *,
        errors: list[str],
        cancel: CancellationToken | None = None,
    ) -> list[ContextEntry]:
        directory = self.settings.global_directory.expanduser().resolve()
        if not directory.is_dir():
            return []
        entries: list[ContextEntry] = []
        for name in self.settings.context_filenames:
            if _is_cancelled(cancel):
                break
            entry = load_candidate(
                directory / name,
                scope_type=self.scope,
                priority=GLOBAL_PRIORITY,
                label="global",
                encoding=self.settings.encoding,
                errors=errors,
            )
            if entry is not None:
                entries.append(entry)
        return entries


class ProjectLoader:
    """Finds the project root through marker files and reads the candidates there.

    The priority is flat: how far the root is from the start directory does not matter.
    """

    scope = ScopeType.PROJECT

    def __init__(self, settings: LoaderSettings) -> None:
        self.settings = settings

    def load(
        self,
        start_directory: Path,
        *,
        errors: list[str],
        cancel: CancellationToken | None = None,
    ) -> list[ContextEntry]:
        root = find_project_root(start_directory, self.settings.project_markers, self.settings.max_depth, cancel)
        if root is None:
            logger.debug("project_root_not_found", start=str(start_directory))
            return []
        entries: list[ContextEntry] = []
        for name in self.settings.context_filenames:
            if _is_cancelled(cancel):
                break
            entry = load_candidate(
                root / name,
                scope_type=self.scope,
                priority=PROJECT_PRIORITY,
                label="project",
                encoding=self.settings.encoding,
                errors=errors,
                metadata={"project_root": str(root)},
            )
            if entry is not None:
                entries.append(entry)
        return entries


class DirectoryLoader:
    """Checks the candidate file names in the start directory and every ancestor.

    Priority is `100 - depth * 10`. The decay is not bounded: far ancestors may
    end up below zero and then sort after every scored tier.
    """

    scope = ScopeType.DIRECTORY

    def __init__(self, settings: LoaderSettings) -> None:
        self.settings = settings

    def load(
        self,
        start_directory: Path,
        *,
        errors: list[str],
        cancel: CancellationToken | None = None,
    ) -> list[ContextEntry]:
        entries: list[ContextEntry] = []
        for depth, directory in iter_ancestors(start_directory, self.settings.max_depth):
            label = os.path.relpath(directory, start_directory).replace(os.sep, "/")
            for name in self.settings.context_filenames:
                if _is_cancelled(cancel):
                    return entries
                entry = load_candidate(
                    directory / name,
                    scope_type=self.scope,
                    priority=DIRECTORY_BASE_PRIORITY - depth * DIRECTORY_DEPTH_DECAY,
                    label=label,
                    encoding=self.settings.encoding,
                    errors=errors,
                    metadata={"depth": depth},
                )
                if entry is not None:
                    entries.append(entry)
        return entries


class SubdirectoryLoader:
    """Context and documentation files found below the start directory.

    Priority is `base_priority + 100 (context files only) - depth * 5`.
    """

    scope = ScopeType.SUBDIRECTORY

    def __init__(self, engine: DiscoveryEngine, discovery: DiscoverySettings, base_priority: int) -> None:
        self.engine = engine
        self.discovery = discovery
        self.base_priority = base_priority

    def load(
        self,
        start_directory: Path,
        *,
        errors: list[str],  # noqa: ARG002
        cancel: CancellationToken | None = None,
    ) -> list[ContextEntry]:
        try:
            files = self.engine.discover(start_directory, self.discovery, cancel)
        except Exception as e:
            raise LoaderError(scope=self.scope.value, message=str(e)) from e

        entries: list[ContextEntry] = []
        for found in files:
            if found.classified_type is ClassifiedType.CONTEXT:
                bonus = SUBDIRECTORY_CONTEXT_BONUS
            elif found.classified_type is ClassifiedType.DOCUMENTATION:
                bonus = 0
            else:
                continue
            priority = self.base_priority + bonus - found.depth * SUBDIRECTORY_DEPTH_DECAY
            entries.append(entry_from_discovered(found, scope_type=self.scope, priority=priority))
        return entries


class FullProjectLoader:
    """Every discovered project file, scored by `score_file`.

    If the discovery engine fails, the failure is recorded and the plain
    subdirectory loader runs instead, itself guarded.
    """

    scope = ScopeType.FULL_PROJECT_FILE

    def __init__(
        self,
        engine: DiscoveryEngine,
        discovery: DiscoverySettings,
        fallback: SubdirectoryLoader,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.engine = engine
        self.discovery = discovery
        self.fallback = fallback
        self.clock = clock

    def load(
        self,
        start_directory: Path,
        *,
        errors: list[str],
        cancel: CancellationToken | None = None,
    ) -> list[ContextEntry]:
        try:
            files = self.engine.discover(start_directory, self.discovery, cancel)
        except Exception as e:  # noqa: BLE001
            logger.warning("full_discovery_failed", start=str(start_directory), error=str(e))
            errors.append(f"Discovery engine failed in full mode, falling back to subdirectory discovery: {e}")
            try:
                return self.fallback.load(start_directory, errors=errors, cancel=cancel)
            except Exception as fallback_error:  # noqa: BLE001
                logger.warning("fallback_discovery_failed", start=str(start_directory), error=str(fallback_error))
                errors.append(f"Fallback subdirectory loader failed: {fallback_error}")
                return []

        now = self.clock()
        return [
            entry_from_discovered(
                found,
                scope_type=self.scope,
                priority=score_file(found.relative_path, found.size, found.depth, found.modified_time, now),
            )
            for found in files
        ]


def drop_claimed_paths(
    claimed: Iterable[ContextEntry],
    discovered: Sequence[ContextEntry],
) -> list[ContextEntry]:
    """Drop discovery-tier entries whose file was already loaded by an upper tier.

    Args:
        claimed (Iterable[ContextEntry]): global, project and directory entries
        discovered (Sequence[ContextEntry]): subdirectory or full project entries

    Returns:
        list[ContextEntry]: `discovered` without the already claimed files, order kept
    """
    paths = {e.source_path for e in claimed}
    return [e for e in discovered if e.source_path not in paths]
