from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import pathspec

from layered_context.config import DiscoveredFile
from layered_context.exceptions import DiscoveryEngineError
from layered_context.file_manipulation import (
    classify_file,
    match_any_glob,
    normalize_globs,
    relpath,
    sniff_text_utf8,
)
from layered_context.logging import logger

if TYPE_CHECKING:
    from collections.abc import Sequence

    from layered_context.cancellation import CancellationToken
    from layered_context.settings import DiscoverySettings


class DiscoveryEngine(Protocol):
    """Walks a subtree and returns the files matching a discovery configuration.

    Per-file errors are omitted from the result. A failure to walk the subtree
    at all raises `DiscoveryEngineError`.
    """

    def discover(
        self,
        start_directory: Path,
        config: DiscoverySettings,
        cancel: CancellationToken | None = None,
    ) -> list[DiscoveredFile]: ...


def load_gitignore_spec(root: Path) -> pathspec.GitIgnoreSpec | None:
    """Compile `root/.gitignore` with git's wildmatch rules.

    Args:
        root (Path): the discovery root

    Returns:
        pathspec.GitIgnoreSpec | None: the compiled patterns, None if there is no
            readable .gitignore or it holds no pattern
    """
    gitignore = root / ".gitignore"
    try:
        lines = gitignore.read_text(encoding="utf-8", errors="ignore").splitlines()
    except OSError:
        return None
    spec = pathspec.GitIgnoreSpec.from_lines(lines)
    if not spec.patterns:
        return None
    logger.debug("gitignore_loaded", root=str(root), patterns=len(spec.patterns))
    return spec


def is_gitignored(rel: str, spec: pathspec.GitIgnoreSpec | None, *, is_dir: bool = False) -> bool:
    """Check a root-relative POSIX path against a compiled .gitignore.

    Args:
        rel (str): path relative to the discovery root
        spec (pathspec.GitIgnoreSpec | None): result of `load_gitignore_spec`
        is_dir (bool): whether `rel` names a directory

    Returns:
        bool: True if the last matching pattern ignores the path
    """
    if spec is None:
        return False
    return spec.match_file(f"{rel}/" if is_dir else rel)


class FilesystemDiscoveryEngine:
    """Discovery engine backed by `os.walk`.

    Directories and files are visited in sorted order so results are stable.
    Symbolic links to directories are not followed, and every real directory is
    entered at most once.
    """

    def discover(
        self,
        start_directory: Path,
        config: DiscoverySettings,
        cancel: CancellationToken | None = None,
    ) -> list[DiscoveredFile]:
        root = start_directory.resolve()
        if not root.is_dir():
            raise DiscoveryEngineError(root=root, message="not a directory")
        try:
            with os.scandir(root) as it:
                next(it, None)
        except OSError as e:
            raise DiscoveryEngineError(root=root, message=str(e)) from e

        includes = normalize_globs(config.include_patterns)
        excludes = normalize_globs(config.exclude_patterns)
        extensions = {e.lower() if e.startswith(".") else f".{e.lower()}" for e in config.extensions}
        excluded_dirs = set(config.excluded_directories)
        ignore = load_gitignore_spec(root)

        results: list[DiscoveredFile] = []
        seen: set[str] = set()

        def on_walk_error(err: OSError) -> None:
            logger.debug("discovery_directory_skipped", path=getattr(err, "filename", ""), error=str(err))

        for dirpath, dirnames, filenames in os.walk(root, onerror=on_walk_error):
            if cancel is not None and cancel.cancelled:
                logger.info("discovery_cancelled", root=str(root), files=len(results))
                break
            current = Path(dirpath)
            real = os.path.realpath(dirpath)
            if real in seen:
                dirnames[:] = []
                continue
            seen.add(real)

            rel_dir = relpath(current, root)
            depth = 0 if current == root else len(rel_dir.split("/"))

            if depth >= config.max_depth:
                dirnames[:] = []
            else:
                kept: list[str] = []
                for d in sorted(dirnames):
                    child_rel = d if current == root else f"{rel_dir}/{d}"
                    if d in excluded_dirs:
                        continue
                    if excludes and (match_any_glob(child_rel, excludes) or match_any_glob(child_rel + "/", excludes)):
                        continue
                    if config.respect_gitignore and is_gitignored(child_rel, ignore, is_dir=True):
                        continue
                    kept.append(d)
                dirnames[:] = kept

            for name in sorted(filenames):
                if len(results) >= config.max_files:
                    logger.info("discovery_max_files_reached", root=str(root), max_files=config.max_files)
                    return results
                if cancel is not None and cancel.cancelled:
                    break
                found = self._discover_file(
                    current / name,
                    root,
                    depth,
                    config,
                    includes=includes,
                    excludes=excludes,
                    extensions=extensions,
                    ignore=ignore,
                )
                if found is not None:
                    results.append(found)

        return results

    def _discover_file(
        self,
        path: Path,
        root: Path,
        depth: int,
        config: DiscoverySettings,
        *,
        includes: Sequence[str],
        excludes: Sequence[str],
        extensions: set[str],
        ignore: pathspec.GitIgnoreSpec | None,
    ) -> DiscoveredFile | None:
        rel = relpath(path, root)
        if includes and not match_any_glob(rel, includes):
            return None
        if excludes and match_any_glob(rel, excludes):
            return None
        if extensions and path.suffix.lower() not in extensions:
            return None
        gitignored = is_gitignored(rel, ignore)
        if gitignored and config.respect_gitignore:
            return None
        try:
            st = path.stat()
            if st.st_size > config.max_file_size_bytes:
                return None
            if not sniff_text_utf8(path):
                return None
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.debug("discovery_file_skipped", path=str(path), error=str(e))
            return None
        return DiscoveredFile(
            path=path,
            relative_path=rel,
            content=content,
            size=st.st_size,
            depth=depth,
            modified_time=st.st_mtime,
            classified_type=classify_file(path),
            gitignore_matched=gitignored,
        )
