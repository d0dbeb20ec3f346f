from __future__ import annotations

import codecs
import fnmatch
import os
import stat
import time
from pathlib import Path
from typing import TYPE_CHECKING

from layered_context.config import (
    CONFIG_EXTENSIONS,
    CONFIG_FILE_NAMES,
    CONTEXT_FILE_NAMES,
    DOCUMENTATION_EXTENSIONS,
    DOCUMENTATION_FILE_STEMS,
    SOURCE_EXTENSIONS,
    ClassifiedType,
)
from layered_context.exceptions import UnreadableDirectoryError

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from layered_context.cancellation import CancellationToken

LARGE_FILE_WARNING_BYTES = 1024 * 1024
STALE_FILE_WARNING_SECONDS = 6 * 30 * 24 * 60 * 60


def relpath(path: Path, root: Path) -> str:
    """Send the relative path of path from root.

    Args:
        path (Path): the path to "relativise"
        root (Path): the root to relativise from

    Returns:
        str: the relative path from root to path, with POSIX separators.
            If path is not under root, returns the original path as a string.
    """
    try:
        return path.relative_to(root).as_posix()
    except ValueError:
        return str(path)


def is_within(path: Path, ancestor: Path) -> bool:
    """Check whether `path` equals `ancestor` or lies below it (lexically)."""
    return path == ancestor or ancestor in path.parents


def normalize_globs(globs: Sequence[str]) -> list[str]:
    """Normalize a sequence of path glob patterns.

    Normalize a sequence of glob patterns by stripping whitespace and
    replacing backslashes with forward slashes.

    Args:
        globs (Sequence[str]): the glob patterns to normalize

    Returns:
        list[str]: the normalized glob patterns
    """
    out: list[str] = []
    for g in globs:
        g2 = (g or "").strip()
        if not g2:
            continue
        out.append(g2.replace("\\", "/"))
    return out


def match_any_glob(rel: str, globs: Sequence[str]) -> bool:
    """Check if a relative path, or its base name, matches any of the glob patterns.

    Matching the base name lets `*.md` select markdown files at any depth.

    Args:
        rel (str): the relative POSIX path to check
        globs (Sequence[str]): the glob patterns to match against

    Returns:
        bool: True if `rel` or its last component matches any pattern in `globs`
    """
    name = rel.rsplit("/", 1)[-1]
    return any(fnmatch.fnmatch(rel, g) or fnmatch.fnmatch(name, g) for g in globs)


def is_regular_file(path: Path) -> bool:
    """Check if a file is regular.

    Args:
        path (Path): path to test.

    Returns:
        bool: True if the file is regular, False otherwise.
    """
    try:
        st = path.stat()
        return stat.S_ISREG(st.st_mode)
    except OSError:
        return False


def sniff_text_utf8(path: Path, nbytes: int = 4096) -> bool:
    """Check if path point to a utf-8 encoded text file.

    Args:
        path (Path): path to test.
        nbytes (int, optional): number of bytes to read for testing. Defaults to 4096.

    Returns:
        bool: True if the file is utf-8 encoded text, False otherwise.
    """
    try:
        if not is_regular_file(path):
            return False
        with path.open("rb") as f:
            chunk = f.read(nbytes)
        # final=False tolerates a multi-byte sequence cut at the chunk boundary.
        codecs.getincrementaldecoder("utf-8")().decode(chunk, final=False)
        if b"\x00" in chunk:
            return False
    except (OSError, UnicodeDecodeError):
        return False
    else:
        return True


def ensure_readable_directory(directory: Path) -> Path:
    """Resolve a starting directory and check it can be listed.

    Args:
        directory (Path): the directory a run starts from

    Raises:
        UnreadableDirectoryError: if the path is missing, not a directory, or cannot be listed

    Returns:
        Path: the resolved absolute directory
    """
    resolved = directory.expanduser().resolve()
    if not resolved.is_dir():
        raise UnreadableDirectoryError(folder=resolved)
    try:
        with os.scandir(resolved) as it:
            next(it, None)
    except OSError as e:
        raise UnreadableDirectoryError(folder=resolved, message=f"Cannot list the starting directory: {e}") from e
    return resolved


def iter_ancestors(start: Path, max_depth: int) -> Iterator[tuple[int, Path]]:
    """Yield `(depth, directory)` from `start` upward, at most `max_depth` levels.

    Depth 0 is `start` itself. The walk stops at the filesystem root.

    Args:
        start (Path): absolute directory to start from
        max_depth (int): number of levels yielded at most

    Yields:
        Iterator[tuple[int, Path]]: the depth and the directory at that depth
    """
    current = start
    for depth in range(max_depth):
        yield depth, current
        parent = current.parent
        if parent == current:
            return
        current = parent


def find_project_root(
    start: Path,
    markers: Sequence[str],
    max_depth: int,
    cancel: CancellationToken | None = None,
) -> Path | None:
    """Walk upward from `start` until a directory holds one of the marker files.

    Args:
        start (Path): absolute directory to start from
        markers (Sequence[str]): file or directory names marking a project root
        max_depth (int): number of levels checked at most
        cancel (CancellationToken | None): checked before every level

    Returns:
        Path | None: the first directory holding a marker, or None if none was found
    """
    for _depth, directory in iter_ancestors(start, max_depth):
        if cancel is not None and cancel.cancelled:
            return None
        for marker in markers:
            if (directory / marker).exists():
                return directory
    return None


def read_context_file(path: Path, encoding: str = "utf-8") -> tuple[str, os.stat_result] | None:
    """Read a candidate context file.

    Absent candidates are normal and return None; any other failure propagates
    so the caller can record it.

    Args:
        path (Path): the candidate file
        encoding (str): text encoding of the file

    Raises:
        OSError: if the file exists but cannot be read
        UnicodeDecodeError: if the file is not valid text in `encoding`

    Returns:
        tuple[str, os.stat_result] | None: the content and stat result, or None if absent
    """
    try:
        st = path.stat()
    except FileNotFoundError:
        return None
    if not stat.S_ISREG(st.st_mode):
        return None
    try:
        content = path.read_text(encoding=encoding)
    except FileNotFoundError:
        return None
    return content, st


def classify_file(path: Path) -> ClassifiedType:
    """Heuristically classify a file from its name and extension.

    Checks run in order: context file names, configuration, documentation,
    source code; anything else is OTHER.

    Args:
        path (Path): the file path to classify

    Returns:
        ClassifiedType: the classification
    """
    name = path.name
    ext = path.suffix.lower()
    if name in CONTEXT_FILE_NAMES:
        return ClassifiedType.CONTEXT
    if ext in CONFIG_EXTENSIONS or name in CONFIG_FILE_NAMES or ".config." in name or name.startswith(".env"):
        return ClassifiedType.CONFIGURATION
    if ext in DOCUMENTATION_EXTENSIONS or any(stem in name.upper() for stem in DOCUMENTATION_FILE_STEMS):
        return ClassifiedType.DOCUMENTATION
    if ext in SOURCE_EXTENSIONS:
        return ClassifiedType.SOURCE_CODE
    return ClassifiedType.OTHER


def validate_context_file(path: Path, encoding: str = "utf-8", now: float | None = None) -> tuple[list[str], list[str]]:
    """Check a context file before adding it to a tier.

    Args:
        path (Path): the file to validate
        encoding (str): expected text encoding
        now (float | None): reference POSIX time for the staleness check; defaults to the current time

    Returns:
        tuple[list[str], list[str]]: errors (the file is unusable) and warnings
    """
    errors: list[str] = []
    warnings: list[str] = []
    try:
        st = path.stat()
        if not stat.S_ISREG(st.st_mode):
            errors.append("Path is not a file")
            return errors, warnings
        if st.st_size > LARGE_FILE_WARNING_BYTES:
            warnings.append(f"File is very large ({round(st.st_size / 1024)}KB)")
        content = path.read_text(encoding=encoding)
    except (OSError, UnicodeDecodeError) as e:
        errors.append(f"Cannot read file: {e}")
        return errors, warnings

    if not content.strip():
        warnings.append("File is empty")
    reference = time.time() if now is None else now
    if reference - st.st_mtime > STALE_FILE_WARNING_SECONDS:
        warnings.append("File is older than 6 months")
    return errors, warnings
