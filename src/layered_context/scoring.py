from __future__ import annotations

from pathlib import PurePosixPath

from layered_context.config import (
    EXTENSION_WEIGHTS,
    FILE_NAME_KEYWORD_BONUSES,
    MANIFEST_BONUS,
    MANIFEST_FILE_NAMES,
    MAX_PRIORITY,
    MIN_PRIORITY,
    PATH_SEGMENT_BONUSES,
    TYPE_CONFIG_BONUS,
    TYPE_CONFIG_FILE_NAMES,
)

BASE_SCORE = 50
DEPTH_PENALTY = 5
ROOT_LEVEL_BONUS = 30

KIB = 1024
DAY_SECONDS = 24 * 60 * 60


def extension_weight(relative_path: str) -> int:
    return EXTENSION_WEIGHTS.get(PurePosixPath(relative_path).suffix.lower(), 0)


def size_band(size_bytes: int) -> int:
    """+20 under 10 KiB, +10 under 50 KiB, -20 over 500 KiB, 0 otherwise."""
    if size_bytes < 10 * KIB:
        return 20
    if size_bytes < 50 * KIB:
        return 10
    if size_bytes > 500 * KIB:
        return -20
    return 0


def path_keyword_bonus(relative_path: str) -> int:
    """Sum the directory and file name bonuses that apply to a path.

    Directory segments are matched on `"/" + relative_path` so a top-level
    `src/` counts like a nested one. Every matching rule contributes.

    Args:
        relative_path (str): POSIX path relative to the discovery root

    Returns:
        int: the summed bonus
    """
    rel = relative_path.replace("\\", "/").lstrip("/").lower()
    anchored = "/" + rel
    name = rel.rsplit("/", 1)[-1]

    bonus = sum(v for segment, v in PATH_SEGMENT_BONUSES.items() if segment in anchored)
    bonus += sum(v for keyword, v in FILE_NAME_KEYWORD_BONUSES.items() if keyword in name)
    if name in MANIFEST_FILE_NAMES:
        bonus += MANIFEST_BONUS
    if name in TYPE_CONFIG_FILE_NAMES:
        bonus += TYPE_CONFIG_BONUS
    return bonus


def recency_band(modified_time: float, now: float) -> int:
    """+15 if modified within a day, +10 within a week, +5 within 30 days."""
    age = now - modified_time
    if age < DAY_SECONDS:
        return 15
    if age < 7 * DAY_SECONDS:
        return 10
    if age < 30 * DAY_SECONDS:
        return 5
    return 0


def score_file(
    relative_path: str,
    size_bytes: int,
    depth: int,
    modified_time: float,
    now: float,
) -> int:
    """Deterministic priority of a full project file, clamped to [0, 1000].

    Args:
        relative_path (str): POSIX path relative to the discovery root
        size_bytes (int): file size
        depth (int): directory depth below the discovery root (0 = in the root)
        modified_time (float): POSIX mtime of the file
        now (float): reference POSIX time for the recency band

    Returns:
        int: the clamped score
    """
    score = BASE_SCORE - depth * DEPTH_PENALTY
    score += extension_weight(relative_path)
    score += size_band(size_bytes)
    if depth == 0:
        score += ROOT_LEVEL_BONUS
    score += path_keyword_bonus(relative_path)
    score += recency_band(modified_time, now)
    return max(MIN_PRIORITY, min(MAX_PRIORITY, score))
