from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from dotenv import dotenv_values, find_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from layered_context.config import DEFAULT_CONTEXT_FILENAMES, DEFAULT_EXCLUDES, DEFAULT_PROJECT_MARKERS
from layered_context.exceptions import InvalidSettingsError

if TYPE_CHECKING:
    from collections.abc import Mapping

ENV_FILE = find_dotenv(usecwd=True)
ENV_PREFIX = "LAYERED_CONTEXT_"


class LoaderSettings(BaseModel):
    """Settings shared by the global, project and directory loaders."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    global_directory: Path = Field(
        default_factory=lambda: Path.home() / ".vibex",
        description="Directory holding user-wide context files.",
    )
    context_filenames: list[str] = Field(
        default_factory=lambda: list(DEFAULT_CONTEXT_FILENAMES),
        description="Candidate file names checked by every tier.",
    )
    project_markers: list[str] = Field(
        default_factory=lambda: list(DEFAULT_PROJECT_MARKERS),
        description="Files or directories marking a project root.",
    )
    max_depth: int = Field(default=10, ge=1, description="Levels walked upward.")
    encoding: str = Field(default="utf-8", description="Encoding of context files.")
    enable_global: bool = Field(default=True, description="Load the global tier.")
    enable_project: bool = Field(default=True, description="Load the project tier.")
    enable_directory: bool = Field(default=True, description="Load the directory tier.")
    enable_subdirectory: bool = Field(default=True, description="Load the subdirectory tier.")


class DiscoverySettings(BaseModel):
    """Configuration handed to a discovery engine."""

    model_config = ConfigDict(frozen=True)

    include_patterns: list[str] = Field(default_factory=list, description="Include globs (any match keeps).")
    exclude_patterns: list[str] = Field(default_factory=list, description="Exclude globs (any match drops).")
    excluded_directories: list[str] = Field(
        default_factory=lambda: sorted(DEFAULT_EXCLUDES),
        description="Directory names never entered.",
    )
    extensions: list[str] = Field(default_factory=list, description="Extension allow-list; empty allows all.")
    max_depth: int = Field(default=5, ge=0, description="Deepest directory level entered.")
    max_files: int = Field(default=1000, gt=0, description="Files returned at most.")
    max_file_size_bytes: int = Field(default=1024 * 1024, gt=0, description="Larger files are skipped.")
    respect_gitignore: bool = Field(default=True, description="Skip files matched by the root .gitignore.")


def subdirectory_discovery_defaults() -> DiscoverySettings:
    """Discovery preset for the subdirectory tier: markdown and text documents only."""
    return DiscoverySettings(
        include_patterns=["*.md", "*.markdown", "*.txt", "*.rst", ".vibexrc", "vibex.json"],
        exclude_patterns=["*.log", "*.tmp"],
        max_depth=5,
        max_files=1000,
        max_file_size_bytes=1024 * 1024,
    )


def full_discovery_defaults() -> DiscoverySettings:
    """Discovery preset for full project mode: source, config and documentation files."""
    return DiscoverySettings(
        exclude_patterns=["*.log", "*.tmp", "*.lock", "*.min.js", "*.map", "package-lock.json"],
        extensions=[
            ".md", ".txt", ".rst",
            ".py", ".ts", ".tsx", ".js", ".jsx", ".mjs", ".go", ".rs", ".java", ".kt", ".rb",
            ".json", ".yaml", ".yml", ".toml", ".ini", ".cfg",
            ".sh", ".sql", ".html", ".css",
        ],
        max_depth=8,
        max_files=2000,
        max_file_size_bytes=512 * 1024,
    )


class BudgetSettings(BaseModel):
    """Size budget applied by the optimizer."""

    model_config = ConfigDict(frozen=True)

    max_bytes: int = Field(default=200_000, gt=0, description="Content bytes kept at most.")
    max_entries: int = Field(default=200, gt=0, description="Entries kept at most.")


class CacheSettings(BaseModel):
    """Result cache settings."""

    model_config = ConfigDict(frozen=True)

    ttl_seconds: float = Field(default=60.0, gt=0, description="Validity of a standard result.")
    full_ttl_seconds: float = Field(default=30.0, gt=0, description="Validity of a full project result.")
    max_entries: int = Field(default=100, gt=0, description="Results kept before LRU eviction.")

    @model_validator(mode="after")
    def _full_ttl_not_longer(self) -> CacheSettings:
        if self.full_ttl_seconds > self.ttl_seconds:
            msg = "full_ttl_seconds must not exceed ttl_seconds"
            raise ValueError(msg)
        return self


class ContextSettings(BaseModel):
    """Complete configuration of a context engine, with explicit defaults."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    loader: LoaderSettings = Field(default_factory=LoaderSettings)
    subdirectory_discovery: DiscoverySettings = Field(default_factory=subdirectory_discovery_defaults)
    full_discovery: DiscoverySettings = Field(default_factory=full_discovery_defaults)
    subdirectory_base_priority: int = Field(default=50, description="Base priority of subdirectory entries.")
    budget: BudgetSettings = Field(default_factory=BudgetSettings)
    full_budget: BudgetSettings = Field(
        default_factory=lambda: BudgetSettings(max_bytes=150_000, max_entries=100),
        description="Stricter budget used by full project mode.",
    )
    cache: CacheSettings = Field(default_factory=CacheSettings)
    max_workers: int = Field(default=4, gt=0, description="Threads used to run loaders.")
    timeout_seconds: float | None = Field(default=30.0, description="Deadline of one run; None disables it.")
    store_path: Path | None = Field(default=None, description="JSONL file receiving compositions.")
    log_file: str = Field(default="", description="Log file path.")

    @model_validator(mode="after")
    def _positive_timeout(self) -> ContextSettings:
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            msg = "timeout_seconds must be positive or None"
            raise ValueError(msg)
        return self


# Environment variable suffix -> dotted settings path.
_ENV_OVERRIDES: dict[str, tuple[str, ...]] = {
    "GLOBAL_DIR": ("loader", "global_directory"),
    "MAX_DEPTH": ("loader", "max_depth"),
    "MAX_BYTES": ("budget", "max_bytes"),
    "MAX_ENTRIES": ("budget", "max_entries"),
    "CACHE_TTL": ("cache", "ttl_seconds"),
    "FULL_CACHE_TTL": ("cache", "full_ttl_seconds"),
    "TIMEOUT": ("timeout_seconds",),
    "STORE_PATH": ("store_path",),
    "LOG_FILE": ("log_file",),
}


def _set_dotted(data: dict[str, Any], path: tuple[str, ...], value: str) -> None:
    cur = data
    for part in path[:-1]:
        cur = cur.setdefault(part, {})
    cur[path[-1]] = value


def read_env_overrides(env: Mapping[str, str | None] | None = None) -> dict[str, Any]:
    """Collect `LAYERED_CONTEXT_*` overrides from the environment.

    Values from the nearest `.env` file are used first, then the process
    environment wins.

    Args:
        env: Mapping to read instead of `.env` + `os.environ` (used by tests).

    Returns:
        dict[str, Any]: nested raw values ready to be merged into settings data.
    """
    if env is None:
        merged: dict[str, str | None] = dict(dotenv_values(ENV_FILE)) if ENV_FILE else {}
        merged.update(os.environ)
        env = merged
    data: dict[str, Any] = {}
    for suffix, path in _ENV_OVERRIDES.items():
        value = env.get(ENV_PREFIX + suffix)
        if value:
            _set_dotted(data, path, value)
    return data


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    out = dict(base)
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def load_settings(
    config_file: str | Path | None = None,
    env: Mapping[str, str | None] | None = None,
) -> ContextSettings:
    """Build settings from an optional YAML file and environment overrides.

    Args:
        config_file: YAML document whose keys mirror `ContextSettings`.
        env: Environment mapping; defaults to `.env` + `os.environ`.

    Raises:
        InvalidSettingsError: if the file is not a YAML mapping or fails validation.

    Returns:
        ContextSettings: the validated settings.
    """
    data: dict[str, Any] = {}
    source = "environment"
    if config_file:
        source = str(config_file)
        try:
            raw = yaml.safe_load(Path(config_file).read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise InvalidSettingsError(source=source, message=str(e)) from e
        if not isinstance(raw, dict):
            raise InvalidSettingsError(source=source, message="top-level YAML value must be a mapping")
        data = raw
    data = _deep_merge(data, read_env_overrides(env))
    try:
        return ContextSettings.model_validate(data)
    except ValidationError as e:
        raise InvalidSettingsError(source=source, message=str(e)) from e
