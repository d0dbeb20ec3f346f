from __future__ import annotations

from enum import StrEnum, auto
from pathlib import Path  # noqa: TC003
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator


class ScopeType(StrEnum):
    """Discovery tier an entry was loaded from."""

    GLOBAL = auto()
    PROJECT = auto()
    DIRECTORY = auto()
    SUBDIRECTORY = auto()
    FULL_PROJECT_FILE = auto()


class MergeStrategy(StrEnum):
    """How an entry combines with the ones above it. Only MERGE is produced today."""

    MERGE = auto()
    OVERRIDE = auto()
    APPEND = auto()
    PREPEND = auto()


class ClassifiedType(StrEnum):
    """Heuristic classification of a discovered file, based on its name and extension only."""

    CONTEXT = auto()
    DOCUMENTATION = auto()
    CONFIGURATION = auto()
    SOURCE_CODE = auto()
    OTHER = auto()


class LoadMode(StrEnum):
    """Pipeline flavour; also half of the cache key."""

    STANDARD = auto()
    FULL = auto()


# Tie-break rank used by the merger when two entries share a priority.
SCOPE_RANK: dict[ScopeType, int] = {
    ScopeType.GLOBAL: 0,
    ScopeType.PROJECT: 1,
    ScopeType.DIRECTORY: 2,
    ScopeType.SUBDIRECTORY: 3,
    ScopeType.FULL_PROJECT_FILE: 3,
}

GLOBAL_PRIORITY = 1000
PROJECT_PRIORITY = 500
DIRECTORY_BASE_PRIORITY = 100
DIRECTORY_DEPTH_DECAY = 10
SUBDIRECTORY_CONTEXT_BONUS = 100
SUBDIRECTORY_DEPTH_DECAY = 5

MIN_PRIORITY = 0
MAX_PRIORITY = 1000

DEFAULT_CONTEXT_FILENAMES = ["VIBEX.md", "CONTEXT.md", ".vibex.md"]

DEFAULT_PROJECT_MARKERS = [
    "package.json",
    ".git",
    "pyproject.toml",
    "Cargo.toml",
    "go.mod",
    "requirements.txt",
]

# File names always classified as context files by the discovery engine.
CONTEXT_FILE_NAMES = {
    "VIBEX.md",
    "CLAUDE.md",
    "GEMINI.md",
    "CONTEXT.md",
    "README.md",
    ".vibex.md",
    ".vibexrc",
    "vibex.json",
}

DEFAULT_EXCLUDES = {
    ".git",
    ".hg",
    ".svn",
    ".venv",
    "venv",
    "env",
    "__pycache__",
    ".mypy_cache",
    ".ruff_cache",
    ".pytest_cache",
    ".ipynb_checkpoints",
    "node_modules",
    "vendor",
    "dist",
    "build",
    "out",
    ".idea",
    ".vscode",
}

CONFIG_EXTENSIONS = {".json", ".yml", ".yaml", ".toml", ".ini", ".cfg", ".conf", ".config"}
CONFIG_FILE_NAMES = {
    "package.json",
    "tsconfig.json",
    "webpack.config.js",
    ".gitignore",
    ".eslintrc",
    ".prettierrc",
    "setup.cfg",
}
DOCUMENTATION_EXTENSIONS = {".md", ".markdown", ".txt", ".rst", ".adoc"}
DOCUMENTATION_FILE_STEMS = ("README", "CHANGELOG", "LICENSE", "CONTRIBUTING", "INSTALL")
SOURCE_EXTENSIONS = {
    ".ts",
    ".tsx",
    ".js",
    ".jsx",
    ".mjs",
    ".py",
    ".java",
    ".kt",
    ".cpp",
    ".c",
    ".h",
    ".hpp",
    ".cs",
    ".php",
    ".rb",
    ".go",
    ".rs",
    ".swift",
    ".sh",
    ".sql",
}

EXTENSION_WEIGHTS: dict[str, int] = {
    ".ts": 40,
    ".tsx": 40,
    ".py": 40,
    ".js": 35,
    ".jsx": 35,
    ".mjs": 35,
    ".go": 35,
    ".rs": 35,
    ".toml": 35,
    ".java": 30,
    ".kt": 30,
    ".rb": 30,
    ".json": 30,
    ".yaml": 30,
    ".yml": 30,
    ".md": 25,
    ".ini": 20,
    ".cfg": 20,
    ".sql": 15,
    ".sh": 15,
    ".txt": 10,
    ".html": 10,
    ".css": 10,
}

# Checked against "/" + relative path, lowercased, so a leading directory matches too.
PATH_SEGMENT_BONUSES: dict[str, int] = {
    "/src/": 15,
    "/lib/": 10,
    "/config/": 25,
    "/docs/": 5,
}

MANIFEST_FILE_NAMES = {
    "package.json",
    "pyproject.toml",
    "cargo.toml",
    "go.mod",
    "requirements.txt",
    "setup.py",
    "pom.xml",
    "build.gradle",
    "gemfile",
    "composer.json",
}

TYPE_CONFIG_FILE_NAMES = {
    "tsconfig.json",
    "jsconfig.json",
    "mypy.ini",
    "pyrightconfig.json",
    "setup.cfg",
}

# Substring of the lowercased file name -> bonus.
FILE_NAME_KEYWORD_BONUSES: dict[str, int] = {
    "readme": 30,
    "dockerfile": 25,
    "license": 15,
    "changelog": 10,
}

MANIFEST_BONUS = 40
TYPE_CONFIG_BONUS = 35


class ContextEntry(BaseModel):
    """One context document loaded from one tier during one pipeline run.

    Attributes:
        scope_type: Tier the entry was loaded from.
        source_path: Absolute path of the file on disk.
        raw_content: File content exactly as read.
        content: Content after variable interpolation (equals raw_content until then).
        priority_score: Ordering key. Directory decay may take it below zero.
        scope_label: Human readable scope (e.g. "project", ".", "../..", "docs").
        last_modified_at: POSIX mtime of the file when it was read.
        merge_strategy: Always MERGE in practice.
        resolved_variables: Placeholder name -> value substituted in this entry.
        metadata: Provenance (loader, depth, classified type, size, file name, ...).
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    scope_type: ScopeType = Field(..., description="Tier the entry was loaded from")
    source_path: Path = Field(..., description="Absolute file path")
    raw_content: str = Field(..., description="Content as read from disk")
    content: str = Field(..., description="Content after interpolation")
    priority_score: int = Field(..., description="Ordering key, higher first")
    scope_label: str = Field(..., description="Human readable scope")
    last_modified_at: float = Field(default=0.0, description="POSIX modification time (seconds)")
    merge_strategy: MergeStrategy = Field(default=MergeStrategy.MERGE)
    resolved_variables: dict[str, str] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _default_content(cls, data: Any) -> Any:  # noqa: ANN401
        if isinstance(data, dict) and "content" not in data:
            return {**data, "content": data.get("raw_content", "")}
        return data

    @computed_field
    @property
    def size_bytes(self) -> int:
        """UTF-8 size of the (possibly interpolated) content."""
        return len(self.content.encode("utf-8"))


class DiscoveredFile(BaseModel):
    """A file returned by a discovery engine.

    Attributes:
        path: Absolute path to the file on disk.
        relative_path: POSIX path relative to the discovery root.
        content: Decoded UTF-8 content.
        size: File size in bytes.
        depth: Number of directories between the discovery root and the file (0 = in the root).
        modified_time: POSIX mtime (float seconds since epoch).
        classified_type: Heuristic classification of the file.
        gitignore_matched: Whether the root .gitignore matches the file.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    path: Path = Field(..., description="Absolute file path")
    relative_path: str = Field(..., description="File path relative to the discovery root")
    content: str = Field(default="", description="Decoded file content")
    size: int = Field(..., ge=0, description="File size in bytes")
    depth: int = Field(..., ge=0, description="Directory depth below the discovery root")
    modified_time: float = Field(..., description="POSIX modification time (seconds)")
    classified_type: ClassifiedType = Field(default=ClassifiedType.OTHER)
    gitignore_matched: bool = Field(default=False)
