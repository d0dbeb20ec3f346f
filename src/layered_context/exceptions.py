from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class LayeredContextError(Exception):
    """Base exception for errors in the layered_context package."""


@dataclass(frozen=True)
class UnreadableDirectoryError(LayeredContextError):
    """Raised when the starting directory of a run cannot be listed."""

    folder: Path
    message: str = "The starting directory does not exist or cannot be read."

    def __str__(self) -> str:
        return f"{self.message} ({self.folder})"


@dataclass(frozen=True)
class LoaderError(LayeredContextError):
    """Raised when a whole scope cannot be enumerated."""

    scope: str
    message: str

    def __str__(self) -> str:
        return f"{self.scope} loader failed: {self.message}"


@dataclass(frozen=True)
class DiscoveryEngineError(LayeredContextError):
    """Raised when the discovery engine cannot walk a subtree at all."""

    root: Path
    message: str

    def __str__(self) -> str:
        return f"Discovery engine failed for {self.root}: {self.message}"


@dataclass(frozen=True)
class StoreError(LayeredContextError):
    """Raised by a long-term store when a composition cannot be persisted."""

    key: str
    message: str

    def __str__(self) -> str:
        return f"Store failed for {self.key}: {self.message}"


@dataclass(frozen=True)
class InvalidSettingsError(LayeredContextError):
    """Raised when a settings file cannot be parsed into settings."""

    source: str
    message: str

    def __str__(self) -> str:
        return f"Invalid settings in {self.source}: {self.message}"
