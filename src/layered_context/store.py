from __future__ import annotations

import json
import threading
import time
from pathlib import Path
from typing import Any, Protocol

from layered_context.exceptions import StoreError
from layered_context.logging import logger

STORE_KEY = "project_context"
STORE_CATEGORY = "context"
STORE_IMPORTANCE = 90


class ContextStore(Protocol):
    """Long-term memory receiving every successful composition.

    Implementations raise `StoreError` on failure; the engine logs it and moves on.
    """

    def store(self, key: str, value: dict[str, Any], *, category: str, importance: int) -> None: ...


class JsonlContextStore:
    """Append-only JSON lines file, one record per stored composition."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def store(self, key: str, value: dict[str, Any], *, category: str, importance: int) -> None:
        record = {
            "key": key,
            "category": category,
            "importance": importance,
            "stored_at": time.time(),
            "value": value,
        }
        try:
            line = json.dumps(record, ensure_ascii=False, default=str)
        except (TypeError, ValueError) as e:
            raise StoreError(key=key, message=f"value is not serializable: {e}") from e
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as f:
                    f.write(line + "\n")
            except OSError as e:
                raise StoreError(key=key, message=str(e)) from e
        logger.debug("context_stored", key=key, path=str(self.path))

    def read_all(self) -> list[dict[str, Any]]:
        """Return every stored record, oldest first."""
        if not self.path.exists():
            return []
        with self.path.open(encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]
