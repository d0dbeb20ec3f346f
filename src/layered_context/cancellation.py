from __future__ import annotations

import threading
import time


class CancellationToken:
    """Cooperative cancellation flag with an optional monotonic deadline.

    Loaders and the discovery engine poll `cancelled` between file operations
    and stop early; nothing is interrupted mid-read.
    """

    def __init__(self, timeout_seconds: float | None = None) -> None:
        self._event = threading.Event()
        self._deadline = time.monotonic() + timeout_seconds if timeout_seconds else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._event.set()
            return True
        return False

    @property
    def timed_out(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    def child(self, timeout_seconds: float | None) -> CancellationToken:
        """Return a token cancelled when this one is, or when its own deadline passes."""
        return _LinkedToken(self, timeout_seconds)


class _LinkedToken(CancellationToken):
    def __init__(self, parent: CancellationToken, timeout_seconds: float | None) -> None:
        super().__init__(timeout_seconds)
        self._parent = parent

    @property
    def cancelled(self) -> bool:
        return self._parent.cancelled or super().cancelled
