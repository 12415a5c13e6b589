"""Explicit cleanup stack for guaranteed teardown."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple


@dataclass(frozen=True)
class TeardownFailure:
    """A teardown callback that raised."""
    description: str
    error: Exception


class CleanupStack:
    """Last-in, first-out teardown callbacks, each run at most once.

    Failures are logged and collected instead of raised so sibling teardowns
    still run and the primary error of a test is never masked.
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self._callbacks: List[Tuple[str, Callable[..., Any], tuple, dict]] = []
        self._lock = threading.Lock()

    def push(self, description: str, callback: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        """Schedule a teardown callback."""
        with self._lock:
            self._callbacks.append((description, callback, args, kwargs))

    def unwind(self) -> List[TeardownFailure]:
        """Run every scheduled callback in reverse order and empty the stack."""
        with self._lock:
            callbacks = list(reversed(self._callbacks))
            self._callbacks.clear()
        failures: List[TeardownFailure] = []
        for description, callback, args, kwargs in callbacks:
            self._logger.info("Cleanup: %s", description)
            try:
                callback(*args, **kwargs)
            except Exception as exc:  # pylint: disable=broad-except
                self._logger.error("Cleanup failed: %s: %s", description, exc, exc_info=True)
                failures.append(TeardownFailure(description=description, error=exc))
        return failures

    def __len__(self) -> int:
        with self._lock:
            return len(self._callbacks)

    def __enter__(self) -> "CleanupStack":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.unwind()
        return False
