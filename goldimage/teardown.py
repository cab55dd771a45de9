"""Guaranteed, run-once release of the resources a build acquired."""

from __future__ import annotations

import threading
from typing import Callable, List, Tuple

from goldimage.exceptions import TeardownError
from goldimage.utils import log


class TeardownManager:
    """
    Collects release callbacks as resources are acquired and runs them in
    reverse order exactly once. Failures are logged as warnings and collected
    in 'errors'; they never propagate, so they cannot mask the build result.
    """

    def __init__(self, log_fn=log) -> None:
        self._callbacks: List[Tuple[str, Callable[[], None]]] = []
        self._lock = threading.Lock()
        self._log = log_fn
        self.ran = False
        self.errors: List[TeardownError] = []

    def register(self, label: str, callback: Callable[[], None]) -> None:
        with self._lock:
            if self.ran:
                raise RuntimeError(f"cannot register '{label}' after teardown ran")
            self._callbacks.append((label, callback))

    @property
    def pending(self) -> List[str]:
        return [label for label, _ in self._callbacks]

    def run(self) -> List[TeardownError]:
        with self._lock:
            if self.ran:
                return self.errors
            self.ran = True
            callbacks = list(reversed(self._callbacks))
            self._callbacks.clear()

        if not callbacks:
            self._log("DEBUG", "Teardown: nothing to release")
        for label, callback in callbacks:
            try:
                self._log("INFO", f"Teardown: {label}")
                callback()
            except Exception as exc:
                error = TeardownError(f"{label} failed: {exc}")
                error.__cause__ = exc
                self.errors.append(error)
                self._log("WARN", f"Teardown: {error}")
        return self.errors

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.run()
        return False
