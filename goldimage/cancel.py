"""Cancellation token shared by every suspension point of a build."""

from __future__ import annotations

import contextlib
import signal
import threading
import time
from typing import Iterator, Optional

from goldimage.exceptions import BuildCancelled
from goldimage.utils import log


class CancelToken:
    """A one-way flag that, once set, makes every wait() raise BuildCancelled."""

    def __init__(self, parent: Optional["CancelToken"] = None) -> None:
        self._event = threading.Event()
        self._parent = parent
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def check(self) -> None:
        if self.cancelled:
            raise BuildCancelled(f"build cancelled: {self._reason()}")

    def wait(self, seconds: float) -> None:
        """Sleep for 'seconds' unless cancelled first (then raise)."""
        deadline = time.monotonic() + max(seconds, 0.0)
        while True:
            self.check()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            # parent tokens are not linked to our event, so wake up periodically
            self._event.wait(min(remaining, 0.5) if self._parent is not None else remaining)

    def child(self) -> "CancelToken":
        return CancelToken(parent=self)

    def _reason(self) -> str:
        if self._event.is_set():
            return self.reason or "cancelled"
        if self._parent is not None:
            return self._parent._reason()
        return "cancelled"


@contextlib.contextmanager
def cancel_on_signals(token: CancelToken) -> Iterator[CancelToken]:
    """Route SIGINT and SIGTERM to 'token' while the block runs."""

    def _request_cancel(signum, frame):
        sig_name = signal.Signals(signum).name
        log("WARN", f"{sig_name} received, cancelling builds (cleanup will still run)")
        token.cancel(sig_name)

    prev_sigterm = signal.signal(signal.SIGTERM, _request_cancel)
    prev_sigint = signal.signal(signal.SIGINT, _request_cancel)
    try:
        yield token
    finally:
        signal.signal(signal.SIGTERM, prev_sigterm)
        signal.signal(signal.SIGINT, prev_sigint)
