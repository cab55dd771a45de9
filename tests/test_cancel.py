"""Tests for goldimage.cancel module."""

from __future__ import annotations

import os
import signal
import threading
import time

import pytest

from goldimage.cancel import CancelToken, cancel_on_signals
from goldimage.exceptions import BuildCancelled


class TestCancelToken:
    def test_wait_returns_when_not_cancelled(self):
        token = CancelToken()
        started = time.monotonic()
        token.wait(0.05)
        assert time.monotonic() - started >= 0.05

    def test_wait_interrupted_by_cancel(self):
        token = CancelToken()
        threading.Timer(0.1, token.cancel, args=("SIGINT",)).start()
        started = time.monotonic()
        with pytest.raises(BuildCancelled, match="SIGINT"):
            token.wait(10)
        assert time.monotonic() - started < 2

    def test_check(self):
        token = CancelToken()
        token.check()
        token.cancel("user abort")
        with pytest.raises(BuildCancelled, match="user abort"):
            token.check()

    def test_first_reason_wins(self):
        token = CancelToken()
        token.cancel("SIGTERM")
        token.cancel("SIGINT")
        assert token.reason == "SIGTERM"

    def test_child_follows_parent(self):
        parent = CancelToken()
        child = parent.child()
        threading.Timer(0.1, parent.cancel, args=("SIGTERM",)).start()
        with pytest.raises(BuildCancelled, match="SIGTERM"):
            child.wait(10)

    def test_child_cancel_does_not_reach_parent(self):
        parent = CancelToken()
        child = parent.child()
        child.cancel()
        assert child.cancelled is True
        assert parent.cancelled is False


class TestCancelOnSignals:
    def test_sigterm_sets_token_and_restores_handler(self):
        previous = signal.getsignal(signal.SIGTERM)
        token = CancelToken()
        with cancel_on_signals(token):
            os.kill(os.getpid(), signal.SIGTERM)
            deadline = time.monotonic() + 2
            while not token.cancelled and time.monotonic() < deadline:
                time.sleep(0.01)
        assert token.cancelled is True
        assert token.reason == "SIGTERM"
        assert signal.getsignal(signal.SIGTERM) is previous
