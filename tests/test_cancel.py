from __future__ import annotations

import threading
import time

import pytest

from engine.cancel import CancelToken, Deadline, run_cancellable
from engine.errors import CancelledError


def test_cancel_runs_callbacks_once_and_sets_reason() -> None:
    calls = []
    token = CancelToken()
    token.on_cancel(lambda: calls.append("close"))

    token.cancel("worker stopping")
    token.cancel("second")

    assert calls == ["close"]
    assert token.cancelled
    assert token.reason == "worker stopping"
    with pytest.raises(CancelledError, match="worker stopping"):
        token.raise_if_cancelled()


def test_unregistered_callback_is_not_called() -> None:
    calls = []
    token = CancelToken()
    unregister = token.on_cancel(lambda: calls.append("close"))
    unregister()
    token.cancel()
    assert calls == []


def test_callback_registered_after_cancel_runs_immediately() -> None:
    calls = []
    token = CancelToken()
    token.cancel()
    token.on_cancel(lambda: calls.append("late"))
    assert calls == ["late"]


def test_failing_callback_does_not_block_others() -> None:
    calls = []
    token = CancelToken()

    def _boom():
        raise RuntimeError("already closed")

    token.on_cancel(_boom)
    token.on_cancel(lambda: calls.append("second"))
    token.cancel()
    assert calls == ["second"]


def test_deadline_remaining_never_negative() -> None:
    deadline = Deadline(0)
    assert deadline.expired
    assert deadline.remaining() == 0.0
    assert Deadline(60).remaining() > 59


def test_run_cancellable_returns_value_and_reraises_errors() -> None:
    token = CancelToken()
    assert run_cancellable(lambda a, b: a + b, token, 2, 3) == 5
    assert run_cancellable(lambda: "direct") == "direct"

    def _fail():
        raise ValueError("bad payload")

    with pytest.raises(ValueError, match="bad payload"):
        run_cancellable(_fail, token)


def test_run_cancellable_stops_waiting_on_cancel() -> None:
    token = CancelToken()
    release = threading.Event()
    timer = threading.Timer(0.2, token.cancel, args=("worker stopping",))
    timer.start()

    started = time.monotonic()
    with pytest.raises(CancelledError, match="worker stopping"):
        run_cancellable(release.wait, token, 5)
    elapsed = time.monotonic() - started
    release.set()

    assert elapsed < 1.0


def test_run_cancellable_times_out() -> None:
    release = threading.Event()
    with pytest.raises(TimeoutError):
        run_cancellable(release.wait, None, 5, timeout=0.1)
    release.set()


def test_run_cancellable_refuses_to_start_after_cancel() -> None:
    calls = []
    token = CancelToken()
    token.cancel()

    with pytest.raises(CancelledError):
        run_cancellable(lambda: calls.append("ran"), token)

    assert calls == []
