import logging
import threading
import time

from engine.errors import CancelledError

logger = logging.getLogger(__name__)


class CancelToken:
    """Cancellation signal scoped to one job execution.

    Blocking operations register an abort callback (for example closing an HTTP
    response) so that ``cancel()`` unblocks them instead of waiting for a timeout.
    """

    def __init__(self, reason="cancelled"):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks = []
        self.reason = reason

    @property
    def cancelled(self):
        return self._event.is_set()

    def cancel(self, reason=None):
        with self._lock:
            if self._event.is_set():
                return
            if reason:
                self.reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.debug("cancel callback failed", exc_info=True)

    def on_cancel(self, callback):
        """Register ``callback``; runs immediately if already cancelled. Returns an unregister function."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def _unregister():
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return _unregister
        callback()
        return lambda: None

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise CancelledError(self.reason)

    def wait(self, timeout):
        return self._event.wait(timeout)


class Deadline:
    def __init__(self, seconds):
        self.seconds = seconds
        self._expires = time.monotonic() + seconds

    def remaining(self):
        return max(0.0, self._expires - time.monotonic())

    @property
    def expired(self):
        return time.monotonic() >= self._expires


def run_cancellable(func, cancel=None, *args, timeout=None, **kwargs):
    """Run a blocking call on a helper thread and stop waiting once ``cancel`` fires.

    The helper thread is abandoned on cancel or timeout; callers that own a
    closable resource should also register it with ``cancel.on_cancel``.
    Raises ``CancelledError`` on cancel and ``TimeoutError`` when ``timeout``
    elapses first.
    """
    if cancel is None and timeout is None:
        return func(*args, **kwargs)
    if cancel is not None:
        cancel.raise_if_cancelled()
    outcome = {}
    done = threading.Event()

    def _target():
        try:
            outcome["value"] = func(*args, **kwargs)
        except BaseException as exc:
            outcome["error"] = exc
        finally:
            done.set()

    unregister = cancel.on_cancel(done.set) if cancel is not None else (lambda: None)
    worker = threading.Thread(target=_target, name=f"cancellable-{getattr(func, '__name__', 'call')}", daemon=True)
    worker.start()
    try:
        finished = done.wait(timeout)
    finally:
        unregister()
    if cancel is not None and cancel.cancelled and "value" not in outcome:
        raise CancelledError(cancel.reason)
    if not finished:
        raise TimeoutError(f"call did not finish within {timeout:g}s")
    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]
