"""
Cancellation token shared by everything a NotificationService schedules.

One Liveness is created per start() and cancelled by stop(). Deferred
callbacks (timer fires, socket events, worker completions) are wrapped with
guard() when they are registered, so a callback that lands after teardown
is dropped in one place instead of each handler re-checking a flag.
"""
import functools
import logging
import threading

log = logging.getLogger("chatbell.client.lifecycle")


class Liveness:

    def __init__(self):
        self._cancelled = threading.Event()

    @property
    def alive(self) -> bool:
        return not self._cancelled.is_set()

    def cancel(self):
        self._cancelled.set()

    def guard(self, fn):
        """Wrap fn so it becomes a no-op once this token is cancelled."""
        @functools.wraps(fn)
        def _guarded(*args, **kwargs):
            if self._cancelled.is_set():
                log.debug("Dropping %s after teardown", getattr(fn, "__name__", fn))
                return None
            return fn(*args, **kwargs)
        return _guarded
