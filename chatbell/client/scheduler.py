import logging
import threading

log = logging.getLogger("chatbell.client.scheduler")


class RefreshScheduler:
    """
    Self-rescheduling background timer.

    Every `interval` seconds it calls tick(); whether tick() actually does
    anything is up to the caller. An exception in tick() is logged and the
    next tick is still armed: the cycle only ends when the liveness token is
    cancelled or stop() is called.
    """

    def __init__(self, interval: float, tick, token, timer_factory=threading.Timer):
        self.interval = interval
        self._tick = tick
        self._token = token
        self._timer_factory = timer_factory
        self._timer = None
        self._lock = threading.Lock()

    def start(self):
        self._arm()

    def stop(self):
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _arm(self):
        if not self._token.alive:
            return
        with self._lock:
            t = self._timer_factory(self.interval, self._token.guard(self._run))
            t.daemon = True
            self._timer = t
        t.start()

    def _run(self):
        try:
            self._tick()
        except Exception as exc:
            log.warning("Periodic refresh tick failed: %s", exc)
        finally:
            self._arm()
