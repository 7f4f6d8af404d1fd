"""
Scheduled broadcast sender.

A daemon thread wakes every SCHEDULER_INTERVAL seconds, broadcasts every
scheduled broadcast whose time has come, and marks it sent. One failing
broadcast is logged and the rest still go out.
"""
import logging
import threading

from chatbell import state
from chatbell.notifications import broadcast_notification

log = logging.getLogger("chatbell.scheduler")


def process_scheduled_broadcasts(now_iso: str | None = None) -> int:
    """Send all due broadcasts. Returns how many were sent."""
    try:
        due = state.store.due_broadcasts(now_iso)
    except Exception as exc:
        log.error("Could not load scheduled broadcasts: %s", exc)
        return 0
    sent = 0
    for b in due:
        try:
            broadcast_notification(b.type, b.title, b.message)
            state.store.mark_broadcast_sent(b.id)
            sent += 1
            log.info("Sent scheduled broadcast %s: %s", b.id, b.title)
        except Exception as exc:
            log.error("Error sending scheduled broadcast %s: %s", b.id, exc)
    return sent


class BroadcastScheduler:

    def __init__(self, interval: float | None = None):
        self.interval = interval if interval is not None else state.SCHEDULER_INTERVAL
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        log.info("Starting broadcast scheduler (every %ss)", self.interval)
        self._thread = threading.Thread(target=self._run, daemon=True,
                                        name="chatbell-broadcasts")
        self._thread.start()

    def stop(self):
        self._stop.set()
        log.info("Broadcast scheduler stopped")

    def _run(self):
        process_scheduled_broadcasts()
        while not self._stop.wait(self.interval):
            process_scheduled_broadcasts()
