"""
Debounced delivery primitives.

Debouncer runs a function once after a quiet period; every trigger() inside
the window pushes the deadline back. DebouncedQueue builds on it to absorb
bursts of push events: items are queued (deduplicated, capped) and handed
to a flush callback a bounded slice at a time.
"""
import functools
import logging
import threading
from collections import OrderedDict

log = logging.getLogger("chatbell.client.debounce")


class Debouncer:

    def __init__(self, delay: float, fn, timer_factory=threading.Timer):
        self.delay = delay
        self._fn = fn
        self._timer_factory = timer_factory
        self._timer = None
        self._generation = 0
        self._lock = threading.Lock()

    def trigger(self):
        """(Re)arm the timer."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            t = self._timer_factory(self.delay, functools.partial(self._fire, self._generation))
            t.daemon = True
            self._timer = t
        t.start()

    def cancel(self):
        with self._lock:
            self._generation += 1
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    @property
    def armed(self) -> bool:
        return self._timer is not None

    def _fire(self, generation: int):
        with self._lock:
            if generation != self._generation:
                # superseded by a later trigger(); that timer owns the call
                return
            self._timer = None
        self._fn()


class DebouncedQueue:
    """
    FIFO queue of keyed items flushed after `delay` seconds of quiet.

    enqueue() rejects items whose key is already pending and silently drops
    new items once `max_pending` are waiting. flush() hands at most
    `batch_size` items to `on_flush`; anything left re-arms the timer and
    goes out on a later cycle.
    """

    def __init__(self, delay: float, on_flush, max_pending: int, batch_size: int,
                 key=lambda item: item.id, timer_factory=threading.Timer):
        self._on_flush = on_flush
        self.max_pending = max_pending
        self.batch_size = batch_size
        self._key = key
        self._items: "OrderedDict[object, object]" = OrderedDict()
        self._lock = threading.Lock()
        self._debouncer = Debouncer(delay, self.flush, timer_factory=timer_factory)

    def enqueue(self, item) -> bool:
        k = self._key(item)
        with self._lock:
            if k in self._items:
                return False
            if len(self._items) >= self.max_pending:
                log.debug("Pending queue full (%d), dropping %r", self.max_pending, k)
                return False
            self._items[k] = item
        self._debouncer.trigger()
        return True

    def flush(self) -> list:
        """Deliver up to batch_size queued items. Returns the delivered slice."""
        with self._lock:
            batch = []
            while self._items and len(batch) < self.batch_size:
                _, item = self._items.popitem(last=False)
                batch.append(item)
            remaining = len(self._items)
        if remaining:
            self._debouncer.trigger()
        if batch:
            self._on_flush(batch)
        return batch

    def pending(self) -> list:
        with self._lock:
            return list(self._items.values())

    def cancel(self):
        """Stop the timer and drop anything still queued."""
        self._debouncer.cancel()
        with self._lock:
            self._items.clear()

    def __len__(self):
        with self._lock:
            return len(self._items)
