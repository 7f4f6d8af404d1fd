"""
Client notification service.

Owns the NotificationCache for one signed-in user and everything that
writes to it:

  push channel  ->  DebouncedQueue  ->  flush: dedup, prepend, cap, toasts
  broadcast     ->  Debouncer       ->  refresh() when visible
  connect       ->  refresh(force=True) to re-sync what was missed offline
  timer         ->  RefreshScheduler -> refresh() when connected and visible

Consumers hold a reference to the service (no module-level instance),
read `notifications` / `unread_count` / `is_connected`, and subscribe()
to receive a full snapshot after every cache change. Nothing here raises
into the consumer for network trouble: failures are logged and turn into
a stale cache, a retry, or a corrective refresh.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait

from chatbell.client.cache import NotificationCache
from chatbell.client.channel import PushChannel
from chatbell.client.debounce import Debouncer, DebouncedQueue
from chatbell.client.lifecycle import Liveness
from chatbell.client.scheduler import RefreshScheduler
from chatbell.client.toasts import build_toasts, log_toast
from chatbell.models import ClientSettings, Notification

log = logging.getLogger("chatbell.client.service")


def ws_url_for(base_url: str) -> str:
    """Push endpoint URL for an http(s) server base URL."""
    url = base_url.replace("https://", "wss://").replace("http://", "ws://")
    return url.rstrip("/") + "/notifications/ws"


class NotificationService:

    def __init__(self, store, settings: ClientSettings | None = None,
                 channel_factory=None, toast_sink=None,
                 timer_factory=threading.Timer, clock=time.monotonic):
        self.settings = settings or ClientSettings()
        self.store = store
        self._channel_factory = channel_factory
        self._toast_sink = toast_sink or log_toast
        self._timer_factory = timer_factory
        self._clock = clock

        self._lock = threading.RLock()
        self._cache = NotificationCache(self.settings.max_cache_size)
        self._listeners: list = []
        self._last_refresh: float | None = None
        self._connected = False
        self._visible = True

        self.user = None
        self._liveness: Liveness | None = None
        self._channel = None
        self._queue: DebouncedQueue | None = None
        self._broadcast: Debouncer | None = None
        self._scheduler: RefreshScheduler | None = None

    @classmethod
    def for_server(cls, base_url: str, store, settings: ClientSettings | None = None, **kwargs):
        """Service whose push channel targets the server at base_url."""
        settings = settings or ClientSettings()
        url = ws_url_for(base_url)

        def _factory(token):
            return PushChannel(url, token, settings)

        return cls(store, settings=settings, channel_factory=_factory, **kwargs)

    # ── Lifecycle ─────────────────────────────────────────────

    def start(self, user, token: str | None) -> bool:
        """
        Begin delivery for `user`. Any previous session is torn down first.
        Returns False (and opens nothing) when there is no user or token.
        """
        self.stop()
        if not user or not token:
            log.debug("No authenticated user, not opening a push channel")
            with self._lock:
                if self.user is not None:
                    # signed out: nothing of the previous user stays readable
                    self.user = None
                    self._cache = NotificationCache(self.settings.max_cache_size)
                    self._last_refresh = None
                    self._publish()
            return False
        if self._channel_factory is None:
            raise RuntimeError("NotificationService has no channel factory")

        with self._lock:
            if user != self.user:
                self._cache = NotificationCache(self.settings.max_cache_size)
                self._last_refresh = None
            self.user = user

        liveness = Liveness()
        self._liveness = liveness
        s = self.settings
        self._queue = DebouncedQueue(
            s.debounce_delay, liveness.guard(self._apply_batch),
            max_pending=s.max_pending, batch_size=s.notification_batch_size,
            timer_factory=self._timer_factory,
        )
        self._broadcast = Debouncer(s.debounce_delay, liveness.guard(self._broadcast_refresh),
                                    timer_factory=self._timer_factory)
        self._scheduler = RefreshScheduler(s.refresh_interval, self._periodic_tick, liveness,
                                           timer_factory=self._timer_factory)

        channel = self._channel_factory(token)
        channel.on("connect", liveness.guard(self._on_connect))
        channel.on("disconnect", liveness.guard(self._on_disconnect))
        channel.on("connect_error", liveness.guard(self._on_connect_error))
        channel.on("new_notification", liveness.guard(self._on_new_notification))
        channel.on("notification_batch", liveness.guard(self._on_notification_batch))
        channel.on("broadcast_notification", liveness.guard(self._on_broadcast_notification))
        channel.on("notification_refresh", liveness.guard(self._on_notification_refresh))
        self._channel = channel

        self._scheduler.start()
        channel.start()
        log.info("Notification delivery started for user %s", user)
        return True

    def stop(self):
        """Cancel timers, detach listeners, then close the channel."""
        liveness = self._liveness
        if liveness is None:
            return
        liveness.cancel()
        self._liveness = None
        if self._scheduler is not None:
            self._scheduler.stop()
        if self._queue is not None:
            self._queue.cancel()
        if self._broadcast is not None:
            self._broadcast.cancel()
        channel, self._channel = self._channel, None
        if channel is not None:
            channel.remove_all_listeners()
            channel.close()
        self._set_connected(False)
        log.info("Notification delivery stopped for user %s", self.user)

    @property
    def active(self) -> bool:
        return self._liveness is not None and self._liveness.alive

    # ── Read-only views ───────────────────────────────────────

    @property
    def notifications(self) -> list[Notification]:
        with self._lock:
            return self._cache.snapshot()

    @property
    def unread_count(self) -> int:
        with self._lock:
            return self._cache.unread_count()

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def stale(self) -> bool:
        return self._cache.stale

    def subscribe(self, listener):
        """Call listener(snapshot) after every cache change. Returns an unsubscribe callable."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
        return _unsubscribe

    # ── Cache operations ──────────────────────────────────────

    def refresh(self, force: bool = False) -> bool:
        """
        Replace the cache with the store's latest notifications.

        Calls within minimum_refresh_interval of the previous one return False
        without touching the network unless force is set. A failed fetch
        leaves the cache as it was and marks it stale.
        """
        liveness = self._liveness
        now = self._clock()
        with self._lock:
            if (not force and self._last_refresh is not None
                    and now - self._last_refresh < self.settings.minimum_refresh_interval):
                log.debug("Refresh skipped (rate limited)")
                return False
            self._last_refresh = now

        try:
            items = self.store.fetch_notifications(fresh=True, limit=self.settings.max_cache_size)
        except Exception as exc:
            log.warning("Notification refresh failed: %s", exc)
            with self._lock:
                self._cache.invalidate()
            return False

        if liveness is not None and not liveness.alive:
            return False
        with self._lock:
            self._cache.replace(items)
            self._publish()
        return True

    def mark_as_read(self, notification_id: int) -> bool:
        with self._lock:
            changed = self._cache.mark_read([notification_id])
            if changed:
                self._publish()
        if not changed:
            return False
        try:
            self.store.mark_read(notification_id)
        except Exception as exc:
            log.warning("Failed to mark notification %s read: %s", notification_id, exc)
        return True

    def mark_all_as_read(self) -> int:
        """
        Flip every cached unread notification to read at once, then report each
        id to the store in concurrent batches of mark_read_batch_size. Each batch
        finishes before the next starts. Returns the number of ids marked.
        """
        with self._lock:
            ids = self._cache.unread_ids()
            if not ids:
                return 0
            self._cache.mark_read(ids)
            self._publish()

        size = self.settings.mark_read_batch_size
        liveness = self._liveness
        try:
            with ThreadPoolExecutor(max_workers=size, thread_name_prefix="chatbell-read") as pool:
                for start in range(0, len(ids), size):
                    if liveness is not None and not liveness.alive:
                        break
                    self._mark_batch(pool, ids[start:start + size])
        except Exception as exc:
            log.warning("Mark-all-as-read aborted: %s", exc)
            self.refresh(force=True)
        return len(ids)

    def _mark_batch(self, pool, batch: list[int]):
        futures = {pool.submit(self.store.mark_read, nid): nid for nid in batch}
        wait(futures)
        for fut, nid in futures.items():
            exc = fut.exception()
            if exc is not None:
                log.warning("Failed to mark notification %s read: %s", nid, exc)

    def request_sync(self):
        """Ask the server to push its latest notifications over the channel."""
        if self._channel is None:
            raise RuntimeError("notification service is not started")
        self._channel.send("request_notifications", {"limit": self.settings.max_cache_size})

    def set_visible(self, visible: bool):
        """Report consumer visibility; becoming visible while connected refreshes at once."""
        with self._lock:
            was_visible = self._visible
            self._visible = visible
        if visible and not was_visible and self._connected:
            self.refresh()

    # ── Channel handlers ──────────────────────────────────────

    def _on_connect(self):
        self._set_connected(True)
        self.refresh(force=True)

    def _on_disconnect(self):
        self._set_connected(False)

    def _on_connect_error(self, exc=None):
        log.debug("Push connect error: %s", exc)
        self._set_connected(False)

    def _on_new_notification(self, payload: dict):
        self._queue.enqueue(Notification.from_dict(payload))

    def _on_notification_batch(self, payload: dict):
        items = (payload or {}).get("notifications") or []
        declared = (payload or {}).get("count")
        if declared is not None and declared != len(items):
            log.debug("Batch declared %s notifications, carried %d", declared, len(items))
        for d in items:
            self._queue.enqueue(Notification.from_dict(d))

    def _on_broadcast_notification(self, payload=None):
        # Broadcast payloads only signal that something changed for everyone.
        self._broadcast.trigger()

    def _on_notification_refresh(self, payload):
        items = [Notification.from_dict(d) for d in (payload or [])]
        with self._lock:
            self._cache.replace(items)
            self._publish()

    # ── Internals ─────────────────────────────────────────────

    def _apply_batch(self, items: list[Notification]):
        with self._lock:
            accepted = self._cache.merge_new(items)
            if not accepted:
                return
            self._publish()
        s = self.settings
        for toast in build_toasts(accepted, duration=s.toast_duration,
                                  max_length=s.toast_message_length):
            try:
                self._toast_sink(toast)
            except Exception as exc:
                log.warning("Toast sink raised: %s", exc)

    def _broadcast_refresh(self):
        if not self._visible:
            log.debug("Broadcast refresh skipped (not visible)")
            return
        self.refresh()

    def _periodic_tick(self):
        if self._connected and self._visible:
            self.refresh()
        else:
            log.debug("Periodic refresh skipped (connected=%s visible=%s)",
                      self._connected, self._visible)

    def _set_connected(self, connected: bool):
        if self._connected != connected:
            log.info("Push channel %s", "online" if connected else "offline")
        self._connected = connected

    def _publish(self):
        # Caller holds self._lock, so listeners see snapshots in mutation order.
        snapshot = self._cache.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as exc:
                log.warning("Notification listener raised: %s", exc)
