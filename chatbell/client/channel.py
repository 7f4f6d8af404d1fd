"""
Client side of the per-user push channel.

A PushChannel keeps one WebSocket open to the server's /notifications/ws
endpoint, authenticating with the user's bearer token on the upgrade
request, and reconnects with exponential backoff whenever the socket
drops or the handshake fails.

Frames from the server are JSON pushes:

  {"type": "<event>", "payload": {...}}

Server events:
  new_notification        one notification record
  broadcast_notification  notification without userId (re-sync signal)
  notification_batch      {"notifications": [...], "count": N}
  notification_refresh    list of the latest notifications (reply to request_notifications)
  ping                    keepalive, ignored

Lifecycle events emitted locally to registered handlers:
  connect, disconnect, connect_error (handler receives the exception)
"""
import json
import logging
import threading
import time

import websocket  # websocket-client

log = logging.getLogger("chatbell.client.channel")

_PING_INTERVAL = 20     # seconds between keepalive pings

LIFECYCLE_EVENTS = ("connect", "disconnect", "connect_error")


def backoff_delay(attempts: int, base: float, cap: float) -> float:
    """Delay before reconnect attempt number `attempts` (0-based), capped at `cap`."""
    if attempts < 0:
        attempts = 0
    # 2**attempts overflows float conversion long before it matters
    if attempts >= 64:
        return cap
    return min(base * (2 ** attempts), cap)


class PushChannel:
    """
    Manages the persistent WebSocket connection for one signed-in user.

    connect_and_maintain() is the blocking connect/recv/backoff loop and is
    normally run by start() on a daemon thread. close() is terminal: it stops
    the loop, interrupts any backoff sleep and closes the socket.

    Thread-safety: _ws is guarded by _lock; handlers are called from the
    maintain thread.
    """

    def __init__(self, url: str, token: str, settings, ws_factory=None, sleep=None,
                 clock=time.monotonic):
        self.url = url
        self.token = token
        self.settings = settings
        self.attempts = 0
        self._ws_factory = ws_factory or websocket.WebSocket
        self._sleep = sleep
        self._clock = clock
        self._ws = None
        self._lock = threading.Lock()
        self._closed = threading.Event()
        self._handlers: dict[str, "callable"] = {}
        self._thread: threading.Thread | None = None
        self.connected_event = threading.Event()

    # ── Public API ────────────────────────────────────────────

    def on(self, event: str, handler):
        """Register the handler for a server event or lifecycle event."""
        self._handlers[event] = handler

    def remove_all_listeners(self):
        self._handlers.clear()

    def start(self) -> threading.Thread:
        t = threading.Thread(target=self.connect_and_maintain, daemon=True,
                             name="chatbell-push")
        self._thread = t
        t.start()
        return t

    def send(self, msg_type: str, payload: dict | None = None):
        """Send a fire-and-forget frame to the server."""
        with self._lock:
            ws = self._ws
        if ws is None:
            raise RuntimeError("push channel is not connected")
        try:
            ws.send(json.dumps({"type": msg_type, "payload": payload or {}}))
        except Exception as exc:
            raise RuntimeError(f"push channel send failed: {exc}") from exc

    def close(self):
        """Tear the channel down for good."""
        self._closed.set()
        with self._lock:
            ws, self._ws = self._ws, None
        self.connected_event.clear()
        if ws is not None:
            try:
                ws.close()
            except Exception as exc:
                log.debug("Error closing push socket: %s", exc)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def is_connected(self) -> bool:
        return self.connected_event.is_set()

    # ── Connect / maintain ────────────────────────────────────

    def connect_and_maintain(self):
        """
        Blocking loop: connect, pump frames until the socket drops, back off,
        repeat. Returns once close() has been called.

        When a connection that stayed up for at least max_reconnect_delay
        drops, the first reconnect is immediate and only failed attempts
        wait (base*2^0, base*2^1, ...). A connection that drops sooner backs
        off before reconnecting, so a server that accepts and immediately
        closes is not hammered.
        """
        while not self._closed.is_set():
            try:
                self._connect()
            except Exception as exc:
                if self._closed.is_set():
                    return
                log.info("Push channel connect failed: %s", exc)
                self._emit("connect_error", exc)
                self._backoff()
                continue

            self.attempts = 0
            connected_at = self._clock()
            self._emit("connect")
            self._recv_loop()

            self.connected_event.clear()
            if self._closed.is_set():
                return
            self._emit("disconnect")
            if self._clock() - connected_at < self.settings.max_reconnect_delay:
                self._backoff()
            else:
                log.info("Push channel dropped, reconnecting now")

    def _backoff(self):
        delay = backoff_delay(self.attempts,
                              self.settings.reconnect_base_delay,
                              self.settings.max_reconnect_delay)
        self.attempts += 1
        log.info("Push channel reconnecting in %.1fs (attempt %d)", delay, self.attempts)
        if self._sleep is not None:
            self._sleep(delay)
        else:
            self._closed.wait(delay)

    def _connect(self):
        ws = self._ws_factory()
        # a timed-out handshake raises here and is handled like any other connect error
        ws.connect(self.url, timeout=self.settings.connect_timeout, header=[
            f"Authorization: Bearer {self.token}",
        ])
        # The handshake timeout would otherwise stay on the socket and make an
        # idle recv() fail after connect_timeout seconds.
        ws.settimeout(None)
        with self._lock:
            if self._closed.is_set():
                ws.close()
                raise RuntimeError("push channel closed during connect")
            self._ws = ws
        self.connected_event.set()
        log.info("Push channel connected to %s", self.url)
        threading.Thread(target=self._ping_loop, args=(ws,), daemon=True).start()

    # ── Recv loop ─────────────────────────────────────────────

    def _recv_loop(self):
        while not self._closed.is_set():
            with self._lock:
                ws = self._ws
            if ws is None:
                break
            try:
                raw = ws.recv()
            except Exception as exc:
                if not self._closed.is_set():
                    log.info("Push channel closed: %s", exc)
                break

            if raw is None:
                continue
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8", errors="replace")
            if raw == "":
                # websocket-client returns "" on clean close
                log.info("Push channel: empty recv (clean close)")
                break
            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                log.warning("Push channel: bad JSON frame dropped")
                continue
            if not isinstance(msg, dict):
                log.warning("Push channel: non-object frame dropped")
                continue
            self._dispatch(msg)

        with self._lock:
            ws, self._ws = self._ws, None
        if ws is not None:
            try:
                ws.close()
            except Exception:
                log.debug("Error closing dropped push socket", exc_info=True)

    def _dispatch(self, msg: dict):
        msg_type = msg.get("type", "")
        if msg_type == "ping":
            return
        if msg_type in LIFECYCLE_EVENTS:
            log.warning("Push channel: server sent reserved event %r", msg_type)
            return
        handler = self._handlers.get(msg_type)
        if handler is None:
            log.debug("Push channel: no handler for %r", msg_type)
            return
        try:
            handler(msg.get("payload"))
        except Exception as exc:
            log.warning("Push handler %s raised: %s", msg_type, exc)

    def _emit(self, event: str, *args):
        handler = self._handlers.get(event)
        if handler is None:
            return
        try:
            handler(*args)
        except Exception as exc:
            log.warning("Lifecycle handler %s raised: %s", event, exc)

    def _ping_loop(self, ws):
        while not self._closed.wait(_PING_INTERVAL):
            with self._lock:
                if self._ws is not ws:
                    return
            try:
                self.send("ping", {})
            except RuntimeError:
                return
