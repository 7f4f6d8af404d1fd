"""
Shared fixtures and fakes.

Timers, clock, push channel and websocket are replaced with in-memory fakes
so debounce windows, backoff and refresh ticks can be driven step by step.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from chatbell import state
from chatbell.auth import issue_token
from chatbell.hub import PushHub
from chatbell.models import ClientSettings, Notification
from chatbell.server import create_app
from chatbell.store import NotificationStore


class FakeTimer:
    """Stands in for threading.Timer; fires only when the test says so."""

    def __init__(self, interval, fn):
        self.interval = interval
        self.fn = fn
        self.daemon = False
        self.started = False
        self.cancelled = False
        self.fired = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.fired = True
        self.fn()

    @property
    def live(self) -> bool:
        return self.started and not self.cancelled and not self.fired


class FakeTimers:
    """Timer factory that remembers every timer it made."""

    def __init__(self):
        self.created: list[FakeTimer] = []

    def __call__(self, interval, fn):
        t = FakeTimer(interval, fn)
        self.created.append(t)
        return t

    def live(self, interval=None) -> list[FakeTimer]:
        return [t for t in self.created
                if t.live and (interval is None or t.interval == interval)]

    def fire_one(self, interval):
        live = self.live(interval)
        assert len(live) == 1, f"expected one live {interval}s timer, found {len(live)}"
        live[0].fire()


class FakeClock:

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeChannel:
    """Records what the service does to its push channel."""

    def __init__(self, token):
        self.token = token
        self.handlers: dict = {}
        self.calls: list[str] = []
        self.sent: list[tuple] = []
        self.started = False
        self.closed = False

    def on(self, event, handler):
        self.handlers[event] = handler

    def remove_all_listeners(self):
        self.calls.append("remove_all_listeners")
        self.handlers.clear()

    def start(self):
        self.started = True

    def close(self):
        self.calls.append("close")
        self.closed = True

    def send(self, msg_type, payload=None):
        self.sent.append((msg_type, payload))

    def emit(self, event, *args):
        handler = self.handlers.get(event)
        if handler is not None:
            handler(*args)


class FakeSocket:
    """websocket-client WebSocket double: scripted recv() frames, recorded sends."""

    def __init__(self, frames=(), fail_connect: Exception | None = None):
        self.frames = list(frames)
        self.fail_connect = fail_connect
        self.sent: list[str] = []
        self.closed = False
        self.url = None
        self.connect_timeout = None
        self.header = None
        self.timeout = "unset"

    def connect(self, url, timeout=None, header=None):
        if self.fail_connect is not None:
            raise self.fail_connect
        self.url = url
        self.connect_timeout = timeout
        self.header = header

    def settimeout(self, timeout):
        self.timeout = timeout

    def recv(self):
        if self.frames:
            return self.frames.pop(0)
        return ""

    def send(self, data):
        if self.closed:
            raise OSError("socket closed")
        self.sent.append(data)

    def close(self):
        self.closed = True


class RecordingSocket:
    """Server-side socket double for PushHub."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.frames: list[str] = []

    def send(self, data):
        if self.fail:
            raise ConnectionError("gone")
        self.frames.append(data)


def make_notification(nid: int, type: str = "message", read: bool = False, **kwargs) -> Notification:
    return Notification(
        id=nid,
        user_id=kwargs.pop("user_id", 1),
        type=type,
        title=kwargs.pop("title", f"Title {nid}"),
        message=kwargs.pop("message", f"Message {nid}"),
        read=read,
        created_at=kwargs.pop("created_at", f"2026-10-17T10:00:{nid % 60:02d}.000000+00:00"),
    )


@pytest.fixture
def settings() -> ClientSettings:
    return ClientSettings(
        debounce_delay=0.3,
        refresh_interval=30.0,
        minimum_refresh_interval=2.0,
        reconnect_base_delay=1.0,
        max_reconnect_delay=30.0,
        notification_batch_size=10,
        max_cache_size=50,
        mark_read_batch_size=5,
    )


@pytest.fixture
def timers() -> FakeTimers:
    return FakeTimers()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store_client():
    """Mock of chatbell.client.api.StoreClient."""
    mock = MagicMock()
    mock.fetch_notifications.return_value = []
    mock.mark_read.return_value = None
    return mock


@pytest.fixture
def jwt_secret():
    previous = (state.JWT_SECRET, state.JWT_ALG)
    state.JWT_SECRET = "chatbell-test-secret-0123456789abcdef"
    state.JWT_ALG = "HS256"
    yield state.JWT_SECRET
    state.JWT_SECRET, state.JWT_ALG = previous


@pytest.fixture
def store():
    s = NotificationStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def hub() -> PushHub:
    return PushHub()


@pytest.fixture
def app(jwt_secret, store, hub):
    application = create_app(store=store, hub=hub)
    application.testing = True
    yield application
    state.store = None
    state.hub = None
    state.invalidate_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def user_headers(jwt_secret):
    def _headers(user_id: int = 1, role: str = "user") -> dict:
        return {"Authorization": f"Bearer {issue_token(user_id, role=role)}"}
    return _headers
