"""
Tests for NotificationService.

These tests verify:
- No channel without an authenticated user
- Debounced intake: dedup, capacity, per-type toasts, batch throttling
- Broadcasts trigger a visible-only refresh and are never merged
- refresh() rate limiting, failure handling and read-flag monotonicity
- mark_all_as_read() optimistic update and batched requests
- Connect/disconnect handling and the periodic refresh cycle
- Teardown order and post-teardown callbacks being dropped
- A real PushChannel recovering from a drop with backoff and one re-sync
"""

from __future__ import annotations

import itertools
from unittest.mock import patch

import pytest
import requests

from chatbell.client.api import StoreError
from chatbell.client.channel import PushChannel
from chatbell.client.service import NotificationService, ws_url_for
from conftest import FakeChannel, FakeSocket, make_notification


@pytest.fixture
def channels():
    return []


@pytest.fixture
def toasts():
    return []


@pytest.fixture
def service(store_client, settings, timers, clock, channels, toasts):
    def factory(token):
        ch = FakeChannel(token)
        channels.append(ch)
        return ch

    svc = NotificationService(store_client, settings=settings, channel_factory=factory,
                              toast_sink=toasts.append, timer_factory=timers, clock=clock)
    yield svc
    svc.stop()


@pytest.fixture
def started(service, channels):
    assert service.start(user=1, token="tok") is True
    return channels[-1]


def _payload(nid, type="message", **kwargs):
    return make_notification(nid, type=type, **kwargs).to_dict()


class TestStart:

    @pytest.mark.parametrize("user,token", [(None, "tok"), (1, None), (None, None)])
    def test_no_user_no_channel(self, service, channels, user, token):
        assert service.start(user=user, token=token) is False
        assert channels == []
        assert service.active is False

    def test_start_opens_channel_and_schedules_refresh(self, service, started, timers, settings):
        assert started.started is True
        assert started.token == "tok"
        assert len(timers.live(settings.refresh_interval)) == 1
        assert set(started.handlers) >= {
            "connect", "disconnect", "connect_error", "new_notification",
            "notification_batch", "broadcast_notification", "notification_refresh",
        }

    def test_restart_tears_down_previous_channel(self, service, channels):
        service.start(user=1, token="tok")
        service.start(user=1, token="tok2")
        assert len(channels) == 2
        assert channels[0].calls == ["remove_all_listeners", "close"]
        assert channels[1].closed is False

    def test_switching_user_resets_cache(self, service, started, timers):
        started.emit("new_notification", _payload(1))
        timers.fire_one(0.3)
        assert len(service.notifications) == 1

        service.start(user=2, token="other")
        assert service.notifications == []

    def test_sign_out_clears_previous_user(self, service, started, timers):
        snapshots = []
        service.subscribe(snapshots.append)
        started.emit("new_notification", _payload(1))
        timers.fire_one(0.3)
        assert service.unread_count == 1

        assert service.start(user=None, token=None) is False

        assert service.user is None
        assert service.notifications == []
        assert service.unread_count == 0
        assert snapshots[-1] == []

    def test_ws_url_for(self):
        assert ws_url_for("https://chat.example.com/") == "wss://chat.example.com/notifications/ws"
        assert ws_url_for("http://localhost:8000") == "ws://localhost:8000/notifications/ws"


class TestPushIntake:

    def test_burst_of_one_type_gives_one_count_toast(self, service, started, timers, toasts):
        for nid in range(1, 6):
            started.emit("new_notification", _payload(nid, type="system"))
        assert toasts == []

        timers.fire_one(0.3)

        assert len(toasts) == 1
        assert toasts[0].title == "5 new notifications"
        assert len(service.notifications) == 5

    def test_single_arrival_toast_shows_text(self, service, started, timers, toasts, settings):
        started.emit("new_notification", _payload(1, type="message", title="Rin",
                                                  message="m" * 300))
        timers.fire_one(0.3)

        assert len(toasts) == 1
        assert toasts[0].title == "Rin"
        assert len(toasts[0].description) == settings.toast_message_length

    def test_repeated_ids_are_stored_once(self, service, started, timers):
        started.emit("new_notification", _payload(1))
        started.emit("notification_batch", {"notifications": [_payload(1), _payload(2), _payload(2)],
                                            "count": 3})
        timers.fire_one(0.3)
        started.emit("new_notification", _payload(2))
        timers.fire_one(0.3)

        ids = [n.id for n in service.notifications]
        assert sorted(ids) == [1, 2]

    def test_full_cache_evicts_oldest_on_new_arrival(self, store_client, settings, timers, clock,
                                                     channels, toasts):
        settings.max_cache_size = 4
        svc = NotificationService(store_client, settings=settings,
                                  channel_factory=lambda t: channels.append(FakeChannel(t)) or channels[-1],
                                  toast_sink=toasts.append, timer_factory=timers, clock=clock)
        svc.start(user=1, token="tok")
        for nid in range(1, 5):
            channels[-1].emit("new_notification", _payload(nid))
        timers.fire_one(0.3)
        assert len(svc.notifications) == 4

        channels[-1].emit("new_notification", _payload(5))
        timers.fire_one(0.3)

        ids = [n.id for n in svc.notifications]
        assert len(ids) == 4
        assert 5 in ids
        assert 1 not in ids
        svc.stop()

    def test_flush_is_throttled_to_batch_size(self, service, started, timers, settings):
        for nid in range(25):
            started.emit("new_notification", _payload(nid))

        timers.fire_one(0.3)
        assert len(service.notifications) == settings.notification_batch_size
        timers.fire_one(0.3)
        timers.fire_one(0.3)
        assert len(service.notifications) == 25
        assert timers.live(0.3) == []

    def test_pending_queue_overflow_drops(self, store_client, settings, timers, clock, channels):
        settings.max_cache_size = 3
        settings.notification_batch_size = 100
        svc = NotificationService(store_client, settings=settings,
                                  channel_factory=lambda t: channels.append(FakeChannel(t)) or channels[-1],
                                  toast_sink=lambda t: None, timer_factory=timers, clock=clock)
        svc.start(user=1, token="tok")
        for nid in range(10):
            channels[-1].emit("new_notification", _payload(nid))
        assert len(svc._queue) == 6
        svc.stop()

    def test_one_snapshot_per_flush(self, service, started, timers):
        snapshots = []
        service.subscribe(snapshots.append)
        for nid in range(4):
            started.emit("new_notification", _payload(nid))
        timers.fire_one(0.3)
        assert len(snapshots) == 1
        assert len(snapshots[0]) == 4

    def test_unsubscribe(self, service, started, timers):
        snapshots = []
        unsubscribe = service.subscribe(snapshots.append)
        unsubscribe()
        started.emit("new_notification", _payload(1))
        timers.fire_one(0.3)
        assert snapshots == []

    def test_toast_sink_errors_are_contained(self, store_client, settings, timers, clock, channels):
        def bad_sink(toast):
            raise RuntimeError("display gone")

        svc = NotificationService(store_client, settings=settings,
                                  channel_factory=lambda t: channels.append(FakeChannel(t)) or channels[-1],
                                  toast_sink=bad_sink, timer_factory=timers, clock=clock)
        svc.start(user=1, token="tok")
        channels[-1].emit("new_notification", _payload(1))
        timers.fire_one(0.3)
        assert len(svc.notifications) == 1
        svc.stop()


class TestBroadcast:

    def test_burst_triggers_one_refresh_and_no_merge(self, service, started, timers, store_client):
        for _ in range(3):
            started.emit("broadcast_notification", {"id": 99, "type": "system",
                                                    "title": "Maintenance", "message": "soon"})
        assert store_client.fetch_notifications.call_count == 0

        timers.fire_one(0.3)

        assert store_client.fetch_notifications.call_count == 1
        assert 99 not in [n.id for n in service.notifications]

    def test_hidden_consumer_does_not_refresh(self, service, started, timers, store_client):
        service.set_visible(False)
        started.emit("broadcast_notification", {"type": "system", "title": "x", "message": "y"})
        timers.fire_one(0.3)
        assert store_client.fetch_notifications.call_count == 0


class TestRefresh:

    def test_rate_limited(self, service, store_client, clock, settings):
        assert service.refresh() is True
        assert service.refresh() is False
        assert store_client.fetch_notifications.call_count == 1

        clock.advance(settings.minimum_refresh_interval)
        assert service.refresh() is True
        assert store_client.fetch_notifications.call_count == 2

    def test_force_bypasses_rate_limit(self, service, store_client):
        service.refresh()
        service.refresh(force=True)
        assert store_client.fetch_notifications.call_count == 2

    def test_requests_fresh_capped_list(self, service, store_client, settings):
        service.refresh()
        store_client.fetch_notifications.assert_called_once_with(
            fresh=True, limit=settings.max_cache_size)

    def test_replaces_cache(self, service, store_client):
        store_client.fetch_notifications.return_value = [make_notification(3), make_notification(2)]
        service.refresh()
        assert [n.id for n in service.notifications] == [3, 2]

    @pytest.mark.parametrize("exc", [requests.ConnectionError("down"), StoreError("boom", 500)])
    def test_failure_keeps_cache_and_marks_stale(self, service, store_client, clock, settings, exc):
        store_client.fetch_notifications.return_value = [make_notification(1)]
        service.refresh()
        clock.advance(settings.minimum_refresh_interval)
        store_client.fetch_notifications.side_effect = exc

        assert service.refresh() is False
        assert [n.id for n in service.notifications] == [1]
        assert service.stale is True

    def test_read_flag_survives_refresh(self, service, store_client, clock, settings):
        store_client.fetch_notifications.return_value = [make_notification(1)]
        service.refresh()
        service.mark_as_read(1)
        clock.advance(settings.minimum_refresh_interval)
        store_client.fetch_notifications.return_value = [make_notification(1, read=False)]
        service.refresh()
        assert service.notifications[0].read is True

    def test_server_snapshot_over_channel_replaces_cache(self, service, started):
        started.emit("notification_refresh", [_payload(7), _payload(6)])
        assert [n.id for n in service.notifications] == [7, 6]

    def test_request_sync_sends_over_channel(self, service, started):
        service.request_sync()
        assert started.sent == [("request_notifications", {"limit": 50})]

    def test_request_sync_needs_start(self, service):
        with pytest.raises(RuntimeError):
            service.request_sync()


class TestMarkAllAsRead:

    def _fill(self, service, store_client, count):
        store_client.fetch_notifications.return_value = [make_notification(i) for i in range(1, count + 1)]
        service.refresh(force=True)

    def test_twelve_unread_go_out_in_three_batches(self, service, store_client):
        self._fill(service, store_client, 12)
        unread_seen = []
        store_client.mark_read.side_effect = lambda nid: unread_seen.append(service.unread_count)

        with patch.object(service, "_mark_batch", wraps=service._mark_batch) as batches:
            assert service.mark_all_as_read() == 12

        assert [len(call.args[1]) for call in batches.call_args_list] == [5, 5, 2]
        assert store_client.mark_read.call_count == 12
        assert unread_seen == [0] * 12
        assert all(n.read for n in service.notifications)

    def test_individual_failures_are_swallowed(self, service, store_client):
        self._fill(service, store_client, 7)
        fetches = store_client.fetch_notifications.call_count

        def mark(nid):
            if nid in (2, 6):
                raise StoreError("nope", 500)

        store_client.mark_read.side_effect = mark
        assert service.mark_all_as_read() == 7
        assert store_client.mark_read.call_count == 7
        assert service.unread_count == 0
        assert store_client.fetch_notifications.call_count == fetches

    def test_aborted_batches_trigger_refresh(self, service, store_client):
        self._fill(service, store_client, 3)
        fetches = store_client.fetch_notifications.call_count
        with patch.object(service, "_mark_batch", side_effect=RuntimeError("pool died")):
            service.mark_all_as_read()
        assert store_client.fetch_notifications.call_count == fetches + 1
        assert service.unread_count == 0

    def test_nothing_unread(self, service, store_client):
        assert service.mark_all_as_read() == 0
        store_client.mark_read.assert_not_called()


class TestConnection:

    def test_connect_sets_flag_and_refreshes_once(self, service, started, store_client):
        started.emit("connect_error", ConnectionRefusedError())
        started.emit("connect_error", ConnectionRefusedError())
        assert service.is_connected is False
        assert store_client.fetch_notifications.call_count == 0

        started.emit("connect")

        assert service.is_connected is True
        assert store_client.fetch_notifications.call_count == 1

    def test_disconnect_clears_flag(self, service, started):
        started.emit("connect")
        started.emit("disconnect")
        assert service.is_connected is False

    def test_reconnect_refresh_ignores_rate_limit(self, service, started, store_client):
        started.emit("connect")
        started.emit("disconnect")
        started.emit("connect")
        assert store_client.fetch_notifications.call_count == 2


class TestPeriodicRefresh:

    def test_skips_when_offline_but_keeps_cycling(self, service, started, timers, store_client, settings):
        timers.fire_one(settings.refresh_interval)
        assert store_client.fetch_notifications.call_count == 0
        assert len(timers.live(settings.refresh_interval)) == 1

    def test_refreshes_when_connected_and_visible(self, service, started, timers, store_client,
                                                  clock, settings):
        started.emit("connect")
        clock.advance(settings.refresh_interval)
        timers.fire_one(settings.refresh_interval)
        assert store_client.fetch_notifications.call_count == 2

    def test_skips_when_hidden(self, service, started, timers, store_client, clock, settings):
        started.emit("connect")
        service.set_visible(False)
        clock.advance(settings.refresh_interval)
        timers.fire_one(settings.refresh_interval)
        assert store_client.fetch_notifications.call_count == 1

    def test_tick_error_does_not_stop_cycle(self, service, started, timers, settings):
        started.emit("connect")
        with patch.object(service, "refresh", side_effect=RuntimeError("bug")) as refresh:
            timers.fire_one(settings.refresh_interval)
        assert refresh.call_count == 1
        assert len(timers.live(settings.refresh_interval)) == 1

    def test_becoming_visible_refreshes(self, service, started, store_client, clock, settings):
        started.emit("connect")
        service.set_visible(False)
        clock.advance(settings.minimum_refresh_interval)
        service.set_visible(True)
        assert store_client.fetch_notifications.call_count == 2

    def test_becoming_visible_offline_does_nothing(self, service, started, store_client):
        service.set_visible(False)
        service.set_visible(True)
        assert store_client.fetch_notifications.call_count == 0


class TestTeardown:

    def test_listeners_removed_before_close(self, service, started):
        service.stop()
        assert started.calls == ["remove_all_listeners", "close"]
        assert started.handlers == {}
        assert service.is_connected is False

    def test_timers_cancelled(self, service, started, timers):
        started.emit("new_notification", _payload(1))
        started.emit("broadcast_notification", {})
        service.stop()
        assert timers.live() == []

    def test_late_callbacks_are_dropped(self, service, started, timers, store_client, toasts):
        handler = started.handlers["new_notification"]
        on_connect = started.handlers["connect"]
        tick = timers.live(30.0)[0]
        service.stop()

        handler(_payload(1))
        on_connect()
        tick.fire()

        assert service.notifications == []
        assert service.is_connected is False
        assert store_client.fetch_notifications.call_count == 0
        assert toasts == []

    def test_refresh_result_after_stop_is_discarded(self, service, started, store_client):
        def fetch(**kwargs):
            service.stop()
            return [make_notification(1)]

        store_client.fetch_notifications.side_effect = fetch
        assert service.refresh() is False
        assert service.notifications == []

    def test_stop_without_start(self, service):
        service.stop()
        assert service.active is False


class InlineChannel(PushChannel):
    """PushChannel whose maintain loop runs on the test thread."""

    def start(self):
        return None


class TestReconnectCycle:

    def test_drop_then_two_failed_reconnects(self, store_client, settings, timers, clock):
        """Established connection drops, two reconnects fail, the third succeeds."""
        plan = [
            FakeSocket(),
            FakeSocket(fail_connect=ConnectionRefusedError("refused")),
            FakeSocket(fail_connect=ConnectionRefusedError("refused")),
            FakeSocket(),
        ]
        channels = []
        sleeps = []
        # every connection looks long-lived: each clock read is a minute later
        minutes = itertools.count(0, 60)

        def ws_factory():
            if not plan:
                channels[-1].close()
                raise ConnectionError("no more sockets")
            return plan.pop(0)

        def sleep(delay):
            sleeps.append((delay, store_client.fetch_notifications.call_count))

        def channel_factory(token):
            ch = InlineChannel("ws://chat.local/notifications/ws", token, settings,
                               ws_factory=ws_factory, sleep=sleep,
                               clock=lambda: next(minutes))
            channels.append(ch)
            return ch

        svc = NotificationService(store_client, settings=settings, channel_factory=channel_factory,
                                  toast_sink=lambda t: None, timer_factory=timers, clock=clock)
        svc.start(user=1, token="tok")
        channels[-1].connect_and_maintain()

        assert sleeps == [(1.0, 1), (2.0, 1)]
        assert store_client.fetch_notifications.call_count == 2
        assert store_client.fetch_notifications.call_args.kwargs == {"fresh": True, "limit": 50}
        svc.stop()
