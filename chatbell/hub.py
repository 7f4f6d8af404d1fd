"""
Registry of open push sockets, keyed by user.

A user may have several sockets open (tabs, devices); every push to that
user goes to all of them. Sockets whose send() fails are dropped.

Frames are JSON: {"type": "<event>", "payload": ...}
"""
import json
import logging
import threading

from chatbell.models import Notification

log = logging.getLogger("chatbell.hub")


class PushHub:

    def __init__(self):
        self._sockets: dict[int, set] = {}
        self._lock = threading.Lock()

    def register(self, user_id: int, sock):
        with self._lock:
            self._sockets.setdefault(user_id, set()).add(sock)
        log.info("User %s connected (%d socket(s))", user_id, self.socket_count(user_id))

    def unregister(self, user_id: int, sock):
        with self._lock:
            socks = self._sockets.get(user_id)
            if socks is None:
                return
            socks.discard(sock)
            if not socks:
                del self._sockets[user_id]
        log.info("User %s disconnected", user_id)

    def connected_users(self) -> list[int]:
        with self._lock:
            return list(self._sockets)

    def socket_count(self, user_id: int) -> int:
        with self._lock:
            return len(self._sockets.get(user_id, ()))

    def is_connected(self, user_id: int) -> bool:
        return self.socket_count(user_id) > 0

    def send_to_user(self, user_id: int, event: str, payload) -> bool:
        """Push to every socket of a user. Returns True if at least one send succeeded."""
        with self._lock:
            socks = list(self._sockets.get(user_id, ()))
        if not socks:
            log.debug("User %s not connected, %s will be seen on next refresh", user_id, event)
            return False
        frame = json.dumps({"type": event, "payload": payload})
        delivered = False
        dead = []
        for sock in socks:
            try:
                sock.send(frame)
                delivered = True
            except Exception as exc:
                log.debug("Dropping dead socket for user %s: %s", user_id, exc)
                dead.append(sock)
        for sock in dead:
            self.unregister(user_id, sock)
        return delivered

    def send_notification(self, notification: Notification) -> bool:
        return self.send_to_user(notification.user_id, "new_notification", notification.to_dict())

    def send_batch(self, user_id: int, notifications: list[Notification]) -> bool:
        if not notifications:
            return False
        return self.send_to_user(user_id, "notification_batch", {
            "notifications": [n.to_dict() for n in notifications],
            "count": len(notifications),
        })

    def broadcast(self, event: str, payload) -> int:
        """Push to every connected user. Returns how many users received it."""
        reached = 0
        for user_id in self.connected_users():
            if self.send_to_user(user_id, event, payload):
                reached += 1
        return reached
