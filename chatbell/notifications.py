"""
Server-side notification helpers.

Any backend module calls these to create notifications: the row is
persisted first, then pushed to the user's open sockets. A user who is
offline picks it up from GET /api/notifications on their next refresh.
"""
import logging

from chatbell import state
from chatbell.models import Notification

log = logging.getLogger("chatbell.notifications")


def add_notification(user_id: int, type: str, title: str, message: str) -> Notification:
    n = state.store.create(user_id, type, title, message)
    state.invalidate_user(user_id)
    if state.hub.send_notification(n):
        log.info("Notification %s delivered to user %s in real time", n.id, user_id)
    else:
        log.info("User %s offline, notification %s stored", user_id, n.id)
    return n


def add_notifications(user_id: int, items: list[dict]) -> list[Notification]:
    """Create several notifications for one user and push them as a single batch."""
    created = [
        state.store.create(user_id, d.get("type", "info"), d["title"], d["message"])
        for d in items
    ]
    state.invalidate_user(user_id)
    state.hub.send_batch(user_id, created)
    log.info("Created %d notification(s) for user %s", len(created), user_id)
    return created


def broadcast_notification(type: str, title: str, message: str,
                           user_ids: list[int] | None = None) -> list[Notification]:
    """
    Create the notification for every known user, push it to each one that is
    online, then emit broadcast_notification so clients re-sync.
    """
    if user_ids is None:
        user_ids = sorted(set(state.store.known_user_ids()) | set(state.hub.connected_users()))
    created = state.store.create_many(user_ids, type, title, message)
    state.invalidate_all()

    delivered = sum(1 for n in created if state.hub.send_notification(n))
    if created:
        payload = created[0].to_broadcast_dict()
    else:
        payload = {"type": type or "info", "title": title, "message": message}
    state.hub.broadcast("broadcast_notification", payload)
    log.info("Broadcast %r created for %d user(s) (%d in real time)",
             title, len(created), delivered)
    return created
