"""
Size-bounded, id-keyed mirror of a user's most recent notifications.

Entries are ordered newest first. The cache never holds the same id twice
and never grows past max_size; overflow evicts from the old end. A read
flag set locally is never cleared again, even if a later server snapshot
still reports the notification as unread.

Not thread-safe on its own; NotificationService serialises access.
"""
import dataclasses
import logging
from collections import OrderedDict

from chatbell.models import Notification

log = logging.getLogger("chatbell.client.cache")


class NotificationCache:

    def __init__(self, max_size: int = 50):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self._entries: "OrderedDict[int, Notification]" = OrderedDict()
        self.stale = False

    # ── Queries ───────────────────────────────────────────────

    def has(self, notification_id: int) -> bool:
        return notification_id in self._entries

    def get(self, notification_id: int) -> Notification | None:
        return self._entries.get(notification_id)

    def snapshot(self) -> list[Notification]:
        return [dataclasses.replace(n) for n in self._entries.values()]

    def unread_ids(self) -> list[int]:
        return [n.id for n in self._entries.values() if not n.read]

    def unread_count(self) -> int:
        return sum(1 for n in self._entries.values() if not n.read)

    def __len__(self):
        return len(self._entries)

    def __contains__(self, notification_id):
        return notification_id in self._entries

    # ── Mutations ─────────────────────────────────────────────

    def add(self, notification: Notification) -> bool:
        """Put a notification at the newest end. False if its id is already cached."""
        if notification.id in self._entries:
            return False
        self._entries[notification.id] = notification
        self._entries.move_to_end(notification.id, last=False)
        while len(self._entries) > self.max_size:
            self.evict_oldest()
        return True

    def evict_oldest(self) -> Notification | None:
        if not self._entries:
            return None
        _, evicted = self._entries.popitem(last=True)
        log.debug("Evicted notification %s", evicted.id)
        return evicted

    def merge_new(self, items: list[Notification]) -> list[Notification]:
        """
        Prepend the items whose ids are not cached yet, in arrival order, so the
        last one to arrive ends up first. Returns the accepted items.
        """
        accepted = []
        seen: set[int] = set()
        for n in items:
            if n.id in seen or n.id in self._entries:
                continue
            seen.add(n.id)
            self._entries[n.id] = n
            self._entries.move_to_end(n.id, last=False)
            accepted.append(n)
        while len(self._entries) > self.max_size:
            self.evict_oldest()
        return [n for n in accepted if n.id in self._entries]

    def replace(self, items: list[Notification]):
        """
        Overwrite with a server snapshot (newest first). Duplicate ids keep their
        first occurrence; ids already read locally stay read.
        """
        fresh: "OrderedDict[int, Notification]" = OrderedDict()
        for n in items:
            if n.id in fresh:
                continue
            current = self._entries.get(n.id)
            if current is not None and current.read and not n.read:
                n.read = True
            fresh[n.id] = n
            if len(fresh) >= self.max_size:
                break
        self._entries = fresh
        self.stale = False

    def mark_read(self, ids) -> list[int]:
        """Flip read on the given ids. Returns the ids that actually changed."""
        changed = []
        for notification_id in ids:
            n = self._entries.get(notification_id)
            if n is not None and not n.read:
                n.read = True
                changed.append(notification_id)
        return changed

    def invalidate(self):
        """Flag the contents as out of date without dropping them."""
        self.stale = True
