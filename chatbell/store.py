"""
SQLite-backed notification store.

One connection shared across request threads, serialised by a lock, in WAL
mode like the main chat backend's databases. Timestamps are stored as
ISO-8601 UTC strings so they sort lexically.
"""
import logging
import sqlite3
import threading
from datetime import datetime, timezone

from chatbell.models import Notification, ScheduledBroadcast

log = logging.getLogger("chatbell.store")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    type TEXT NOT NULL DEFAULT 'info',
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    read INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS scheduled_broadcasts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    scheduled_for TEXT NOT NULL,
    sent INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id);
CREATE INDEX IF NOT EXISTS idx_notifications_created ON notifications(created_at);
CREATE INDEX IF NOT EXISTS idx_scheduled_broadcasts_time ON scheduled_broadcasts(scheduled_for);
"""

_NOTIFICATION_COLS = "id, user_id, type, title, message, read, created_at"


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _row_to_notification(row) -> Notification:
    return Notification(
        id=row["id"], user_id=row["user_id"], type=row["type"],
        title=row["title"], message=row["message"],
        read=bool(row["read"]), created_at=row["created_at"],
    )


def _row_to_broadcast(row) -> ScheduledBroadcast:
    return ScheduledBroadcast(
        id=row["id"], type=row["type"], title=row["title"], message=row["message"],
        scheduled_for=row["scheduled_for"], sent=bool(row["sent"]),
        created_at=row["created_at"],
    )


class NotificationStore:

    def __init__(self, path: str = "notifications.db"):
        self.path = path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._lock:
            if path != ":memory:":
                self._conn.execute("PRAGMA journal_mode = WAL")
            self._conn.execute("PRAGMA synchronous = NORMAL")
            self._conn.executescript(_SCHEMA)
            self._conn.commit()
        log.info("Notification store ready at %s", path)

    def close(self):
        with self._lock:
            self._conn.close()

    # ── Notifications ─────────────────────────────────────────

    def create(self, user_id: int, type: str, title: str, message: str) -> Notification:
        created_at = utcnow_iso()
        with self._lock:
            cur = self._conn.execute(
                "INSERT INTO notifications (user_id, type, title, message, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (user_id, type or "info", title, message, created_at),
            )
            self._conn.commit()
            new_id = cur.lastrowid
        return Notification(id=new_id, user_id=user_id, type=type or "info",
                            title=title, message=message, read=False, created_at=created_at)

    def create_many(self, user_ids, type: str, title: str, message: str) -> list[Notification]:
        """Insert the same notification for several users in one transaction."""
        created_at = utcnow_iso()
        out = []
        with self._lock:
            try:
                for uid in user_ids:
                    cur = self._conn.execute(
                        "INSERT INTO notifications (user_id, type, title, message, created_at) "
                        "VALUES (?, ?, ?, ?, ?)",
                        (uid, type or "info", title, message, created_at),
                    )
                    out.append(Notification(id=cur.lastrowid, user_id=uid, type=type or "info",
                                            title=title, message=message, created_at=created_at))
                self._conn.commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise
        return out

    def get(self, notification_id: int) -> Notification | None:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_NOTIFICATION_COLS} FROM notifications WHERE id = ?",
                (notification_id,),
            ).fetchone()
        return _row_to_notification(row) if row else None

    def list_for_user(self, user_id: int, limit: int = 20) -> list[Notification]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_NOTIFICATION_COLS} FROM notifications WHERE user_id = ? "
                "ORDER BY created_at DESC, id DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [_row_to_notification(r) for r in rows]

    def mark_read(self, notification_id: int, user_id: int) -> bool:
        """
        Set read on a user's notification. Marking an already-read one is a
        successful no-op; False only when the id does not belong to the user.
        """
        with self._lock:
            row = self._conn.execute(
                "SELECT read FROM notifications WHERE id = ? AND user_id = ?",
                (notification_id, user_id),
            ).fetchone()
            if row is None:
                return False
            if not row["read"]:
                self._conn.execute("UPDATE notifications SET read = 1 WHERE id = ?",
                                   (notification_id,))
                self._conn.commit()
        return True

    def unread_count(self, user_id: int) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) AS n FROM notifications WHERE user_id = ? AND read = 0",
                (user_id,),
            ).fetchone()
        return int(row["n"])

    def delete(self, notification_id: int) -> Notification | None:
        existing = self.get(notification_id)
        if existing is None:
            return None
        with self._lock:
            self._conn.execute("DELETE FROM notifications WHERE id = ?", (notification_id,))
            self._conn.commit()
        return existing

    def known_user_ids(self) -> list[int]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT DISTINCT user_id FROM notifications ORDER BY user_id").fetchall()
        return [r["user_id"] for r in rows]

    # ── Scheduled broadcasts ──────────────────────────────────

    def create_scheduled(self, type: str, title: str, message: str,
                         scheduled_for: str) -> ScheduledBroadcast:
        created_at = utcnow_iso()
        with self._lock:
            cur = self._conn.execute(
                "INSERT INTO scheduled_broadcasts (type, title, message, scheduled_for, created_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (type or "info", title, message, scheduled_for, created_at),
            )
            self._conn.commit()
            new_id = cur.lastrowid
        return ScheduledBroadcast(id=new_id, type=type or "info", title=title, message=message,
                                  scheduled_for=scheduled_for, created_at=created_at)

    def list_scheduled(self, include_sent: bool = False) -> list[ScheduledBroadcast]:
        sql = "SELECT * FROM scheduled_broadcasts"
        if not include_sent:
            sql += " WHERE sent = 0"
        sql += " ORDER BY scheduled_for"
        with self._lock:
            rows = self._conn.execute(sql).fetchall()
        return [_row_to_broadcast(r) for r in rows]

    def due_broadcasts(self, now_iso: str | None = None) -> list[ScheduledBroadcast]:
        now_iso = now_iso or utcnow_iso()
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM scheduled_broadcasts WHERE sent = 0 AND scheduled_for <= ? "
                "ORDER BY scheduled_for",
                (now_iso,),
            ).fetchall()
        return [_row_to_broadcast(r) for r in rows]

    def mark_broadcast_sent(self, broadcast_id: int):
        with self._lock:
            self._conn.execute("UPDATE scheduled_broadcasts SET sent = 1 WHERE id = ?",
                               (broadcast_id,))
            self._conn.commit()
