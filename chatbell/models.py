import os
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


@dataclass
class Notification:
    """
    A notification record as stored server-side and mirrored by clients.

    Wire form (JSON) uses camelCase keys:
      {"id": 7, "userId": 3, "type": "system", "title": "...",
       "message": "...", "read": false, "createdAt": "2026-..."}
    """
    id: int
    user_id: int | None = None
    type: str = "info"
    title: str = ""
    message: str = ""
    read: bool = False
    created_at: str = field(default_factory=_now_iso)

    @classmethod
    def from_dict(cls, d: dict) -> "Notification":
        user_id = d.get("userId", d.get("user_id"))
        return cls(
            id=int(d["id"]),
            user_id=int(user_id) if user_id is not None else None,
            type=str(d.get("type") or "info"),
            title=str(d.get("title", "")),
            message=str(d.get("message", "")),
            # sqlite hands back 0/1; older payloads used isRead
            read=bool(d.get("read", d.get("isRead", False))),
            created_at=str(d.get("createdAt") or d.get("created_at") or _now_iso()),
        )

    def to_dict(self) -> dict:
        out: dict = {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "read": self.read,
            "createdAt": self.created_at,
        }
        if self.user_id is not None:
            out["userId"] = self.user_id
        return out

    def to_broadcast_dict(self) -> dict:
        """Broadcast payloads never carry the owning user."""
        out = self.to_dict()
        out.pop("userId", None)
        return out


@dataclass
class ScheduledBroadcast:
    id: int
    type: str
    title: str
    message: str
    scheduled_for: str
    sent: bool = False
    created_at: str = field(default_factory=_now_iso)

    @classmethod
    def from_dict(cls, d: dict) -> "ScheduledBroadcast":
        return cls(
            id=int(d["id"]),
            type=str(d.get("type") or "info"),
            title=str(d.get("title", "")),
            message=str(d.get("message", "")),
            scheduled_for=str(d.get("scheduledFor") or d.get("scheduled_for") or ""),
            sent=bool(d.get("sent", False)),
            created_at=str(d.get("createdAt") or d.get("created_at") or _now_iso()),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "scheduledFor": self.scheduled_for,
            "sent": self.sent,
            "createdAt": self.created_at,
        }


@dataclass
class Toast:
    title: str
    description: str = ""
    duration: float = 5.0
    type: str = "info"

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "description": self.description,
            "duration": self.duration,
            "type": self.type,
        }


@dataclass
class ClientSettings:
    """
    Tunables for the notification client. All durations are in seconds.

    Delivery:
      debounce_delay            : quiet period before the pending queue is flushed
      notification_batch_size   : max queued items merged per flush
      max_cache_size            : cache capacity; pending queue is capped at twice this

    Refresh:
      refresh_interval          : period of the background refresh timer
      minimum_refresh_interval  : refresh() calls closer than this are no-ops
      mark_read_batch_size      : concurrent mark-read requests per batch
      request_timeout           : HTTP timeout for store calls

    Channel:
      reconnect_base_delay      : backoff base; delay = base * 2**attempts
      max_reconnect_delay       : backoff cap
      connect_timeout           : websocket handshake timeout

    Toasts:
      toast_duration            : how long a toast stays up
      toast_message_length      : toast descriptions are cut to this many characters
    """
    debounce_delay: float = 0.3
    notification_batch_size: int = 10
    max_cache_size: int = 50

    refresh_interval: float = 30.0
    minimum_refresh_interval: float = 2.0
    mark_read_batch_size: int = 5
    request_timeout: float = 10.0

    reconnect_base_delay: float = 1.0
    max_reconnect_delay: float = 30.0
    connect_timeout: float = 5.0

    toast_duration: float = 5.0
    toast_message_length: int = 100

    @property
    def max_pending(self) -> int:
        return 2 * self.max_cache_size

    @classmethod
    def from_env(cls, environ=None) -> "ClientSettings":
        """Build settings from CHATBELL_<FIELD> environment variables."""
        environ = os.environ if environ is None else environ
        settings = cls()
        for f in fields(cls):
            raw = environ.get(f"CHATBELL_{f.name.upper()}")
            if raw is None or raw == "":
                continue
            cast = int if f.type in (int, "int") else float
            try:
                setattr(settings, f.name, cast(raw))
            except ValueError:
                raise ValueError(f"CHATBELL_{f.name.upper()} must be a number, got {raw!r}")
        return settings

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}
