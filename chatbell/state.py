"""
Shared runtime state for the chatbell server.

Route modules, the scheduler and the push endpoint all import from here so
they share the same store, hub and config. Values are set once at startup
by chatbell/server.py (create_app) and read at call time.
"""
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from chatbell.hub import PushHub
    from chatbell.store import NotificationStore

# ── Runtime config (set by server.py at startup) ─────────────
DB_PATH: str = "notifications.db"
JWT_SECRET: str = "change-me"
JWT_ALG: str = "HS256"
PORT: int = 8000
LOG_LEVEL: str = "INFO"
SCHEDULER_INTERVAL: float = 60.0
RESPONSE_CACHE_TTL: float = 5.0

# ── Live objects ──────────────────────────────────────────────
store: "NotificationStore | None" = None
hub: "PushHub | None" = None

# user_id -> (monotonic ts, limit, serialized list) for GET /api/notifications without fresh=true
response_cache: dict[int, tuple[float, int, list[dict]]] = {}


def invalidate_user(user_id: int):
    response_cache.pop(user_id, None)


def invalidate_all():
    response_cache.clear()
