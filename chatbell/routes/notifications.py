import logging
import time
from datetime import datetime, timezone

from flask import Blueprint, request, jsonify

from chatbell import state
from chatbell.auth import AuthError, current_user, require_admin
from chatbell.notifications import add_notification, add_notifications, broadcast_notification
from chatbell.store import utcnow_iso

log = logging.getLogger("chatbell.routes.notifications")

bp = Blueprint("notifications", __name__)

_DEFAULT_LIMIT = 20
_MAX_LIMIT = 100


@bp.errorhandler(AuthError)
def _auth_error(exc: AuthError):
    return jsonify({"error": exc.message}), exc.status_code


def _parse_limit(raw) -> int:
    if raw in (None, ""):
        return _DEFAULT_LIMIT
    limit = int(raw)
    if limit < 1:
        raise ValueError("limit must be positive")
    return min(limit, _MAX_LIMIT)


def _normalise_time(raw: str) -> str:
    """ISO-8601 input -> UTC ISO string (naive input is taken as UTC)."""
    dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


@bp.route("/api/notifications")
def list_notifications():
    """
    The caller's newest notifications. Answers for a few seconds come from a
    per-user response cache; fresh=true skips it.
    """
    user = current_user()
    user_id = user["user_id"]
    try:
        limit = _parse_limit(request.args.get("limit"))
    except ValueError:
        return jsonify({"error": "limit must be a positive integer"}), 400
    fresh = request.args.get("fresh", "").lower() == "true"

    if not fresh:
        cached = state.response_cache.get(user_id)
        if cached and time.monotonic() - cached[0] < state.RESPONSE_CACHE_TTL and cached[1] >= limit:
            return jsonify(cached[2][:limit])

    data = [n.to_dict() for n in state.store.list_for_user(user_id, limit)]
    state.response_cache[user_id] = (time.monotonic(), limit, data)
    return jsonify(data)


@bp.route("/api/notifications/unread-count")
def unread_count():
    user = current_user()
    return jsonify({"count": state.store.unread_count(user["user_id"])})


@bp.route("/api/notifications/<int:notif_id>/read", methods=["PATCH", "POST"])
def mark_read(notif_id):
    user = current_user()
    if not state.store.mark_read(notif_id, user["user_id"]):
        return jsonify({"error": "not found"}), 404
    state.invalidate_user(user["user_id"])
    return jsonify({"ok": True})


@bp.route("/api/notifications", methods=["POST"])
def create_notifications():
    """
    Admin: create notifications for one user.

    Body: {"userId": 3, "type": "...", "title": "...", "message": "..."}
      or  {"userId": 3, "notifications": [{"type", "title", "message"}, ...]}
    A list is pushed to the user as one notification_batch.
    """
    require_admin()
    data = request.json or {}
    try:
        user_id = int(data["userId"])
    except (KeyError, TypeError, ValueError):
        return jsonify({"error": "userId is required"}), 400

    items = data.get("notifications")
    if items is not None:
        if not isinstance(items, list) or not items:
            return jsonify({"error": "notifications must be a non-empty list"}), 400
        for d in items:
            if not isinstance(d, dict) or not d.get("title") or not d.get("message"):
                return jsonify({"error": "each notification needs a title and message"}), 400
        created = add_notifications(user_id, items)
        return jsonify([n.to_dict() for n in created]), 201

    if not data.get("title") or not data.get("message"):
        return jsonify({"error": "title and message are required"}), 400
    n = add_notification(user_id, data.get("type", "info"), data["title"], data["message"])
    return jsonify(n.to_dict()), 201


@bp.route("/api/notifications/broadcast", methods=["POST"])
def create_broadcast():
    """
    Admin: notify every user now, or at `scheduledFor` (ISO-8601) if given
    and in the future.
    """
    require_admin()
    data = request.json or {}
    if not data.get("title") or not data.get("message"):
        return jsonify({"error": "title and message are required"}), 400
    ntype = data.get("type", "info")

    scheduled_for = data.get("scheduledFor")
    if scheduled_for:
        try:
            when = _normalise_time(str(scheduled_for))
        except ValueError:
            return jsonify({"error": "scheduledFor must be an ISO-8601 timestamp"}), 400
        if when > utcnow_iso():
            b = state.store.create_scheduled(ntype, data["title"], data["message"], when)
            log.info("Broadcast %s scheduled for %s", b.id, when)
            return jsonify(b.to_dict()), 202

    created = broadcast_notification(ntype, data["title"], data["message"])
    return jsonify({"ok": True, "count": len(created)}), 201


@bp.route("/api/notifications/scheduled")
def list_scheduled():
    require_admin()
    include_sent = request.args.get("all", "").lower() == "true"
    return jsonify([b.to_dict() for b in state.store.list_scheduled(include_sent)])


@bp.route("/api/notifications/<int:notif_id>", methods=["DELETE"])
def delete_notification(notif_id):
    require_admin()
    removed = state.store.delete(notif_id)
    if removed is None:
        return jsonify({"error": "not found"}), 404
    state.invalidate_user(removed.user_id)
    return jsonify({"ok": True})
