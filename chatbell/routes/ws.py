"""
Push endpoint for notification clients.

Clients open /notifications/ws with their bearer token in the
Authorization header (or ?token= when the client cannot set headers). The
socket is registered with the hub under the token's user id and then read
until it closes. Inbound frames:

  ping                   ignored (keepalive)
  request_notifications  reply with notification_refresh: the latest
                         payload["limit"] (default 20, at most 100)
"""
import json
import logging

from flask import request
from flask_sock import Sock
from simple_websocket import ConnectionClosed

from chatbell import state
from chatbell.auth import AuthError, bearer_token, decode_token

log = logging.getLogger("chatbell.routes.ws")

sock = Sock()  # bound to the Flask app in server.py

_REFRESH_LIMIT = 20
_MAX_REFRESH_LIMIT = 100


def _refresh_limit(payload) -> int:
    raw = payload.get("limit") if isinstance(payload, dict) else None
    try:
        limit = int(raw)
    except (TypeError, ValueError):
        return _REFRESH_LIMIT
    return max(1, min(limit, _MAX_REFRESH_LIMIT))


def handle_frame(user_id: int, ws, raw) -> None:
    """Act on one inbound frame from a client socket."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        msg = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        log.warning("Bad JSON from user %s", user_id)
        return
    if not isinstance(msg, dict):
        return
    msg_type = msg.get("type", "")
    if msg_type == "ping":
        return
    if msg_type == "request_notifications":
        limit = _refresh_limit(msg.get("payload"))
        try:
            items = [n.to_dict() for n in state.store.list_for_user(user_id, limit)]
        except Exception as exc:
            log.error("Could not load notifications for user %s: %s", user_id, exc)
            items = []
        ws.send(json.dumps({"type": "notification_refresh", "payload": items}))
        log.debug("Sent %d notifications to user %s", len(items), user_id)
        return
    log.debug("Ignoring %r from user %s", msg_type, user_id)


@sock.route("/notifications/ws")
def notifications_ws(ws):
    try:
        claims = decode_token(bearer_token(request))
    except AuthError as exc:
        log.warning("Push connect rejected from %s: %s", request.remote_addr, exc.message)
        try:
            ws.close(reason=1008, message="unauthorized")
        except Exception:
            log.debug("Error closing rejected socket", exc_info=True)
        return

    user_id = int(claims.get("id", claims.get("sub")))
    state.hub.register(user_id, ws)
    try:
        while True:
            raw = ws.receive()
            if raw is None:
                continue
            handle_frame(user_id, ws, raw)
    except ConnectionClosed:
        pass
    finally:
        state.hub.unregister(user_id, ws)
