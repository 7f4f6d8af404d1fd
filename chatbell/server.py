"""
chatbell server entrypoint.

Reads runtime config from the environment into the shared state module,
opens the notification store, registers the REST blueprint and the push
socket, and serves on CHATBELL_PORT. The scheduled-broadcast thread runs
alongside the HTTP server.
"""
import logging
import os

from flask import Flask
from werkzeug.serving import make_server

from chatbell import state
from chatbell.hub import PushHub
from chatbell.routes import notifications as notifications_bp
from chatbell.routes.ws import sock
from chatbell.scheduler import BroadcastScheduler
from chatbell.store import NotificationStore

log = logging.getLogger("chatbell.server")


def load_config(environ=None):
    """Copy CHATBELL_* / JWT_* environment variables into state."""
    environ = os.environ if environ is None else environ
    state.DB_PATH            = environ.get("CHATBELL_DB_PATH", state.DB_PATH)
    state.JWT_SECRET         = environ.get("JWT_SECRET", state.JWT_SECRET)
    state.JWT_ALG            = environ.get("JWT_ALG", state.JWT_ALG)
    state.PORT               = int(environ.get("CHATBELL_PORT", state.PORT))
    state.LOG_LEVEL          = environ.get("CHATBELL_LOG_LEVEL", state.LOG_LEVEL).upper()
    state.SCHEDULER_INTERVAL = float(environ.get("CHATBELL_SCHEDULER_INTERVAL", state.SCHEDULER_INTERVAL))
    state.RESPONSE_CACHE_TTL = float(environ.get("CHATBELL_RESPONSE_CACHE_TTL", state.RESPONSE_CACHE_TTL))


def create_app(store: NotificationStore | None = None, hub: PushHub | None = None) -> Flask:
    state.store = store or NotificationStore(state.DB_PATH)
    state.hub = hub or PushHub()
    state.invalidate_all()

    app = Flask(__name__)
    app.register_blueprint(notifications_bp.bp)
    sock.init_app(app)

    @app.route("/healthz")
    def healthz():
        return {"ok": True, "connectedUsers": len(state.hub.connected_users())}

    return app


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
    )
    load_config()
    logging.getLogger().setLevel(getattr(logging, state.LOG_LEVEL, logging.INFO))
    if state.JWT_SECRET == "change-me":
        log.warning("JWT_SECRET is not set; using the development default")

    app = create_app()
    scheduler = BroadcastScheduler(state.SCHEDULER_INTERVAL)
    scheduler.start()

    log.info("Serving notifications on port %d (db=%s)", state.PORT, state.DB_PATH)
    srv = make_server("0.0.0.0", state.PORT, app, threaded=True)
    try:
        srv.serve_forever()
    except KeyboardInterrupt:
        log.info("Shutting down")
    finally:
        scheduler.stop()
        state.store.close()


if __name__ == "__main__":
    main()
