"""
Console consumer: follow one user's notifications and log toasts.

  CHATBELL_URL=http://localhost:8000 CHATBELL_TOKEN_FILE=~/.chatbell/token \
      python -m chatbell.client.watch

The token file plays the part of the browser's persisted login token; with
no token the watcher exits without connecting.
"""
import logging
import os
import signal
import threading

from chatbell.auth import peek_user_id
from chatbell.client.api import StoreClient, load_token
from chatbell.client.service import NotificationService
from chatbell.models import ClientSettings

log = logging.getLogger("chatbell.client.watch")


def main() -> int:
    logging.basicConfig(
        level=os.environ.get("CHATBELL_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
    )
    base_url = os.environ.get("CHATBELL_URL", "http://localhost:8000")
    token = load_token(os.environ.get("CHATBELL_TOKEN_FILE", "~/.chatbell/token"))
    user_id = peek_user_id(token) if token else None
    if user_id is None:
        log.error("No usable token found; sign in first")
        return 1

    settings = ClientSettings.from_env()
    log.info("Client settings: %s", settings.to_dict())
    store = StoreClient(base_url, token, timeout=settings.request_timeout)
    service = NotificationService.for_server(base_url, store, settings=settings)
    service.subscribe(lambda snapshot: log.info(
        "%d notification(s), %d unread", len(snapshot), sum(1 for n in snapshot if not n.read)))

    done = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: done.set())
    signal.signal(signal.SIGTERM, lambda *_: done.set())

    service.start(user_id, token)
    try:
        done.wait()
    finally:
        service.stop()
        store.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
