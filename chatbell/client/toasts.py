"""
Toast summaries for a flushed batch of notifications.

One toast per notification type: a single arrival shows its own title and
message, several arrivals of the same type collapse into a count.
"""
import logging
from collections import OrderedDict

from chatbell.models import Notification, Toast

log = logging.getLogger("chatbell.client.toasts")

_ELLIPSIS = "..."


def truncate(text: str, max_length: int) -> str:
    if max_length <= 0:
        return ""
    if len(text) <= max_length:
        return text
    if max_length <= len(_ELLIPSIS):
        return text[:max_length]
    return text[:max_length - len(_ELLIPSIS)] + _ELLIPSIS


def build_toasts(items: list[Notification], duration: float = 5.0,
                 max_length: int = 100) -> list[Toast]:
    by_type: "OrderedDict[str, list[Notification]]" = OrderedDict()
    for n in items:
        by_type.setdefault(n.type, []).append(n)

    toasts = []
    for ntype, group in by_type.items():
        if len(group) == 1:
            n = group[0]
            toasts.append(Toast(
                title=truncate(n.title, max_length),
                description=truncate(n.message, max_length),
                duration=duration,
                type=ntype,
            ))
        else:
            toasts.append(Toast(
                title=f"{len(group)} new notifications",
                description=truncate(f"You have {len(group)} new {ntype} notifications", max_length),
                duration=duration,
                type=ntype,
            ))
    return toasts


def log_toast(toast: Toast):
    """Default toast sink for headless consumers."""
    log.info("[%s] %s: %s", toast.type, toast.title, toast.description)
