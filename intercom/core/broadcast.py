from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from .registry import UserNotFound, UserRegistry

"""
Directory broadcast
-------------------
Fans a directory-change event out to every registered user except the one
who caused it.

Callers provide:
- registry: the UserRegistry whose users receive the event
- send:     SendFn, enqueue + attempt delivery (MessageRelay.send)

Notes
-----
- Recipients are taken from a snapshot of ids. A user that vanished since
  the snapshot is skipped and logged; the remaining recipients still get the
  event.
- Only other users' queues and slots are touched, so this is safe to call
  from inside a running directory operation.
"""

log = logging.getLogger("intercom.broadcast")

# ---- types ----
SendFn = Callable[[str, Any], bool]   # MessageRelay.send


def broadcast(
    data: Any,
    *,
    exclude_id: Optional[str],
    registry: UserRegistry,
    send: SendFn,
) -> int:
    """Send data to every user but exclude_id. Returns the number reached."""

    reached = 0
    for user_id in registry.ids():
        if user_id == exclude_id:
            continue
        try:
            send(user_id, data)
        except UserNotFound:
            log.warning("Skipped broadcast to vanished user %s", user_id)
            continue
        reached += 1

    log.debug("Broadcast reached %d user(s) (excluded %s)", reached, exclude_id)
    return reached


__all__ = ["broadcast", "SendFn"]
