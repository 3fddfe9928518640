from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable, List

from .proto import now_ms
from .registry import User, UserRegistry

"""
Message relay
-------------
Bridges each user's message queue with the one long-poll that may be parked
for that user.

  - enqueue() only appends; deliver_if_possible() is the single place where
    queued messages leave the server
  - a user has at most one Slot; a newer wait supersedes the older one, which
    completes with an empty batch
  - cancel() is scoped to a slot instance, so a late disconnect of a
    superseded poll cannot clear its successor

All methods are synchronous. On a single event loop each call runs to
completion before any other mutation of the same user.
"""

log = logging.getLogger("intercom.relay")


class Slot:
    """One-shot completion handle for a parked long-poll."""

    __slots__ = ("user_id", "created_ms", "_future")

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        self.created_ms = now_ms()
        self._future: asyncio.Future[List[Any]] = asyncio.get_running_loop().create_future()

    @property
    def closed(self) -> bool:
        return self._future.done()

    def fulfill(self, messages: Iterable[Any] = ()) -> bool:
        if self._future.done():
            return False
        self._future.set_result(list(messages))
        return True

    def cancel(self) -> None:
        if not self._future.done():
            self._future.cancel()

    async def wait(self) -> List[Any]:
        return await self._future

    def __repr__(self) -> str:
        return f"<Slot user={self.user_id} created={self.created_ms} closed={self.closed}>"


class MessageRelay:
    def __init__(self, registry: UserRegistry) -> None:
        self.registry = registry

    def enqueue(self, user_id: str, message: Any) -> None:
        self.registry.lookup(user_id).queue.append(message)

    def deliver_if_possible(self, user_id: str) -> bool:
        """Hand the whole queue to the parked slot, if there is one."""
        user = self.registry.lookup(user_id)
        slot = user.slot
        if slot is None or not user.queue:
            return False
        if slot.closed:
            # connection went away before its cancel hook ran; keep the queue
            user.slot = None
            log.debug("Discarded closed slot for %s", user_id)
            return False

        batch = user.queue
        user.queue = []
        user.slot = None
        slot.fulfill(batch)
        log.debug("Delivered %d message(s) to %s", len(batch), user_id)
        return True

    def send(self, user_id: str, message: Any) -> bool:
        """Enqueue then attempt delivery. Raises UserNotFound."""
        self.enqueue(user_id, message)
        return self.deliver_if_possible(user_id)

    def register_wait(self, user_id: str, slot: Slot) -> bool:
        """Install slot as the user's pending long-poll.

        Returns False when queued messages satisfied the slot straight away,
        in which case it is never installed.
        """
        user = self.registry.lookup(user_id)
        if user.queue:
            batch = user.queue
            user.queue = []
            slot.fulfill(batch)
            return False

        previous = user.slot
        if previous is not None and previous.fulfill():
            log.debug("Superseded pending wait for %s", user_id)
        user.slot = slot
        return True

    def cancel(self, user_id: str, slot: Slot) -> bool:
        """Clear the user's slot only if it is still this exact slot."""
        slot.cancel()
        user = self.registry.get(user_id)
        if user is None or user.slot is not slot:
            return False
        user.slot = None
        log.debug("Cancelled pending wait for %s", user_id)
        return True

    def release(self, user: User) -> bool:
        """Complete and clear a user's slot with an empty batch."""
        slot = user.slot
        user.slot = None
        return slot is not None and slot.fulfill()


__all__ = ["Slot", "MessageRelay"]
