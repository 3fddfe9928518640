from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Tuple

from . import broadcast as broadcast_mod
from .proto import (
    Answer,
    BadRequest,
    Offer,
    Operation,
    Register,
    Reject,
    Unregister,
    Wait,
    new_user_id,
    now_ms,
)
from .registry import NameInUse, User, UserNotFound, UserRegistry, sort_public
from .relay import MessageRelay, Slot

log = logging.getLogger("intercom.directory")

NowFn = Callable[[], int]
IdFn = Callable[[], str]


def _missing(value: Any) -> bool:
    return value is None or value == ""


class Directory:
    """The six directory operations over one owned registry.

    Mutations run under a single lock. A parked wait releases the lock and
    awaits its Slot; whoever fulfils or cancels that slot does so while
    holding the lock or from the waiting task itself.
    """

    def __init__(
        self,
        registry: Optional[UserRegistry] = None,
        *,
        now: NowFn = now_ms,
        new_id: IdFn = new_user_id,
    ) -> None:
        self.registry = registry if registry is not None else UserRegistry()
        self.relay = MessageRelay(self.registry)
        self.now = now
        self.new_id = new_id
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, op: Operation) -> Optional[Dict[str, Any]]:
        if isinstance(op, Register):
            return await self.register(op.name, id=op.id)
        elif isinstance(op, Unregister):
            return await self.unregister(op.id)
        elif isinstance(op, Offer):
            return await self.offer(op.id, op.offer, op.name)
        elif isinstance(op, Answer):
            return await self.answer(op.id, op.answer, op.name)
        elif isinstance(op, Reject):
            return await self.reject(op.id, op.name)
        elif isinstance(op, Wait):
            return await self.wait(op.id)
        raise TypeError(f"unsupported operation {op!r}")

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register(self, name: Optional[str], id: Optional[str] = None) -> Dict[str, Any]:
        if isinstance(name, str):
            name = name.strip()
        if not name or not isinstance(name, str):
            raise BadRequest("user name required")

        user_id = id or self.new_id()
        async with self._lock:
            try:
                user, previous = self.registry.upsert(user_id, name, self.now())
            except NameInUse:
                raise BadRequest("user name already in use") from None

            renamed = previous is not None and previous != name
            private: Dict[str, Any] = {"id": user.id, "name": user.name}
            public: Dict[str, Any] = user.public()
            if renamed:
                private["old_name"] = previous
                public["old_name"] = previous

            all_users = sort_public([*self.registry.list_public(exclude_id=user_id), public])
            if previous is None or renamed:
                self._broadcast({"self": public, "all_users": all_users}, exclude_id=user_id)

        if previous is None:
            log.info("Registered user: %s (user_id: %s)", name, user_id)
        elif renamed:
            log.info("Renamed user: %s -> %s (user_id: %s)", previous, name, user_id)
        return {"self": private, "all_users": all_users}

    async def unregister(self, id: Optional[str]) -> None:
        if _missing(id):
            raise BadRequest("user id required")

        async with self._lock:
            try:
                user = self.registry.remove(id)
            except UserNotFound:
                log.debug("Unregister of unknown user_id %s ignored", id)
                return None
            self.relay.release(user)
            data = {"unregister": user.public(), "all_users": self.registry.list_public()}
            self._broadcast(data, exclude_id=user.id)

        log.info("Unregistered user: %s (user_id: %s)", user.name, user.id)
        return None

    # ------------------------------------------------------------------
    # Signaling relay
    # ------------------------------------------------------------------

    async def offer(self, id: Optional[str], offer: Any, name: Optional[str]) -> None:
        if _missing(id):
            raise BadRequest("user id required")
        if _missing(offer):
            raise BadRequest("offer required")
        if _missing(name):
            raise BadRequest("user name required")

        async with self._lock:
            sender, target = self._resolve_pair(id, name)
            self._relay(target, {"offer": offer, "name": sender.name})
        return None

    async def answer(self, id: Optional[str], answer: Any, name: Optional[str]) -> None:
        if _missing(id):
            raise BadRequest("user id required")
        if _missing(answer):
            raise BadRequest("answer required")
        if _missing(name):
            raise BadRequest("user name required")

        async with self._lock:
            sender, target = self._resolve_pair(id, name)
            self._relay(target, {"answer": answer, "name": sender.name})
        return None

    async def reject(self, id: Optional[str], name: Optional[str]) -> None:
        if _missing(id):
            raise BadRequest("user id required")
        if _missing(name):
            raise BadRequest("user name required")

        async with self._lock:
            sender, target = self._resolve_pair(id, name)
            self._relay(target, {"reject": {"name": sender.name}})
        return None

    # ------------------------------------------------------------------
    # Long-poll
    # ------------------------------------------------------------------

    async def wait(self, id: Optional[str]) -> Dict[str, Any]:
        if _missing(id):
            raise BadRequest("user id required")

        async with self._lock:
            if id not in self.registry:
                raise BadRequest("user not found")
            slot = Slot(id)
            self.relay.register_wait(id, slot)

        try:
            messages = await slot.wait()
        except asyncio.CancelledError:
            self.relay.cancel(id, slot)
            raise
        return {"messages": messages}

    async def shutdown(self) -> int:
        """Complete every parked wait with an empty batch."""
        released = 0
        async with self._lock:
            for user in self.registry:
                if self.relay.release(user):
                    released += 1
        if released:
            log.info("Released %d pending wait(s)", released)
        return released

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    def _resolve_pair(self, id: str, name: str) -> Tuple[User, User]:
        try:
            sender = self.registry.lookup(id)
        except UserNotFound:
            raise BadRequest("user id not found") from None
        try:
            target = self.registry.lookup_by_name(name)
        except UserNotFound:
            raise BadRequest("user name not found") from None
        return sender, target

    def _relay(self, target: User, message: Dict[str, Any]) -> None:
        try:
            self.relay.send(target.id, message)
        except UserNotFound:
            log.warning("Dropped message for vanished user %s", target.id)

    def _broadcast(self, data: Dict[str, Any], *, exclude_id: str) -> int:
        return broadcast_mod.broadcast(
            data,
            exclude_id=exclude_id,
            registry=self.registry,
            send=self.relay.send,
        )


__all__ = ["Directory"]
