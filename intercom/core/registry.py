from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Iterable, Iterator, List, Optional, Tuple

if TYPE_CHECKING:
    from .relay import Slot

log = logging.getLogger("intercom.registry")


class UserNotFound(LookupError):
    """No registered user matches the given id or name."""


class NameInUse(ValueError):
    """Another registered user already holds the requested name."""


@dataclass
class User:
    id: str
    name: str
    time: int
    queue: List[Any] = field(default_factory=list)
    slot: Optional["Slot"] = None

    def public(self) -> Dict[str, str]:
        return {"name": self.name}


def sort_public(users: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Sort public projections by name, ignoring case; ties keep input order."""

    return sorted(users, key=lambda u: u["name"].upper())


class UserRegistry:
    """Authoritative map of user id -> User.

    Names are unique among registered users, compared without case. The
    registry never hides a failed lookup: callers get UserNotFound and decide
    what it means for them.
    """

    def __init__(self) -> None:
        self._users: Dict[str, User] = {}

    def __len__(self) -> int:
        return len(self._users)

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._users

    def __iter__(self) -> Iterator[User]:
        return iter(list(self._users.values()))

    def ids(self) -> List[str]:
        return list(self._users)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get(self, user_id: str) -> Optional[User]:
        return self._users.get(user_id)

    def lookup(self, user_id: str) -> User:
        user = self._users.get(user_id)
        if user is None:
            raise UserNotFound(user_id)
        return user

    def lookup_by_name(self, name: str) -> User:
        for user in self._users.values():
            if user.name == name:
                return user
        raise UserNotFound(name)

    def name_in_use(self, name: str, exclude_id: Optional[str] = None) -> bool:
        folded = name.upper()
        return any(
            user.name.upper() == folded
            for uid, user in self._users.items()
            if uid != exclude_id
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def upsert(self, user_id: str, name: str, time: int) -> Tuple[User, Optional[str]]:
        """Create the user or rename it in place.

        Returns the record and its previous name (None for a new user). Queue
        and slot of an existing record are left untouched.
        """
        if self.name_in_use(name, exclude_id=user_id):
            raise NameInUse(name)

        user = self._users.get(user_id)
        if user is None:
            user = User(id=user_id, name=name, time=time)
            self._users[user_id] = user
            log.debug("Created user %s (%s)", name, user_id)
            return user, None

        previous = user.name
        user.name = name
        user.time = time
        return user, previous

    def remove(self, user_id: str) -> User:
        user = self._users.pop(user_id, None)
        if user is None:
            raise UserNotFound(user_id)
        return user

    # ------------------------------------------------------------------
    # Presentation
    # ------------------------------------------------------------------

    def list_public(self, exclude_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return sort_public(u.public() for uid, u in self._users.items() if uid != exclude_id)


__all__ = ["User", "UserRegistry", "UserNotFound", "NameInUse", "sort_public"]
