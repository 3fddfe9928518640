import asyncio
import itertools

import pytest

from intercom.core.directory import Directory
from intercom.core.registry import UserRegistry
from intercom.core.relay import MessageRelay


@pytest.fixture
def registry():
    return UserRegistry()


@pytest.fixture
def relay(registry):
    return MessageRelay(registry)


@pytest.fixture
def directory():
    """Directory with predictable ids (user-1, user-2, ...) and a fixed clock."""
    counter = itertools.count(1)
    return Directory(now=lambda: 1700000000000, new_id=lambda: f"user-{next(counter)}")


@pytest.fixture
def settle():
    """Let freshly created tasks run up to their next suspension point."""
    async def _settle(rounds: int = 5) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)
    return _settle
