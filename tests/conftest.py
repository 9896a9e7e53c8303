"""
Shared pytest fixtures for the sigrelay test suite.
"""

import pytest

from sigrelay.room import RoomManager
from sigrelay.router import MessageRouter


@pytest.fixture
def rooms() -> RoomManager:
    return RoomManager(max_room_size=10)


@pytest.fixture
def router(rooms: RoomManager) -> MessageRouter:
    return MessageRouter(rooms=rooms)
